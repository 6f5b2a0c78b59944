from __future__ import annotations

import logging
import os


def configure_logging(level_name: str | None = None) -> None:
    """Configure simple, low-noise console logging.

    Goals:
    - show chat / stream lifecycle events (create, persist, stream start/end)
    - keep output safe (no prompt text / API keys)
    - keep output low-noise (no per-delta logs)

    Controlled by env vars:
    - LOG_LEVEL=DEBUG|INFO|WARNING|ERROR (default INFO)
    """

    raw = level_name or os.getenv("LOG_LEVEL", "INFO")
    level = getattr(logging, raw.strip().upper() or "INFO", logging.INFO)

    # Avoid double-config when called from both the app factory and tests.
    root = logging.getLogger()
    if root.handlers:
        root.setLevel(level)
        return

    logging.basicConfig(
        level=level,
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
    )

    if level >= logging.INFO:
        for noisy in [
            "openai",
            "httpx",
            "aiosqlite",
        ]:
            logging.getLogger(noisy).setLevel(logging.WARNING)
