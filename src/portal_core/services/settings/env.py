from __future__ import annotations

from pathlib import Path

from dotenv import load_dotenv


def load_env(root: Path | None = None) -> None:
    """Load local .env files if present.

    Dev convenience so the service can be started without manually exporting
    variables. In production prefer real environment variables.

    Load order (later does NOT override existing env vars):
    1) <root>/.env
    2) <root>/.env.local

    `root` defaults to the current working directory.
    """

    base = root or Path.cwd()
    load_dotenv(dotenv_path=base / ".env", override=False)
    load_dotenv(dotenv_path=base / ".env.local", override=False)
