"""Runtime settings read from environment variables.

- PORTAL_STORE_BACKEND=sqlite|file (default sqlite)
- PORTAL_DB_PATH (default data/portal.db)
- PORTAL_FILE_STORE_PATH (default data/store.json)
- PORTAL_AGENTS_PATH (optional JSON agent directory)
- PORTAL_WORKSPACE_ID (default "0000")
- PORTAL_DURABILITY=best_effort|write_ahead (default best_effort)
- PORTAL_HISTORY_LIMIT (previous messages sent to the model, default 20)
- PORTAL_LLM_MODE=stub|openai (default stub)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path


class StoreBackend(str, Enum):
    sqlite = "sqlite"
    file = "file"


class DurabilityPolicy(str, Enum):
    # Memory first, persistence failures are logged and swallowed.
    best_effort = "best_effort"
    # Persistence first, failures raise and memory is left untouched.
    write_ahead = "write_ahead"


def _env(name: str, default: str | None = None) -> str | None:
    v = os.getenv(name)
    if v is None or v.strip() == "":
        return default
    return v.strip()


@dataclass(frozen=True)
class Settings:
    store_backend: StoreBackend = StoreBackend.sqlite
    db_path: Path = Path("data/portal.db")
    file_store_path: Path = Path("data/store.json")
    agents_path: Path | None = None
    workspace_id: str = "0000"
    durability: DurabilityPolicy = DurabilityPolicy.best_effort
    history_limit: int = 20
    llm_mode: str = "stub"

    @classmethod
    def from_env(cls) -> "Settings":
        agents_path = _env("PORTAL_AGENTS_PATH")
        history = _env("PORTAL_HISTORY_LIMIT", "20") or "20"
        try:
            history_limit = max(0, int(history))
        except ValueError as e:
            raise ValueError(f"PORTAL_HISTORY_LIMIT must be an integer, got {history!r}") from e

        return cls(
            store_backend=StoreBackend((_env("PORTAL_STORE_BACKEND", "sqlite") or "sqlite").lower()),
            db_path=Path(_env("PORTAL_DB_PATH", "data/portal.db") or "data/portal.db"),
            file_store_path=Path(_env("PORTAL_FILE_STORE_PATH", "data/store.json") or "data/store.json"),
            agents_path=Path(agents_path) if agents_path else None,
            workspace_id=_env("PORTAL_WORKSPACE_ID", "0000") or "0000",
            durability=DurabilityPolicy((_env("PORTAL_DURABILITY", "best_effort") or "best_effort").lower()),
            history_limit=history_limit,
            llm_mode=(_env("PORTAL_LLM_MODE", "stub") or "stub").lower(),
        )
