"""Schema migrations for the SQLite store.

Steps are numbered `.sql` files under `sql/`, listed in order by
`sql/manifest.json`. A step may hold several statements separated by
`--> statement-breakpoint`.

Applied steps are recorded in the `__migrations` ledger table, so running
the migrator twice applies nothing the second time. Each step runs inside
its own transaction. Statement errors that only mean "already applied"
(an object that already exists, a duplicate column, a column already gone)
are logged and skipped; anything else rolls the step back and raises
`MigrationError`.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path

import aiosqlite

from .interface import PersistenceError

logger = logging.getLogger(__name__)

SQL_DIR = Path(__file__).resolve().parent / "sql"
STATEMENT_BREAKPOINT = "--> statement-breakpoint"
LEDGER_TABLE = "__migrations"

_TOLERATED_ERRORS = ("already exists", "duplicate column", "no such column")


class MigrationError(PersistenceError):
    """A migration statement failed for a reason other than being already applied."""

    def __init__(self, tag: str, statement: str, reason: str) -> None:
        super().__init__(f"migration {tag} failed: {reason}")
        self.tag = tag
        self.statement = statement
        self.reason = reason


@dataclass(frozen=True)
class MigrationStep:
    idx: int
    tag: str
    sql: str

    def statements(self) -> list[str]:
        return [s.strip() for s in self.sql.split(STATEMENT_BREAKPOINT) if s.strip()]


def load_steps(sql_dir: Path = SQL_DIR) -> list[MigrationStep]:
    """Read the manifest and the SQL of every step it lists, in `idx` order."""

    manifest_path = sql_dir / "manifest.json"
    try:
        manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    except FileNotFoundError as e:
        raise FileNotFoundError(f"Migration manifest not found at: {manifest_path}") from e
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in migration manifest at {manifest_path}: {e}") from e

    steps: list[MigrationStep] = []
    for entry in manifest.get("entries", []):
        tag = str(entry["tag"])
        sql = (sql_dir / f"{tag}.sql").read_text(encoding="utf-8")
        steps.append(MigrationStep(idx=int(entry["idx"]), tag=tag, sql=sql))
    steps.sort(key=lambda s: s.idx)
    return steps


async def _ensure_ledger(conn: aiosqlite.Connection) -> None:
    await conn.execute(
        f"""
        CREATE TABLE IF NOT EXISTS "{LEDGER_TABLE}" (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            idx INTEGER NOT NULL UNIQUE,
            tag TEXT NOT NULL UNIQUE,
            applied_at TEXT NOT NULL
        )
        """
    )
    await conn.commit()


async def applied_tags(conn: aiosqlite.Connection) -> list[str]:
    """Tags recorded in the ledger, in apply order."""

    await _ensure_ledger(conn)
    async with conn.execute(f'SELECT tag FROM "{LEDGER_TABLE}" ORDER BY idx') as cur:
        rows = await cur.fetchall()
    return [r[0] for r in rows]


async def run_migrations(
    conn: aiosqlite.Connection,
    steps: Sequence[MigrationStep] | None = None,
) -> list[str]:
    """Apply every step not yet in the ledger. Returns the tags applied now."""

    if steps is None:
        steps = load_steps()

    done = set(await applied_tags(conn))
    applied: list[str] = []

    for step in sorted(steps, key=lambda s: s.idx):
        if step.tag in done:
            continue

        logger.info("migration.apply start tag=%s", step.tag)
        await conn.execute("BEGIN")
        try:
            for statement in step.statements():
                try:
                    await conn.execute(statement)
                except sqlite3.Error as e:
                    reason = str(e)
                    if any(marker in reason.lower() for marker in _TOLERATED_ERRORS):
                        logger.warning("migration.skip_statement tag=%s reason=%s", step.tag, reason)
                        continue
                    raise MigrationError(step.tag, statement, reason) from e

            await conn.execute(
                f'INSERT INTO "{LEDGER_TABLE}" (idx, tag, applied_at) VALUES (?, ?, ?)',
                (step.idx, step.tag, datetime.now(timezone.utc).isoformat()),
            )
            await conn.commit()
        except MigrationError as e:
            await conn.rollback()
            logger.error("migration.apply failed tag=%s reason=%s", e.tag, e.reason)
            raise
        except BaseException:
            await conn.rollback()
            logger.exception("migration.apply failed tag=%s", step.tag)
            raise

        applied.append(step.tag)
        logger.info("migration.apply end tag=%s", step.tag)

    return applied
