from __future__ import annotations

import sqlite3
from pathlib import Path

import aiosqlite
import pytest
import pytest_asyncio

from portal_core.services.persistence.migrations import (
    LEDGER_TABLE,
    MigrationError,
    MigrationStep,
    applied_tags,
    load_steps,
    run_migrations,
)


@pytest_asyncio.fixture
async def conn(tmp_path: Path):
    db = await aiosqlite.connect(str(tmp_path / "m.db"), isolation_level=None)
    try:
        yield db
    finally:
        await db.close()


async def _names(db: aiosqlite.Connection, kind: str) -> set[str]:
    async with db.execute("SELECT name FROM sqlite_master WHERE type = ?", (kind,)) as cur:
        return {r[0] for r in await cur.fetchall()}


def test_load_steps_reads_manifest_in_order() -> None:
    steps = load_steps()

    assert [s.tag for s in steps] == ["0000_initial", "0001_chat_context"]
    assert all(s.statements() for s in steps)
    assert not any("statement-breakpoint" in stmt for s in steps for stmt in s.statements())


@pytest.mark.asyncio
async def test_fresh_database_gets_full_schema(conn: aiosqlite.Connection) -> None:
    applied = await run_migrations(conn)

    assert applied == ["0000_initial", "0001_chat_context"]
    assert {"channels", "chats", "tasks", "messages", LEDGER_TABLE} <= await _names(conn, "table")
    assert {
        "channels__uuid_idx",
        "chats__uuid_idx",
        "tasks__uuid_idx",
        "messages__chat_id_idx",
        "messages__sender_id_idx",
        "messages__task_id_idx",
        "messages__unique_message_id_idx",
        "messages__starred_message_idx",
    } <= await _names(conn, "index")


@pytest.mark.asyncio
async def test_second_run_applies_nothing(conn: aiosqlite.Connection) -> None:
    await run_migrations(conn)

    assert await run_migrations(conn) == []
    assert await applied_tags(conn) == ["0000_initial", "0001_chat_context"]


@pytest.mark.asyncio
async def test_already_applied_statements_are_skipped(conn: aiosqlite.Connection) -> None:
    await conn.execute("CREATE TABLE things (id TEXT)")
    step = MigrationStep(
        idx=0,
        tag="0000_things",
        sql="CREATE TABLE things (id TEXT);\n--> statement-breakpoint\nALTER TABLE things ADD name TEXT;",
    )

    assert await run_migrations(conn, [step]) == ["0000_things"]

    async with conn.execute("PRAGMA table_info(things)") as cur:
        columns = [r[1] for r in await cur.fetchall()]
    assert columns == ["id", "name"]
    assert await applied_tags(conn) == ["0000_things"]


@pytest.mark.asyncio
async def test_unexpected_error_rolls_back_step_and_raises(conn: aiosqlite.Connection) -> None:
    good = MigrationStep(idx=0, tag="0000_ok", sql="CREATE TABLE a (id TEXT);")
    bad = MigrationStep(
        idx=1,
        tag="0001_bad",
        sql="CREATE TABLE b (id TEXT);\n--> statement-breakpoint\nCREATE TABLEX c (id TEXT);",
    )

    with pytest.raises(MigrationError) as excinfo:
        await run_migrations(conn, [good, bad])

    assert excinfo.value.tag == "0001_bad"
    assert "TABLEX" in excinfo.value.statement
    assert await applied_tags(conn) == ["0000_ok"]
    tables = await _names(conn, "table")
    assert "a" in tables
    assert "b" not in tables


@pytest.mark.asyncio
async def test_timestamp_check_rejects_second_resolution(conn: aiosqlite.Connection) -> None:
    await run_migrations(conn)

    with pytest.raises(sqlite3.IntegrityError):
        await conn.execute(
            "INSERT INTO messages (id, channel_id, chat_id, sender_id, sender_type, timestamp, network_state, type)"
            " VALUES ('m1', '0000', 'c1', 'u1', 'user', 1700000000, 'sent', 'content_message')"
        )
