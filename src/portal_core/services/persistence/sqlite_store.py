"""SQLite [`PersistenceAdapter`](interface.py) built on aiosqlite.

One connection per adapter, opened in autocommit mode; every write runs in
an explicit `BEGIN ... COMMIT` and is rolled back on any failure. An
asyncio lock keeps statements of concurrent callers from interleaving
inside one transaction.

Column mapping notes:
- JSON columns (`participants`, `payload`, `metadata`, `content_meta`, ...)
  hold compact JSON text.
- Content-message extras live in `content_meta` with camelCase keys so the
  starred partial index can use `$.isStarred`.
- A message without a task is stored with `task_id = '0000'`.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiosqlite

from portal_contracts.chat import Chat, Task
from portal_contracts.ids import NULL_ID
from portal_contracts.message import ContentMessage, Message, parse_message
from portal_contracts.parts import PARTS_ADAPTER

from .interface import PersistenceAdapter, PersistenceError, PersistenceNotReadyError
from .migrations import MigrationStep, run_migrations

logger = logging.getLogger(__name__)

_MESSAGE_COLUMNS = (
    "id",
    "channel_id",
    "chat_id",
    "workspace_id",
    "client_message_id",
    "sender_id",
    "sender_type",
    "task_id",
    "timestamp",
    "reply_to",
    "network_state",
    "type",
    "payload",
    "metadata",
    "content_meta",
)

_CHAT_COLUMNS = (
    "id",
    "name",
    "description",
    "type",
    "workspace_id",
    "channel_id",
    "primary_context_id",
    "task_ids",
    "participants",
    "order",
    "last_message_preview",
    "last_message_timestamp",
    "last_viewed_message_id",
    "metadata",
    "created_at",
    "updated_at",
)

_TASK_COLUMNS = (
    "id",
    "chat_id",
    "channel_id",
    "a2a_id",
    "summary",
    "status",
    "created_at",
    "created_by",
    "updates",
    "metadata",
)


def _dumps(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def _loads(raw: str | None) -> Any:
    if raw is None or raw == "":
        return None
    return json.loads(raw)


def _upsert_sql(table: str, columns: Sequence[str], conflict: Sequence[str]) -> str:
    cols = ", ".join(f'"{c}"' for c in columns)
    marks = ", ".join("?" for _ in columns)
    target = ", ".join(f'"{c}"' for c in conflict)
    updates = ", ".join(f'"{c}" = excluded."{c}"' for c in columns if c not in conflict)
    return f'INSERT INTO "{table}" ({cols}) VALUES ({marks}) ON CONFLICT ({target}) DO UPDATE SET {updates}'


_UPSERT_MESSAGE = _upsert_sql("messages", _MESSAGE_COLUMNS, ("id", "chat_id"))
_UPSERT_CHAT = _upsert_sql("chats", _CHAT_COLUMNS, ("id",))
_UPSERT_TASK = _upsert_sql("tasks", _TASK_COLUMNS, ("id", "chat_id"))


def message_to_row(msg: Message) -> tuple[Any, ...]:
    data = msg.model_dump(mode="json", by_alias=True)
    content_meta: dict[str, Any] | None = None
    reply_to: str | None = None
    if isinstance(msg, ContentMessage):
        reply_to = msg.reply_to_message_id
        content_meta = {
            "reactions": data["reactions"],
            "isEdited": msg.is_edited,
            "editHistory": data["edit_history"],
            "isDeleted": msg.is_deleted,
            "relatedAgentTaskIds": list(msg.related_agent_task_ids),
            "isPinned": msg.is_pinned,
            "isStarred": msg.is_starred,
        }

    return (
        msg.id,
        msg.channel_id,
        msg.chat_id,
        msg.workspace_id,
        msg.client_message_id,
        msg.sender_id,
        msg.sender_type.value,
        msg.task_id or NULL_ID,
        msg.timestamp,
        reply_to,
        msg.network_state.value,
        msg.type.value,
        _dumps(data["payload"]),
        _dumps(msg.metadata),
        _dumps(content_meta),
    )


def row_to_message(row: aiosqlite.Row) -> Message:
    task_id = row["task_id"]
    data: dict[str, Any] = {
        "id": row["id"],
        "client_message_id": row["client_message_id"],
        "workspace_id": row["workspace_id"],
        "channel_id": row["channel_id"],
        "chat_id": row["chat_id"],
        "task_id": None if task_id == NULL_ID else task_id,
        "sender_id": row["sender_id"],
        "sender_type": row["sender_type"],
        "timestamp": row["timestamp"],
        "network_state": row["network_state"],
        "type": row["type"],
        "payload": _loads(row["payload"]),
        "metadata": _loads(row["metadata"]),
    }

    meta = _loads(row["content_meta"])
    if isinstance(meta, dict):
        data.update(
            {
                "reactions": meta.get("reactions") or [],
                "is_edited": bool(meta.get("isEdited")),
                "edit_history": meta.get("editHistory") or [],
                "is_deleted": bool(meta.get("isDeleted")),
                "related_agent_task_ids": meta.get("relatedAgentTaskIds") or [],
                "is_pinned": bool(meta.get("isPinned")),
                "is_starred": bool(meta.get("isStarred")),
                "reply_to_message_id": row["reply_to"],
            }
        )
    elif data["type"] == "content_message" and data["payload"] is None:
        data["payload"] = []

    return parse_message(data)


def chat_to_row(chat: Chat) -> tuple[Any, ...]:
    data = chat.model_dump(mode="json")
    return (
        chat.id,
        chat.name,
        chat.description,
        chat.type.value,
        chat.workspace_id,
        chat.channel_id,
        chat.primary_context_id,
        _dumps(list(chat.task_ids)),
        _dumps(data["participants"]),
        chat.order,
        chat.last_message_preview,
        chat.last_message_timestamp,
        chat.last_viewed_message_id,
        _dumps(chat.metadata),
        data["created_at"],
        data["updated_at"],
    )


def row_to_chat(row: aiosqlite.Row) -> Chat:
    data = {c: row[c] for c in _CHAT_COLUMNS}
    data["task_ids"] = _loads(data["task_ids"]) or []
    data["participants"] = _loads(data["participants"]) or []
    data["metadata"] = _loads(data["metadata"])
    return Chat.model_validate(data)


def task_to_row(task: Task) -> tuple[Any, ...]:
    return (
        task.id,
        task.chat_id,
        task.channel_id,
        task.agent_task_id,
        task.summary,
        task.status.value,
        task.created_at,
        task.created_by,
        _dumps(task.updates),
        _dumps(task.metadata),
    )


def row_to_task(row: aiosqlite.Row) -> Task:
    return Task.model_validate(
        {
            "id": row["id"],
            "chat_id": row["chat_id"],
            "channel_id": row["channel_id"],
            "agent_task_id": row["a2a_id"],
            "summary": row["summary"],
            "status": row["status"],
            "created_at": row["created_at"],
            "created_by": row["created_by"],
            "updates": _loads(row["updates"]) or [],
            "metadata": _loads(row["metadata"]),
        }
    )


class SQLitePersistenceAdapter(PersistenceAdapter):
    def __init__(
        self,
        db_path: str | Path = ":memory:",
        *,
        migrations: Sequence[MigrationStep] | None = None,
    ) -> None:
        self._path = str(db_path)
        self._migrations = migrations
        self._conn: aiosqlite.Connection | None = None
        self._lock = asyncio.Lock()

    @property
    def connection(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise PersistenceNotReadyError("SQLite adapter used before open()")
        return self._conn

    async def open(self) -> None:
        if self._conn is not None:
            return
        if self._path != ":memory:":
            Path(self._path).parent.mkdir(parents=True, exist_ok=True)

        logger.info("persistence.open backend=sqlite path=%s", self._path)
        try:
            conn = await aiosqlite.connect(self._path, isolation_level=None)
            conn.row_factory = aiosqlite.Row
            if self._path != ":memory:":
                await conn.execute("PRAGMA journal_mode=WAL")
        except sqlite3.Error as e:
            raise PersistenceError(f"cannot open database at {self._path}: {e}") from e

        self._conn = conn
        try:
            applied = await run_migrations(conn, self._migrations)
        except BaseException:
            await self.close()
            raise
        if applied:
            logger.info("persistence.migrated applied=%s", ",".join(applied))

    async def close(self) -> None:
        if self._conn is None:
            return
        conn, self._conn = self._conn, None
        await conn.close()
        logger.info("persistence.close backend=sqlite path=%s", self._path)

    @asynccontextmanager
    async def _transaction(self, op: str) -> AsyncIterator[aiosqlite.Connection]:
        conn = self.connection
        async with self._lock:
            await conn.execute("BEGIN")
            try:
                yield conn
            except sqlite3.Error as e:
                await conn.rollback()
                logger.error("persistence.%s failed error=%s", op, e)
                raise PersistenceError(f"{op} failed: {e}") from e
            except BaseException:
                await conn.rollback()
                raise
            else:
                await conn.commit()

    async def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> list[aiosqlite.Row]:
        conn = self.connection
        async with self._lock:
            try:
                async with conn.execute(sql, params) as cur:
                    return list(await cur.fetchall())
            except sqlite3.Error as e:
                raise PersistenceError(f"query failed: {e}") from e

    async def save_chat(self, chat: Chat) -> None:
        async with self._transaction("save_chat") as conn:
            await conn.execute(_UPSERT_CHAT, chat_to_row(chat))

    async def load_chat(self, chat_id: str) -> Chat | None:
        rows = await self._fetchall("SELECT * FROM chats WHERE id = ?", (chat_id,))
        return row_to_chat(rows[0]) if rows else None

    async def delete_chat(self, chat_id: str) -> None:
        async with self._transaction("delete_chat") as conn:
            await conn.execute("DELETE FROM messages WHERE chat_id = ?", (chat_id,))
            await conn.execute("DELETE FROM tasks WHERE chat_id = ?", (chat_id,))
            await conn.execute("DELETE FROM chats WHERE id = ?", (chat_id,))

    async def list_chats(self) -> list[Chat]:
        rows = await self._fetchall('SELECT * FROM chats ORDER BY "order" DESC, _id')
        return [row_to_chat(r) for r in rows]

    async def save_messages(self, chat_id: str, messages: Sequence[Message]) -> None:
        for m in messages:
            if m.chat_id != chat_id:
                raise ValueError(f"message {m.id} belongs to chat {m.chat_id}, not {chat_id}")

        keep = {m.id for m in messages}
        async with self._transaction("save_messages") as conn:
            async with conn.execute("SELECT id FROM messages WHERE chat_id = ?", (chat_id,)) as cur:
                stale = [(r[0], chat_id) for r in await cur.fetchall() if r[0] not in keep]
            if stale:
                await conn.executemany("DELETE FROM messages WHERE id = ? AND chat_id = ?", stale)
            await conn.executemany(_UPSERT_MESSAGE, [message_to_row(m) for m in messages])

        logger.debug("persistence.save_messages chat_id=%s count=%s removed=%s", chat_id, len(messages), len(stale))

    async def load_messages(self, chat_id: str) -> list[Message] | None:
        if await self.load_chat(chat_id) is None:
            return None
        rows = await self._fetchall(
            "SELECT * FROM messages WHERE chat_id = ? ORDER BY timestamp, _id",
            (chat_id,),
        )
        return [row_to_message(r) for r in rows]

    async def load_starred_messages(
        self,
        *,
        chat_id: str | None = None,
        sender_id: str | None = None,
        limit: int = 50,
    ) -> list[Message]:
        sql = "SELECT * FROM messages WHERE json_extract(content_meta, '$.isStarred') = 1"
        params: list[Any] = []
        if chat_id is not None:
            sql += " AND chat_id = ?"
            params.append(chat_id)
        if sender_id is not None:
            sql += " AND sender_id = ?"
            params.append(sender_id)
        sql += " ORDER BY timestamp DESC LIMIT ?"
        params.append(limit)
        return [row_to_message(r) for r in await self._fetchall(sql, params)]

    async def save_task(self, task: Task) -> None:
        async with self._transaction("save_task") as conn:
            await conn.execute(_UPSERT_TASK, task_to_row(task))

    async def load_tasks(self, chat_id: str) -> list[Task]:
        rows = await self._fetchall(
            "SELECT * FROM tasks WHERE chat_id = ? ORDER BY created_at, _id",
            (chat_id,),
        )
        return [row_to_task(r) for r in rows]
