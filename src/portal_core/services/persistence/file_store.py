"""File-based [`PersistenceAdapter`](interface.py).

Storage format:
- Single JSON document (default `data/store.json`) with `chats`,
  `messages_by_chat` and `tasks_by_chat` maps keyed by chat id.

Write strategy:
- Read-modify-write under an asyncio lock, then an atomic replace: write
  to a temp file and `os.replace()` it onto the target path.
- Blocking file I/O runs in a worker thread.

Handy for small setups and inspection by hand; the SQLite adapter is the
default backend.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from portal_contracts.chat import Chat, Task
from portal_contracts.message import ContentMessage, Message, parse_message

from .interface import PersistenceAdapter, PersistenceError

logger = logging.getLogger(__name__)


@dataclass
class _StoreDoc:
    chats: dict[str, dict[str, Any]] = field(default_factory=dict)
    messages_by_chat: dict[str, list[dict[str, Any]]] = field(default_factory=dict)
    tasks_by_chat: dict[str, list[dict[str, Any]]] = field(default_factory=dict)


class FilePersistenceAdapter(PersistenceAdapter):
    def __init__(self, store_path: str | Path) -> None:
        self._path = Path(store_path)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        return self._path

    async def open(self) -> None:
        logger.info("persistence.open backend=file path=%s", self._path)

    async def save_chat(self, chat: Chat) -> None:
        async with self._lock:
            doc = await self._load()
            doc.chats[chat.id] = chat.model_dump(mode="json")
            doc.messages_by_chat.setdefault(chat.id, [])
            await self._save(doc)

    async def load_chat(self, chat_id: str) -> Chat | None:
        async with self._lock:
            doc = await self._load()
        raw = doc.chats.get(chat_id)
        return Chat.model_validate(raw) if raw is not None else None

    async def delete_chat(self, chat_id: str) -> None:
        async with self._lock:
            doc = await self._load()
            if chat_id not in doc.chats:
                return
            doc.chats.pop(chat_id, None)
            doc.messages_by_chat.pop(chat_id, None)
            doc.tasks_by_chat.pop(chat_id, None)
            await self._save(doc)

    async def list_chats(self) -> list[Chat]:
        async with self._lock:
            doc = await self._load()
        return [Chat.model_validate(raw) for raw in doc.chats.values()]

    async def save_messages(self, chat_id: str, messages: Sequence[Message]) -> None:
        for m in messages:
            if m.chat_id != chat_id:
                raise ValueError(f"message {m.id} belongs to chat {m.chat_id}, not {chat_id}")
        async with self._lock:
            doc = await self._load()
            doc.messages_by_chat[chat_id] = [m.model_dump(mode="json", by_alias=True) for m in messages]
            await self._save(doc)

    async def load_messages(self, chat_id: str) -> list[Message] | None:
        async with self._lock:
            doc = await self._load()
        if chat_id not in doc.chats:
            return None
        msgs = [parse_message(m) for m in doc.messages_by_chat.get(chat_id, [])]
        # Stable: equal timestamps keep their stored order.
        msgs.sort(key=lambda m: m.timestamp)
        return msgs

    async def load_starred_messages(
        self,
        *,
        chat_id: str | None = None,
        sender_id: str | None = None,
        limit: int = 50,
    ) -> list[Message]:
        async with self._lock:
            doc = await self._load()

        chat_ids = [chat_id] if chat_id is not None else list(doc.messages_by_chat)
        starred: list[Message] = []
        for cid in chat_ids:
            for raw in doc.messages_by_chat.get(cid, []):
                if not raw.get("is_starred"):
                    continue
                msg = parse_message(raw)
                if not isinstance(msg, ContentMessage):
                    continue
                if sender_id is not None and msg.sender_id != sender_id:
                    continue
                starred.append(msg)
        starred.sort(key=lambda m: m.timestamp, reverse=True)
        return starred[:limit]

    async def save_task(self, task: Task) -> None:
        async with self._lock:
            doc = await self._load()
            tasks = doc.tasks_by_chat.setdefault(task.chat_id, [])
            raw = task.model_dump(mode="json")
            for i, existing in enumerate(tasks):
                if existing.get("id") == task.id:
                    tasks[i] = raw
                    break
            else:
                tasks.append(raw)
            await self._save(doc)

    async def load_tasks(self, chat_id: str) -> list[Task]:
        async with self._lock:
            doc = await self._load()
        return [Task.model_validate(t) for t in doc.tasks_by_chat.get(chat_id, [])]

    async def _load(self) -> _StoreDoc:
        try:
            return await asyncio.to_thread(self._load_sync)
        except (OSError, json.JSONDecodeError) as e:
            raise PersistenceError(f"cannot read store at {self._path}: {e}") from e

    async def _save(self, doc: _StoreDoc) -> None:
        try:
            await asyncio.to_thread(self._save_sync, doc)
        except OSError as e:
            raise PersistenceError(f"cannot write store at {self._path}: {e}") from e

    def _load_sync(self) -> _StoreDoc:
        if not self._path.exists():
            return _StoreDoc()

        text = self._path.read_text(encoding="utf-8")
        if not text.strip():
            return _StoreDoc()

        data = json.loads(text)
        return _StoreDoc(
            chats=dict(data.get("chats", {})),
            messages_by_chat=dict(data.get("messages_by_chat", {})),
            tasks_by_chat=dict(data.get("tasks_by_chat", {})),
        )

    def _save_sync(self, doc: _StoreDoc) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)

        payload = {
            "chats": doc.chats,
            "messages_by_chat": doc.messages_by_chat,
            "tasks_by_chat": doc.tasks_by_chat,
        }

        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp_path.write_text(
            json.dumps(payload, indent=2, ensure_ascii=False),
            encoding="utf-8",
        )

        os.replace(tmp_path, self._path)
