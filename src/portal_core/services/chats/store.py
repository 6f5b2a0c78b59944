"""Chat Store: the authoritative in-memory view of chats, messages and tasks.

All writes to the persistence adapter go through this class. A mutation is
one logical transition: the message list and the chat record (preview,
last-message timestamp, `updated_at`) change together before any reader
can observe either.

Durability (see `DurabilityPolicy`):
- best_effort: memory is updated first, then persisted. Persistence errors
  are logged and memory stays ahead of storage until the next write.
- write_ahead: the new state is persisted first and only then applied to
  memory. Persistence errors raise `PersistenceError` and memory is left
  untouched.

Writes to one chat are serialised by a per-chat asyncio lock, and each
write persists the in-memory state current at that moment, so two
concurrent mutations of the same chat can no longer persist a stale list.
Different chats never wait on each other.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Iterable, Sequence
from datetime import datetime
from typing import Any

from portal_contracts.chat import (
    NO_MESSAGES_PREVIEW,
    Chat,
    ChatData,
    Task,
    TaskState,
    utc_now,
)
from portal_contracts.ids import NULL_ID, new_id, now_ms
from portal_contracts.message import ContentMessage, Message, SenderType, message_preview

from ..persistence.interface import PersistenceAdapter, PersistenceError
from ..settings.config import DurabilityPolicy

logger = logging.getLogger(__name__)

ChangeListener = Callable[[str], None]

_IMMUTABLE_CHAT_FIELDS = frozenset({"id", "primary_context_id", "created_at", "updated_at"})


def _bumped(previous: datetime) -> datetime:
    now = utc_now()
    return now if now > previous else previous


def _merge_messages(current: Sequence[Message], incoming: Iterable[Message]) -> list[Message]:
    """Dedupe `incoming` into `current` by id or client id, then order by timestamp.

    A match is replaced in place. The final sort is stable, so equal
    timestamps keep their insertion order.
    """

    merged = list(current)
    for msg in incoming:
        idx = None
        for i, existing in enumerate(merged):
            if existing.id == msg.id or (
                msg.client_message_id is not None and existing.client_message_id == msg.client_message_id
            ):
                idx = i
                break
        if idx is None:
            merged.append(msg)
        else:
            merged[idx] = msg
    merged.sort(key=lambda m: m.timestamp)
    return merged


def _with_last_message(chat: Chat, messages: Sequence[Message]) -> Chat:
    if messages:
        last = messages[-1]
        preview, ts = message_preview(last), last.timestamp
    else:
        preview, ts = NO_MESSAGES_PREVIEW, None
    return chat.model_copy(
        update={
            "last_message_preview": preview,
            "last_message_timestamp": ts,
            "updated_at": _bumped(chat.updated_at),
        }
    )


def _activity_key(chat: Chat) -> int:
    created_ms = int(chat.created_at.timestamp() * 1000)
    return max(chat.last_message_timestamp or 0, created_ms)


class ChatStore:
    def __init__(
        self,
        adapter: PersistenceAdapter,
        *,
        durability: DurabilityPolicy = DurabilityPolicy.best_effort,
    ) -> None:
        self._adapter = adapter
        self._durability = durability
        self._chats: dict[str, Chat] = {}
        # Only chats whose messages have been hydrated appear here.
        self._messages: dict[str, list[Message]] = {}
        self._tasks: dict[str, list[Task]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._listeners: list[ChangeListener] = []
        self._active_chat_id: str | None = None

    @property
    def durability(self) -> DurabilityPolicy:
        return self._durability

    # ---- readers (synchronous, in-memory) ----

    @property
    def active_chat_id(self) -> str | None:
        return self._active_chat_id

    def get_chat(self, chat_id: str) -> Chat | None:
        return self._chats.get(chat_id)

    def list_chats(self) -> list[Chat]:
        """Pinned chats first (highest order), then by latest activity, archived last."""

        def sort_key(c: Chat) -> tuple[int, int, int]:
            band = 0 if c.order > 0 else (1 if c.order == 0 else 2)
            return (band, -c.order if c.order > 0 else 0, -_activity_key(c))

        return sorted(self._chats.values(), key=sort_key)

    def get_messages(self, chat_id: str) -> list[Message]:
        return list(self._messages.get(chat_id, []))

    def is_hydrated(self, chat_id: str) -> bool:
        return chat_id in self._messages

    def get_message_by_id(self, chat_id: str, message_id: str) -> Message | None:
        for m in self._messages.get(chat_id, []):
            if m.id == message_id:
                return m
        return None

    def get_tasks(self, chat_id: str) -> list[Task]:
        return list(self._tasks.get(chat_id, []))

    def unread_count(self, chat_id: str) -> int:
        """Messages from others after the chat's last viewed message."""

        chat = self._chats.get(chat_id)
        if chat is None:
            raise KeyError(chat_id)
        messages = self._messages.get(chat_id, [])
        start = 0
        if chat.last_viewed_message_id != NULL_ID:
            for i, m in enumerate(messages):
                if m.id == chat.last_viewed_message_id:
                    start = i + 1
                    break
        return sum(1 for m in messages[start:] if m.sender_type != SenderType.user)

    def subscribe(self, listener: ChangeListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def set_active_chat(self, chat_id: str | None) -> None:
        if chat_id is not None and chat_id not in self._chats:
            raise KeyError(chat_id)
        self._active_chat_id = chat_id
        if chat_id is not None:
            self._notify(chat_id)

    # ---- loading ----

    async def load_chats_from_persistence(self) -> list[Chat]:
        chats = await self._adapter.list_chats()
        self._chats = {c.id: c for c in chats}
        for stale in set(self._messages) - set(self._chats):
            self._messages.pop(stale, None)
            self._tasks.pop(stale, None)
        if self._active_chat_id is not None and self._active_chat_id not in self._chats:
            self._active_chat_id = None
        logger.info("chat.load_all count=%s", len(chats))
        return self.list_chats()

    async def load_messages_for_chat(self, chat_id: str, *, force: bool = False) -> list[Message] | None:
        """Hydrate a chat's messages (and tasks) from storage.

        Returns `None` for an unknown chat. Already-hydrated chats are
        returned from memory unless `force` is set.
        """

        async with self._lock(chat_id):
            if chat_id not in self._chats:
                return None
            if force:
                self._messages.pop(chat_id, None)
                self._tasks.pop(chat_id, None)
            await self._hydrate(chat_id)
            self._notify(chat_id)
            return self.get_messages(chat_id)

    # ---- chat lifecycle ----

    async def create_chat(self, data: ChatData, initial_messages: Sequence[Message] = ()) -> Chat:
        now = utc_now()
        chat_id = new_id()

        placement = {"chat_id": chat_id, "channel_id": data.channel_id, "workspace_id": data.workspace_id}
        messages = _merge_messages([], (m.model_copy(update=placement) for m in initial_messages))
        chat = Chat(
            id=chat_id,
            primary_context_id=new_id(),
            created_at=now,
            updated_at=now,
            **data.model_dump(),
        )
        chat = _with_last_message(chat, messages)

        async with self._lock(chat_id):
            self._tasks.setdefault(chat_id, [])
            await self._commit(chat, messages=messages, op="create_chat")

        logger.info("chat.create chat_id=%s messages=%s", chat_id, len(messages))
        return chat

    async def update_chat(self, chat_id: str, **changes: Any) -> Chat:
        """Shallow-merge `changes` into the chat.

        Raises:
            KeyError: if the chat does not exist.
            ValueError: for immutable fields or invalid values.
        """

        blocked = _IMMUTABLE_CHAT_FIELDS.intersection(changes)
        if blocked:
            raise ValueError(f"cannot update immutable chat fields: {sorted(blocked)}")

        async with self._lock(chat_id):
            chat = self._require_chat(chat_id)
            merged = {**chat.model_dump(), **changes, "updated_at": _bumped(chat.updated_at)}
            updated = Chat.model_validate(merged)
            await self._commit(updated, op="update_chat")

        logger.info("chat.update chat_id=%s fields=%s", chat_id, ",".join(sorted(changes)))
        return updated

    async def delete_chat(self, chat_id: str) -> None:
        """Remove a chat with its messages and tasks.

        Raises:
            KeyError: if the chat does not exist.
        """

        async with self._lock(chat_id):
            self._require_chat(chat_id)
            if self._durability is DurabilityPolicy.write_ahead:
                await self._persist_call(self._adapter.delete_chat(chat_id), op="delete_chat")
                self._forget(chat_id)
            else:
                self._forget(chat_id)
                try:
                    await self._adapter.delete_chat(chat_id)
                except Exception:
                    logger.exception("chat.persist failed op=delete_chat chat_id=%s", chat_id)
        self._locks.pop(chat_id, None)
        logger.info("chat.delete chat_id=%s", chat_id)

    # ---- messages ----

    async def add_message(self, chat_id: str, message: Message) -> Message | None:
        added = await self.add_messages(chat_id, [message])
        if added is None:
            return None
        return added[0]

    async def add_messages(self, chat_id: str, messages: Sequence[Message]) -> list[Message] | None:
        """Merge messages into a chat and persist the resulting list.

        Returns the incoming messages, or `None` (logged, no side effects)
        when the chat does not exist.
        """

        for m in messages:
            if m.chat_id != chat_id:
                raise ValueError(f"message {m.id} belongs to chat {m.chat_id}, not {chat_id}")

        async with self._lock(chat_id):
            chat = self._chats.get(chat_id)
            if chat is None:
                logger.error("chat.add_message unknown chat_id=%s", chat_id)
                return None
            if not await self._hydrate_or_log(chat_id):
                return None

            merged = _merge_messages(self._messages[chat_id], messages)
            updated = _with_last_message(chat, merged)
            await self._commit(updated, messages=merged, op="add_messages")

        logger.debug("chat.add_messages chat_id=%s count=%s total=%s", chat_id, len(messages), len(merged))
        return list(messages)

    async def toggle_message_star(self, chat_id: str, message_id: str) -> ContentMessage | None:
        async with self._lock(chat_id):
            chat = self._require_chat(chat_id)
            if not await self._hydrate_or_log(chat_id):
                return None

            current = self._messages[chat_id]
            target = next((m for m in current if m.id == message_id), None)
            if not isinstance(target, ContentMessage):
                logger.warning("chat.toggle_star no content message chat_id=%s message_id=%s", chat_id, message_id)
                return None

            toggled = target.model_copy(update={"is_starred": not target.is_starred})
            merged = [toggled if m.id == message_id else m for m in current]
            await self._commit(chat, messages=merged, op="toggle_message_star")

        logger.info("chat.toggle_star chat_id=%s message_id=%s starred=%s", chat_id, message_id, toggled.is_starred)
        return toggled

    async def load_starred_messages(
        self,
        *,
        chat_id: str | None = None,
        sender_id: str | None = None,
        limit: int = 50,
    ) -> list[Message]:
        return await self._adapter.load_starred_messages(chat_id=chat_id, sender_id=sender_id, limit=limit)

    async def update_last_viewed_message(self, chat_id: str, message_id: str) -> Chat:
        """Raises KeyError if the chat or the message in it does not exist."""

        async with self._lock(chat_id):
            self._require_chat(chat_id)
            await self._hydrate(chat_id)
            if self.get_message_by_id(chat_id, message_id) is None:
                raise KeyError(message_id)
        return await self.update_chat(chat_id, last_viewed_message_id=message_id)

    # ---- tasks ----

    async def create_task(
        self,
        chat_id: str,
        *,
        created_by: str,
        summary: str | None = None,
        agent_task_id: str | None = None,
        status: TaskState = TaskState.submitted,
        metadata: dict[str, Any] | None = None,
    ) -> Task:
        async with self._lock(chat_id):
            chat = self._require_chat(chat_id)
            await self._hydrate(chat_id)

            task = Task(
                chat_id=chat_id,
                channel_id=chat.channel_id,
                agent_task_id=agent_task_id,
                summary=summary,
                status=status,
                created_by=created_by,
                metadata=metadata,
            )
            updated = chat.model_copy(
                update={"task_ids": [*chat.task_ids, task.id], "updated_at": _bumped(chat.updated_at)}
            )
            await self._commit(updated, task=task, op="create_task")

        logger.info("chat.create_task chat_id=%s task_id=%s", chat_id, task.id)
        return task

    async def update_task(self, chat_id: str, task_id: str, **changes: Any) -> Task:
        """Shallow-merge `changes` into a task; a status change is appended to `updates`.

        Raises:
            KeyError: if the chat or the task does not exist.
        """

        async with self._lock(chat_id):
            chat = self._require_chat(chat_id)
            await self._hydrate(chat_id)

            task = next((t for t in self._tasks[chat_id] if t.id == task_id), None)
            if task is None:
                raise KeyError(task_id)

            data = {**task.model_dump(), **changes, "id": task.id, "chat_id": chat_id}
            if "status" in changes and TaskState(changes["status"]) != task.status:
                data["updates"] = [
                    *task.updates,
                    {"status": TaskState(changes["status"]).value, "timestamp": now_ms()},
                ]
            updated_task = Task.model_validate(data)
            updated_chat = chat.model_copy(update={"updated_at": _bumped(chat.updated_at)})
            await self._commit(updated_chat, task=updated_task, op="update_task")

        logger.info("chat.update_task chat_id=%s task_id=%s status=%s", chat_id, task_id, updated_task.status.value)
        return updated_task

    # ---- internals ----

    def _lock(self, chat_id: str) -> asyncio.Lock:
        lock = self._locks.get(chat_id)
        if lock is None:
            lock = self._locks[chat_id] = asyncio.Lock()
        return lock

    def _require_chat(self, chat_id: str) -> Chat:
        chat = self._chats.get(chat_id)
        if chat is None:
            raise KeyError(chat_id)
        return chat

    async def _hydrate(self, chat_id: str) -> None:
        if chat_id not in self._messages:
            stored = await self._adapter.load_messages(chat_id)
            self._messages[chat_id] = list(stored or [])
        if chat_id not in self._tasks:
            self._tasks[chat_id] = await self._adapter.load_tasks(chat_id)

    async def _hydrate_or_log(self, chat_id: str) -> bool:
        """Hydrate before a full-list write; a failed load must not drop stored messages."""

        try:
            await self._hydrate(chat_id)
        except Exception as e:
            if self._durability is DurabilityPolicy.write_ahead:
                raise PersistenceError(f"cannot load messages for chat {chat_id}: {e}") from e
            logger.exception("chat.hydrate failed chat_id=%s", chat_id)
            return False
        return True

    def _forget(self, chat_id: str) -> None:
        self._chats.pop(chat_id, None)
        self._messages.pop(chat_id, None)
        self._tasks.pop(chat_id, None)
        if self._active_chat_id == chat_id:
            self._active_chat_id = None
        self._notify(chat_id)

    def _apply(self, chat: Chat, messages: list[Message] | None, task: Task | None) -> None:
        self._chats[chat.id] = chat
        if messages is not None:
            self._messages[chat.id] = messages
        if task is not None:
            tasks = self._tasks.setdefault(chat.id, [])
            for i, t in enumerate(tasks):
                if t.id == task.id:
                    tasks[i] = task
                    break
            else:
                tasks.append(task)
        self._notify(chat.id)

    async def _persist(self, chat: Chat, messages: list[Message] | None, task: Task | None) -> None:
        if messages is not None:
            await self._adapter.save_messages(chat.id, messages)
        if task is not None:
            await self._adapter.save_task(task)
        await self._adapter.save_chat(chat)

    async def _persist_call(self, coro: Any, *, op: str) -> None:
        try:
            await coro
        except PersistenceError:
            logger.error("chat.persist failed op=%s", op)
            raise
        except Exception as e:
            logger.error("chat.persist failed op=%s error=%s", op, e)
            raise PersistenceError(f"{op} failed: {e}") from e

    async def _commit(
        self,
        chat: Chat,
        *,
        messages: list[Message] | None = None,
        task: Task | None = None,
        op: str,
    ) -> None:
        """Apply one logical transition under the configured durability policy.

        Caller holds the chat lock.
        """

        if self._durability is DurabilityPolicy.write_ahead:
            await self._persist_call(self._persist(chat, messages, task), op=op)
            self._apply(chat, messages, task)
            return

        self._apply(chat, messages, task)
        try:
            await self._persist(chat, messages, task)
        except Exception:
            logger.exception("chat.persist failed op=%s chat_id=%s", op, chat.id)

    def _notify(self, chat_id: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(chat_id)
            except Exception:
                logger.exception("chat.listener failed chat_id=%s", chat_id)
