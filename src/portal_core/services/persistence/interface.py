"""Persistence port for chats, messages and tasks.

The Chat Store is the only caller. Every method is a coroutine so adapters
can suspend on I/O without blocking the event loop.

Error behavior:
- `load_chat()` / `load_messages()` return `None` for an unknown chat.
- Failures raise `PersistenceError` (or a subclass); a failed call never
  leaves a partial write visible.
- Saves are idempotent: repeating a save with the same data changes nothing.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Sequence

from portal_contracts.chat import Chat, Task
from portal_contracts.message import Message


class PersistenceError(RuntimeError):
    """Raised when the adapter cannot complete an operation."""


class PersistenceNotReadyError(PersistenceError):
    """Raised when an adapter is used before `open()`."""


class PersistenceAdapter(ABC):
    """Port for chat persistence."""

    async def open(self) -> None:
        """Prepare the backing store (connect, migrate). Default: no-op."""

    async def close(self) -> None:
        """Release resources. Default: no-op."""

    @abstractmethod
    async def save_chat(self, chat: Chat) -> None:
        """Upsert a chat record by id."""

    @abstractmethod
    async def load_chat(self, chat_id: str) -> Chat | None:
        """Load a chat, or `None` if it does not exist."""

    @abstractmethod
    async def delete_chat(self, chat_id: str) -> None:
        """Delete a chat with its messages and tasks. Unknown ids are a no-op."""

    @abstractmethod
    async def list_chats(self) -> list[Chat]:
        """List every stored chat."""

    @abstractmethod
    async def save_messages(self, chat_id: str, messages: Sequence[Message]) -> None:
        """Replace the stored message list of a chat with `messages`."""

    @abstractmethod
    async def load_messages(self, chat_id: str) -> list[Message] | None:
        """Load a chat's messages ordered by timestamp, or `None` for an unknown chat."""

    @abstractmethod
    async def load_starred_messages(
        self,
        *,
        chat_id: str | None = None,
        sender_id: str | None = None,
        limit: int = 50,
    ) -> list[Message]:
        """Starred content messages, newest first."""

    @abstractmethod
    async def save_task(self, task: Task) -> None:
        """Upsert a task by (id, chat_id)."""

    @abstractmethod
    async def load_tasks(self, chat_id: str) -> list[Task]:
        """Tasks of a chat, oldest first."""
