from __future__ import annotations

import json
from pathlib import Path

import pytest

from portal_contracts.chat import Chat, Task, utc_now
from portal_contracts.ids import new_id
from portal_contracts.message import SenderType, new_content_message
from portal_core.services.persistence.file_store import FilePersistenceAdapter


def _chat() -> Chat:
    now = utc_now()
    return Chat(id=new_id(), name="Notes", primary_context_id=new_id(), created_at=now, updated_at=now)


def _msg(chat_id: str, text: str, ts: int, **kw):
    return new_content_message(
        chat_id=chat_id, workspace_id="ws", sender_id="u1", sender_type=SenderType.user, text=text, timestamp=ts, **kw
    )


@pytest.mark.asyncio
async def test_round_trip_and_atomic_write(tmp_path: Path) -> None:
    path = tmp_path / "data" / "store.json"
    store = FilePersistenceAdapter(path)
    chat = _chat()
    m1 = _msg(chat.id, "first", 1_700_000_000_001)
    m2 = _msg(chat.id, "second", 1_700_000_000_002)

    await store.save_chat(chat)
    await store.save_messages(chat.id, [m2, m1])

    assert await store.load_chat(chat.id) == chat
    assert await store.load_messages(chat.id) == [m1, m2]
    assert not path.with_suffix(".json.tmp").exists()
    assert set(json.loads(path.read_text(encoding="utf-8"))) == {"chats", "messages_by_chat", "tasks_by_chat"}


@pytest.mark.asyncio
async def test_unknown_chat_and_delete(tmp_path: Path) -> None:
    store = FilePersistenceAdapter(tmp_path / "store.json")
    chat = _chat()
    await store.save_chat(chat)
    await store.save_task(Task(chat_id=chat.id, created_by="u1"))

    assert await store.load_messages("nope") is None

    await store.delete_chat(chat.id)
    assert await store.list_chats() == []
    assert await store.load_tasks(chat.id) == []


@pytest.mark.asyncio
async def test_starred_messages(tmp_path: Path) -> None:
    store = FilePersistenceAdapter(tmp_path / "store.json")
    chat = _chat()
    await store.save_chat(chat)
    starred = _msg(chat.id, "keep", 1_700_000_000_005, is_starred=True)
    await store.save_messages(chat.id, [_msg(chat.id, "skip", 1_700_000_000_001), starred])

    assert await store.load_starred_messages(chat_id=chat.id) == [starred]
