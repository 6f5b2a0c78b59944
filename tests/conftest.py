from __future__ import annotations

from pathlib import Path

import pytest
import pytest_asyncio

from portal_contracts.chat import ChatData
from portal_core.services.agents.registry import AgentDirectory
from portal_core.services.agents.registry_models import AgentConfig, AgentProvider
from portal_core.services.chats.store import ChatStore
from portal_core.services.persistence.sqlite_store import SQLitePersistenceAdapter

from fakes import MemoryAdapter


@pytest.fixture
def memory_adapter() -> MemoryAdapter:
    return MemoryAdapter()


@pytest_asyncio.fixture
async def sqlite_adapter(tmp_path: Path):
    adapter = SQLitePersistenceAdapter(tmp_path / "portal.db")
    await adapter.open()
    try:
        yield adapter
    finally:
        await adapter.close()


@pytest.fixture
def chat_store(memory_adapter: MemoryAdapter) -> ChatStore:
    return ChatStore(memory_adapter)


@pytest.fixture
def chat_data() -> ChatData:
    return ChatData(name="General", workspace_id="ws-1")


@pytest.fixture
def agents() -> AgentDirectory:
    return AgentDirectory(
        [
            AgentConfig(id="a1", name="Agent One", provider=AgentProvider.stub, model="stub", system_prompt="Be brief."),
            AgentConfig(id="off", name="Disabled", provider=AgentProvider.stub, model="stub", is_enabled=False),
            AgentConfig(id="old", name="Retired", provider=AgentProvider.stub, model="stub", is_retired=True),
        ]
    )
