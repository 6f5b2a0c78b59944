"""Wires adapter, agents, Chat Store and Signal Store into one runtime."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass

from .agents.registry import DEFAULT_AGENT, AgentDirectory
from .agents.registry_models import AgentConfig
from .chats.store import ChatStore
from .llm.client import ModelClient, build_model_client
from .persistence.file_store import FilePersistenceAdapter
from .persistence.interface import PersistenceAdapter
from .persistence.sqlite_store import SQLitePersistenceAdapter
from .settings.config import Settings, StoreBackend
from .signals.store import SignalStore

logger = logging.getLogger(__name__)


def build_adapter(settings: Settings) -> PersistenceAdapter:
    if settings.store_backend is StoreBackend.file:
        return FilePersistenceAdapter(settings.file_store_path)
    return SQLitePersistenceAdapter(settings.db_path)


def build_agents(settings: Settings) -> AgentDirectory:
    if settings.agents_path is not None:
        return AgentDirectory.from_file(settings.agents_path)
    return AgentDirectory([DEFAULT_AGENT])


@dataclass
class ChatRuntime:
    settings: Settings
    adapter: PersistenceAdapter
    agents: AgentDirectory
    chats: ChatStore
    signals: SignalStore

    async def close(self) -> None:
        await self.adapter.close()


async def open_runtime(
    settings: Settings,
    *,
    adapter: PersistenceAdapter | None = None,
    agents: AgentDirectory | None = None,
    client_factory: Callable[[AgentConfig], ModelClient] | None = None,
) -> ChatRuntime:
    """Open storage (running migrations), load chats and build both stores."""

    adapter = adapter or build_adapter(settings)
    agents = agents or build_agents(settings)

    def default_factory(agent: AgentConfig) -> ModelClient:
        return build_model_client(agent, mode=settings.llm_mode)

    await adapter.open()
    chats = ChatStore(adapter, durability=settings.durability)
    try:
        await chats.load_chats_from_persistence()
    except BaseException:
        await adapter.close()
        raise

    signals = SignalStore(
        chats,
        agents,
        client_factory=client_factory or default_factory,
        history_limit=settings.history_limit,
    )
    logger.info(
        "runtime.open backend=%s durability=%s agents=%s",
        settings.store_backend.value,
        settings.durability.value,
        len(agents.list_agents()),
    )
    return ChatRuntime(settings=settings, adapter=adapter, agents=agents, chats=chats, signals=signals)
