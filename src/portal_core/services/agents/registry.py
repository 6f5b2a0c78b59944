from __future__ import annotations

import json
import logging
from collections.abc import Iterable
from pathlib import Path

from .registry_models import AgentConfig, AgentProvider, AgentRegistry

logger = logging.getLogger(__name__)

DEFAULT_AGENT = AgentConfig(
    id="assistant",
    name="Assistant",
    description="General purpose assistant.",
    provider=AgentProvider.stub,
    model="stub-echo",
)


def load_registry(path: Path) -> AgentRegistry:
    """Load and validate a declarative agent registry JSON file."""

    try:
        raw = path.read_text(encoding="utf-8")
    except FileNotFoundError as e:
        raise FileNotFoundError(f"Agent registry JSON not found at: {path}") from e

    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in agent registry at {path}: {e}") from e

    return AgentRegistry.model_validate(data)


class AgentDirectory:
    """In-memory lookup of agent configurations by id."""

    def __init__(self, agents: Iterable[AgentConfig] = ()) -> None:
        registry = AgentRegistry(list(agents))
        self._agents: dict[str, AgentConfig] = {a.id: a for a in registry.root}

    @classmethod
    def from_file(cls, path: Path) -> "AgentDirectory":
        registry = load_registry(path)
        logger.info("agents.load path=%s count=%s", path, len(registry.root))
        return cls(registry.root)

    def list_agents(self) -> list[AgentConfig]:
        return list(self._agents.values())

    def get_agent(self, agent_id: str) -> AgentConfig:
        try:
            return self._agents[agent_id]
        except KeyError:
            raise KeyError(f"Agent not found: {agent_id}") from None

    def find_enabled(self, agent_id: str) -> AgentConfig | None:
        agent = self._agents.get(agent_id)
        if agent is None or not agent.is_available:
            return None
        return agent

    def upsert(self, agent: AgentConfig) -> None:
        self._agents[agent.id] = agent
