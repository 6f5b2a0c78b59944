from __future__ import annotations

from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field, RootModel, field_validator, model_validator


class AgentProvider(str, Enum):
    openai = "openai"
    google = "google"
    anthropic = "anthropic"
    xai = "xai"
    # Deterministic in-process model, used for local dev and tests.
    stub = "stub"


class AgentConfig(BaseModel):
    """A local agent: a system prompt bound to one provider model."""

    id: str
    name: str
    description: str = ""
    kind: Literal["local"] = "local"
    provider: AgentProvider = AgentProvider.openai
    model: str
    # Empty means "take it from the environment" (e.g. OPENAI_API_KEY).
    api_key: str = Field(default="", repr=False)
    system_prompt: str = "You are a helpful AI assistant."
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    is_enabled: bool = True
    # Retired agents stay listed so their history remains attributable.
    is_retired: bool = False

    @field_validator("id", "model")
    @classmethod
    def validate_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must be a non-empty string")
        return v

    @property
    def is_available(self) -> bool:
        return self.is_enabled and not self.is_retired


class AgentRegistry(RootModel[list[AgentConfig]]):
    root: list[AgentConfig] = Field(default_factory=list)

    @model_validator(mode="after")
    def validate_unique_agent_ids(self) -> "AgentRegistry":
        seen: set[str] = set()
        for entry in self.root:
            if entry.id in seen:
                raise ValueError(f"Duplicate agent id in registry: {entry.id}")
            seen.add(entry.id)
        return self
