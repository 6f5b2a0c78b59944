from __future__ import annotations

from typing import Any

import pytest

from portal_contracts.conversions import ProviderMessage, ProviderRole
from portal_core.services.agents.registry_models import AgentConfig, AgentProvider
from portal_core.services.llm.client import (
    LLMClientError,
    OpenAIModelClient,
    StubModelClient,
    build_model_client,
)


@pytest.mark.asyncio
async def test_stub_client_streams_word_deltas() -> None:
    client = StubModelClient()
    stream = client.stream_text(
        system="sys",
        messages=[ProviderMessage(role=ProviderRole.user, content="hello big world")],
    )

    first = await stream.__anext__()
    full = await stream.text()

    assert first == "Echo:"
    assert full == "Echo: hello big world"


def test_build_model_client_defaults_to_stub(monkeypatch: Any) -> None:
    monkeypatch.delenv("PORTAL_LLM_MODE", raising=False)
    agent = AgentConfig(id="g", name="GPT", provider=AgentProvider.openai, model="gpt-4o-mini")

    assert isinstance(build_model_client(agent), StubModelClient)


def test_openai_mode_requires_api_key(monkeypatch: Any) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    agent = AgentConfig(id="g", name="GPT", provider=AgentProvider.openai, model="gpt-4o-mini")

    with pytest.raises(LLMClientError):
        build_model_client(agent, mode="openai")

    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    assert isinstance(build_model_client(agent, mode="openai"), OpenAIModelClient)


def test_openai_mode_rejects_unsupported_provider() -> None:
    agent = AgentConfig(id="c", name="Claude", provider=AgentProvider.anthropic, model="claude", api_key="k")

    with pytest.raises(LLMClientError, match="not supported"):
        build_model_client(agent, mode="openai")
