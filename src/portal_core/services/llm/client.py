from __future__ import annotations

import logging
import os
import time
from collections.abc import AsyncIterator, Sequence
from typing import Final, Protocol
from urllib.parse import urlparse

from portal_contracts.conversions import ProviderMessage, ProviderRole

from ..agents.registry_models import AgentConfig, AgentProvider

_DEFAULT_MODEL: Final[str] = os.getenv("OPENAI_MODEL", "gpt-4o-mini")

logger = logging.getLogger(__name__)


class LLMClientError(RuntimeError):
    """Raised when a model client cannot be built or cannot generate a response."""


class TextStream(Protocol):
    """Async iterator of text deltas that can also return the full text."""

    def __aiter__(self) -> AsyncIterator[str]: ...

    async def __anext__(self) -> str: ...

    async def text(self) -> str: ...

    async def aclose(self) -> None: ...


class ModelClient(Protocol):
    def stream_text(self, *, system: str, messages: Sequence[ProviderMessage]) -> TextStream: ...


class DeltaStream:
    """`TextStream` over any async iterator of deltas."""

    def __init__(self, deltas: AsyncIterator[str]) -> None:
        self._deltas = deltas
        self._parts: list[str] = []
        self._done = False

    def __aiter__(self) -> "DeltaStream":
        return self

    async def __anext__(self) -> str:
        if self._done:
            raise StopAsyncIteration
        try:
            delta = await self._deltas.__anext__()
        except StopAsyncIteration:
            self._done = True
            raise
        self._parts.append(delta)
        return delta

    async def text(self) -> str:
        """Drain whatever is left and return the accumulated text."""
        async for _ in self:
            pass
        return "".join(self._parts)

    async def aclose(self) -> None:
        self._done = True
        aclose = getattr(self._deltas, "aclose", None)
        if aclose is not None:
            await aclose()


def _env(name: str, default: str | None = None) -> str | None:
    v = os.getenv(name)
    if v is None or v == "":
        return default
    return v


def _mode() -> str:
    return (_env("PORTAL_LLM_MODE", "stub") or "stub").strip().lower()


class StubModelClient:
    """Deterministic echo model: replies with the last user message, word by word."""

    def __init__(self, *, model: str = "stub-echo", prefix: str = "Echo: ") -> None:
        self._model = model
        self._prefix = prefix

    def stream_text(self, *, system: str, messages: Sequence[ProviderMessage]) -> DeltaStream:
        return DeltaStream(self._deltas(system, list(messages)))

    async def _deltas(self, system: str, messages: list[ProviderMessage]) -> AsyncIterator[str]:
        t0 = time.perf_counter()
        logger.info(
            "llm.call start provider=stub model=%s system_chars=%s messages=%s",
            self._model,
            len(system or ""),
            len(messages),
        )
        last_user = next((m.content for m in reversed(messages) if m.role == ProviderRole.user), "")
        reply = self._prefix + last_user
        out_chars = 0
        words = reply.split(" ")
        for i, word in enumerate(words):
            delta = word if i == 0 else " " + word
            out_chars += len(delta)
            yield delta
        logger.info(
            "llm.call end provider=stub model=%s elapsed_ms=%s output_chars=%s",
            self._model,
            int((time.perf_counter() - t0) * 1000),
            out_chars,
        )


class OpenAIModelClient:
    """Streaming chat completions against OpenAI or an OpenAI-compatible proxy."""

    def __init__(
        self,
        *,
        model: str,
        api_key: str,
        base_url: str | None = None,
        temperature: float = 0.7,
    ) -> None:
        if not api_key:
            raise LLMClientError("an API key is required for the openai provider (OPENAI_API_KEY)")
        self._model = model or _DEFAULT_MODEL
        self._api_key = api_key
        self._base_url = base_url
        self._temperature = temperature

    def stream_text(self, *, system: str, messages: Sequence[ProviderMessage]) -> DeltaStream:
        return DeltaStream(self._deltas(system, list(messages)))

    async def _deltas(self, system: str, messages: list[ProviderMessage]) -> AsyncIterator[str]:
        try:
            from openai import AsyncOpenAI  # type: ignore
        except Exception as e:  # pragma: no cover
            raise LLMClientError("openai package not available. Install it or use PORTAL_LLM_MODE=stub.") from e

        client = AsyncOpenAI(api_key=self._api_key, base_url=self._base_url)

        host = None
        if self._base_url:
            try:
                host = urlparse(self._base_url).hostname
            except ValueError:
                host = None

        t0 = time.perf_counter()
        logger.info(
            "llm.call start provider=openai model=%s host=%s system_chars=%s messages=%s",
            self._model,
            host,
            len(system or ""),
            len(messages),
        )

        payload = [{"role": "system", "content": system}]
        payload.extend({"role": m.role.value, "content": m.content} for m in messages)

        stream = await client.chat.completions.create(
            model=self._model,
            messages=payload,
            temperature=self._temperature,
            stream=True,
        )

        out_chars = 0
        try:
            async for chunk in stream:
                if not chunk.choices:
                    continue
                delta = chunk.choices[0].delta.content
                if delta:
                    out_chars += len(delta)
                    yield delta
        finally:
            await stream.close()
            logger.info(
                "llm.call end provider=openai model=%s elapsed_ms=%s output_chars=%s",
                self._model,
                int((time.perf_counter() - t0) * 1000),
                out_chars,
            )


def build_model_client(agent: AgentConfig, *, mode: str | None = None) -> ModelClient:
    """Pick the model client for an agent.

    Controlled by env vars:
    - PORTAL_LLM_MODE=stub|openai (default stub; stub serves every agent)
    - OPENAI_API_KEY (used when the agent carries no api_key)
    - OPENAI_BASE_URL (optional; OpenAI-compatible proxies)
    """

    resolved = (mode or _mode()).strip().lower()
    if resolved == "stub" or agent.provider == AgentProvider.stub:
        return StubModelClient(model=agent.model)

    if resolved != "openai":
        raise LLMClientError(f"unknown PORTAL_LLM_MODE: {resolved}")

    if agent.provider == AgentProvider.openai:
        return OpenAIModelClient(
            model=agent.model,
            api_key=agent.api_key or (_env("OPENAI_API_KEY") or ""),
            base_url=_env("OPENAI_BASE_URL"),
            temperature=agent.temperature,
        )

    raise LLMClientError(f"provider {agent.provider.value} is not supported")
