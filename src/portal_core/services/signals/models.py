from __future__ import annotations

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Union

from portal_contracts.ids import now_ms
from portal_contracts.message import ContentMessage
from portal_contracts.parts import TextPart


class StreamCancelledError(Exception):
    """Raised inside a send when its working signal was cancelled between deltas."""


# Hooks may be plain functions or coroutines.
BeforeSendHook = Callable[[list[TextPart]], Union[list[TextPart], Awaitable[list[TextPart]]]]
AfterReceiveHook = Callable[[ContentMessage], Union[ContentMessage, Awaitable[ContentMessage]]]
SignalListener = Callable[[str], None]


@dataclass(eq=False)
class WorkingSignal:
    """An in-flight agent response. Lives only until the response is committed."""

    chat_id: str
    agent_id: str
    partial_message: ContentMessage
    text_cache: str = ""
    cancelled: bool = False
    started_at: int = field(default_factory=now_ms)

    @property
    def message_id(self) -> str:
        return self.partial_message.id
