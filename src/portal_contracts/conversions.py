"""Conversions between the canonical message and the two outer shapes.

- Agent-protocol messages (`AgentMessage`) carry parts plus camelCase
  identity metadata so the canonical message can be recovered.
- Provider messages (`ProviderMessage`) are role-tagged plain text for
  language models. Non-text parts are dropped on the way out.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from .ids import new_id, now_ms
from .message import (
    ActivityType,
    ContentMessage,
    Message,
    NetworkState,
    SenderType,
    new_message,
)
from .parts import DataPart, Part, TextPart, text_of

logger = logging.getLogger(__name__)

ACTIVITY_PAYLOAD_FLAG = "isActivityPayload"

# Identity keys written into agent message metadata.
META_MESSAGE_ID = "coreMessageId"
META_CLIENT_MESSAGE_ID = "coreClientMessageId"
META_SENDER_ID = "coreSenderId"
META_SENDER_TYPE = "coreSenderType"
META_ACTIVITY_TYPE = "coreActivityType"
META_CHAT_ID = "coreChatId"
META_CHANNEL_ID = "coreChannelId"
META_TIMESTAMP = "originalTimestamp"

_CORE_KEYS = frozenset(
    {
        META_MESSAGE_ID,
        META_CLIENT_MESSAGE_ID,
        META_SENDER_ID,
        META_SENDER_TYPE,
        META_ACTIVITY_TYPE,
        META_CHAT_ID,
        META_CHANNEL_ID,
        META_TIMESTAMP,
    }
)


class AgentRole(str, Enum):
    user = "user"
    agent = "agent"


class AgentMessage(BaseModel):
    """Agent-protocol wire message."""

    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(default_factory=new_id, alias="messageId")
    role: AgentRole
    parts: list[Part] = Field(default_factory=list)
    kind: Literal["message"] = "message"
    context_id: str | None = Field(default=None, alias="contextId")
    task_id: str | None = Field(default=None, alias="taskId")
    metadata: dict[str, Any] | None = None

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class ProviderRole(str, Enum):
    user = "user"
    assistant = "assistant"
    system = "system"


class ProviderMessage(BaseModel):
    role: ProviderRole
    content: str


def _is_activity_part(part: Part) -> bool:
    return isinstance(part, DataPart) and bool((part.metadata or {}).get(ACTIVITY_PAYLOAD_FLAG))


def to_agent_message(msg: Message, *, context_id: str | None = None) -> AgentMessage:
    role = AgentRole.user if msg.sender_type == SenderType.user else AgentRole.agent

    metadata: dict[str, Any] = dict(msg.metadata or {})
    metadata.update(
        {
            META_MESSAGE_ID: msg.id,
            META_SENDER_ID: msg.sender_id,
            META_SENDER_TYPE: msg.sender_type.value,
            META_ACTIVITY_TYPE: msg.type.value,
            META_CHAT_ID: msg.chat_id,
            META_CHANNEL_ID: msg.channel_id,
            META_TIMESTAMP: msg.timestamp,
        }
    )
    if msg.client_message_id:
        metadata[META_CLIENT_MESSAGE_ID] = msg.client_message_id

    task_id = msg.task_id
    if isinstance(msg, ContentMessage):
        parts: list[Part] = [p.model_copy(deep=True) for p in msg.payload]
        if msg.related_agent_task_ids:
            task_id = msg.related_agent_task_ids[0]
    else:
        parts = []
        if msg.payload is not None:
            parts.append(DataPart(data=dict(msg.payload), metadata={ACTIVITY_PAYLOAD_FLAG: True}))

    return AgentMessage(
        role=role,
        parts=parts,
        context_id=context_id or msg.chat_id,
        task_id=task_id,
        metadata=metadata,
    )


def from_agent_message(agent_msg: AgentMessage, workspace_id: str) -> Message:
    meta = dict(agent_msg.metadata or {})

    chat_id = meta.get(META_CHAT_ID) or agent_msg.context_id
    if not chat_id:
        raise ValueError("agent message carries neither coreChatId nor contextId")

    activity = ActivityType.content_message
    raw_activity = meta.get(META_ACTIVITY_TYPE)
    if isinstance(raw_activity, str):
        try:
            activity = ActivityType(raw_activity)
        except ValueError:
            logger.warning("message.from_agent unknown activity_type=%s", raw_activity)
            activity = ActivityType.custom_activity

    sender_type = SenderType.user if agent_msg.role == AgentRole.user else SenderType.agent
    raw_sender_type = meta.get(META_SENDER_TYPE)
    if raw_sender_type in {s.value for s in SenderType}:
        sender_type = SenderType(raw_sender_type)

    activity_payload: dict[str, Any] | None = None
    parts: list[Part] = []
    for part in agent_msg.parts:
        if activity_payload is None and isinstance(part, DataPart) and _is_activity_part(part):
            activity_payload = dict(part.data)
            continue
        parts.append(part)

    extra = {k: v for k, v in meta.items() if k not in _CORE_KEYS}
    extra["agentMessageId"] = agent_msg.message_id

    fields: dict[str, Any] = {
        "id": meta.get(META_MESSAGE_ID) or agent_msg.message_id,
        "client_message_id": meta.get(META_CLIENT_MESSAGE_ID),
        "workspace_id": workspace_id,
        "chat_id": chat_id,
        "sender_id": meta.get(META_SENDER_ID) or f"{sender_type.value}:{new_id()}",
        "sender_type": sender_type,
        "timestamp": meta.get(META_TIMESTAMP) or now_ms(),
        "network_state": NetworkState.received,
        "type": activity,
        "metadata": extra,
    }
    if meta.get(META_CHANNEL_ID):
        fields["channel_id"] = meta[META_CHANNEL_ID]

    if activity is ActivityType.content_message:
        fields["payload"] = parts
        if agent_msg.task_id:
            fields["related_agent_task_ids"] = [agent_msg.task_id]
    else:
        fields["payload"] = activity_payload
        fields["task_id"] = agent_msg.task_id

    return new_message(**fields)


def to_provider_message(msg: Message) -> ProviderMessage:
    if msg.sender_type == SenderType.user:
        role = ProviderRole.user
    elif msg.sender_type == SenderType.agent:
        role = ProviderRole.assistant
    else:
        role = ProviderRole.system

    content = text_of(msg.payload) if isinstance(msg, ContentMessage) else ""
    return ProviderMessage(role=role, content=content)


def from_provider_message(pm: ProviderMessage, chat_id: str, workspace_id: str) -> ContentMessage:
    if pm.role == ProviderRole.user:
        sender_type = SenderType.user
    elif pm.role == ProviderRole.assistant:
        sender_type = SenderType.agent
    else:
        sender_type = SenderType.system

    return ContentMessage(
        chat_id=chat_id,
        workspace_id=workspace_id,
        sender_id=sender_type.value,
        sender_type=sender_type,
        network_state=NetworkState.received,
        payload=[TextPart(text=pm.content)],
    )
