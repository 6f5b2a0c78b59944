"""Shared contract models (single source of truth).

Minimal re-exports for convenient importing.
"""

from .api_version import API_VERSION
from .chat import (
    NO_MESSAGES_PREVIEW,
    Chat,
    ChatData,
    ChatType,
    Participant,
    ParticipantRole,
    Task,
    TaskState,
)
from .conversions import (
    AgentMessage,
    AgentRole,
    ProviderMessage,
    ProviderRole,
    from_agent_message,
    from_provider_message,
    to_agent_message,
    to_provider_message,
)
from .ids import NULL_ID, new_id, now_ms
from .message import (
    ActivityMessage,
    ActivityType,
    ContentMessage,
    Message,
    NetworkState,
    SenderType,
    message_preview,
    new_content_message,
    new_message,
    parse_message,
)
from .parts import DataPart, FileContent, FilePart, Part, PartKind, TextPart

__all__ = [
    "API_VERSION",
    "NO_MESSAGES_PREVIEW",
    "NULL_ID",
    "ActivityMessage",
    "ActivityType",
    "AgentMessage",
    "AgentRole",
    "Chat",
    "ChatData",
    "ChatType",
    "ContentMessage",
    "DataPart",
    "FileContent",
    "FilePart",
    "Message",
    "NetworkState",
    "Part",
    "PartKind",
    "Participant",
    "ParticipantRole",
    "ProviderMessage",
    "ProviderRole",
    "SenderType",
    "Task",
    "TaskState",
    "TextPart",
    "from_agent_message",
    "from_provider_message",
    "message_preview",
    "new_content_message",
    "new_id",
    "new_message",
    "now_ms",
    "parse_message",
    "to_agent_message",
    "to_provider_message",
]
