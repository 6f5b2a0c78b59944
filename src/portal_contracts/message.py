"""Message contracts.

Every message in a chat is either a content message (ordered list of parts)
or an activity message (structured event payload). The two shapes form a
discriminated union on `type`, mirroring how artifacts are modelled.

Constructors:
- `new_message(...)` builds either shape from keyword fields and fills in
  id / timestamp / network_state defaults.
- `new_content_message(...)` is the convenience for the common content case.

Both raise `ValueError` when the discriminating fields are missing or do not
agree with each other.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter

from .ids import NULL_ID, new_id, now_ms
from .parts import Part, TextPart, text_of


class ActivityType(str, Enum):
    content_message = "content_message"

    user_joined_chat = "user_joined_chat"
    user_left_chat = "user_left_chat"
    user_invited_to_chat = "user_invited_to_chat"
    chat_metadata_updated = "chat_metadata_updated"
    channel_created = "channel_created"
    channel_deleted = "channel_deleted"

    message_edited = "message_edited"
    message_deleted = "message_deleted"
    reaction_added = "reaction_added"
    reaction_removed = "reaction_removed"
    message_pinned = "message_pinned"
    message_unpinned = "message_unpinned"

    system_notification = "system_notification"
    agent_action_request = "agent_action_request"
    agent_action_response = "agent_action_response"
    agent_task_update = "agent_task_update"

    custom_activity = "custom_activity"


class SenderType(str, Enum):
    user = "user"
    agent = "agent"
    system = "system"


class NetworkState(str, Enum):
    sending = "sending"
    sent = "sent"
    receiving_stream = "receiving_stream"
    received = "received"
    failed = "failed"


class Reaction(BaseModel):
    emoji: str
    user_ids: list[str] = Field(default_factory=list)


class EditRecord(BaseModel):
    payload: list[Part]
    edited_at: int


class MessageBase(BaseModel):
    id: str = Field(default_factory=new_id)
    client_message_id: str | None = None
    workspace_id: str
    channel_id: str = NULL_ID
    chat_id: str
    task_id: str | None = None
    sender_id: str
    sender_type: SenderType
    # Epoch milliseconds.
    timestamp: int = Field(default_factory=now_ms)
    network_state: NetworkState = NetworkState.sending
    type: ActivityType
    metadata: dict[str, Any] | None = None


class ContentMessage(MessageBase):
    type: Literal[ActivityType.content_message] = ActivityType.content_message
    payload: list[Part] = Field(default_factory=list)

    reactions: list[Reaction] = Field(default_factory=list)
    is_edited: bool = False
    edit_history: list[EditRecord] = Field(default_factory=list)
    is_deleted: bool = False
    related_agent_task_ids: list[str] = Field(default_factory=list)
    is_pinned: bool = False
    is_starred: bool = False
    reply_to_message_id: str | None = None


class ActivityMessage(MessageBase):
    type: Literal[
        ActivityType.user_joined_chat,
        ActivityType.user_left_chat,
        ActivityType.user_invited_to_chat,
        ActivityType.chat_metadata_updated,
        ActivityType.channel_created,
        ActivityType.channel_deleted,
        ActivityType.message_edited,
        ActivityType.message_deleted,
        ActivityType.reaction_added,
        ActivityType.reaction_removed,
        ActivityType.message_pinned,
        ActivityType.message_unpinned,
        ActivityType.system_notification,
        ActivityType.agent_action_request,
        ActivityType.agent_action_response,
        ActivityType.agent_task_update,
        ActivityType.custom_activity,
    ]
    payload: dict[str, Any] | None = None


Message = Annotated[Union[ContentMessage, ActivityMessage], Field(discriminator="type")]

MESSAGE_ADAPTER: TypeAdapter[Message] = TypeAdapter(Message)

PREVIEW_LIMIT = 50


def parse_message(data: dict[str, Any]) -> Message:
    """Validate a raw dict (e.g. from storage) into the right message shape."""
    return MESSAGE_ADAPTER.validate_python(data)


def new_message(**fields: Any) -> Message:
    """Build a message of either shape.

    Required: `type`, `chat_id`, `workspace_id`, `sender_id`, `sender_type`.
    A content message takes a list `payload`; activity kinds take a mapping
    (or nothing).
    """

    raw_type = fields.get("type")
    if raw_type is None:
        raise ValueError("message 'type' is required")
    try:
        activity = ActivityType(raw_type)
    except ValueError as e:
        raise ValueError(f"unknown message type: {raw_type!r}") from e

    payload = fields.get("payload")
    if activity is ActivityType.content_message:
        if payload is not None and not isinstance(payload, list):
            raise ValueError("content_message payload must be a list of parts")
    elif isinstance(payload, list):
        raise ValueError(f"{activity.value} payload must be a mapping, not a part list")

    fields["type"] = activity
    # pydantic's ValidationError is a ValueError subclass, so missing fields surface the same way.
    return MESSAGE_ADAPTER.validate_python(fields)


def new_content_message(
    *,
    chat_id: str,
    workspace_id: str,
    sender_id: str,
    sender_type: SenderType | str,
    text: str | None = None,
    parts: list[Part] | None = None,
    **extra: Any,
) -> ContentMessage:
    if text is not None and parts is not None:
        raise ValueError("pass either 'text' or 'parts', not both")
    payload: list[Part] = list(parts or [])
    if text is not None:
        payload = [TextPart(text=text)]

    return ContentMessage(
        chat_id=chat_id,
        workspace_id=workspace_id,
        sender_id=sender_id,
        sender_type=sender_type,
        payload=payload,
        **extra,
    )


def message_preview(msg: Message, limit: int = PREVIEW_LIMIT) -> str:
    """Preview of a message: a prefix of its text, at most `limit` chars.

    Messages without text fall back to a short label.
    """

    if isinstance(msg, ContentMessage):
        if msg.is_deleted:
            text = "Message deleted"
        else:
            text = text_of(msg.payload)
            if not text:
                kinds = sorted({p.kind.value for p in msg.payload})
                text = f"[{', '.join(kinds)}]" if kinds else ""
    else:
        payload = msg.payload or {}
        text = str(payload.get("text") or msg.type.value.replace("_", " "))

    return text[:limit]
