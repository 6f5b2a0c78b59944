"""Chat and task contracts."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from .ids import NULL_ID, new_id, now_ms

NO_MESSAGES_PREVIEW = "No messages yet"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ChatType(str, Enum):
    direct = "direct"
    group = "group"


class ParticipantRole(str, Enum):
    owner = "owner"
    member = "member"
    agent = "agent"


class Participant(BaseModel):
    user_id: str
    role: ParticipantRole = ParticipantRole.member


class Chat(BaseModel):
    id: str
    name: str
    description: str | None = None
    type: ChatType = ChatType.direct
    workspace_id: str = NULL_ID
    channel_id: str = NULL_ID
    primary_context_id: str
    task_ids: list[str] = Field(default_factory=list)
    participants: list[Participant] = Field(default_factory=list)
    # >0 pinned (higher first), 0 normal, <0 archived.
    order: int = 0
    last_message_preview: str = NO_MESSAGES_PREVIEW
    last_message_timestamp: int | None = None
    last_viewed_message_id: str = NULL_ID
    metadata: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_pinned(self) -> bool:
        return self.order > 0

    @property
    def is_archived(self) -> bool:
        return self.order < 0


class ChatData(BaseModel):
    """Caller-supplied fields for a new chat; the store owns ids and timestamps."""

    name: str = Field(..., min_length=1)
    description: str | None = None
    type: ChatType = ChatType.direct
    workspace_id: str = NULL_ID
    channel_id: str = NULL_ID
    participants: list[Participant] = Field(default_factory=list)
    order: int = 0
    metadata: dict[str, Any] | None = None


class TaskState(str, Enum):
    submitted = "submitted"
    working = "working"
    input_required = "input-required"
    completed = "completed"
    canceled = "canceled"
    failed = "failed"
    rejected = "rejected"
    auth_required = "auth-required"
    unknown = "unknown"


class Task(BaseModel):
    """Agent task tracked inside a chat."""

    id: str = Field(default_factory=new_id)
    chat_id: str
    channel_id: str = NULL_ID
    agent_task_id: str | None = None
    summary: str | None = None
    status: TaskState = TaskState.submitted
    created_at: int = Field(default_factory=now_ms)
    created_by: str
    updates: list[dict[str, Any]] = Field(default_factory=list)
    metadata: dict[str, Any] | None = None
