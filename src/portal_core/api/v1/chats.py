"""Chat endpoints (v1).

Endpoints:
- POST `/api/v1/chats` create a new chat
- GET `/api/v1/chats` list chats
- GET `/api/v1/chats/starred` starred messages (optionally per chat / sender)
- GET `/api/v1/chats/{chat_id}` get chat + messages
- PATCH `/api/v1/chats/{chat_id}` update chat fields
- DELETE `/api/v1/chats/{chat_id}` delete chat
- POST `/api/v1/chats/{chat_id}/messages` send a user message to an agent
- POST `/api/v1/chats/{chat_id}/cancel` cancel in-flight responses
- POST `/api/v1/chats/{chat_id}/viewed` mark messages as viewed
- POST `/api/v1/chats/{chat_id}/messages/{message_id}/star` toggle star

State lives on the runtime attached to `app.state` by the app lifespan.
"""

from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field

from portal_contracts.api_version import API_VERSION
from portal_contracts.chat import Chat, ChatData, Participant
from portal_contracts.message import ContentMessage, Message

from ...services.runtime import ChatRuntime

router = APIRouter(prefix="/chats", tags=["chats"])


def get_runtime(request: Request) -> ChatRuntime:
    return request.app.state.runtime


class CreateChatResponse(BaseModel):
    api_version: str = Field(default=API_VERSION)
    chat: Chat


class ListChatsResponse(BaseModel):
    api_version: str = Field(default=API_VERSION)
    chats: list[Chat] = Field(default_factory=list)


class GetChatResponse(BaseModel):
    api_version: str = Field(default=API_VERSION)
    chat: Chat
    messages: list[Message] = Field(default_factory=list)
    unread_count: int = 0


class UpdateChatRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    order: int | None = None
    participants: list[Participant] | None = None
    metadata: dict[str, Any] | None = None


class SendMessageRequest(BaseModel):
    text: str = Field(..., min_length=1)
    agent_id: str = Field(..., min_length=1)


class SendMessageResponse(BaseModel):
    api_version: str = Field(default=API_VERSION)
    message: ContentMessage


class MessageResponse(BaseModel):
    api_version: str = Field(default=API_VERSION)
    message: Message


class MessagesResponse(BaseModel):
    api_version: str = Field(default=API_VERSION)
    messages: list[Message] = Field(default_factory=list)


class MarkViewedRequest(BaseModel):
    message_id: str = Field(..., min_length=1)


class CancelResponse(BaseModel):
    api_version: str = Field(default=API_VERSION)
    cancelled: int


def _not_found(chat_id: str) -> HTTPException:
    return HTTPException(status_code=404, detail=f"chat not found: {chat_id}")


@router.post("", response_model=CreateChatResponse)
async def create_chat(req: ChatData, rt: ChatRuntime = Depends(get_runtime)) -> CreateChatResponse:
    if "workspace_id" not in req.model_fields_set:
        req = req.model_copy(update={"workspace_id": rt.settings.workspace_id})
    chat = await rt.chats.create_chat(req)
    return CreateChatResponse(chat=chat)


@router.get("", response_model=ListChatsResponse)
async def list_chats(rt: ChatRuntime = Depends(get_runtime)) -> ListChatsResponse:
    return ListChatsResponse(chats=rt.chats.list_chats())


@router.get("/starred", response_model=MessagesResponse)
async def starred_messages(
    chat_id: str | None = None,
    sender_id: str | None = None,
    limit: int = Query(default=50, ge=1, le=500),
    rt: ChatRuntime = Depends(get_runtime),
) -> MessagesResponse:
    messages = await rt.chats.load_starred_messages(chat_id=chat_id, sender_id=sender_id, limit=limit)
    return MessagesResponse(messages=messages)


@router.get("/{chat_id}", response_model=GetChatResponse)
async def get_chat(chat_id: str, rt: ChatRuntime = Depends(get_runtime)) -> GetChatResponse:
    messages = await rt.chats.load_messages_for_chat(chat_id)
    chat = rt.chats.get_chat(chat_id)
    if messages is None or chat is None:
        raise _not_found(chat_id)
    return GetChatResponse(chat=chat, messages=messages, unread_count=rt.chats.unread_count(chat_id))


@router.patch("/{chat_id}", response_model=CreateChatResponse)
async def update_chat(
    chat_id: str, req: UpdateChatRequest, rt: ChatRuntime = Depends(get_runtime)
) -> CreateChatResponse:
    try:
        chat = await rt.chats.update_chat(chat_id, **req.model_dump(exclude_unset=True))
    except KeyError:
        raise _not_found(chat_id)
    except ValueError as e:
        # Includes pydantic ValidationError, e.g. an explicit null name.
        raise HTTPException(status_code=422, detail=str(e)) from e
    return CreateChatResponse(chat=chat)


@router.delete("/{chat_id}")
async def delete_chat(chat_id: str, rt: ChatRuntime = Depends(get_runtime)) -> Response:
    try:
        await rt.chats.delete_chat(chat_id)
    except KeyError:
        raise _not_found(chat_id)
    return Response(status_code=204)


@router.post("/{chat_id}/messages", response_model=SendMessageResponse)
async def send_message(
    chat_id: str, req: SendMessageRequest, rt: ChatRuntime = Depends(get_runtime)
) -> SendMessageResponse:
    if rt.chats.get_chat(chat_id) is None:
        raise _not_found(chat_id)
    if rt.agents.find_enabled(req.agent_id) is None:
        raise HTTPException(status_code=404, detail=f"agent not available: {req.agent_id}")

    msg = await rt.signals.user_send_message(chat_id, req.text, req.agent_id)
    if msg is None:
        raise _not_found(chat_id)
    return SendMessageResponse(message=msg)


@router.post("/{chat_id}/cancel", response_model=CancelResponse)
async def cancel_responses(chat_id: str, rt: ChatRuntime = Depends(get_runtime)) -> CancelResponse:
    if rt.chats.get_chat(chat_id) is None:
        raise _not_found(chat_id)
    return CancelResponse(cancelled=rt.signals.cancel(chat_id))


@router.post("/{chat_id}/viewed", response_model=CreateChatResponse)
async def mark_viewed(
    chat_id: str, req: MarkViewedRequest, rt: ChatRuntime = Depends(get_runtime)
) -> CreateChatResponse:
    try:
        chat = await rt.chats.update_last_viewed_message(chat_id, req.message_id)
    except KeyError:
        if rt.chats.get_chat(chat_id) is None:
            raise _not_found(chat_id)
        raise HTTPException(status_code=404, detail=f"message not found: {req.message_id}")
    return CreateChatResponse(chat=chat)


@router.post("/{chat_id}/messages/{message_id}/star", response_model=MessageResponse)
async def toggle_star(chat_id: str, message_id: str, rt: ChatRuntime = Depends(get_runtime)) -> MessageResponse:
    try:
        msg = await rt.chats.toggle_message_star(chat_id, message_id)
    except KeyError:
        raise _not_found(chat_id)
    if msg is None:
        raise HTTPException(status_code=404, detail=f"message not found: {message_id}")
    return MessageResponse(message=msg)
