"""Signal Store: drives agent responses and the hook pipeline around them.

`user_send_message()` commits the user's message, opens a working signal
holding a `receiving_stream` shell, runs the before-send hooks, streams the
model's reply into the signal, runs the after-receive hooks and commits the
final agent message. Any failure after the user message is committed turns
into a `failed` system message in the chat. The working signal is removed
in every case.

Several sends may be in flight for one chat; each has its own signal.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from collections.abc import Callable, Sequence
from typing import Any

from portal_contracts.chat import Chat
from portal_contracts.conversions import ProviderMessage, ProviderRole, to_provider_message
from portal_contracts.ids import NULL_ID
from portal_contracts.message import (
    ContentMessage,
    Message,
    NetworkState,
    SenderType,
    new_content_message,
)
from portal_contracts.parts import TextPart

from ..agents.registry import AgentDirectory
from ..agents.registry_models import AgentConfig
from ..chats.store import ChatStore
from ..llm.client import ModelClient, build_model_client
from .models import (
    AfterReceiveHook,
    BeforeSendHook,
    SignalListener,
    StreamCancelledError,
    WorkingSignal,
)

logger = logging.getLogger(__name__)

USER_SENDER_ID = NULL_ID
SYSTEM_SENDER_ID = "system"
CANCELLED_TEXT = "Response cancelled"


async def _resolve(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


class SignalStore:
    def __init__(
        self,
        chat_store: ChatStore,
        agents: AgentDirectory,
        *,
        client_factory: Callable[[AgentConfig], ModelClient] = build_model_client,
        history_limit: int = 20,
    ) -> None:
        self._chats = chat_store
        self._agents = agents
        self._client_factory = client_factory
        self._history_limit = max(0, history_limit)
        self._signals: dict[str, list[WorkingSignal]] = {}
        self._before_send: dict[str, BeforeSendHook] = {}
        self._after_receive: dict[str, AfterReceiveHook] = {}
        self._listeners: list[SignalListener] = []

    # ---- observers ----

    def working_signals(self, chat_id: str) -> list[WorkingSignal]:
        return list(self._signals.get(chat_id, []))

    def subscribe(self, listener: SignalListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, chat_id: str) -> None:
        for listener in list(self._listeners):
            try:
                listener(chat_id)
            except Exception:
                logger.exception("signal.listener failed chat_id=%s", chat_id)

    # ---- hooks ----

    def register_before_send_message_hook(self, key: str, hook: BeforeSendHook) -> bool:
        if key in self._before_send:
            logger.warning("signal.hook duplicate kind=before_send key=%s", key)
            return False
        self._before_send[key] = hook
        return True

    def remove_before_send_message_hook(self, key: str) -> bool:
        return self._before_send.pop(key, None) is not None

    def register_after_receive_message_hook(self, key: str, hook: AfterReceiveHook) -> bool:
        if key in self._after_receive:
            logger.warning("signal.hook duplicate kind=after_receive key=%s", key)
            return False
        self._after_receive[key] = hook
        return True

    def remove_after_receive_message_hook(self, key: str) -> bool:
        return self._after_receive.pop(key, None) is not None

    # ---- cancellation ----

    def cancel(self, chat_id: str, agent_id: str | None = None) -> int:
        """Flag in-flight signals of a chat; the stream stops at its next delta."""

        count = 0
        for signal in self._signals.get(chat_id, []):
            if agent_id is None or signal.agent_id == agent_id:
                signal.cancelled = True
                count += 1
        if count:
            logger.info("signal.cancel chat_id=%s count=%s", chat_id, count)
        return count

    # ---- send ----

    async def user_send_message(self, chat_id: str, text: str, agent_id: str) -> ContentMessage | None:
        """Send `text` to an agent in a chat and commit its streamed reply.

        Returns the committed agent message, or the committed `failed`
        system message when the response could not be produced. Returns
        `None` (logged) when the chat or an enabled agent is missing, or when
        the chat is deleted before the reply is committed.
        """

        chat = self._chats.get_chat(chat_id)
        if chat is None:
            logger.error("signal.send unknown chat_id=%s", chat_id)
            return None
        agent = self._agents.find_enabled(agent_id)
        if agent is None:
            logger.error("signal.send unavailable agent_id=%s chat_id=%s", agent_id, chat_id)
            return None

        if not self._chats.is_hydrated(chat_id):
            await self._chats.load_messages_for_chat(chat_id)
        history = self._history(chat_id)

        user_msg = new_content_message(
            chat_id=chat_id,
            workspace_id=chat.workspace_id,
            channel_id=chat.channel_id,
            sender_id=USER_SENDER_ID,
            sender_type=SenderType.user,
            network_state=NetworkState.received,
            text=text,
        )
        await self._chats.add_message(chat_id, user_msg)

        signal = WorkingSignal(
            chat_id=chat_id,
            agent_id=agent.id,
            partial_message=self._shell(chat, agent, user_msg),
        )
        self._signals.setdefault(chat_id, []).append(signal)
        self._notify(chat_id)

        t0 = time.perf_counter()
        logger.info("signal.stream start chat_id=%s agent_id=%s message_id=%s", chat_id, agent.id, signal.message_id)
        try:
            final = await self._run(signal, agent, text, history)
        except StreamCancelledError:
            logger.info("signal.stream cancelled chat_id=%s message_id=%s", chat_id, signal.message_id)
            return await self._commit_failure(chat, user_msg, CANCELLED_TEXT)
        except asyncio.CancelledError:
            logger.warning("signal.stream task cancelled chat_id=%s message_id=%s", chat_id, signal.message_id)
            raise
        except Exception as e:
            logger.exception("signal.stream failed chat_id=%s agent_id=%s", chat_id, agent.id)
            return await self._commit_failure(chat, user_msg, f"An error occurred: {e}")
        finally:
            self._remove(signal)

        if final is None:
            return None
        logger.info(
            "signal.stream end chat_id=%s message_id=%s elapsed_ms=%s output_chars=%s",
            chat_id,
            final.id,
            int((time.perf_counter() - t0) * 1000),
            len(signal.text_cache),
        )
        return final

    async def _run(
        self,
        signal: WorkingSignal,
        agent: AgentConfig,
        text: str,
        history: Sequence[Message],
    ) -> ContentMessage | None:
        parts: list[TextPart] = [TextPart(text=text)]
        for key, hook in list(self._before_send.items()):
            parts = await _resolve(hook(parts))
            logger.debug("signal.hook ran kind=before_send key=%s", key)

        messages: list[ProviderMessage] = [to_provider_message(m) for m in history]
        messages.extend(ProviderMessage(role=ProviderRole.user, content=p.text) for p in parts)

        client = self._client_factory(agent)
        stream = client.stream_text(system=agent.system_prompt, messages=messages)
        try:
            async for delta in stream:
                if signal.cancelled:
                    raise StreamCancelledError(signal.message_id)
                signal.text_cache += delta
                self._notify(signal.chat_id)
        finally:
            await stream.aclose()

        final = signal.partial_message.model_copy(
            update={
                "payload": [TextPart(text=signal.text_cache)],
                "network_state": NetworkState.received,
            }
        )
        for key, hook in list(self._after_receive.items()):
            final = await _resolve(hook(final))
            logger.debug("signal.hook ran kind=after_receive key=%s", key)

        if await self._chats.add_message(signal.chat_id, final) is None:
            logger.warning("signal.stream dropped chat_id=%s message_id=%s", signal.chat_id, final.id)
            return None
        return final

    def _history(self, chat_id: str) -> list[Message]:
        if self._history_limit == 0:
            return []
        usable = [
            m
            for m in self._chats.get_messages(chat_id)
            if isinstance(m, ContentMessage) and not m.is_deleted and m.network_state != NetworkState.failed
        ]
        return usable[-self._history_limit :]

    def _shell(self, chat: Chat, agent: AgentConfig, user_msg: ContentMessage) -> ContentMessage:
        return new_content_message(
            chat_id=chat.id,
            workspace_id=chat.workspace_id,
            channel_id=chat.channel_id,
            sender_id=agent.id,
            sender_type=SenderType.agent,
            network_state=NetworkState.receiving_stream,
            reply_to_message_id=user_msg.id,
            metadata={"agentId": agent.id, "model": agent.model, "contextId": chat.primary_context_id},
        )

    async def _commit_failure(self, chat: Chat, user_msg: ContentMessage, text: str) -> ContentMessage | None:
        error_msg = new_content_message(
            chat_id=chat.id,
            workspace_id=chat.workspace_id,
            channel_id=chat.channel_id,
            sender_id=SYSTEM_SENDER_ID,
            sender_type=SenderType.system,
            network_state=NetworkState.failed,
            reply_to_message_id=user_msg.id,
            text=text,
        )
        try:
            if await self._chats.add_message(chat.id, error_msg) is None:
                return None
        except Exception:
            logger.exception("signal.commit_failure failed chat_id=%s", chat.id)
        return error_msg

    def _remove(self, signal: WorkingSignal) -> None:
        signals = self._signals.get(signal.chat_id, [])
        if signal in signals:
            signals.remove(signal)
        if not signals:
            self._signals.pop(signal.chat_id, None)
        self._notify(signal.chat_id)
