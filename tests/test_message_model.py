from __future__ import annotations

import logging

import pytest

from portal_contracts.conversions import (
    ACTIVITY_PAYLOAD_FLAG,
    AgentMessage,
    AgentRole,
    ProviderMessage,
    ProviderRole,
    from_agent_message,
    from_provider_message,
    to_agent_message,
    to_provider_message,
)
from portal_contracts.ids import new_id
from portal_contracts.message import (
    ActivityMessage,
    ActivityType,
    ContentMessage,
    NetworkState,
    SenderType,
    message_preview,
    new_content_message,
    new_message,
    parse_message,
)
from portal_contracts.parts import DataPart, FileContent, FilePart, TextPart


def _content(**kw) -> ContentMessage:
    base = dict(chat_id="c1", workspace_id="ws", sender_id="u1", sender_type=SenderType.user)
    base.update(kw)
    return new_content_message(**base)


def test_new_message_defaults() -> None:
    msg = _content(text="hello")

    assert msg.type == ActivityType.content_message
    assert msg.network_state == NetworkState.sending
    assert msg.id
    assert msg.timestamp > 932428800000
    assert msg.payload == [TextPart(text="hello")]
    assert msg.reactions == [] and msg.edit_history == [] and not msg.is_starred


def test_new_message_requires_type() -> None:
    with pytest.raises(ValueError, match="type"):
        new_message(chat_id="c1", workspace_id="ws", sender_id="u1", sender_type="user")


def test_new_message_rejects_unknown_type() -> None:
    with pytest.raises(ValueError, match="unknown message type"):
        new_message(type="telepathy", chat_id="c1", workspace_id="ws", sender_id="u1", sender_type="user")


def test_new_message_rejects_mismatched_payload() -> None:
    with pytest.raises(ValueError):
        new_message(
            type="content_message",
            chat_id="c1",
            workspace_id="ws",
            sender_id="u1",
            sender_type="user",
            payload={"text": "x"},
        )
    with pytest.raises(ValueError):
        new_message(
            type="reaction_added",
            chat_id="c1",
            workspace_id="ws",
            sender_id="u1",
            sender_type="user",
            payload=[{"kind": "text", "text": "x"}],
        )


def test_new_message_missing_field_is_value_error() -> None:
    with pytest.raises(ValueError):
        new_message(type="content_message", workspace_id="ws", sender_id="u1", sender_type="user")


def test_parse_message_discriminates_on_type() -> None:
    content = parse_message(
        {
            "type": "content_message",
            "chat_id": "c1",
            "workspace_id": "ws",
            "sender_id": "u1",
            "sender_type": "user",
            "payload": [{"kind": "text", "text": "hi"}, {"kind": "data", "data": {"a": 1}}],
        }
    )
    activity = parse_message(
        {
            "type": "reaction_added",
            "chat_id": "c1",
            "workspace_id": "ws",
            "sender_id": "u1",
            "sender_type": "user",
            "payload": {"targetMessageId": "m1", "emoji": "+1"},
        }
    )

    assert isinstance(content, ContentMessage)
    assert isinstance(content.payload[1], DataPart)
    assert isinstance(activity, ActivityMessage)
    assert activity.payload == {"targetMessageId": "m1", "emoji": "+1"}


def test_file_part_needs_bytes_or_uri() -> None:
    with pytest.raises(ValueError):
        FileContent(name="a.txt")
    part = FilePart(file=FileContent(name="a.txt", mimeType="text/plain", uri="file:///a.txt"))
    assert part.file.mime_type == "text/plain"


def test_agent_round_trip_preserves_chat_role_and_text() -> None:
    msg = _content(parts=[TextPart(text="one"), TextPart(text="two")], client_message_id="cm-1")

    wire = to_agent_message(msg)
    back = from_agent_message(wire, "ws")

    assert wire.role == AgentRole.user
    assert wire.context_id == "c1"
    assert wire.metadata["coreMessageId"] == msg.id
    assert isinstance(back, ContentMessage)
    assert back.chat_id == msg.chat_id
    assert back.sender_type == SenderType.user
    assert [p.text for p in back.payload] == ["one", "two"]
    assert back.id == msg.id
    assert back.client_message_id == "cm-1"


def test_agent_role_for_non_user_senders() -> None:
    msg = _content(sender_type=SenderType.system, sender_id="system", text="note")
    assert to_agent_message(msg).role == AgentRole.agent


def test_activity_payload_travels_as_tagged_data_part() -> None:
    msg = new_message(
        type=ActivityType.system_notification,
        chat_id="c1",
        workspace_id="ws",
        sender_id="system",
        sender_type=SenderType.system,
        payload={"text": "Maintenance at noon", "level": "info"},
    )

    wire = to_agent_message(msg)
    assert len(wire.parts) == 1
    assert isinstance(wire.parts[0], DataPart)
    assert wire.parts[0].metadata == {ACTIVITY_PAYLOAD_FLAG: True}

    back = from_agent_message(wire, "ws")
    assert isinstance(back, ActivityMessage)
    assert back.type == ActivityType.system_notification
    assert back.payload == {"text": "Maintenance at noon", "level": "info"}


def test_from_agent_message_unknown_activity_becomes_custom(caplog: pytest.LogCaptureFixture) -> None:
    wire = AgentMessage(
        role=AgentRole.agent,
        parts=[DataPart(data={"x": 1}, metadata={ACTIVITY_PAYLOAD_FLAG: True})],
        context_id="ctx-chat",
        metadata={"coreActivityType": "teleported"},
    )

    with caplog.at_level(logging.WARNING):
        back = from_agent_message(wire, "ws")

    assert back.type == ActivityType.custom_activity
    assert back.payload == {"x": 1}
    assert back.chat_id == "ctx-chat"
    assert "teleported" in caplog.text


def test_from_agent_message_prefers_core_chat_id_over_context() -> None:
    msg = _content(text="hi")
    wire = to_agent_message(msg, context_id="primary-ctx")

    assert wire.context_id == "primary-ctx"
    assert from_agent_message(wire, "ws").chat_id == "c1"


def test_agent_message_wire_uses_camel_case() -> None:
    wire = to_agent_message(_content(text="hi")).to_wire()
    assert {"messageId", "role", "parts", "kind", "contextId"} <= set(wire)
    assert wire["kind"] == "message"


def test_provider_conversion_joins_text_and_drops_other_parts() -> None:
    msg = _content(
        sender_type=SenderType.agent,
        sender_id="a1",
        parts=[TextPart(text="line 1"), DataPart(data={"k": "v"}), TextPart(text="line 2")],
    )

    pm = to_provider_message(msg)

    assert pm.role == ProviderRole.assistant
    assert pm.content == "line 1\nline 2"


def test_from_provider_message_builds_single_text_part() -> None:
    msg = from_provider_message(ProviderMessage(role=ProviderRole.assistant, content="done"), "c9", "ws")

    assert msg.chat_id == "c9"
    assert msg.sender_type == SenderType.agent
    assert msg.payload == [TextPart(text="done")]


def test_message_preview_is_a_bounded_prefix() -> None:
    long_text = "word " * 40
    preview = message_preview(_content(text=long_text))

    assert len(preview) == 50
    assert long_text.startswith(preview)
    assert message_preview(_content(text="  short\n text ")) == "  short\n text "
    assert message_preview(_content(parts=[FilePart(file=FileContent(name="a.txt", uri="file:///a.txt"))])) == "[file]"


def test_new_ids_are_time_ordered() -> None:
    ids = [new_id() for _ in range(200)]
    assert ids == sorted(ids)
    assert len(set(ids)) == len(ids)
