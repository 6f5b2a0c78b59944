from __future__ import annotations

from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from portal_core.main import create_app
from portal_core.services.settings.config import Settings


@pytest.fixture
def client(tmp_path: Path):
    settings = Settings(db_path=tmp_path / "api.db", llm_mode="stub")
    with TestClient(create_app(settings)) as c:
        yield c


def test_health(client: TestClient) -> None:
    r = client.get("/api/v1/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok", "api_version": "v1"}


def test_chat_lifecycle(client: TestClient) -> None:
    r = client.post("/api/v1/chats", json={"name": "Planning"})
    assert r.status_code == 200
    chat = r.json()["chat"]
    assert chat["last_message_preview"] == "No messages yet"

    r = client.post(f"/api/v1/chats/{chat['id']}/messages", json={"text": "hello there", "agent_id": "assistant"})
    assert r.status_code == 200
    reply = r.json()["message"]
    assert reply["network_state"] == "received"
    assert reply["payload"] == [{"kind": "text", "text": "Echo: hello there", "metadata": None}]

    r = client.get(f"/api/v1/chats/{chat['id']}")
    body = r.json()
    assert [m["sender_type"] for m in body["messages"]] == ["user", "agent"]
    assert body["chat"]["last_message_preview"] == "Echo: hello there"
    assert body["unread_count"] == 1

    r = client.post(f"/api/v1/chats/{chat['id']}/messages/{reply['id']}/star")
    assert r.status_code == 200 and r.json()["message"]["is_starred"] is True
    starred = client.get("/api/v1/chats/starred", params={"chat_id": chat["id"]}).json()["messages"]
    assert [m["id"] for m in starred] == [reply["id"]]

    r = client.post(f"/api/v1/chats/{chat['id']}/viewed", json={"message_id": reply["id"]})
    assert r.json()["chat"]["last_viewed_message_id"] == reply["id"]

    r = client.patch(f"/api/v1/chats/{chat['id']}", json={"name": "Renamed", "order": 1})
    assert r.json()["chat"]["name"] == "Renamed"

    assert [c["id"] for c in client.get("/api/v1/chats").json()["chats"]] == [chat["id"]]

    assert client.delete(f"/api/v1/chats/{chat['id']}").status_code == 204
    assert client.get(f"/api/v1/chats/{chat['id']}").status_code == 404


def test_unknown_chat_and_agent(client: TestClient) -> None:
    assert client.get("/api/v1/chats/missing").status_code == 404
    assert client.delete("/api/v1/chats/missing").status_code == 404
    assert client.patch("/api/v1/chats/missing", json={"name": "x"}).status_code == 404

    chat = client.post("/api/v1/chats", json={"name": "Solo"}).json()["chat"]
    r = client.post(f"/api/v1/chats/{chat['id']}/messages", json={"text": "hi", "agent_id": "nobody"})
    assert r.status_code == 404


def test_chats_survive_restart(tmp_path: Path) -> None:
    settings = Settings(db_path=tmp_path / "restart.db", llm_mode="stub")
    with TestClient(create_app(settings)) as c:
        chat_id = c.post("/api/v1/chats", json={"name": "Durable"}).json()["chat"]["id"]
        c.post(f"/api/v1/chats/{chat_id}/messages", json={"text": "persist me", "agent_id": "assistant"})

    with TestClient(create_app(settings)) as c:
        body = c.get(f"/api/v1/chats/{chat_id}").json()

    assert body["chat"]["name"] == "Durable"
    assert len(body["messages"]) == 2


def test_patch_rejects_null_for_required_fields(client: TestClient) -> None:
    chat = client.post("/api/v1/chats", json={"name": "Keep"}).json()["chat"]

    for body in ({"name": None}, {"order": None}, {"participants": None}):
        assert client.patch(f"/api/v1/chats/{chat['id']}", json=body).status_code == 422

    assert client.get(f"/api/v1/chats/{chat['id']}").json()["chat"]["name"] == "Keep"


def test_viewed_requires_a_known_message(client: TestClient) -> None:
    chat = client.post("/api/v1/chats", json={"name": "Viewed"}).json()["chat"]

    r = client.post(f"/api/v1/chats/{chat['id']}/viewed", json={"message_id": "no-such-message"})

    assert r.status_code == 404
    assert "message not found" in r.json()["detail"]
    assert client.get(f"/api/v1/chats/{chat['id']}").json()["chat"]["last_viewed_message_id"] == "0000"


def test_new_chats_default_to_the_configured_workspace(tmp_path: Path) -> None:
    settings = Settings(db_path=tmp_path / "ws.db", llm_mode="stub", workspace_id="ws-team")
    with TestClient(create_app(settings)) as c:
        default = c.post("/api/v1/chats", json={"name": "Team"}).json()["chat"]
        explicit = c.post("/api/v1/chats", json={"name": "Other", "workspace_id": "ws-other"}).json()["chat"]

    assert default["workspace_id"] == "ws-team"
    assert explicit["workspace_id"] == "ws-other"
