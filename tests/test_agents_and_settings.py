from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

from portal_core.services.agents.registry import AgentDirectory
from portal_core.services.agents.registry_models import AgentConfig
from portal_core.services.settings.config import DurabilityPolicy, Settings, StoreBackend


def test_registry_rejects_duplicate_ids() -> None:
    with pytest.raises(ValueError, match="Duplicate agent id"):
        AgentDirectory(
            [
                AgentConfig(id="a", name="A", model="m"),
                AgentConfig(id="a", name="A again", model="m"),
            ]
        )


def test_directory_from_file(tmp_path: Path) -> None:
    path = tmp_path / "agents.json"
    path.write_text(
        json.dumps(
            [
                {"id": "a", "name": "A", "provider": "stub", "model": "m"},
                {"id": "b", "name": "B", "model": "m", "is_retired": True},
            ]
        ),
        encoding="utf-8",
    )

    directory = AgentDirectory.from_file(path)

    assert [a.id for a in directory.list_agents()] == ["a", "b"]
    assert directory.find_enabled("a") is not None
    assert directory.find_enabled("b") is None
    assert directory.get_agent("b").is_retired
    with pytest.raises(KeyError):
        directory.get_agent("zzz")


def test_directory_from_missing_file(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        AgentDirectory.from_file(tmp_path / "nope.json")


def test_settings_from_env(monkeypatch: Any, tmp_path: Path) -> None:
    monkeypatch.setenv("PORTAL_STORE_BACKEND", "file")
    monkeypatch.setenv("PORTAL_FILE_STORE_PATH", str(tmp_path / "s.json"))
    monkeypatch.setenv("PORTAL_DURABILITY", "write_ahead")
    monkeypatch.setenv("PORTAL_HISTORY_LIMIT", "5")
    monkeypatch.delenv("PORTAL_AGENTS_PATH", raising=False)

    settings = Settings.from_env()

    assert settings.store_backend is StoreBackend.file
    assert settings.file_store_path == tmp_path / "s.json"
    assert settings.durability is DurabilityPolicy.write_ahead
    assert settings.history_limit == 5
    assert settings.agents_path is None


def test_settings_reject_bad_history_limit(monkeypatch: Any) -> None:
    monkeypatch.setenv("PORTAL_HISTORY_LIMIT", "lots")
    with pytest.raises(ValueError):
        Settings.from_env()


def test_shipped_agent_directory_is_valid() -> None:
    path = Path(__file__).resolve().parents[1] / "service_directory" / "agents.json"

    directory = AgentDirectory.from_file(path)

    assert directory.find_enabled("assistant") is not None
    assert {a.id for a in directory.list_agents()} == {"assistant", "gpt"}
