"""Shared pytest fixtures."""

from __future__ import annotations

from pathlib import Path

import pytest

from geminichat.engine.chat_engine import ChatEngine
from geminichat.engine.events import EventBus
from geminichat.engine.session_store import SessionRepository
from geminichat.services.settings import Settings
from tests.helpers import ScriptedAdapter


@pytest.fixture
def bus() -> EventBus:
    return EventBus()


@pytest.fixture
def sessions_path(tmp_path: Path) -> Path:
    return tmp_path / "sessions.json"


@pytest.fixture
def settings() -> Settings:
    return Settings(api_key="test-key", persist_debounce_seconds=0.0)


@pytest.fixture
def adapter() -> ScriptedAdapter:
    return ScriptedAdapter()


@pytest.fixture
def engine(settings: Settings, adapter: ScriptedAdapter, sessions_path: Path) -> ChatEngine:
    chat_engine = ChatEngine(settings, adapter, repository=SessionRepository(sessions_path))
    chat_engine.load()
    return chat_engine
