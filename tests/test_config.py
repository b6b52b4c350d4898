"""
Tests for settings loading and the explicit game context.
"""

import json
import logging

import pydantic
import pytest

from config import load_settings
from context import GameContext, Identity
from logger import LOG_DIR, log_game_event
from store import StateStore


class TestLoadSettings:

    def test_defaults(self, monkeypatch):
        for name in ("QUIZ_POLL_INTERVAL", "QUIZ_STORE_STRATEGY", "QUIZ_DEFAULT_TIME_LIMIT"):
            monkeypatch.delenv(name, raising=False)
        settings = load_settings()
        assert settings.poll_interval == 1.0
        assert settings.store_strategy == 'rpc'
        assert settings.default_time_limit == 20
        assert settings.default_points == 10

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("QUIZ_POLL_INTERVAL", "0.5")
        monkeypatch.setenv("QUIZ_STORE_STRATEGY", "direct")
        monkeypatch.setenv("QUIZ_CAS_RETRIES", "5")
        settings = load_settings()
        assert settings.poll_interval == 0.5
        assert settings.store_strategy == 'direct'
        assert settings.cas_retries == 5

    def test_keyword_overrides_win(self, monkeypatch):
        monkeypatch.setenv("QUIZ_POLL_INTERVAL", "0.5")
        assert load_settings(poll_interval=2.0).poll_interval == 2.0

    @pytest.mark.parametrize("name, value", [
        ("QUIZ_STORE_STRATEGY", "carrier-pigeon"),
        ("QUIZ_POLL_INTERVAL", "0"),
        ("QUIZ_CAS_RETRIES", "0"),
    ])
    def test_invalid_values(self, monkeypatch, name, value):
        monkeypatch.setenv(name, value)
        with pytest.raises(pydantic.ValidationError):
            load_settings()


class TestGameContext:

    def test_anonymous_by_default(self):
        context = GameContext(store=StateStore(), settings=load_settings())
        assert context.identity is None
        assert context.user_id is None

    def test_with_identity_shares_store_and_settings(self):
        context = GameContext(store=StateStore(), settings=load_settings())
        signed_in = context.with_identity(Identity(user_id="user-a", display_name="Ada"))
        assert signed_in.user_id == "user-a"
        assert signed_in.store is context.store
        assert signed_in.settings is context.settings
        assert context.identity is None

    def test_building_a_context_initialises_logging(self, monkeypatch):
        calls = []
        monkeypatch.setattr("context.setup_logging", lambda: calls.append(True))
        GameContext(store=StateStore(), settings=load_settings())
        assert calls == [True]

    def test_client_game_events_reach_the_event_log(self):
        context = GameContext(store=StateStore(), settings=load_settings())
        assert logging.getLogger("game.events").handlers

        log_game_event("client_check", session_id="s-ctx", data={"origin": context.settings.store_strategy})
        lines = (LOG_DIR / "game_events.jsonl").read_text(encoding="utf-8").splitlines()
        events = [json.loads(line) for line in lines]
        assert any(e["event"] == "client_check" and e["session"] == "s-ctx" for e in events)
