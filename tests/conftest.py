"""
Pytest configuration and shared fixtures for the quiz sync tests.
"""

import asyncio
import os
import tempfile

# Must be set before logger.py is imported anywhere
os.environ.setdefault("QUIZ_LOG_DIR", tempfile.mkdtemp(prefix="quizsync-logs-"))

import httpx
import pytest
import pytest_asyncio

import main
from config import load_settings
from context import GameContext, Identity
from host_controller import HostController
from player_controller import PlayerController
from store import StateStore
from store_client import select_store


QUESTIONS = [
    {
        "question_text": "What is 2 + 2?",
        "options": [{"id": "a", "text": "3"}, {"id": "b", "text": "4"}],
        "correct_answer": "b",
        "points": 10,
    },
    {
        "question_text": "The sky is blue",
        "question_type": "true_false",
        "correct_answer": "True",
        "points": 10,
    },
]


@pytest.fixture
def store():
    """Fresh in-memory authoritative store"""
    return StateStore()


@pytest.fixture
def quiz(store):
    """A two-question quiz with no time limits"""
    return store.create_quiz("Warm-up", "host-1", QUESTIONS)


@pytest.fixture
def settings():
    return load_settings(
        store_strategy='memory',
        poll_interval=0.02,
        auto_advance_delay=0.05,
        countdown_tick=1.0,
    )


@pytest.fixture
def host_identity():
    return Identity(user_id="host-1", display_name="Host")


@pytest.fixture
def wait_until():
    """Poll a predicate until it holds or the timeout expires"""
    async def _wait(predicate, timeout: float = 2.0, interval: float = 0.01):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError(f"Condition not met within {timeout}s")
            await asyncio.sleep(interval)
    return _wait


@pytest_asyncio.fixture
async def make_host(store, quiz, settings, host_identity):
    """Factory for hosts of ``quiz``; every host is stopped at teardown"""
    hosts = []

    async def _make(game_store=None, quiz_id=None, game_settings=None):
        context = GameContext(
            store=game_store or store,
            settings=game_settings or settings,
            identity=host_identity,
        )
        host = await HostController.create_game(context, quiz_id or quiz.id)
        hosts.append(host)
        return host

    yield _make
    for host in hosts:
        await host.stop()


@pytest_asyncio.fixture
async def make_player(store, settings):
    """Factory for player controllers; every player leaves at teardown"""
    players = []

    def _make(identity=None, game_store=None, game_settings=None):
        context = GameContext(
            store=game_store or store,
            settings=game_settings or settings,
            identity=identity,
        )
        player = PlayerController(context)
        players.append(player)
        return player

    yield _make
    for player in players:
        await player.leave()


@pytest_asyncio.fixture
async def asgi_client(store, monkeypatch):
    """httpx client wired straight into the FastAPI app, backed by ``store``"""
    monkeypatch.setattr(main, "store", store)
    transport = httpx.ASGITransport(app=main.app)
    async with httpx.AsyncClient(transport=transport, base_url="http://quizsync.test") as client:
        yield client


@pytest_asyncio.fixture(params=['memory', 'rpc', 'direct'])
async def game_store(request, store, asgi_client):
    """The same authoritative store, reached in-process or through either HTTP strategy"""
    if request.param == 'memory':
        yield store
        return
    http_store = select_store(load_settings(store_strategy=request.param), client=asgi_client)
    yield http_store
    await http_store.aclose()
