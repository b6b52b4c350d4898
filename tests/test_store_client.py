"""
Tests for the HTTP store strategies, run in-process against the FastAPI app.
"""

import httpx
import pytest

from config import load_settings
from errors import RecordNotFoundError, StoreConflictError, StoreError, StoreUnavailableError
from models import Answer, utcnow
from store import StateStore
from store_client import DirectQueryStore, RpcBackedStore, select_store


class TestSelectStore:

    def test_strategy_picks_implementation(self):
        assert isinstance(select_store(load_settings(store_strategy='memory')), StateStore)
        assert isinstance(select_store(load_settings(store_strategy='rpc')), RpcBackedStore)
        assert isinstance(select_store(load_settings(store_strategy='direct')), DirectQueryStore)


class TestHttpStores:
    """Every test here runs once per strategy (memory, rpc, direct)."""

    @pytest.mark.asyncio
    async def test_missing_rows_read_as_none(self, game_store):
        assert await game_store.get_quiz("missing") is None
        assert await game_store.get_session("missing") is None
        assert await game_store.get_player_session("missing") is None
        assert await game_store.resolve_pin("000000") is None

    @pytest.mark.asyncio
    async def test_session_lifecycle_round_trip(self, game_store, quiz):
        pin = await game_store.assign_game_pin(quiz.id)
        session = await game_store.create_session(quiz.id, "host-1")

        resolved = await game_store.resolve_pin(pin)
        assert resolved.id == session.id

        started = await game_store.update_session(
            session.id,
            {'status': 'active', 'started_at': utcnow(), 'current_question_index': 0},
            expected={'status': 'waiting'},
        )
        assert started.status == 'active'
        assert started.started_at is not None

        with pytest.raises(StoreConflictError):
            await game_store.update_session(session.id, {'status': 'active'}, expected={'status': 'waiting'})

        questions = await game_store.list_questions(quiz.id)
        assert [q.question_text for q in questions] == ["What is 2 + 2?", "The sky is blue"]

    @pytest.mark.asyncio
    async def test_player_rows_compare_and_swap(self, game_store, quiz):
        session = await game_store.create_session(quiz.id, "host-1")
        player = await game_store.create_player_session(session.id, "Alice", "user-a")
        again = await game_store.create_player_session(session.id, "Alice", "user-a")
        assert again.id == player.id

        answer = Answer(question_id="q", question_index=0, answer="b", is_correct=True, points=10)
        updated = await game_store.update_player_session(player.id, [answer], 10, player.version)
        assert updated.score == 10
        assert updated.answers[0].answer == "b"

        with pytest.raises(StoreConflictError):
            await game_store.update_player_session(player.id, [answer], 10, player.version)

        roster = await game_store.list_player_sessions(session.id)
        assert [p.id for p in roster] == [player.id]

    @pytest.mark.asyncio
    async def test_cleared_pin(self, game_store, quiz):
        pin = await game_store.assign_game_pin(quiz.id)
        await game_store.create_session(quiz.id, "host-1")
        await game_store.clear_game_pin(quiz.id)
        assert await game_store.resolve_pin(pin) is None
        assert (await game_store.get_quiz(quiz.id)).game_pin is None


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler), base_url="http://quizsync.test")


class TestTransportErrors:

    @pytest.mark.asyncio
    @pytest.mark.parametrize("store_cls", [RpcBackedStore, DirectQueryStore])
    async def test_network_failure_is_unavailable(self, store_cls):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with _client(handler) as client:
            store = store_cls("http://quizsync.test", client=client)
            with pytest.raises(StoreUnavailableError):
                await store.get_session("s1")

    @pytest.mark.asyncio
    async def test_server_error_is_unavailable(self):
        async with _client(lambda request: httpx.Response(503, json={"detail": "down"})) as client:
            store = DirectQueryStore("http://quizsync.test", client=client)
            with pytest.raises(StoreUnavailableError, match="down"):
                await store.list_player_sessions("s1")

    @pytest.mark.asyncio
    async def test_not_found_on_write(self):
        async with _client(lambda request: httpx.Response(404, json={"detail": "no such row"})) as client:
            store = DirectQueryStore("http://quizsync.test", client=client)
            with pytest.raises(RecordNotFoundError):
                await store.update_player_session("p1", [], 0, 0)

    @pytest.mark.asyncio
    async def test_bad_request_is_store_error(self):
        async with _client(lambda request: httpx.Response(400, json={"detail": "bad field"})) as client:
            store = RpcBackedStore("http://quizsync.test", client=client)
            with pytest.raises(StoreError, match="bad field"):
                await store.update_session("s1", {'host_id': 'x'})


class TestServerEndpoints:

    @pytest.mark.asyncio
    async def test_health_and_request_id(self, asgi_client):
        response = await asgi_client.get("/health", headers={"X-Request-Id": "abc123"})
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}
        assert response.headers["X-Request-Id"] == "abc123"

    @pytest.mark.asyncio
    async def test_create_quiz_and_play(self, asgi_client):
        response = await asgi_client.post("/api/quizzes", json={
            "title": "Seeded",
            "creator_id": "host-9",
            "questions": [{"question_text": "Yes?", "correct_answer": "True", "question_type": "true_false"}],
        })
        assert response.status_code == 200
        quiz_id = response.json()["id"]

        questions = (await asgi_client.get(f"/api/quizzes/{quiz_id}/questions")).json()
        assert questions[0]["points"] == 10

        session = (await asgi_client.post("/api/game_sessions", json={"quiz_id": quiz_id, "host_id": "host-9"})).json()
        patch = await asgi_client.patch(f"/api/game_sessions/{session['id']}", json={
            "changes": {"status": "completed"},
        })
        assert patch.status_code == 409

    @pytest.mark.asyncio
    async def test_unknown_session_is_404(self, asgi_client):
        response = await asgi_client.get("/api/game_sessions/missing")
        assert response.status_code == 404
