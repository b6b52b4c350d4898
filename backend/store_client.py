"""HTTP-backed ``GameStore`` implementations.

``DirectQueryStore`` talks to the table-style endpoints (several point queries
per operation, like a PostgREST client). ``RpcBackedStore`` calls one server
function per operation. Which one a client uses is a configuration choice made
by ``select_store``, never a runtime fallback.
"""

from __future__ import annotations

from typing import Any, Optional

import httpx

from config import SyncSettings
from errors import RecordNotFoundError, StoreConflictError, StoreError, StoreUnavailableError
from logger import get_logger
from models import Answer, GameSession, PlayerSession, Question, Quiz
from store import GameStore, StateStore

logger = get_logger(__name__)


class _HttpStore(GameStore):
    """Shared transport: one pooled AsyncClient, status codes mapped onto store errors."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(base_url=base_url.rstrip("/"), timeout=timeout)

    async def aclose(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: Optional[dict[str, Any]] = None,
        allow_missing: bool = False,
    ) -> Any:
        try:
            response = await self._client.request(method, path, json=json, params=params)
        except httpx.HTTPError as exc:
            logger.warning(f"🔌 Store request failed: {method} {path}: {type(exc).__name__}: {exc}")
            raise StoreUnavailableError(f"{method} {path} failed: {exc}") from exc

        if response.status_code == 404 and allow_missing:
            return None

        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = _error_detail(response)
            status = exc.response.status_code
            if status == 409:
                raise StoreConflictError(detail) from exc
            if status == 404:
                raise RecordNotFoundError(detail) from exc
            logger.error(
                "Store %s failed: path=%s status=%s body=%s",
                method,
                path,
                status,
                response.text,
            )
            if status >= 500:
                raise StoreUnavailableError(detail) from exc
            raise StoreError(detail) from exc

        if not response.content:
            return None
        return response.json()


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict) and "detail" in body:
        return str(body["detail"])
    return response.text


def _dump_answers(answers: list[Answer]) -> list[dict]:
    return [a.model_dump(mode="json") for a in answers]


def _json_changes(changes: dict[str, Any]) -> dict[str, Any]:
    return {k: v.isoformat() if hasattr(v, "isoformat") else v for k, v in changes.items()}


class DirectQueryStore(_HttpStore):
    """Table-style queries against ``/api/...``."""

    async def get_quiz(self, quiz_id: str) -> Optional[Quiz]:
        data = await self._request("GET", f"/api/quizzes/{quiz_id}", allow_missing=True)
        return Quiz.model_validate(data) if data else None

    async def resolve_pin(self, game_pin: str) -> Optional[GameSession]:
        quizzes = await self._request("GET", "/api/quizzes", params={"game_pin": game_pin})
        if not quizzes:
            return None
        sessions = await self._request(
            "GET", "/api/game_sessions", params={"quiz_id": quizzes[0]["id"], "limit": 1}
        )
        return GameSession.model_validate(sessions[0]) if sessions else None

    async def get_session(self, session_id: str) -> Optional[GameSession]:
        data = await self._request("GET", f"/api/game_sessions/{session_id}", allow_missing=True)
        return GameSession.model_validate(data) if data else None

    async def list_questions(self, quiz_id: str) -> list[Question]:
        data = await self._request("GET", f"/api/quizzes/{quiz_id}/questions")
        return sorted((Question.model_validate(q) for q in data or []), key=lambda q: q.order_num)

    async def list_player_sessions(self, session_id: str) -> list[PlayerSession]:
        data = await self._request("GET", f"/api/game_sessions/{session_id}/players")
        return [PlayerSession.model_validate(p) for p in data or []]

    async def get_player_session(self, player_session_id: str) -> Optional[PlayerSession]:
        data = await self._request("GET", f"/api/player_sessions/{player_session_id}", allow_missing=True)
        return PlayerSession.model_validate(data) if data else None

    async def create_session(self, quiz_id: str, host_id: str) -> GameSession:
        data = await self._request("POST", "/api/game_sessions", json={"quiz_id": quiz_id, "host_id": host_id})
        return GameSession.model_validate(data)

    async def update_session(
        self,
        session_id: str,
        changes: dict[str, Any],
        expected: Optional[dict[str, Any]] = None,
    ) -> GameSession:
        data = await self._request(
            "PATCH",
            f"/api/game_sessions/{session_id}",
            json={"changes": _json_changes(changes), "expected": expected},
        )
        return GameSession.model_validate(data)

    async def create_player_session(
        self,
        session_id: str,
        player_name: str,
        player_id: Optional[str] = None,
    ) -> PlayerSession:
        data = await self._request("POST", "/api/player_sessions", json={
            "game_session_id": session_id,
            "player_name": player_name,
            "player_id": player_id,
        })
        return PlayerSession.model_validate(data)

    async def update_player_session(
        self,
        player_session_id: str,
        answers: list[Answer],
        score: int,
        expected_version: int,
    ) -> PlayerSession:
        data = await self._request("PATCH", f"/api/player_sessions/{player_session_id}", json={
            "answers": _dump_answers(answers),
            "score": score,
            "expected_version": expected_version,
        })
        return PlayerSession.model_validate(data)

    async def assign_game_pin(self, quiz_id: str) -> str:
        data = await self._request("POST", f"/api/quizzes/{quiz_id}/pin")
        return data["game_pin"]

    async def clear_game_pin(self, quiz_id: str) -> None:
        await self._request("DELETE", f"/api/quizzes/{quiz_id}/pin")


class RpcBackedStore(_HttpStore):
    """One server-side function call per operation, via ``/rpc/<function>``."""

    async def _rpc(self, function: str, **args: Any) -> Any:
        return await self._request("POST", f"/rpc/{function}", json=args)

    async def get_quiz(self, quiz_id: str) -> Optional[Quiz]:
        data = await self._rpc("get_quiz", quiz_id=quiz_id)
        return Quiz.model_validate(data) if data else None

    async def resolve_pin(self, game_pin: str) -> Optional[GameSession]:
        data = await self._rpc("resolve_game_pin", p_game_pin=game_pin)
        return GameSession.model_validate(data) if data else None

    async def get_session(self, session_id: str) -> Optional[GameSession]:
        data = await self._rpc("get_game_session_details", session_id=session_id)
        return GameSession.model_validate(data) if data else None

    async def list_questions(self, quiz_id: str) -> list[Question]:
        data = await self._rpc("get_quiz_questions", quiz_id=quiz_id)
        return [Question.model_validate(q) for q in data or []]

    async def list_player_sessions(self, session_id: str) -> list[PlayerSession]:
        data = await self._rpc("get_player_sessions_for_game", p_game_session_id=session_id)
        return [PlayerSession.model_validate(p) for p in data or []]

    async def get_player_session(self, player_session_id: str) -> Optional[PlayerSession]:
        data = await self._rpc("get_player_session", p_player_session_id=player_session_id)
        return PlayerSession.model_validate(data) if data else None

    async def create_session(self, quiz_id: str, host_id: str) -> GameSession:
        data = await self._rpc("create_game_session", p_quiz_id=quiz_id, p_host_id=host_id)
        return GameSession.model_validate(data)

    async def update_session(
        self,
        session_id: str,
        changes: dict[str, Any],
        expected: Optional[dict[str, Any]] = None,
    ) -> GameSession:
        data = await self._rpc(
            "update_game_session",
            p_session_id=session_id,
            p_changes=_json_changes(changes),
            p_expected=expected,
        )
        return GameSession.model_validate(data)

    async def create_player_session(
        self,
        session_id: str,
        player_name: str,
        player_id: Optional[str] = None,
    ) -> PlayerSession:
        data = await self._rpc(
            "create_player_session",
            p_game_session_id=session_id,
            p_player_name=player_name,
            p_player_id=player_id,
        )
        return PlayerSession.model_validate(data)

    async def update_player_session(
        self,
        player_session_id: str,
        answers: list[Answer],
        score: int,
        expected_version: int,
    ) -> PlayerSession:
        data = await self._rpc(
            "update_player_answers",
            p_player_session_id=player_session_id,
            p_answers=_dump_answers(answers),
            p_score=score,
            p_expected_version=expected_version,
        )
        return PlayerSession.model_validate(data)

    async def assign_game_pin(self, quiz_id: str) -> str:
        data = await self._rpc("generate_unique_game_pin", quiz_id=quiz_id)
        return data["game_pin"]

    async def clear_game_pin(self, quiz_id: str) -> None:
        await self._rpc("clear_game_pin", quiz_id=quiz_id)


def select_store(settings: SyncSettings, *, client: Optional[httpx.AsyncClient] = None) -> GameStore:
    """Pick the store implementation named by ``settings.store_strategy``"""
    if settings.store_strategy == 'memory':
        return StateStore()
    store_cls = RpcBackedStore if settings.store_strategy == 'rpc' else DirectQueryStore
    logger.info(f"🗄️ Using {store_cls.__name__} against {settings.store_url}")
    return store_cls(settings.store_url, timeout=settings.request_timeout, client=client)
