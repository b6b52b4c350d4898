"""Shared state store: the capability interface and the in-memory authoritative store.

Both controllers only ever talk to a ``GameStore``. ``StateStore`` keeps the
rows in process (it backs the HTTP server in ``main.py`` and can be used
directly by an embedded game); ``store_client`` provides the HTTP-backed
implementations.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Iterable, Optional

from errors import RecordNotFoundError, StoreConflictError
from logger import get_logger
from models import (
    Answer, GameSession, PlayerSession, Question, Quiz,
    generate_game_pin, generate_id, utcnow,
)

logger = get_logger(__name__)

SESSION_MUTABLE_FIELDS = frozenset({'status', 'current_question_index', 'started_at', 'ended_at'})
SESSION_MATCH_FIELDS = frozenset({'status', 'current_question_index', 'version'})

_ALLOWED_TRANSITIONS = {
    ('waiting', 'active'),
    ('active', 'completed'),
}


class GameStore(ABC):
    """Point reads and conditional point writes over quizzes, sessions and player rows.

    Point reads return ``None`` for a missing row. Conditional writes raise
    ``StoreConflictError`` when the stored row does not match the expectation.
    Transport failures surface as ``StoreUnavailableError``.
    """

    @abstractmethod
    async def get_quiz(self, quiz_id: str) -> Optional[Quiz]: ...

    @abstractmethod
    async def resolve_pin(self, game_pin: str) -> Optional[GameSession]:
        """Most recently created session of the quiz holding ``game_pin``."""

    @abstractmethod
    async def get_session(self, session_id: str) -> Optional[GameSession]: ...

    @abstractmethod
    async def list_questions(self, quiz_id: str) -> list[Question]:
        """Questions of a quiz ordered by ``order_num``."""

    @abstractmethod
    async def list_player_sessions(self, session_id: str) -> list[PlayerSession]: ...

    @abstractmethod
    async def get_player_session(self, player_session_id: str) -> Optional[PlayerSession]: ...

    @abstractmethod
    async def create_session(self, quiz_id: str, host_id: str) -> GameSession: ...

    @abstractmethod
    async def update_session(
        self,
        session_id: str,
        changes: dict[str, Any],
        expected: Optional[dict[str, Any]] = None,
    ) -> GameSession: ...

    @abstractmethod
    async def create_player_session(
        self,
        session_id: str,
        player_name: str,
        player_id: Optional[str] = None,
    ) -> PlayerSession: ...

    @abstractmethod
    async def update_player_session(
        self,
        player_session_id: str,
        answers: list[Answer],
        score: int,
        expected_version: int,
    ) -> PlayerSession: ...

    @abstractmethod
    async def assign_game_pin(self, quiz_id: str) -> str: ...

    @abstractmethod
    async def clear_game_pin(self, quiz_id: str) -> None: ...

    async def aclose(self) -> None:
        return None


class StateStore(GameStore):
    """In-memory store enforcing the session lifecycle and the one-answer-per-question rule.

    Every method runs without suspending between its read and its write, so on a
    single event loop each call is atomic.
    """

    def __init__(self) -> None:
        self.quizzes: dict[str, Quiz] = {}
        self.questions: dict[str, list[Question]] = {}  # quiz_id -> questions
        self.sessions: dict[str, GameSession] = {}
        self.player_sessions: dict[str, PlayerSession] = {}

    # --- Authoring (upstream of the live game) ---

    def create_quiz(
        self,
        title: str,
        creator_id: str,
        questions: Iterable[dict | Question] = (),
        *,
        time_limit: Optional[int] = None,
        description: Optional[str] = None,
        quiz_id: Optional[str] = None,
    ) -> Quiz:
        quiz = Quiz(
            id=quiz_id or generate_id(),
            title=title,
            description=description,
            creator_id=creator_id,
            time_limit=time_limit,
        )
        self.quizzes[quiz.id] = quiz
        self.questions[quiz.id] = []
        for q in questions:
            self.add_question(quiz.id, q)
        logger.info(f"📝 Quiz created: {quiz.id} '{title}' ({len(self.questions[quiz.id])} questions)")
        return quiz.model_copy(deep=True)

    def add_question(self, quiz_id: str, question: dict | Question) -> Question:
        if quiz_id not in self.quizzes:
            raise RecordNotFoundError(f"Quiz {quiz_id} not found")
        existing = self.questions[quiz_id]
        if isinstance(question, Question):
            data = question.model_dump()
        else:
            data = dict(question)
        data.setdefault('id', generate_id())
        data.setdefault('order_num', len(existing))
        data['quiz_id'] = quiz_id
        stored = Question.model_validate(data)
        existing.append(stored)
        existing.sort(key=lambda q: q.order_num)
        return stored.model_copy(deep=True)

    # --- Reads ---

    async def get_quiz(self, quiz_id: str) -> Optional[Quiz]:
        quiz = self.quizzes.get(quiz_id)
        return quiz.model_copy(deep=True) if quiz else None

    async def resolve_pin(self, game_pin: str) -> Optional[GameSession]:
        quiz = next((q for q in self.quizzes.values() if q.game_pin == game_pin), None)
        if quiz is None:
            return None
        sessions = self.list_sessions(quiz.id)
        return sessions[0] if sessions else None

    def list_sessions(self, quiz_id: str, status: Optional[str] = None) -> list[GameSession]:
        """Sessions of a quiz, newest first"""
        matches = [
            (i, s) for i, s in enumerate(self.sessions.values())
            if s.quiz_id == quiz_id and (status is None or s.status == status)
        ]
        # Insertion order breaks created_at ties
        matches.sort(key=lambda pair: (pair[1].created_at, pair[0]), reverse=True)
        return [s.model_copy(deep=True) for _, s in matches]

    async def get_session(self, session_id: str) -> Optional[GameSession]:
        session = self.sessions.get(session_id)
        return session.model_copy(deep=True) if session else None

    async def list_questions(self, quiz_id: str) -> list[Question]:
        return [q.model_copy(deep=True) for q in self.questions.get(quiz_id, [])]

    async def list_player_sessions(self, session_id: str) -> list[PlayerSession]:
        players = [p for p in self.player_sessions.values() if p.game_session_id == session_id]
        players.sort(key=lambda p: p.created_at)
        return [p.model_copy(deep=True) for p in players]

    async def get_player_session(self, player_session_id: str) -> Optional[PlayerSession]:
        player = self.player_sessions.get(player_session_id)
        return player.model_copy(deep=True) if player else None

    # --- Writes ---

    async def create_session(self, quiz_id: str, host_id: str) -> GameSession:
        if quiz_id not in self.quizzes:
            raise RecordNotFoundError(f"Quiz {quiz_id} not found")
        session = GameSession(id=generate_id(), quiz_id=quiz_id, host_id=host_id)
        self.sessions[session.id] = session
        logger.info(f"🆕 Game session created: {session.id} for quiz {quiz_id}")
        return session.model_copy(deep=True)

    async def update_session(
        self,
        session_id: str,
        changes: dict[str, Any],
        expected: Optional[dict[str, Any]] = None,
    ) -> GameSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise RecordNotFoundError(f"Game session {session_id} not found")

        unknown = set(changes) - SESSION_MUTABLE_FIELDS
        if unknown:
            raise ValueError(f"Cannot update session fields: {sorted(unknown)}")
        unknown = set(expected or {}) - SESSION_MATCH_FIELDS
        if unknown:
            raise ValueError(f"Cannot match on session fields: {sorted(unknown)}")

        for field_name, value in (expected or {}).items():
            if getattr(session, field_name) != value:
                raise StoreConflictError(
                    f"Game session {session_id}: expected {field_name}={value!r}, "
                    f"found {getattr(session, field_name)!r}"
                )

        if session.status == 'completed':
            raise StoreConflictError(f"Game session {session_id} is completed")

        # Validate the merged row so bad values never land in the store
        updated = GameSession.model_validate({
            **session.model_dump(),
            **changes,
            'version': session.version + 1,
            'updated_at': utcnow(),
        })
        self._check_session_transition(session, updated)

        self.sessions[session_id] = updated
        return updated.model_copy(deep=True)

    def _check_session_transition(self, before: GameSession, after: GameSession) -> None:
        if before.status != after.status and (before.status, after.status) not in _ALLOWED_TRANSITIONS:
            raise StoreConflictError(f"Illegal status transition {before.status} -> {after.status}")

        if after.status != 'active':
            return

        question_count = len(self.questions.get(after.quiz_id, []))
        if not 0 <= after.current_question_index <= question_count - 1:
            raise StoreConflictError(
                f"Question index {after.current_question_index} out of range (0..{question_count - 1})"
            )
        if before.status == 'waiting' and after.current_question_index != 0:
            raise StoreConflictError("A session must start at question 0")
        if before.status == 'active' and after.current_question_index < before.current_question_index:
            raise StoreConflictError(
                f"Question index cannot move backwards "
                f"({before.current_question_index} -> {after.current_question_index})"
            )

    async def create_player_session(
        self,
        session_id: str,
        player_name: str,
        player_id: Optional[str] = None,
    ) -> PlayerSession:
        session = self.sessions.get(session_id)
        if session is None:
            raise RecordNotFoundError(f"Game session {session_id} not found")
        if session.status == 'completed':
            raise StoreConflictError(f"Game session {session_id} is completed")

        # Authenticated players get one row per session; anonymous joins always insert
        if player_id is not None:
            for existing in self.player_sessions.values():
                if existing.game_session_id == session_id and existing.player_id == player_id:
                    return existing.model_copy(deep=True)

        player = PlayerSession(
            id=generate_id(),
            game_session_id=session_id,
            player_id=player_id,
            player_name=player_name,
        )
        self.player_sessions[player.id] = player
        return player.model_copy(deep=True)

    async def update_player_session(
        self,
        player_session_id: str,
        answers: list[Answer],
        score: int,
        expected_version: int,
    ) -> PlayerSession:
        player = self.player_sessions.get(player_session_id)
        if player is None:
            raise RecordNotFoundError(f"Player session {player_session_id} not found")
        if player.version != expected_version:
            raise StoreConflictError(
                f"Player session {player_session_id}: expected version {expected_version}, "
                f"found {player.version}"
            )

        session = self.sessions.get(player.game_session_id)
        if session is not None and session.status == 'completed':
            raise StoreConflictError(f"Game session {session.id} is completed")

        seen_ids: set[str] = set()
        seen_indexes: set[int] = set()
        for answer in answers:
            if answer.question_id in seen_ids or answer.question_index in seen_indexes:
                raise StoreConflictError(
                    f"Player session {player_session_id} already answered question {answer.question_index}"
                )
            seen_ids.add(answer.question_id)
            seen_indexes.add(answer.question_index)

        updated = player.model_copy(update={
            'answers': [a.model_copy() for a in answers],
            'score': score,
            'version': player.version + 1,
            'updated_at': utcnow(),
        })
        self.player_sessions[player_session_id] = updated
        return updated.model_copy(deep=True)

    async def assign_game_pin(self, quiz_id: str) -> str:
        quiz = self.quizzes.get(quiz_id)
        if quiz is None:
            raise RecordNotFoundError(f"Quiz {quiz_id} not found")
        if quiz.game_pin:
            return quiz.game_pin

        taken = {q.game_pin for q in self.quizzes.values() if q.game_pin}
        pin = generate_game_pin()
        while pin in taken:
            pin = generate_game_pin()
        quiz.game_pin = pin
        logger.info(f"🔢 Game PIN {pin} assigned to quiz {quiz_id}")
        return pin

    async def clear_game_pin(self, quiz_id: str) -> None:
        quiz = self.quizzes.get(quiz_id)
        if quiz is None:
            raise RecordNotFoundError(f"Quiz {quiz_id} not found")
        quiz.game_pin = None
