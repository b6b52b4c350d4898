"""Player side of a live game: join, follow the host, answer once per question."""

from __future__ import annotations

import asyncio
import re
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from context import GameContext
from convergence import (
    SessionTracker, TransitionKind, detect_transitions, find_own_answer, resolve_time_limit,
)
from countdown import Countdown
from errors import (
    AlreadyAnsweredError, DisplayNameRequiredError, GameNotActiveError, InvalidPinError,
    QuizSyncError, RecordNotFoundError, SessionNotJoinableError, StateConflictError,
    StoreConflictError, StoreError,
)
from logger import get_sync_logger, log_game_event, set_request_id
from models import (
    Answer, GameSession, LeaderboardEntry, PlayerSession, Question, QuestionOption, Quiz,
    build_leaderboard,
)
from poller import Poller

logger = get_sync_logger("player")

_PIN_RE = re.compile(r"^\d{6}$")


class PlayerQuestion(BaseModel):
    """What a player is allowed to see of a question (no correct answer)"""
    question_index: int
    question_id: str
    question_text: str
    question_type: str
    options: list[QuestionOption]
    points: int

    @classmethod
    def from_question(cls, question: Question, index: int) -> "PlayerQuestion":
        return cls(
            question_index=index,
            question_id=question.id,
            question_text=question.question_text,
            question_type=question.question_type,
            options=question.choices(),
            points=question.points,
        )


class PlayerView(BaseModel):
    session: Optional[GameSession] = None
    quiz: Optional[Quiz] = None
    player: Optional[PlayerSession] = None
    question_count: int = 0
    question: Optional[PlayerQuestion] = None
    selected_answer: Optional[str] = None
    has_answered: bool = False
    score: int = 0
    roster: list[PlayerSession] = []
    time_left: Optional[int] = None
    leaderboard: list[LeaderboardEntry] = []
    game_ended: bool = False
    last_error: Optional[str] = None
    poll_error: Optional[str] = None
    last_polled: Optional[datetime] = None


class PlayerController:
    """One player's seat in a game session.

    The player only ever writes its own row. Answers are appended with a
    conditional update on the row's ``version`` so a background poll refreshing
    the same row can never cause a lost score update.
    """

    def __init__(self, context: GameContext) -> None:
        self.context = context
        self.store = context.store
        self.settings = context.settings

        self.session_id: Optional[str] = None
        self.tracker = SessionTracker()
        self.poller = Poller("player")
        self.countdown = Countdown(self._on_time_up, tick=self.settings.countdown_tick)

        self.quiz: Optional[Quiz] = None
        self.questions: list[Question] = []
        self.player: Optional[PlayerSession] = None
        self.players: list[PlayerSession] = []
        self.current_question_index = 0
        self.show_question = False
        self.selected_answer: Optional[str] = None
        self.has_answered = False
        self.game_ended = False
        self.last_error: Optional[Exception] = None

        self._submit_lock = asyncio.Lock()
        self._started = False
        self._closed = False

    # --- Lifecycle ---

    async def join(self, join_code: str, display_name: str = "") -> PlayerSession:
        """Resolve a PIN (or session id) and take a seat in the session"""
        code = (join_code or "").strip()
        name = (display_name or "").strip()
        if not name and self.context.identity is not None:
            name = self.context.identity.display_name.strip()
        if not name:
            raise self._reject(DisplayNameRequiredError("Enter a name to join"))
        if not code:
            raise self._reject(InvalidPinError("Enter a game PIN"))

        session = await self._resolve(code)
        if session is None:
            raise self._reject(InvalidPinError(f"No game found for PIN {code}"))
        if session.status == 'completed':
            raise self._reject(SessionNotJoinableError("This game has already ended"))

        user_id = self.context.user_id
        player = None
        if user_id is not None:
            roster = await self.store.list_player_sessions(session.id)
            player = next((p for p in roster if p.player_id == user_id), None)
            if player is not None:
                logger.info(f"🔁 {user_id} rejoined session {session.id} as {player.id}")

        if player is None:
            try:
                player = await self.store.create_player_session(session.id, name, user_id)
            except StoreConflictError as exc:
                raise self._reject(SessionNotJoinableError(f"Cannot join session {session.id}: {exc}")) from exc
            logger.info(f"👤 {name} joined session {session.id} as {player.id}")
            log_game_event("player_joined", session_id=session.id, player_id=player.id, data={
                "player_name": name,
                "authenticated": user_id is not None,
            })

        await self._enter(session, player)
        return player

    async def rehydrate(self, player_session_id: str) -> PlayerSession:
        """Resume an existing participation, e.g. after a page reload"""
        player = await self.store.get_player_session(player_session_id)
        if player is None:
            raise self._reject(RecordNotFoundError(f"Player session {player_session_id} not found"))
        session = await self.store.get_session(player.game_session_id)
        if session is None:
            raise self._reject(RecordNotFoundError(f"Game session {player.game_session_id} not found"))
        logger.info(f"♻️ Rehydrating player {player.id} in session {session.id}")
        await self._enter(session, player)
        return player

    def start(self) -> None:
        if self.session_id is None:
            raise RuntimeError("join() or rehydrate() before start()")
        self._closed = False
        self._started = True
        self.poller.start(self._poll, self.settings.poll_interval, run_immediately=True)

    async def leave(self) -> None:
        """Stop polling and the countdown; results of calls still in flight are dropped"""
        self._closed = True
        self.poller.stop()
        self.countdown.cancel()
        await self.poller.wait_closed()

    async def refresh(self) -> None:
        if self._started:
            await self.poller.poll_now()
            return
        try:
            await self._poll()
        except Exception as exc:
            logger.warning(f"⚠️ Player refresh failed: {type(exc).__name__}: {exc}")

    # --- State accessors ---

    @property
    def session(self) -> Optional[GameSession]:
        return self.tracker.applied

    @property
    def current_question(self) -> Optional[Question]:
        if self.show_question and 0 <= self.current_question_index < len(self.questions):
            return self.questions[self.current_question_index]
        return None

    @property
    def score(self) -> int:
        return self.player.score if self.player else 0

    def view(self) -> PlayerView:
        question = self.current_question
        own_id = self.player.id if self.player else None
        return PlayerView(
            session=self.session,
            quiz=self.quiz,
            player=self.player,
            question_count=len(self.questions),
            question=PlayerQuestion.from_question(question, self.current_question_index) if question else None,
            selected_answer=self.selected_answer,
            has_answered=self.has_answered,
            score=self.score,
            roster=[p for p in self.players if p.id != own_id],
            time_left=self.countdown.remaining,
            leaderboard=build_leaderboard(self.players) if self.game_ended else [],
            game_ended=self.game_ended,
            last_error=str(self.last_error) if self.last_error else None,
            poll_error=str(self.poller.error) if self.poller.error else None,
            last_polled=self.poller.last_polled,
        )

    # --- Actions ---

    def select_answer(self, option_id: str) -> None:
        """Record a tentative choice; it is submitted on time-up if not submitted before"""
        question = self.current_question
        if question is None or self.game_ended:
            raise self._reject(GameNotActiveError("No question is open"))
        if self.has_answered:
            raise self._reject(AlreadyAnsweredError("You already answered this question"))
        if question.find_option(option_id) is None:
            raise ValueError(f"{option_id!r} is not an option of question {self.current_question_index + 1}")
        self.selected_answer = option_id

    async def submit_answer(self, option_id: Optional[str] = None) -> PlayerSession:
        async with self._submit_lock:
            return await self._submit(option_id)

    async def _submit(self, option_id: Optional[str]) -> PlayerSession:
        player = self.player
        if player is None:
            raise RuntimeError("join() or rehydrate() before submitting answers")

        session = self.session
        question = self.current_question
        if session is None or session.status != 'active' or question is None or self.game_ended:
            raise await self._conflict("The game is not running", GameNotActiveError)
        index = self.current_question_index
        if self.has_answered or find_own_answer(player, question, index) is not None:
            raise await self._conflict("You already answered this question", AlreadyAnsweredError)

        submitted = option_id if option_id is not None else self.selected_answer
        if submitted is None:
            raise ValueError("No answer selected")
        if question.find_option(submitted) is None:
            raise ValueError(f"{submitted!r} is not an option of question {index + 1}")

        await self._check_question_open(index)

        is_correct = question.is_correct(submitted)
        points = question.points if is_correct else 0

        updated = None
        for attempt in range(1, self.settings.cas_retries + 1):
            latest = await self.store.get_player_session(player.id)
            if latest is None:
                raise self._reject(RecordNotFoundError(f"Player session {player.id} not found"))
            if find_own_answer(latest, question, index) is not None:
                self._adopt_own_row(latest)
                raise await self._conflict("You already answered this question", AlreadyAnsweredError)

            answer = Answer(
                question_id=question.id,
                question_index=index,
                answer=submitted,
                is_correct=is_correct,
                points=points,
            )
            try:
                updated = await self.store.update_player_session(
                    player.id,
                    [*latest.answers, answer],
                    latest.score + points,
                    latest.version,
                )
                break
            except StoreConflictError as exc:
                logger.info(f"⚔️ Answer write for {player.id} lost a race (attempt {attempt}): {exc}")
                await self._check_question_open(index)
            except StoreError as exc:
                self.last_error = exc
                logger.error(f"❌ Failed to submit answer for {player.id}: {exc}")
                raise

        if updated is None:
            raise self._reject(StoreConflictError(
                f"Answer for question {index + 1} not saved after {self.settings.cas_retries} attempts"
            ))

        self.last_error = None
        self._adopt_own_row(updated)
        if self.current_question_index == index:
            self.has_answered = True
            self.selected_answer = submitted
            self.countdown.cancel()

        result = "✅" if is_correct else "❌"
        logger.info(f"{result} {player.player_name} answered question {index + 1} (+{points}, score {updated.score})")
        log_game_event("answer_submitted", session_id=self.session_id, player_id=player.id, data={
            "question_index": index,
            "is_correct": is_correct,
            "points": points,
            "score": updated.score,
        })
        return updated

    async def _check_question_open(self, index: int) -> None:
        """The session must still be active and on ``index`` before an answer is written"""
        latest = await self.store.get_session(self.session_id)
        if latest is None or latest.status != 'active' or latest.current_question_index != index:
            raise await self._conflict(f"Question {index + 1} is no longer open", GameNotActiveError)

    # --- Polling ---

    async def _enter(self, session: GameSession, player: PlayerSession) -> None:
        self.session_id = session.id
        self.player = player
        self.tracker = SessionTracker()
        self.poller.name = f"player:{player.id[:8]}"
        self.quiz = await self.store.get_quiz(session.quiz_id)
        self.questions = await self.store.list_questions(session.quiz_id)
        self.players = await self.store.list_player_sessions(session.id)
        await self._apply_session(session)

    async def _poll(self) -> None:
        set_request_id()
        session = await self.store.get_session(self.session_id)
        if self._closed:
            return
        if session is None:
            raise RecordNotFoundError(f"Game session {self.session_id} not found")
        await self._apply_session(session)
        await self._refresh_players()

    async def _apply_session(self, session: GameSession) -> None:
        # Fetch before applying: a snapshot that arrives after leave() must leave no trace
        if any(t.needs_question for t in detect_transitions(self.tracker.applied, session)):
            questions = await self.store.list_questions(session.quiz_id)
            if self._closed:
                return
            self.questions = questions

        for transition in self.tracker.observe(session):
            if transition.needs_question:
                self._show_question(transition.question_index)
            elif transition.kind is TransitionKind.GAME_ENDED:
                self._freeze()

    async def _refresh_players(self) -> None:
        players = await self.store.list_player_sessions(self.session_id)
        if self._closed:
            return
        self.players = players
        own = next((p for p in players if self.player and p.id == self.player.id), None)
        if own is not None:
            self._adopt_own_row(own)

    def _adopt_own_row(self, row: PlayerSession) -> None:
        # Rows older than the one we hold come from a read that started before our own write
        if self.player is not None and row.version < self.player.version:
            return
        self.player = row
        question = self.current_question
        if question is None or self.has_answered:
            return
        answer = find_own_answer(row, question, self.current_question_index)
        if answer is not None:
            self.has_answered = True
            self.selected_answer = answer.answer
            self.countdown.cancel()

    # --- Local view state ---

    def _show_question(self, index: int) -> None:
        self.current_question_index = index
        self.show_question = True
        self.selected_answer = None
        self.has_answered = False

        question = self.current_question
        if question is None:
            logger.warning(f"❓ Session {self.session_id} points at missing question {index}")
            self.countdown.cancel()
            return

        answer = find_own_answer(self.player, question, index)
        if answer is not None:
            # Already answered before a reload: show it, never allow a second submission
            self.has_answered = True
            self.selected_answer = answer.answer
            self.countdown.cancel()
            return
        self.countdown.start(resolve_time_limit(question, self.quiz, self.settings.default_time_limit))

    def _freeze(self) -> None:
        self.game_ended = True
        self.countdown.cancel()
        logger.info(f"🏁 Session {self.session_id} ended; final score {self.score}")

    async def _on_time_up(self) -> None:
        if self.has_answered or self.game_ended:
            return
        if self.selected_answer is None:
            logger.info(f"⏱️ Time up on question {self.current_question_index + 1} with no selection")
            return
        try:
            await self.submit_answer()
        except QuizSyncError as exc:
            logger.warning(f"⚠️ Auto-submit on time-up failed: {exc}")

    # --- Errors ---

    def _reject(self, error: Exception) -> Exception:
        self.last_error = error
        return error

    async def _resolve(self, code: str) -> Optional[GameSession]:
        if _PIN_RE.match(code):
            return await self.store.resolve_pin(code)
        return await self.store.get_session(code)

    async def _conflict(self, message: str, error_cls: type[StateConflictError]) -> StateConflictError:
        """Re-synchronise with the store, then build the conflict error for the caller"""
        logger.info(f"⚔️ {message}; re-polling {self.session_id}")
        await self.refresh()
        error = error_cls(message)
        self.last_error = error
        return error
