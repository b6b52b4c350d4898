"""Host side of a live game: owns the session's progression."""

from __future__ import annotations

import asyncio
from datetime import datetime
from typing import Optional

from pydantic import BaseModel

from context import GameContext
from convergence import AutoAdvanceGuard, SessionTracker, TransitionKind, all_players_answered
from countdown import Countdown
from errors import (
    AlreadyEndedError, AnswerNotRevealedError, GameAlreadyStartedError, GameNotActiveError,
    InvalidQuestionIndexError, NoQuestionsError, QuizSyncError, RecordNotFoundError,
    StateConflictError, StoreConflictError, StoreError,
)
from logger import get_sync_logger, log_game_event, set_request_id
from models import (
    GameSession, LeaderboardEntry, PlayerSession, Question, QuestionOption, QuestionStats, Quiz,
    build_leaderboard, build_question_stats, utcnow,
)
from poller import Poller

logger = get_sync_logger("host")


class HostView(BaseModel):
    session: Optional[GameSession] = None
    quiz: Optional[Quiz] = None
    question_count: int = 0
    current_question_index: int = 0
    current_question: Optional[Question] = None
    show_question: bool = False
    answer_revealed: bool = False
    correct_option: Optional[QuestionOption] = None
    time_left: Optional[int] = None
    players: list[PlayerSession] = []
    leaderboard: list[LeaderboardEntry] = []
    question_stats: Optional[QuestionStats] = None
    auto_advance: bool = False
    game_ended: bool = False
    last_error: Optional[str] = None
    poll_error: Optional[str] = None
    last_polled: Optional[datetime] = None


class HostController:
    """Drives one game session from the host's seat.

    Writes go straight to the store and only change local state once the store
    acknowledges them (``start_game`` is the exception: it shows question 0
    before the write lands). Everything the players do reaches the host through
    the background poll.
    """

    def __init__(self, context: GameContext, session_id: str) -> None:
        self.context = context
        self.store = context.store
        self.settings = context.settings
        self.session_id = session_id

        self.tracker = SessionTracker()
        self.poller = Poller(f"host:{session_id[:8]}")
        self.countdown = Countdown(self._on_time_up, tick=self.settings.countdown_tick)
        self.guard = AutoAdvanceGuard()

        self.quiz: Optional[Quiz] = None
        self.questions: list[Question] = []
        self.players: list[PlayerSession] = []
        self.current_question_index = 0
        self.show_question = False
        self.answer_revealed = False
        self.game_ended = False
        self.auto_advance = False
        self.auto_advance_delay = self.settings.auto_advance_delay
        self.last_error: Optional[Exception] = None

        self._advance_task: Optional[asyncio.Task] = None
        self._started = False
        self._closed = False

    # --- Lifecycle ---

    @classmethod
    async def create_game(cls, context: GameContext, quiz_id: str) -> "HostController":
        """Give the quiz a PIN if it has none and open a new waiting session"""
        if context.identity is None:
            raise ValueError("Hosting a game requires an authenticated identity")

        quiz = await context.store.get_quiz(quiz_id)
        if quiz is None:
            raise RecordNotFoundError(f"Quiz {quiz_id} not found")

        pin = await context.store.assign_game_pin(quiz_id)
        session = await context.store.create_session(quiz_id, context.identity.user_id)
        logger.info(f"🆕 Hosting quiz {quiz_id} as session {session.id} (PIN {pin})")
        log_game_event("session_created", session_id=session.id, data={"quiz_id": quiz_id, "game_pin": pin})

        controller = cls(context, session.id)
        await controller.load()
        return controller

    async def load(self) -> None:
        """Initial fetch of the session, its quiz, questions and players"""
        session = await self.store.get_session(self.session_id)
        if session is None:
            raise RecordNotFoundError(f"Game session {self.session_id} not found")
        self.quiz = await self.store.get_quiz(session.quiz_id)
        self.questions = await self.store.list_questions(session.quiz_id)
        self.players = await self.store.list_player_sessions(self.session_id)
        self._apply_snapshot(session)

    def start(self) -> None:
        self._closed = False
        self._started = True
        self.poller.start(self._poll, self.settings.poll_interval, run_immediately=True)

    async def stop(self) -> None:
        """Stop polling and timers; results of calls still in flight are dropped"""
        self._closed = True
        self.poller.stop()
        self.countdown.cancel()
        self._cancel_pending_advance()
        await self.poller.wait_closed()

    async def refresh(self) -> None:
        """Re-synchronise with the store right now"""
        if self._started:
            await self.poller.poll_now()
            return
        try:
            await self._poll()
        except Exception as exc:
            logger.warning(f"⚠️ Host refresh failed: {type(exc).__name__}: {exc}")

    # --- State accessors ---

    @property
    def session(self) -> Optional[GameSession]:
        return self.tracker.applied

    @property
    def current_question(self) -> Optional[Question]:
        if 0 <= self.current_question_index < len(self.questions):
            return self.questions[self.current_question_index]
        return None

    @property
    def is_last_question(self) -> bool:
        return self.current_question_index >= len(self.questions) - 1

    def view(self) -> HostView:
        question = self.current_question
        stats = None
        if question is not None and self.show_question:
            stats = build_question_stats(self.players, question, self.current_question_index)
        return HostView(
            session=self.session,
            quiz=self.quiz,
            question_count=len(self.questions),
            current_question_index=self.current_question_index,
            current_question=question,
            show_question=self.show_question,
            answer_revealed=self.answer_revealed,
            correct_option=question.correct_option() if question and self.answer_revealed else None,
            time_left=self.countdown.remaining,
            players=list(self.players),
            leaderboard=build_leaderboard(self.players),
            question_stats=stats,
            auto_advance=self.auto_advance,
            game_ended=self.game_ended,
            last_error=str(self.last_error) if self.last_error else None,
            poll_error=str(self.poller.error) if self.poller.error else None,
            last_polled=self.poller.last_polled,
        )

    # --- Actions ---

    async def start_game(self) -> GameSession:
        session = self._require_session()
        if session.status == 'completed':
            raise await self._conflict("The game has already ended", AlreadyEndedError)
        if session.status == 'active':
            raise await self._conflict("The game is already running", GameAlreadyStartedError)

        if not self.questions:
            self.questions = await self.store.list_questions(session.quiz_id)
        if not self.questions:
            error = NoQuestionsError("This quiz has no questions yet")
            self.last_error = error
            raise error

        # Show question 0 right away; the poll corrects the view if the write fails
        self._display_question(0)

        try:
            updated = await self.store.update_session(
                self.session_id,
                {'status': 'active', 'started_at': utcnow(), 'current_question_index': 0},
                expected={'status': 'waiting'},
            )
        except StoreConflictError:
            raise await self._conflict("The game could not be started", on_active=GameAlreadyStartedError)
        except StoreError as exc:
            self.last_error = exc
            logger.error(f"❌ Failed to start game {self.session_id}: {exc}")
            raise

        self.last_error = None
        self.tracker.acknowledge(updated)
        logger.info(f"🚀 Game started: {self.session_id}, {len(self.questions)} questions, {len(self.players)} players")
        log_game_event("game_started", session_id=self.session_id, data={
            "question_count": len(self.questions),
            "player_count": len(self.players),
        })
        return updated

    async def reveal_question(self, index: int) -> GameSession:
        session = self._require_session()
        if session.status != 'active':
            raise await self._conflict("The game is not running")
        if not 0 <= index < len(self.questions):
            raise InvalidQuestionIndexError(f"Question {index} does not exist ({len(self.questions)} questions)")
        if index < session.current_question_index:
            raise InvalidQuestionIndexError(
                f"Cannot go back from question {session.current_question_index} to {index}"
            )

        try:
            updated = await self.store.update_session(
                self.session_id,
                {'current_question_index': index},
                expected={'status': 'active', 'current_question_index': session.current_question_index},
            )
        except StoreConflictError:
            raise await self._conflict("The session changed before the question was revealed")
        except StoreError as exc:
            self.last_error = exc
            logger.error(f"❌ Failed to reveal question {index} in {self.session_id}: {exc}")
            raise

        self.last_error = None
        self.tracker.acknowledge(updated)
        self._display_question(index)
        logger.info(f"⏭️ Question {index + 1}/{len(self.questions)} revealed in {self.session_id}")
        log_game_event("question_revealed", session_id=self.session_id, data={
            "question_index": index,
            "total_questions": len(self.questions),
        })
        return updated

    def show_answer(self) -> None:
        """Reveal the correct option on the host's screen (no store write)"""
        session = self._require_session()
        if session.status == 'completed':
            raise AlreadyEndedError("The game has already ended")
        if session.status != 'active' or not self.show_question:
            raise GameNotActiveError("No question is being shown")
        self.answer_revealed = True
        self.countdown.cancel()

    async def advance(self) -> GameSession:
        session = self._require_session()
        if session.status != 'active':
            raise await self._conflict("The game is not running")

        if self.is_last_question:
            return await self.end_game()
        if not self.answer_revealed:
            error = AnswerNotRevealedError("Show the answer before moving on")
            self.last_error = error
            raise error
        return await self.reveal_question(session.current_question_index + 1)

    async def end_game(self) -> GameSession:
        session = self._require_session()
        if session.status != 'active':
            raise await self._conflict("The game has not started")

        try:
            updated = await self.store.update_session(
                self.session_id,
                {'status': 'completed', 'ended_at': utcnow()},
                expected={'status': 'active'},
            )
        except StoreConflictError:
            raise await self._conflict("The game could not be ended")
        except StoreError as exc:
            self.last_error = exc
            logger.error(f"❌ Failed to end game {self.session_id}: {exc}")
            raise

        self.last_error = None
        self.tracker.acknowledge(updated)
        self._freeze()
        logger.info(f"🏁 Game ended: {self.session_id}, {len(self.players)} players")
        log_game_event("game_ended", session_id=self.session_id, data={
            "player_count": len(self.players),
            "leaderboard": [e.model_dump() for e in build_leaderboard(self.players)],
        })
        return updated

    async def release_pin(self) -> None:
        """Stop accepting joins for this quiz's PIN"""
        session = self._require_session()
        await self.store.clear_game_pin(session.quiz_id)
        if self.quiz is not None:
            self.quiz.game_pin = None

    def enable_auto_advance(self, delay: Optional[float] = None) -> None:
        self.auto_advance = True
        if delay is not None:
            self.auto_advance_delay = delay

    def disable_auto_advance(self) -> None:
        self.auto_advance = False
        self._cancel_pending_advance()

    # --- Polling ---

    async def _poll(self) -> None:
        set_request_id()
        session = await self.store.get_session(self.session_id)
        players = await self.store.list_player_sessions(self.session_id)
        if self._closed:
            return
        if session is None:
            raise RecordNotFoundError(f"Game session {self.session_id} not found")
        if not self.questions:
            questions = await self.store.list_questions(session.quiz_id)
            if self._closed:
                return
            self.questions = questions

        self.players = players
        self._apply_snapshot(session)
        self._check_auto_advance()

    def _apply_snapshot(self, session: GameSession) -> None:
        for transition in self.tracker.observe(session):
            if transition.needs_question:
                self._display_question(transition.question_index)
            elif transition.kind is TransitionKind.GAME_ENDED:
                self._freeze()

    def _check_auto_advance(self) -> None:
        session = self.session
        if not self.auto_advance or self.game_ended or session is None or session.status != 'active':
            return
        question = self.current_question
        if question is None or not self.show_question:
            return

        index = session.current_question_index
        everyone = all_players_answered(self.players, question, index)
        if not self.guard.should_fire(index, everyone):
            return

        logger.info(
            f"🚀 Auto-advance: all {len(self.players)} players answered question {index + 1}, "
            f"moving on in {self.auto_advance_delay}s"
        )
        log_game_event("auto_advance_scheduled", session_id=self.session_id, data={
            "question_index": index,
            "delay": self.auto_advance_delay,
        })
        self.answer_revealed = True
        self.countdown.cancel()
        self._cancel_pending_advance()
        self._advance_task = asyncio.create_task(self._advance_after_delay(index))

    async def _advance_after_delay(self, index: int) -> None:
        await asyncio.sleep(self.auto_advance_delay)
        session = self.session
        if self._closed or not self.auto_advance or session is None:
            return
        if session.status != 'active' or session.current_question_index != index:
            return
        try:
            await self.advance()
        except StoreError as exc:
            # Transient failure: let the next poll schedule the advance again
            if self.guard.fired_for == index:
                self.guard.reset()
            logger.warning(f"⚠️ Auto-advance from question {index + 1} failed, will retry: {exc}")
        except QuizSyncError as exc:
            logger.warning(f"⚠️ Auto-advance from question {index + 1} failed: {exc}")

    def _cancel_pending_advance(self) -> None:
        task = self._advance_task
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
        self._advance_task = None

    # --- Local view state ---

    def _display_question(self, index: int) -> None:
        self.current_question_index = index
        self.show_question = True
        self.answer_revealed = False

        question = self.current_question
        limit = None
        if question is not None:
            limit = question.time_limit or (self.quiz.time_limit if self.quiz else None)
        if limit:
            self.countdown.start(limit)
        else:
            self.countdown.cancel()

    def _freeze(self) -> None:
        self.game_ended = True
        self.countdown.cancel()
        self._cancel_pending_advance()

    async def _on_time_up(self) -> None:
        session = self.session
        if session is not None and session.status == 'active' and self.show_question:
            logger.info(f"⏱️ Time up on question {self.current_question_index + 1} in {self.session_id}")
            self.answer_revealed = True

    # --- Errors ---

    def _require_session(self) -> GameSession:
        if self.session is None:
            raise RecordNotFoundError(f"Game session {self.session_id} has not been loaded")
        return self.session

    async def _conflict(
        self,
        message: str,
        error_cls: Optional[type[StateConflictError]] = None,
        *,
        on_active: type[StateConflictError] = GameNotActiveError,
    ) -> StateConflictError:
        """Re-synchronise with the store, then build the conflict error for the caller"""
        logger.info(f"⚔️ {message}; re-polling {self.session_id}")
        await self.refresh()
        if error_cls is None:
            status = self.session.status if self.session else None
            if status == 'completed':
                error_cls = AlreadyEndedError
            elif status == 'active':
                error_cls = on_active
            else:
                error_cls = GameNotActiveError
        error = error_cls(message)
        self.last_error = error
        return error
