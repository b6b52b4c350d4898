"""
Convergence rules
=================
Both controllers hold the last session snapshot they *applied* and compare
every freshly polled snapshot against it:

  1. status change   waiting -> active     GAME_STARTED (fetch question 0, clear answered flag)
                     active  -> completed  GAME_ENDED   (freeze question, show results)
                     anything else         UNEXPECTED   (logged, no reaction)
  2. index change while active             QUESTION_ADVANCED (fetch question, reset flags + timer)
  3. identical snapshot                    nothing
  4. own answer lookup for a question      find_own_answer()
  5. everyone answered the question        all_players_answered() + AutoAdvanceGuard

Snapshots that move backwards (lower index, status regression, anything after
completed) come from a tick that was overtaken by a newer one. They are
dropped without touching the applied snapshot, which keeps the question index
monotonic for the observer even if results arrive out of order.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from logger import get_sync_logger
from models import Answer, GameSession, PlayerSession, Question, Quiz

log = get_sync_logger("convergence")

_STATUS_ORDER = {'waiting': 0, 'active': 1, 'completed': 2}


class TransitionKind(str, Enum):
    RESUMED = "resumed"  # First observation of an already active session
    GAME_STARTED = "game_started"
    QUESTION_ADVANCED = "question_advanced"
    GAME_ENDED = "game_ended"
    UNEXPECTED = "unexpected"


@dataclass(frozen=True)
class Transition:
    kind: TransitionKind
    question_index: Optional[int] = None
    previous_status: Optional[str] = None
    status: Optional[str] = None

    @property
    def needs_question(self) -> bool:
        """Whether the observer has to fetch the question at ``question_index``"""
        return self.kind in (
            TransitionKind.RESUMED,
            TransitionKind.GAME_STARTED,
            TransitionKind.QUESTION_ADVANCED,
        )


def is_stale(prev: Optional[GameSession], next_: GameSession) -> bool:
    """True when ``next_`` is older than the snapshot already applied"""
    if prev is None:
        return False
    if prev.id != next_.id:
        raise ValueError(f"Snapshots of different sessions: {prev.id} vs {next_.id}")
    if prev.status == 'completed' and next_.status != 'completed':
        return True
    if _STATUS_ORDER[next_.status] < _STATUS_ORDER[prev.status]:
        return True
    if prev.status == next_.status == 'active' and next_.current_question_index < prev.current_question_index:
        return True
    return False


def detect_transitions(prev: Optional[GameSession], next_: GameSession) -> list[Transition]:
    """Rules 1-3: what changed between the applied snapshot and the polled one"""
    if prev is None:
        if next_.status == 'active':
            return [Transition(TransitionKind.RESUMED, next_.current_question_index, None, 'active')]
        if next_.status == 'completed':
            return [Transition(TransitionKind.GAME_ENDED, None, None, 'completed')]
        return []

    if is_stale(prev, next_):
        return []

    if prev.status != next_.status:
        if prev.status == 'waiting' and next_.status == 'active':
            # A session always starts at question 0
            return [Transition(TransitionKind.GAME_STARTED, next_.current_question_index, 'waiting', 'active')]
        if prev.status == 'active' and next_.status == 'completed':
            return [Transition(TransitionKind.GAME_ENDED, None, 'active', 'completed')]
        return [Transition(TransitionKind.UNEXPECTED, None, prev.status, next_.status)]

    if next_.status == 'active' and prev.current_question_index != next_.current_question_index:
        return [Transition(TransitionKind.QUESTION_ADVANCED, next_.current_question_index, 'active', 'active')]

    return []


class SessionTracker:
    """Holds the last applied session snapshot for one observer."""

    def __init__(self, initial: Optional[GameSession] = None) -> None:
        self.applied: Optional[GameSession] = initial

    def observe(self, snapshot: GameSession) -> list[Transition]:
        """Diff ``snapshot`` against the applied one and apply it unless stale"""
        if is_stale(self.applied, snapshot):
            log.debug(
                f"⏪ Ignoring stale snapshot of {snapshot.id}: "
                f"{snapshot.status}/{snapshot.current_question_index} "
                f"(applied {self.applied.status}/{self.applied.current_question_index})"
            )
            return []

        transitions = detect_transitions(self.applied, snapshot)
        for t in transitions:
            if t.kind is TransitionKind.UNEXPECTED:
                log.warning(f"❓ Unexpected status transition {t.previous_status} -> {t.status} for {snapshot.id}")
            else:
                log.info(f"🔄 {snapshot.id}: {t.kind.value} (question={t.question_index})")
        self.applied = snapshot
        return transitions

    def acknowledge(self, snapshot: GameSession) -> None:
        """Apply a snapshot produced by our own write, without reacting to it"""
        if not is_stale(self.applied, snapshot):
            self.applied = snapshot


def find_own_answer(player: Optional[PlayerSession], question: Question, question_index: int) -> Optional[Answer]:
    """Rule 4: this player's earlier answer to ``question``, if any"""
    if player is None:
        return None
    return player.answer_for(question.id, question_index)


def all_players_answered(players: list[PlayerSession], question: Question, question_index: int) -> bool:
    """Rule 5: every joined player has an answer for the question (needs at least one player)"""
    if not players:
        return False
    return all(p.answer_for(question.id, question_index) is not None for p in players)


def resolve_time_limit(question: Question, quiz: Optional[Quiz], default: int) -> int:
    """Question limit, else the quiz default, else the configured default"""
    if question.time_limit:
        return question.time_limit
    if quiz is not None and quiz.time_limit:
        return quiz.time_limit
    return default


class AutoAdvanceGuard:
    """One-shot latch: auto-advance fires at most once per question index."""

    def __init__(self) -> None:
        self.fired_for: Optional[int] = None

    def should_fire(self, question_index: int, condition: bool) -> bool:
        if not condition or self.fired_for == question_index:
            return False
        self.fired_for = question_index
        return True

    def reset(self) -> None:
        self.fired_for = None
