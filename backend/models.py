from pydantic import BaseModel, Field
from typing import Literal, Optional
from datetime import datetime, timezone
import secrets
import uuid


SessionStatus = Literal['waiting', 'active', 'completed']
QuestionType = Literal['multiple_choice', 'true_false', 'fill_blank', 'matching', 'drag_drop']

PLAYABLE_QUESTION_TYPES = ('multiple_choice', 'true_false')
DEFAULT_POINTS = 10


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QuestionOption(BaseModel):
    id: str
    text: str


TRUE_FALSE_OPTIONS = [
    QuestionOption(id="True", text="True"),
    QuestionOption(id="False", text="False"),
]


class Quiz(BaseModel):
    id: str
    title: str
    description: Optional[str] = None
    creator_id: str
    game_pin: Optional[str] = None
    is_public: bool = False
    time_limit: Optional[int] = None  # Default seconds per question
    shuffle_questions: bool = False
    created_at: datetime = Field(default_factory=utcnow)


class Question(BaseModel):
    id: str
    quiz_id: str
    question_text: str
    question_type: QuestionType = 'multiple_choice'
    options: list[QuestionOption] = []
    correct_answer: str  # Option id OR option text, depending on how it was authored
    points: int = DEFAULT_POINTS
    time_limit: Optional[int] = None
    order_num: int = 0

    def is_true_false(self) -> bool:
        return not self.options and self.correct_answer in ("True", "False")

    def choices(self) -> list[QuestionOption]:
        """Options a player can pick from (True/False questions have implicit options)"""
        if self.is_true_false():
            return list(TRUE_FALSE_OPTIONS)
        return list(self.options)

    def find_option(self, submitted: str) -> Optional[QuestionOption]:
        """Resolve a submission to an option; an id match beats a text match"""
        choices = self.choices()
        for option in choices:
            if option.id == submitted:
                return option
        for option in choices:
            if option.text == submitted:
                return option
        return None

    def is_correct(self, submitted: str) -> bool:
        """Compare a submission against correct_answer by option id and by option text"""
        if submitted == self.correct_answer:
            return True
        option = self.find_option(submitted)
        correct = self.correct_option()
        if option is None or correct is None:
            return False
        return option.id == correct.id

    def correct_option(self) -> Optional[QuestionOption]:
        return self.find_option(self.correct_answer)


class GameSession(BaseModel):
    id: str
    quiz_id: str
    host_id: str
    status: SessionStatus = 'waiting'
    current_question_index: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0  # Bumped by the store on every write

    def is_active(self) -> bool:
        return self.status == 'active'

    def is_completed(self) -> bool:
        return self.status == 'completed'


class Answer(BaseModel):
    question_id: str
    question_index: int
    answer: str
    is_correct: bool
    points: int = 0  # Points awarded (0 when incorrect)
    timestamp: datetime = Field(default_factory=utcnow)


class PlayerSession(BaseModel):
    id: str
    game_session_id: str
    player_id: Optional[str] = None  # None for anonymous players
    player_name: str
    score: int = 0
    answers: list[Answer] = []
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    version: int = 0

    def answer_for(self, question_id: Optional[str], question_index: Optional[int]) -> Optional[Answer]:
        """Find this player's answer to a question, by question id or by ordinal index"""
        for answer in self.answers:
            if question_id is not None and answer.question_id == question_id:
                return answer
            if question_index is not None and answer.question_index == question_index:
                return answer
        return None

    def derived_score(self) -> int:
        return sum(a.points for a in self.answers if a.is_correct)

    def correct_count(self) -> int:
        return sum(1 for a in self.answers if a.is_correct)


class LeaderboardEntry(BaseModel):
    id: str
    player_name: str
    score: int
    rank: int
    correct_answers: int
    total_answers: int


class QuestionStats(BaseModel):
    question_index: int
    total_players: int
    answered_count: int
    distribution: dict[str, int]  # Count per option id


def build_leaderboard(players: list[PlayerSession]) -> list[LeaderboardEntry]:
    """Rank players by score (desc), earliest joiner first on ties"""
    ordered = sorted(players, key=lambda p: (-p.score, p.created_at))

    entries = []
    for i, p in enumerate(ordered):
        # Players with the same score share a rank
        if i > 0 and p.score == ordered[i - 1].score:
            rank = entries[-1].rank
        else:
            rank = i + 1
        entries.append(LeaderboardEntry(
            id=p.id,
            player_name=p.player_name,
            score=p.score,
            rank=rank,
            correct_answers=p.correct_count(),
            total_answers=len(p.answers),
        ))
    return entries


def build_question_stats(players: list[PlayerSession], question: Question, question_index: int) -> QuestionStats:
    """Answer distribution for one question"""
    distribution = {option.id: 0 for option in question.choices()}
    answered_count = 0

    for player in players:
        answer = player.answer_for(question.id, question_index)
        if answer is None:
            continue
        answered_count += 1
        option = question.find_option(answer.answer)
        if option is not None:
            distribution[option.id] = distribution.get(option.id, 0) + 1

    return QuestionStats(
        question_index=question_index,
        total_players=len(players),
        answered_count=answered_count,
        distribution=distribution,
    )


def generate_game_pin() -> str:
    """Generate a 6-digit game PIN"""
    return str(100000 + secrets.randbelow(900000))


def generate_id() -> str:
    """Generate an opaque record id"""
    return str(uuid.uuid4())
