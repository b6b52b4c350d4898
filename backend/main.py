from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from typing import Any, Optional
import logging

from errors import RecordNotFoundError, StoreConflictError
from models import Answer, GameSession, PlayerSession, Question, QuestionOption, QuestionType, Quiz
from store import StateStore
from logger import setup_logging, get_logger, log_game_event, set_request_id

# Initialise structured, file-based logging
setup_logging(console_level=logging.INFO)
logger = get_logger("quizsync.server")

app = FastAPI(title="Quiz Sync Store")

# CORS - allow all origins for simplicity (adjust for production)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,  # Must be False when using allow_origins=["*"]
    allow_methods=["*"],
    allow_headers=["*"],
)

# In-memory authoritative store
store = StateStore()


@app.middleware("http")
async def assign_request_id(request: Request, call_next):
    rid = set_request_id(request.headers.get("X-Request-Id"))
    response = await call_next(request)
    response.headers["X-Request-Id"] = rid
    return response


@app.exception_handler(StoreConflictError)
async def conflict_handler(request: Request, exc: StoreConflictError):
    logger.info(f"⚔️ Conflict on {request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(RecordNotFoundError)
async def not_found_handler(request: Request, exc: RecordNotFoundError):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ValueError)
async def bad_request_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


# --- Request Models ---

class QuestionIn(BaseModel):
    id: Optional[str] = None
    question_text: str
    question_type: QuestionType = 'multiple_choice'
    options: list[QuestionOption] = []
    correct_answer: str
    points: int = 10
    time_limit: Optional[int] = None
    order_num: Optional[int] = None


class CreateQuizRequest(BaseModel):
    title: str
    creator_id: str
    description: Optional[str] = None
    time_limit: Optional[int] = None
    questions: list[QuestionIn] = []


class CreateSessionRequest(BaseModel):
    quiz_id: str
    host_id: str


class UpdateSessionRequest(BaseModel):
    changes: dict[str, Any]
    expected: Optional[dict[str, Any]] = None


class CreatePlayerSessionRequest(BaseModel):
    game_session_id: str
    player_name: str = Field(min_length=1)
    player_id: Optional[str] = None


class UpdatePlayerSessionRequest(BaseModel):
    answers: list[Answer]
    score: int
    expected_version: int


class PinResponse(BaseModel):
    game_pin: str


# --- RPC argument models (named after the SQL function parameters) ---

class QuizIdArgs(BaseModel):
    quiz_id: str


class PinArgs(BaseModel):
    p_game_pin: str


class SessionIdArgs(BaseModel):
    session_id: str


class PlayersForGameArgs(BaseModel):
    p_game_session_id: str


class CreateGameSessionArgs(BaseModel):
    p_quiz_id: str
    p_host_id: str


class UpdateGameSessionArgs(BaseModel):
    p_session_id: str
    p_changes: dict[str, Any]
    p_expected: Optional[dict[str, Any]] = None


class CreatePlayerSessionArgs(BaseModel):
    p_game_session_id: str
    p_player_name: str = Field(min_length=1)
    p_player_id: Optional[str] = None


class UpdatePlayerAnswersArgs(BaseModel):
    p_player_session_id: str
    p_answers: list[Answer]
    p_score: int
    p_expected_version: int


class PlayerSessionIdArgs(BaseModel):
    p_player_session_id: str


def _require(record, what: str, key: str):
    if record is None:
        raise HTTPException(status_code=404, detail=f"{what} {key} not found")
    return record


# --- Table-style endpoints ---

@app.post("/api/quizzes", response_model=Quiz)
async def create_quiz(request: CreateQuizRequest):
    """Seed a quiz and its questions (authoring happens upstream)"""
    questions = [q.model_dump(exclude_none=True) for q in request.questions]
    quiz = store.create_quiz(
        request.title,
        request.creator_id,
        questions,
        time_limit=request.time_limit,
        description=request.description,
    )
    log_game_event("quiz_created", data={"quiz_id": quiz.id, "question_count": len(questions)})
    return quiz


@app.get("/api/quizzes", response_model=list[Quiz])
async def list_quizzes(game_pin: Optional[str] = None):
    quizzes = [q for q in store.quizzes.values() if game_pin is None or q.game_pin == game_pin]
    return [q.model_copy(deep=True) for q in quizzes]


@app.get("/api/quizzes/{quiz_id}", response_model=Quiz)
async def get_quiz(quiz_id: str):
    return _require(await store.get_quiz(quiz_id), "Quiz", quiz_id)


@app.post("/api/quizzes/{quiz_id}/pin", response_model=PinResponse)
async def assign_pin(quiz_id: str):
    return PinResponse(game_pin=await store.assign_game_pin(quiz_id))


@app.delete("/api/quizzes/{quiz_id}/pin")
async def clear_pin(quiz_id: str):
    await store.clear_game_pin(quiz_id)
    logger.info(f"🛑 Game PIN cleared for quiz {quiz_id}")
    return {"ok": True}


@app.get("/api/quizzes/{quiz_id}/questions", response_model=list[Question])
async def list_questions(quiz_id: str):
    return await store.list_questions(quiz_id)


@app.post("/api/game_sessions", response_model=GameSession)
async def create_game_session(request: CreateSessionRequest):
    session = await store.create_session(request.quiz_id, request.host_id)
    log_game_event("session_created", session_id=session.id, data={"quiz_id": request.quiz_id})
    return session


@app.get("/api/game_sessions", response_model=list[GameSession])
async def list_game_sessions(quiz_id: str, status: Optional[str] = None, limit: Optional[int] = None):
    """Sessions of a quiz, newest first"""
    sessions = store.list_sessions(quiz_id, status)
    return sessions[:limit] if limit else sessions


@app.get("/api/game_sessions/{session_id}", response_model=GameSession)
async def get_game_session(session_id: str):
    return _require(await store.get_session(session_id), "Game session", session_id)


@app.patch("/api/game_sessions/{session_id}", response_model=GameSession)
async def update_game_session(session_id: str, request: UpdateSessionRequest):
    """Conditional update: 409 when `expected` does not match the stored row"""
    session = await store.update_session(session_id, request.changes, request.expected)
    log_game_event("session_updated", session_id=session_id, data={
        "status": session.status,
        "question_index": session.current_question_index,
        "version": session.version,
    })
    return session


@app.get("/api/game_sessions/{session_id}/players", response_model=list[PlayerSession])
async def list_players(session_id: str):
    return await store.list_player_sessions(session_id)


@app.post("/api/player_sessions", response_model=PlayerSession)
async def create_player_session(request: CreatePlayerSessionRequest):
    player = await store.create_player_session(request.game_session_id, request.player_name, request.player_id)
    logger.info(f"👤 Player joined: {request.player_name} -> session {request.game_session_id}")
    log_game_event("player_joined", session_id=request.game_session_id, player_id=player.id, data={
        "player_name": request.player_name,
        "authenticated": request.player_id is not None,
    })
    return player


@app.get("/api/player_sessions/{player_session_id}", response_model=PlayerSession)
async def get_player_session(player_session_id: str):
    return _require(await store.get_player_session(player_session_id), "Player session", player_session_id)


@app.patch("/api/player_sessions/{player_session_id}", response_model=PlayerSession)
async def update_player_session(player_session_id: str, request: UpdatePlayerSessionRequest):
    """Conditional update on `version`: 409 when another write got there first"""
    player = await store.update_player_session(
        player_session_id, request.answers, request.score, request.expected_version
    )
    log_game_event("player_answers_updated", session_id=player.game_session_id, player_id=player.id, data={
        "answers": len(player.answers),
        "score": player.score,
    })
    return player


# --- RPC endpoints ---

@app.post("/rpc/get_quiz", response_model=Optional[Quiz])
async def rpc_get_quiz(args: QuizIdArgs):
    return await store.get_quiz(args.quiz_id)


@app.post("/rpc/resolve_game_pin", response_model=Optional[GameSession])
async def rpc_resolve_game_pin(args: PinArgs):
    return await store.resolve_pin(args.p_game_pin)


@app.post("/rpc/get_game_session_details", response_model=Optional[GameSession])
async def rpc_get_game_session_details(args: SessionIdArgs):
    return await store.get_session(args.session_id)


@app.post("/rpc/get_quiz_questions", response_model=list[Question])
async def rpc_get_quiz_questions(args: QuizIdArgs):
    return await store.list_questions(args.quiz_id)


@app.post("/rpc/get_player_sessions_for_game", response_model=list[PlayerSession])
async def rpc_get_player_sessions_for_game(args: PlayersForGameArgs):
    return await store.list_player_sessions(args.p_game_session_id)


@app.post("/rpc/get_player_session", response_model=Optional[PlayerSession])
async def rpc_get_player_session(args: PlayerSessionIdArgs):
    return await store.get_player_session(args.p_player_session_id)


@app.post("/rpc/create_game_session", response_model=GameSession)
async def rpc_create_game_session(args: CreateGameSessionArgs):
    return await create_game_session(CreateSessionRequest(quiz_id=args.p_quiz_id, host_id=args.p_host_id))


@app.post("/rpc/update_game_session", response_model=GameSession)
async def rpc_update_game_session(args: UpdateGameSessionArgs):
    return await update_game_session(
        args.p_session_id, UpdateSessionRequest(changes=args.p_changes, expected=args.p_expected)
    )


@app.post("/rpc/create_player_session", response_model=PlayerSession)
async def rpc_create_player_session(args: CreatePlayerSessionArgs):
    return await create_player_session(CreatePlayerSessionRequest(
        game_session_id=args.p_game_session_id,
        player_name=args.p_player_name,
        player_id=args.p_player_id,
    ))


@app.post("/rpc/update_player_answers", response_model=PlayerSession)
async def rpc_update_player_answers(args: UpdatePlayerAnswersArgs):
    return await update_player_session(args.p_player_session_id, UpdatePlayerSessionRequest(
        answers=args.p_answers,
        score=args.p_score,
        expected_version=args.p_expected_version,
    ))


@app.post("/rpc/generate_unique_game_pin", response_model=PinResponse)
async def rpc_generate_unique_game_pin(args: QuizIdArgs):
    return await assign_pin(args.quiz_id)


@app.post("/rpc/clear_game_pin")
async def rpc_clear_game_pin(args: QuizIdArgs):
    return await clear_pin(args.quiz_id)


@app.get("/health")
async def health():
    """Health check endpoint"""
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn
    print(f"\n🎮 Quiz Sync Store")
    print(f"   URL: http://localhost:8000\n")
    uvicorn.run(app, host="0.0.0.0", port=8000)
