"""
Quiz Sync Logging
=================
Structured, rotating file-based logging for the game store server and the
host / player sync clients. Logs are written to  backend/logs/  unless
QUIZ_LOG_DIR points elsewhere. The server calls setup_logging() at import;
clients get it when their GameContext is built.

Log files produced:
  - quizsync.log           General log (all levels)
  - sync.log               Poll ticks, snapshot transitions, store retries
  - game_events.jsonl      Structured game events (sessions, players, answers) for analytics
"""

from __future__ import annotations

import json
import logging
import os
import uuid
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any
from contextvars import ContextVar

# ---------------------------------------------------------------------------
# Request / Correlation ID  (set per request or per poll tick)
# ---------------------------------------------------------------------------

_request_id: ContextVar[str] = ContextVar("request_id", default="-")


def set_request_id(rid: str | None = None) -> str:
    """Set a correlation ID for the current context. Returns the ID."""
    rid = rid or uuid.uuid4().hex[:12]
    _request_id.set(rid)
    return rid


def get_request_id() -> str:
    return _request_id.get("-")

# ---------------------------------------------------------------------------
# Directories
# ---------------------------------------------------------------------------

LOG_DIR = Path(os.environ.get("QUIZ_LOG_DIR") or Path(__file__).parent / "logs")

# ---------------------------------------------------------------------------
# Formatters
# ---------------------------------------------------------------------------

_VERBOSE_FMT = logging.Formatter(
    fmt="%(asctime)s | %(levelname)-8s | %(name)-20s | [%(request_id)s] %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
    defaults={"request_id": "-"},
)

_CONSOLE_FMT = logging.Formatter(
    fmt="%(asctime)s | %(levelname)s | %(message)s",
    datefmt="%H:%M:%S",
)

# ---------------------------------------------------------------------------
# Handler factory
# ---------------------------------------------------------------------------

def _rotating_handler(
    filename: str,
    max_bytes: int = 5 * 1024 * 1024,   # 5 MB per file
    backup_count: int = 5,
    level: int = logging.DEBUG,
) -> RotatingFileHandler:
    handler = RotatingFileHandler(
        LOG_DIR / filename,
        maxBytes=max_bytes,
        backupCount=backup_count,
        encoding="utf-8",
    )
    handler.setLevel(level)
    handler.setFormatter(_VERBOSE_FMT)
    return handler

# ---------------------------------------------------------------------------
# Logger setup – call once at startup
# ---------------------------------------------------------------------------

_CONFIGURED = False


class _RequestIdFilter(logging.Filter):
    """Inject the current request_id context var into every log record."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.request_id = get_request_id()  # type: ignore[attr-defined]
        return True


def setup_logging(*, console_level: int = logging.INFO) -> None:
    """Initialise all loggers.  Safe to call more than once."""
    global _CONFIGURED
    if _CONFIGURED:
        return
    _CONFIGURED = True

    LOG_DIR.mkdir(parents=True, exist_ok=True)
    rid_filter = _RequestIdFilter()

    # ---- Root / general logger ------------------------------------------
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.addFilter(rid_filter)

    console = logging.StreamHandler()
    console.setLevel(console_level)
    console.setFormatter(_CONSOLE_FMT)
    root.addHandler(console)

    general = _rotating_handler("quizsync.log", level=logging.DEBUG)
    general.addFilter(rid_filter)
    root.addHandler(general)

    # ---- Sync-loop logger -------------------------------------------------
    sync_logger = logging.getLogger("quizsync.sync")
    sync_logger.setLevel(logging.DEBUG)
    sync_handler = _rotating_handler("sync.log", level=logging.DEBUG)
    sync_handler.addFilter(rid_filter)
    sync_logger.addHandler(sync_handler)
    # Also reaches quizsync.log / console through the root logger
    sync_logger.propagate = True

    # ---- Game-events logger (JSONL) – structured session/player events --
    game_logger = logging.getLogger("game.events")
    game_logger.setLevel(logging.DEBUG)
    game_handler = _rotating_handler(
        "game_events.jsonl",
        max_bytes=10 * 1024 * 1024,
        backup_count=10,
        level=logging.DEBUG,
    )
    game_handler.setFormatter(logging.Formatter("%(message)s"))
    game_logger.addHandler(game_handler)
    game_logger.propagate = False

    logging.getLogger("quizsync").info(
        f"📁 Logging initialised – log directory: {LOG_DIR.resolve()}"
    )


# ---------------------------------------------------------------------------
# Convenience accessors
# ---------------------------------------------------------------------------

def get_logger(name: str = "quizsync") -> logging.Logger:
    return logging.getLogger(name)


def get_sync_logger(component: str | None = None) -> logging.Logger:
    if component:
        return logging.getLogger(f"quizsync.sync.{component}")
    return logging.getLogger("quizsync.sync")


def get_game_event_logger() -> logging.Logger:
    return logging.getLogger("game.events")


# ---------------------------------------------------------------------------
# Structured game-event helper
# ---------------------------------------------------------------------------

def log_game_event(
    event_type: str,
    *,
    session_id: str | None = None,
    player_id: str | None = None,
    data: dict[str, Any] | None = None,
) -> None:
    """Write a structured JSON line to game_events.jsonl.

    Use for session lifecycle, player joins, answers, auto-advance, etc.
    Each line is self-contained and easy to query with jq / pandas.
    """
    record = {
        "ts": datetime.now(timezone.utc).isoformat(),
        "event": event_type,
        "request_id": get_request_id(),
    }
    if session_id:
        record["session"] = session_id
    if player_id:
        record["player_id"] = player_id
    if data:
        record.update(data)
    get_game_event_logger().info(json.dumps(record, default=str))
