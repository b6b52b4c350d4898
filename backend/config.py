"""Runtime settings for the game store server and its clients.

Every value can be overridden through a QUIZ_* environment variable.
"""

import os
from typing import Literal

from pydantic import BaseModel, Field


StoreStrategy = Literal['rpc', 'direct', 'memory']


class SyncSettings(BaseModel):
    store_url: str = "http://localhost:8000"
    store_strategy: StoreStrategy = 'rpc'
    poll_interval: float = Field(default=1.0, gt=0)  # Seconds between polls
    auto_advance_delay: float = Field(default=3.0, ge=0)
    default_time_limit: int = Field(default=20, gt=0)  # Used when neither question nor quiz sets one
    default_points: int = 10
    request_timeout: float = 10.0
    cas_retries: int = Field(default=3, ge=1)  # Attempts for a conditional score update
    countdown_tick: float = Field(default=1.0, gt=0)


_ENV_FIELDS = {
    "QUIZ_STORE_URL": "store_url",
    "QUIZ_STORE_STRATEGY": "store_strategy",
    "QUIZ_POLL_INTERVAL": "poll_interval",
    "QUIZ_AUTO_ADVANCE_DELAY": "auto_advance_delay",
    "QUIZ_DEFAULT_TIME_LIMIT": "default_time_limit",
    "QUIZ_DEFAULT_POINTS": "default_points",
    "QUIZ_REQUEST_TIMEOUT": "request_timeout",
    "QUIZ_CAS_RETRIES": "cas_retries",
    "QUIZ_COUNTDOWN_TICK": "countdown_tick",
}


def load_settings(**overrides) -> SyncSettings:
    """Build settings from the environment; keyword overrides win"""
    values = {}
    for env_name, field_name in _ENV_FIELDS.items():
        raw = os.environ.get(env_name)
        if raw:
            values[field_name] = raw
    values.update(overrides)
    return SyncSettings.model_validate(values)
