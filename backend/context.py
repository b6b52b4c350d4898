"""Explicit per-client context passed into the host and player controllers."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional

from pydantic import BaseModel

from config import SyncSettings, load_settings
from logger import setup_logging
from store import GameStore


class Identity(BaseModel):
    """An authenticated user. Absence of an identity means anonymous play."""
    user_id: str
    display_name: str = ""


@dataclass
class GameContext:
    store: GameStore
    settings: SyncSettings = field(default_factory=load_settings)
    identity: Optional[Identity] = None

    def __post_init__(self) -> None:
        # Clients run without the server, so they open the log files themselves
        setup_logging()

    @property
    def user_id(self) -> Optional[str]:
        return self.identity.user_id if self.identity else None

    def with_identity(self, identity: Optional[Identity]) -> "GameContext":
        return GameContext(store=self.store, settings=self.settings, identity=identity)
