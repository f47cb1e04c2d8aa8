from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from enum import Enum

from realtime.scheduler import BufferScheduler
from realtime.turns import TurnManager, TurnState


class AiConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


def new_session_id() -> str:
    return uuid.uuid4().hex


@dataclass
class RelaySession:
    """State of one call. Owned by exactly one SessionRelay, never shared."""

    turns: TurnManager
    scheduler: BufferScheduler
    session_id: str = field(default_factory=new_session_id)
    ai_state: AiConnectionState = AiConnectionState.CONNECTING

    @property
    def accepts_audio(self) -> bool:
        return self.ai_state is AiConnectionState.OPEN

    @property
    def turn_state(self) -> TurnState:
        return self.turns.state

    @property
    def current_response_item_id(self) -> str | None:
        return self.turns.current_item_id

    @property
    def response_started_at(self) -> float | None:
        return self.turns.response_started_at

    @property
    def is_audio_passthrough_enabled(self) -> bool:
        return self.turns.passthrough_enabled

    @property
    def pending_outbound_bytes(self) -> int:
        return self.scheduler.pending
