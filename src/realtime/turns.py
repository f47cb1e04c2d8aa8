"""Turn-taking between the caller and the model.

The model's response moves through three states::

    Idle --item created--> Responding --speech started--> Interrupting
      ^                        |                              |
      +------response done-----+<-------item truncated--------+

Barge-in (caller speech while the model is talking) mutes further audio of
the current item, discards what is still buffered, truncates the item on the
model side at the point the caller heard, and tells the caller side to drop
whatever it has queued. Audio stays muted until the truncation is confirmed,
or until the model reports an error while the truncation is outstanding.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from audio.resample import ResampleMethod, resample
from realtime import protocol
from realtime.scheduler import BufferScheduler

LOGGER = logging.getLogger(__name__)

EventSender = Callable[[dict[str, Any]], Awaitable[None]]


@dataclass(frozen=True, slots=True)
class Idle:
    pass


@dataclass(frozen=True, slots=True)
class Responding:
    item_id: str
    started_at: float | None = None


@dataclass(frozen=True, slots=True)
class Interrupting:
    item_id: str


TurnState = Idle | Responding | Interrupting


@dataclass(frozen=True, slots=True)
class TruncationPolicy:
    floor_ms: int = 500
    ceiling_ms: int = 5000
    default_ms: int = 1500


def truncation_offset_ms(
    started_at: float | None,
    now: float,
    reported_ms: float | None = None,
    *,
    policy: TruncationPolicy = TruncationPolicy(),
) -> int:
    """How much of the item's audio the caller heard, clamped to the policy bounds.

    A playback offset reported by the model wins over wall-clock time. With no
    recorded start there is nothing to measure and the default is used.
    ``started_at``, ``now`` and ``reported_ms`` must share a clock origin.
    """

    if started_at is None:
        elapsed = float(policy.default_ms)
    elif reported_ms is not None:
        elapsed = reported_ms - started_at
    else:
        elapsed = now - started_at
    return int(round(min(max(elapsed, policy.floor_ms), policy.ceiling_ms)))


def monotonic_ms() -> float:
    return time.monotonic() * 1000


def _as_ms(value: Any) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


class TurnManager:
    """Per-session turn state machine.

    All methods are called from the session's single event stream, so state
    changes never interleave.
    """

    def __init__(
        self,
        scheduler: BufferScheduler,
        send_ai: EventSender,
        send_inbound: EventSender,
        *,
        src_rate: int = 24000,
        dst_rate: int = 16000,
        resample_method: ResampleMethod = "decimate",
        truncation: TruncationPolicy | None = None,
        clock: Callable[[], float] = monotonic_ms,
        session_id: str = "-",
    ) -> None:
        self._scheduler = scheduler
        self._send_ai = send_ai
        self._send_inbound = send_inbound
        self._src_rate = src_rate
        self._dst_rate = dst_rate
        self._resample_method = resample_method
        self._truncation = truncation or TruncationPolicy()
        self._clock = clock
        self._sid = session_id

        self.state: TurnState = Idle()
        self.passthrough_enabled = True
        self._interrupted_item_id: str | None = None

    @property
    def current_item_id(self) -> str | None:
        if isinstance(self.state, Responding):
            return self.state.item_id
        return None

    @property
    def response_started_at(self) -> float | None:
        if isinstance(self.state, Responding):
            return self.state.started_at
        return None

    async def on_item_created(self, item_id: str) -> None:
        previous = self.state
        self.state = Responding(item_id=item_id)
        LOGGER.info("Session %s: assistant item %s created (was %s)", self._sid, item_id, type(previous).__name__)
        self._scheduler.start_timer()

    async def on_audio_delta(self, pcm: bytes, item_id: str | None = None) -> int:
        """Resample and queue one model audio delta; returns frames sent."""

        if not self.passthrough_enabled:
            return 0
        if item_id is not None and item_id == self._interrupted_item_id:
            return 0

        state = self.state
        if isinstance(state, Responding) and state.started_at is None:
            self.state = Responding(item_id=state.item_id, started_at=self._clock())
            LOGGER.debug("Session %s: first audio for item %s", self._sid, state.item_id)

        converted = resample(pcm, self._src_rate, self._dst_rate, method=self._resample_method)
        return await self._scheduler.append(converted)

    async def on_speech_started(self, audio_start_ms: Any = None) -> bool:
        """Handle caller speech; returns True when an interruption was issued."""

        state = self.state
        if not isinstance(state, Responding):
            LOGGER.debug("Session %s: speech started with nothing to interrupt", self._sid)
            return False

        reported = _as_ms(audio_start_ms)
        if reported is None and audio_start_ms is not None:
            LOGGER.warning("Session %s: ignoring non-numeric audio_start_ms %r", self._sid, audio_start_ms)
        offset = truncation_offset_ms(
            state.started_at,
            self._clock(),
            reported if state.started_at is not None else None,
            policy=self._truncation,
        )

        self.passthrough_enabled = False
        self._scheduler.reset()
        LOGGER.info("Session %s: barge-in, truncating item %s at %sms", self._sid, state.item_id, offset)

        self.state = Interrupting(item_id=state.item_id)
        self._interrupted_item_id = state.item_id

        await self._send_ai(protocol.item_truncate(state.item_id, offset))
        await self._send_inbound(dict(protocol.CLEAR_ACTION))
        return True

    async def on_item_truncated(self) -> None:
        self.passthrough_enabled = True
        if isinstance(self.state, Interrupting):
            # Deltas may have slipped in between the reset and the confirmation.
            self._scheduler.reset()
            self.state = Idle()
        LOGGER.info("Session %s: truncation confirmed, audio passthrough resumed", self._sid)

    async def on_ai_error(self) -> None:
        """A realtime error while interrupting means no confirmation is coming."""

        if not isinstance(self.state, Interrupting):
            return
        LOGGER.warning(
            "Session %s: realtime error while truncating item %s, resuming audio",
            self._sid,
            self.state.item_id,
        )
        self._scheduler.reset()
        self.state = Idle()
        self.passthrough_enabled = True

    async def on_response_done(self) -> int:
        if not isinstance(self.state, Responding):
            self._scheduler.stop_timer()
            return 0
        sent = await self._scheduler.flush_complete()
        self.state = Idle()
        return sent

    async def on_tick(self) -> int:
        return await self._scheduler.drain()
