from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable

from audio.framing import FramePaginator

LOGGER = logging.getLogger(__name__)

FrameSender = Callable[[bytes], Awaitable[None]]


class BufferScheduler:
    """Delivers paginated audio frames to the caller side of the call.

    Under the buffered policy a timer fires every ``interval_ms`` while a
    response is playing. The timer does not send anything itself: it calls
    ``on_tick`` so the owner can schedule a ``drain`` on its own event stream.
    """

    def __init__(
        self,
        paginator: FramePaginator,
        send_frame: FrameSender,
        *,
        interval_ms: int = 1000,
        on_tick: Callable[[], None] | None = None,
    ) -> None:
        self._paginator = paginator
        self._send_frame = send_frame
        self._interval = interval_ms / 1000
        self._on_tick = on_tick
        self._timer: asyncio.Task | None = None
        self._closed = False

    @property
    def policy(self) -> str:
        return self._paginator.policy

    @property
    def pending(self) -> int:
        return self._paginator.pending

    @property
    def timer_running(self) -> bool:
        return self._timer is not None and not self._timer.done()

    async def append(self, data: bytes) -> int:
        if self._closed:
            return 0
        return await self._send(self._paginator.append(data))

    async def drain(self) -> int:
        return await self._send(self._paginator.drain())

    async def flush_complete(self) -> int:
        self.stop_timer()
        return await self._send(self._paginator.flush_complete())

    def reset(self) -> None:
        self.stop_timer()
        self._paginator.reset()

    def start_timer(self) -> None:
        if self._closed or self._on_tick is None or self.policy != "buffered":
            return
        if self.timer_running:
            return
        self._timer = asyncio.create_task(self._tick_loop())

    def stop_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    def close(self) -> None:
        self._closed = True
        self.reset()

    async def _tick_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval)
            self._on_tick()

    async def _send(self, frames: list[bytes]) -> int:
        sent = 0
        for frame in frames:
            if self._closed:
                break
            await self._send_frame(frame)
            sent += 1
        return sent
