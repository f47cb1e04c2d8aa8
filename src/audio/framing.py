from __future__ import annotations

from typing import Final, Literal

DeliveryPolicy = Literal["immediate", "buffered"]

BYTES_PER_SAMPLE: Final[int] = 2


def frame_size_bytes(sample_rate: int, frame_ms: int) -> int:
    """Byte length of one PCM16 frame, e.g. 640 for 20ms @ 16kHz."""

    size = sample_rate * frame_ms // 1000 * BYTES_PER_SAMPLE
    if size <= 0:
        raise ValueError(f"Frame of {frame_ms}ms @ {sample_rate}Hz is empty")
    return size


class FramePaginator:
    """Slices a PCM16 byte stream into fixed-size frames.

    ``immediate`` hands out complete frames as soon as a chunk arrives and
    drops the trailing partial frame of that chunk. ``buffered`` accumulates
    everything until ``drain`` (periodic) or ``flush_complete`` (end of a
    response). Only ``flush_complete`` ever returns an under-sized frame.
    """

    def __init__(self, frame_bytes: int, policy: DeliveryPolicy = "immediate") -> None:
        if frame_bytes <= 0 or frame_bytes % BYTES_PER_SAMPLE:
            raise ValueError(f"Invalid frame size: {frame_bytes}")
        if policy not in ("immediate", "buffered"):
            raise ValueError(f"Unsupported delivery policy: {policy}")
        self.frame_bytes = frame_bytes
        self.policy: DeliveryPolicy = policy
        self._buffer = bytearray()

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def append(self, data: bytes) -> list[bytes]:
        if not data:
            return []
        if self.policy == "immediate":
            whole = len(data) - len(data) % self.frame_bytes
            return [bytes(data[i : i + self.frame_bytes]) for i in range(0, whole, self.frame_bytes)]

        self._buffer.extend(data)
        return []

    def drain(self) -> list[bytes]:
        whole = len(self._buffer) - len(self._buffer) % self.frame_bytes
        frames = [bytes(self._buffer[i : i + self.frame_bytes]) for i in range(0, whole, self.frame_bytes)]
        del self._buffer[:whole]
        return frames

    def flush_complete(self) -> list[bytes]:
        frames = self.drain()
        if self._buffer:
            frames.append(bytes(self._buffer))
            self._buffer.clear()
        return frames

    def reset(self) -> None:
        self._buffer.clear()
