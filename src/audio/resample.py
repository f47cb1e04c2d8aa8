"""PCM16 sample-rate conversion.

Two policies are available and selected by name:

- ``decimate``: nearest-neighbour decimation. For 24 kHz -> 16 kHz it keeps the
  first and third sample of every three.
- ``linear``: linear interpolation between the two bounding input samples,
  for any pair of integer rates.

Both operate on little-endian signed 16-bit mono buffers and keep no state
between calls.
"""

from __future__ import annotations

from typing import Final, Literal

import numpy as np

from realtime.errors import InvalidBufferLength

ResampleMethod = Literal["decimate", "linear"]

SAMPLE_WIDTH: Final[int] = 2
PCM16_DTYPE: Final[str] = "<i2"


def pcm16_from_bytes(data: bytes) -> np.ndarray:
    if len(data) % SAMPLE_WIDTH:
        raise InvalidBufferLength(
            f"PCM16 buffer of {len(data)} bytes is not a whole number of samples"
        )
    return np.frombuffer(data, dtype=PCM16_DTYPE)


def pcm16_to_bytes(pcm: np.ndarray) -> bytes:
    return pcm.astype(PCM16_DTYPE).tobytes()


def _output_count(n_samples: int, src_rate: int, dst_rate: int) -> int:
    return (n_samples * dst_rate) // src_rate


def decimate(pcm: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    """Pick input sample ``ceil(j * src / dst)`` for every output index ``j``."""

    if dst_rate > src_rate:
        raise ValueError(f"Decimation cannot upsample ({src_rate} Hz -> {dst_rate} Hz)")

    count = _output_count(pcm.size, src_rate, dst_rate)
    j = np.arange(count, dtype=np.int64)
    # Integer ceil division keeps the index exact for long buffers.
    idx = -((-j * src_rate) // dst_rate)
    return pcm[idx].astype(np.int16)


def interpolate(pcm: np.ndarray, src_rate: int, dst_rate: int) -> np.ndarray:
    count = _output_count(pcm.size, src_rate, dst_rate)
    if count == 0:
        return np.zeros(0, dtype=np.int16)

    pos = np.arange(count, dtype=np.float64) * (src_rate / dst_rate)
    lower = np.floor(pos).astype(np.int64)
    lower = np.minimum(lower, pcm.size - 1)
    upper = np.minimum(lower + 1, pcm.size - 1)
    frac = pos - lower

    y_old = pcm.astype(np.float64)
    y_new = y_old[lower] + (y_old[upper] - y_old[lower]) * frac

    return np.clip(np.rint(y_new), -32768, 32767).astype(np.int16)


_METHODS = {
    "decimate": decimate,
    "linear": interpolate,
}


def resample(
    data: bytes,
    src_rate: int,
    dst_rate: int,
    *,
    method: ResampleMethod = "decimate",
) -> bytes:
    """Convert a PCM16 byte buffer from ``src_rate`` to ``dst_rate``.

    Raises:
        InvalidBufferLength: if ``data`` has an odd number of bytes.
        ValueError: for non-positive rates, an unknown method, or decimation
            asked to upsample.
    """

    if src_rate <= 0 or dst_rate <= 0:
        raise ValueError(f"Sample rates must be positive, got {src_rate} -> {dst_rate}")
    converter = _METHODS.get(method)
    if converter is None:
        raise ValueError(f"Unsupported resample method: {method}")

    pcm = pcm16_from_bytes(data)
    if src_rate == dst_rate or pcm.size == 0:
        return bytes(data)

    return pcm16_to_bytes(converter(pcm, src_rate, dst_rate))


def pcm24k_to_16k(data: bytes, *, method: ResampleMethod = "decimate") -> bytes:
    return resample(data, 24000, 16000, method=method)
