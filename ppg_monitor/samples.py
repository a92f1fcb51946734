"""
Per-frame data types.

A fingertip pressed over the lens with the torch on turns the whole frame
into a dull red field whose brightness pulses with each heartbeat.  Only the
channel means of the centre region are kept; the rest of the frame is
discarded as soon as :func:`sample_from_frame` returns.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

import numpy as np


class SignalQuality(Enum):
    POOR      = 0
    FAIR      = 1
    GOOD      = 2
    EXCELLENT = 3

    @property
    def hint(self) -> str:
        return _QUALITY_HINTS[self]

    @property
    def score(self) -> float:
        """Multiplier applied to the confidence of a finished measurement."""
        return _QUALITY_SCORES[self]


_QUALITY_HINTS = {
    SignalQuality.POOR:      "Place finger firmly covering camera and flash",
    SignalQuality.FAIR:      "Hold steady...",
    SignalQuality.GOOD:      "Detecting pulse...",
    SignalQuality.EXCELLENT: "Excellent signal",
}

_QUALITY_SCORES = {
    SignalQuality.POOR:      0.5,
    SignalQuality.FAIR:      0.7,
    SignalQuality.GOOD:      0.9,
    SignalQuality.EXCELLENT: 1.0,
}


@dataclass(frozen=True)
class Sample:
    """Channel means of one frame; *captured_at* is in seconds."""

    red: float
    green: float
    blue: float
    captured_at: float


@dataclass(frozen=True)
class AcceptedPoint:
    value: float             # red channel
    elapsed_seconds: float   # valid measurement time, not wall-clock


@dataclass(frozen=True)
class BpmReading:
    bpm: int
    timestamp: float


def sample_from_frame(frame: np.ndarray, captured_at: float) -> Sample:
    """
    Average the centre region of a BGR *frame* into a :class:`Sample`.

    The centre half of the frame in each dimension is used, sampling every
    second pixel.  Edges are skipped because the fingertip rarely covers
    the lens corners.

    Parameters
    ----------
    frame:
        BGR image array (H × W × 3 or H × W × 4, uint8).
    captured_at:
        Capture time in seconds (any monotonic origin).
    """
    if frame.ndim != 3 or frame.shape[2] < 3:
        raise ValueError(f"expected an H × W × 3 BGR frame, got shape {frame.shape}")
    h, w = frame.shape[:2]
    roi = frame[h // 4: 3 * h // 4: 2, w // 4: 3 * w // 4: 2, :3]
    if roi.size == 0:
        roi = frame[:, :, :3]
    means = roi.reshape(-1, 3).mean(axis=0, dtype=np.float64)
    b, g, r = (float(v) for v in means)
    return Sample(red=r, green=g, blue=b, captured_at=float(captured_at))
