"""
Bounded store of accepted PPG points.
"""

from __future__ import annotations

from collections import deque
from typing import Deque, Tuple

import numpy as np

from ppg_monitor.samples import AcceptedPoint


class SampleBuffer:
    """
    Time-ordered ring buffer of accepted red values and their valid time.

    Parameters
    ----------
    max_samples:
        Capacity.  The oldest point is evicted once it is exceeded.
    warmup_samples:
        Number of leading points excluded from :meth:`usable`.  The camera's
        auto-exposure is still settling during the first couple of seconds.
    """

    def __init__(self, max_samples: int = 900, warmup_samples: int = 60) -> None:
        if max_samples <= warmup_samples:
            raise ValueError("max_samples must exceed warmup_samples")
        self.max_samples = max_samples
        self.warmup_samples = warmup_samples
        self._values: Deque[float] = deque(maxlen=max_samples)
        self._times: Deque[float] = deque(maxlen=max_samples)

    def append(self, point: AcceptedPoint) -> None:
        if self._times and point.elapsed_seconds < self._times[-1]:
            raise ValueError(
                f"elapsed time went backwards: {point.elapsed_seconds} < {self._times[-1]}"
            )
        self._values.append(point.value)
        self._times.append(point.elapsed_seconds)

    def __len__(self) -> int:
        return len(self._values)

    @property
    def last_elapsed(self) -> float:
        return self._times[-1] if self._times else 0.0

    def recent_values(self, count: int) -> np.ndarray:
        """The last *count* red values (fewer if the buffer is short)."""
        if count <= 0:
            return np.array([], dtype=np.float64)
        values = np.asarray(self._values, dtype=np.float64)
        return values[-count:]

    def usable(self) -> Tuple[np.ndarray, np.ndarray]:
        """
        Return ``(values, elapsed_seconds)`` without the warm-up prefix.

        While the buffer is no longer than the warm-up, everything is returned.
        """
        values = np.asarray(self._values, dtype=np.float64)
        times = np.asarray(self._times, dtype=np.float64)
        if len(values) <= self.warmup_samples:
            return values, times
        return values[self.warmup_samples:], times[self.warmup_samples:]

    def clear(self) -> None:
        self._values.clear()
        self._times.clear()
