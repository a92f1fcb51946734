"""
Motion detector.

A finger pulse moves the red channel by a few units per frame.  Shifting the
finger on the lens moves it by tens of units, so the mean absolute first
difference over a short window separates the two cleanly.
"""

from __future__ import annotations

from collections import deque
from typing import Deque

import numpy as np

from ppg_monitor.config import MotionConfig


class MotionDetector:
    """
    Flags samples taken while the finger is moving.

    Parameters
    ----------
    config:
        Window length and threshold.  See :class:`MotionConfig`.
    """

    def __init__(self, config: MotionConfig | None = None) -> None:
        self.config = config or MotionConfig()
        self._window: Deque[float] = deque(maxlen=self.config.window_size)

    def observe(self, value: float) -> bool:
        """
        Push one raw red value and return *True* if motion is excessive.

        Always returns *False* until the window is full.
        """
        self._window.append(float(value))
        if len(self._window) < self._window.maxlen:
            return False
        values = np.asarray(self._window, dtype=np.float64)
        mean_delta = float(np.mean(np.abs(np.diff(values))))
        return mean_delta > self.config.threshold

    def reset(self) -> None:
        self._window.clear()

    @property
    def is_primed(self) -> bool:
        return len(self._window) == self._window.maxlen
