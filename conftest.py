"""
Shared pytest fixtures.
Run with:  pytest tests/
"""

from __future__ import annotations

import numpy as np
import pytest


@pytest.fixture
def make_pulse():
    """Return ``build(bpm, fps=30, duration=20, noise=0.1, seed=0) -> (signal, times)``.

    The signal is a unit sine at *bpm* with Gaussian noise; *times* are the
    sample timestamps in seconds.
    """

    def build(bpm: float, fps: float = 30.0, duration: float = 20.0,
              noise: float = 0.1, seed: int = 0):
        rng = np.random.default_rng(seed)
        times = np.arange(int(round(fps * duration))) / fps
        signal = np.sin(2 * np.pi * (bpm / 60.0) * times)
        signal = signal + noise * rng.standard_normal(times.size)
        return signal, times

    return build


@pytest.fixture
def event_log():
    """A list that doubles as a session listener."""

    class EventLog(list):
        def __call__(self, event) -> None:
            self.append(event)

        def of(self, kind):
            return [e for e in self if isinstance(e, kind)]

    return EventLog()
