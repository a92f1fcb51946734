"""
Signal quality evaluator.

When a finger covers the lens and the torch is on, the frame becomes:
  - Bright in the red channel (light scattered through tissue).
  - Much darker in green and blue (absorbed by blood).
  - Slowly pulsating, with no large jumps.

The evaluator works in two tiers.  The per-frame gate returns POOR for
frames that cannot come from a covered lens, which pauses data collection.
The buffer tier looks at the last few accepted values and only refines the
feedback shown to the user; it never rejects a frame.
"""

from __future__ import annotations

from typing import Sequence

import numpy as np

from ppg_monitor.config import QualityConfig
from ppg_monitor.samples import Sample, SignalQuality


class SignalQualityEvaluator:
    """
    Classify a sample and the recent buffer into a :class:`SignalQuality`.

    Parameters
    ----------
    config:
        Thresholds.  See :class:`QualityConfig`.
    """

    def __init__(self, config: QualityConfig | None = None) -> None:
        self.config = config or QualityConfig()

    def evaluate(self, sample: Sample, recent: Sequence[float] = ()) -> SignalQuality:
        """
        Return the quality of *sample* given *recent* accepted red values.

        Only the last ``stats_window`` values of *recent* are used.
        """
        if not self.passes_gate(sample):
            return SignalQuality.POOR
        return self.buffer_quality(recent)

    def passes_gate(self, sample: Sample) -> bool:
        """*True* if the frame looks like a lit fingertip over the lens."""
        c = self.config
        if sample.red < c.brightness_floor:
            return False
        if sample.green > c.ambient_level and sample.blue > c.ambient_level:
            return False
        if sample.red < (sample.green + sample.blue) * c.red_dominance:
            return False
        return True

    def buffer_quality(self, recent: Sequence[float]) -> SignalQuality:
        c = self.config
        if len(recent) < c.stats_window:
            return SignalQuality.FAIR

        values = np.asarray(recent, dtype=np.float64)[-c.stats_window:]
        mean = float(values.mean())
        amplitude = float(values.max() - values.min())
        std = float(values.std())

        if (mean < c.fair_mean or amplitude < c.fair_amplitude
                or std < c.fair_std_min or std > c.noisy_std):
            return SignalQuality.FAIR

        lo, hi = c.excellent_std
        if amplitude >= c.excellent_amplitude and lo <= std <= hi and mean >= c.excellent_mean:
            return SignalQuality.EXCELLENT

        lo, hi = c.good_std
        if amplitude >= c.good_amplitude and lo <= std <= hi:
            return SignalQuality.GOOD

        return SignalQuality.FAIR
