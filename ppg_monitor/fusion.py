"""
Fusion of the three per-method BPM estimates into one reading.

No reading is published when the methods substantively disagree; a gap in
the output is preferable to a confident wrong number.
"""

from __future__ import annotations

from typing import Optional

from ppg_monitor.config import FusionConfig
from ppg_monitor.estimators import BpmEstimate


class FusionPolicy:
    """
    Resolve up to three optional estimates to a single BPM or *None*.

    Parameters
    ----------
    config:
        Agreement thresholds and the autocorrelation weight.  See
        :class:`FusionConfig`.
    """

    def __init__(self, config: FusionConfig | None = None) -> None:
        self.config = config or FusionConfig()

    def threshold(self, *values: int) -> int:
        """Agreement threshold for comparing *values*.

        Faster pulses jitter more in absolute BPM for the same relative
        error, so the threshold widens above ``high_rate_bpm``.
        """
        c = self.config
        if max(values) > c.high_rate_bpm:
            return c.high_rate_agreement
        return c.agreement

    def agree(self, a: int, b: int) -> bool:
        return abs(a - b) <= self.threshold(a, b)

    def fuse(
        self,
        autocorrelation: Optional[BpmEstimate],
        spectral: Optional[BpmEstimate],
        peak_interval: Optional[BpmEstimate],
    ) -> Optional[int]:
        ac = autocorrelation.value if autocorrelation is not None else None
        sp = spectral.value if spectral is not None else None
        pk = peak_interval.value if peak_interval is not None else None

        if ac is not None and sp is not None and pk is not None:
            spread = max(ac, sp, pk) - min(ac, sp, pk)
            if spread <= self.threshold(ac, sp, pk):
                return sorted((ac, sp, pk))[1]

        if ac is not None:
            for other in (sp, pk):
                if other is not None and self.agree(ac, other):
                    return self._weighted(ac, other)

        if sp is not None and pk is not None and self.agree(sp, pk):
            return int(round((sp + pk) / 2.0))

        if ac is not None:
            return ac

        if sp is not None and pk is not None and abs(sp - pk) <= self.config.last_resort:
            return int(round((sp + pk) / 2.0))

        return None

    def _weighted(self, ac: int, other: int) -> int:
        w = self.config.autocorr_weight
        return int(round((w * ac + other) / (w + 1.0)))
