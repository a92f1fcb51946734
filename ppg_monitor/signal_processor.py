"""
PPG signal processor.

Algorithm
---------
1. Keep a bounded buffer of accepted red-channel values and their valid
   elapsed time.  Red carries the strongest pulsatile component when the
   fingertip is lit from behind by the torch.
2. Once enough samples are buffered, drop the warm-up prefix and measure
   the sample rate from the timestamps.
3. Median filter, moving average, Butterworth bandpass (40 – 200 BPM).
4. Estimate BPM by autocorrelation, spectral peak and peak intervals, then
   fuse the three estimates.

Each evaluation works on a snapshot of the buffer, so it can run on a
worker thread while frames keep arriving.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np

from ppg_monitor.config import PPGConfig
from ppg_monitor.estimators import (
    AutocorrelationEstimator,
    BpmEstimate,
    PeakIntervalEstimator,
    SpectralEstimator,
)
from ppg_monitor.filters import FilterStage, observed_sample_rate
from ppg_monitor.fusion import FusionPolicy
from ppg_monitor.sample_buffer import SampleBuffer
from ppg_monitor.samples import AcceptedPoint

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Evaluation:
    """Outcome of one evaluation cycle."""

    sample_rate: float
    autocorrelation: Optional[BpmEstimate] = None
    spectral: Optional[BpmEstimate] = None
    peak_interval: Optional[BpmEstimate] = None
    bpm: Optional[int] = None


class SignalProcessor:
    """
    Rolling PPG analyser.

    Parameters
    ----------
    config:
        Pipeline settings.  Only the session, filter, estimator and fusion
        groups are used here.
    """

    def __init__(self, config: PPGConfig | None = None) -> None:
        self.config = (config or PPGConfig()).validate()
        s = self.config.session
        self.buffer = SampleBuffer(max_samples=s.max_samples, warmup_samples=s.warmup_samples)

        self._filter = FilterStage(self.config.filter)
        self._autocorr = AutocorrelationEstimator(self.config.estimator)
        self._spectral = SpectralEstimator(self.config.estimator)
        self._peaks = PeakIntervalEstimator(self.config.estimator)
        self._fusion = FusionPolicy(self.config.fusion)

        self._last: Optional[Evaluation] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def push(self, point: AcceptedPoint) -> None:
        self.buffer.append(point)

    @property
    def ready(self) -> bool:
        """*True* once enough samples are buffered for an evaluation."""
        return len(self.buffer) >= self.config.session.min_samples

    def snapshot(self) -> Tuple[np.ndarray, np.ndarray]:
        """Copy of the usable ``(values, elapsed_seconds)`` arrays."""
        return self.buffer.usable()

    def evaluate(self, values: np.ndarray, timestamps: np.ndarray) -> Evaluation:
        """
        Run the filter stage, the three estimators and the fusion policy on
        a buffer snapshot.  Pure: does not touch the processor's state.
        """
        fs = observed_sample_rate(timestamps, self.config.session.nominal_rate)
        filtered = self._filter.process(values, fs)
        if filtered is None:
            return Evaluation(sample_rate=fs)

        ac = self._autocorr.estimate(filtered, fs)
        sp = self._spectral.estimate(filtered, fs)
        pk = self._peaks.estimate(filtered, fs, timestamps)
        bpm = self._fusion.fuse(ac, sp, pk)
        if bpm is None:
            logger.debug(
                "No agreement: autocorrelation=%s spectral=%s peaks=%s",
                ac and ac.value, sp and sp.value, pk and pk.value,
            )
        return Evaluation(
            sample_rate=fs, autocorrelation=ac, spectral=sp, peak_interval=pk, bpm=bpm,
        )

    def compute_bpm(self) -> Optional[int]:
        """
        Evaluate the current buffer and return the fused BPM.

        Returns *None* when there is insufficient data, the signal is flat,
        or the estimators disagree.
        """
        if not self.ready:
            return None
        values, times = self.snapshot()
        self._last = self.evaluate(values, times)
        return self._last.bpm

    @property
    def last_evaluation(self) -> Optional[Evaluation]:
        return self._last

    @property
    def buffer_fill_ratio(self) -> float:
        """How full the buffer is (0 – 1)."""
        return len(self.buffer) / self.buffer.max_samples

    @property
    def sample_rate(self) -> float:
        _, times = self.snapshot()
        return observed_sample_rate(times, self.config.session.nominal_rate)

    def get_filtered_signal(self) -> np.ndarray:
        """
        Return the current filtered PPG waveform (for plotting).
        Returns an empty array if there is insufficient data.
        """
        if not self.ready:
            return np.array([])
        values, times = self.snapshot()
        fs = observed_sample_rate(times, self.config.session.nominal_rate)
        return self._filter.apply(values, fs)

    def get_fft_data(self) -> Tuple[np.ndarray, np.ndarray]:
        """
        Return the current spectrum (frequencies in BPM, power) restricted
        to the plausible heart-rate band.
        Returns empty arrays if there is insufficient data.
        """
        filtered = self.get_filtered_signal()
        if filtered.size == 0:
            return np.array([]), np.array([])

        fs = self.sample_rate
        freqs_bpm = np.fft.rfftfreq(filtered.size, d=1.0 / fs) * 60.0
        power = np.abs(np.fft.rfft(filtered)) ** 2

        e = self.config.estimator
        band_mask = (freqs_bpm >= e.bpm_min) & (freqs_bpm <= e.bpm_max)
        return freqs_bpm[band_mask], power[band_mask]

    def reset(self) -> None:
        """Clear the buffer and the last result."""
        self.buffer.clear()
        self._last = None
