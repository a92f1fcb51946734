"""
Heart-rate estimators operating on a filtered PPG window.

Algorithm
---------
Three independent estimates are computed from the same filtered waveform:

1. **Autocorrelation** – the lag of the strongest ACF peak inside the
   heart-rate lag range.  The most reliable single method for fingertip
   PPG, whose pulse shape is far from sinusoidal.
2. **Spectral** – the dominant bin of the Hann-windowed power spectrum.
3. **Peak interval** – the median time between systolic peaks, measured
   on the timestamp sequence so dropped frames do not bias the result.

Each estimator returns *None* rather than a value outside the plausible
BPM range.

References
----------
- Allen J., "Photoplethysmography and its application in clinical
  physiological measurement." Physiol. Meas., 2007.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import numpy as np
from scipy.signal import find_peaks

from ppg_monitor.config import EstimatorConfig

logger = logging.getLogger(__name__)


class EstimationMethod(Enum):
    AUTOCORRELATION = "autocorrelation"
    SPECTRAL        = "spectral"
    PEAK_INTERVAL   = "peak_interval"


@dataclass(frozen=True)
class BpmEstimate:
    value: int
    method: EstimationMethod


def _parabolic_offset(y: np.ndarray, i: int) -> float:
    """Sub-sample offset of the vertex through ``y[i-1], y[i], y[i+1]``."""
    if i <= 0 or i >= y.size - 1:
        return 0.0
    alpha, beta, gamma = float(y[i - 1]), float(y[i]), float(y[i + 1])
    denom = alpha - 2.0 * beta + gamma
    if denom == 0.0:
        return 0.0
    return float(np.clip(0.5 * (alpha - gamma) / denom, -0.5, 0.5))


def _iqr_trim(values: np.ndarray, factor: float) -> np.ndarray:
    q1, q3 = np.percentile(values, [25, 75])
    iqr = q3 - q1
    keep = (values >= q1 - factor * iqr) & (values <= q3 + factor * iqr)
    return values[keep]


class _Estimator:
    method: EstimationMethod

    def __init__(self, config: EstimatorConfig | None = None) -> None:
        self.config = config or EstimatorConfig()

    def _make(self, bpm: float) -> Optional[BpmEstimate]:
        if not np.isfinite(bpm):
            return None
        value = int(round(bpm))
        if not self.config.bpm_min <= value <= self.config.bpm_max:
            logger.debug("%s estimate %d BPM out of range.", self.method.value, value)
            return None
        return BpmEstimate(value=value, method=self.method)


class AutocorrelationEstimator(_Estimator):
    """Dominant period from the autocorrelation function."""

    method = EstimationMethod.AUTOCORRELATION

    def estimate(self, signal: np.ndarray, fs: float) -> Optional[BpmEstimate]:
        x = np.asarray(signal, dtype=np.float64)
        if x.size < 8 or fs <= 0:
            return None
        x = x - x.mean()
        energy = float(np.dot(x, x))
        if energy <= 0:
            return None

        # FFT-based autocorrelation (Wiener–Khinchin), normalised to acf[0] = 1
        n_fft = 1 << int(np.ceil(np.log2(2 * x.size - 1)))
        spectrum = np.fft.rfft(x, n=n_fft)
        acf = np.fft.irfft(np.abs(spectrum) ** 2, n=n_fft)[: x.size] / energy

        lag_min = max(1, int(np.floor(fs * 60.0 / self.config.bpm_max)))
        lag_max = int(np.ceil(fs * 60.0 / self.config.bpm_min))
        if lag_max >= x.size // 2:
            # Too few periods of the slowest rate fit in the window
            lag_max = x.size // 2 - 1
        if lag_max - lag_min < 2:
            return None

        peaks, _ = find_peaks(acf[: lag_max + 2])
        peaks = peaks[(peaks >= lag_min) & (peaks <= lag_max)]
        if peaks.size == 0:
            return None
        best = int(peaks[np.argmax(acf[peaks])])
        if acf[best] <= 0:
            return None

        lag = best + _parabolic_offset(acf, best)
        return self._make(60.0 * fs / lag)


class SpectralEstimator(_Estimator):
    """Dominant frequency of the power spectrum."""

    method = EstimationMethod.SPECTRAL

    def estimate(self, signal: np.ndarray, fs: float) -> Optional[BpmEstimate]:
        x = np.asarray(signal, dtype=np.float64)
        if x.size < 8 or fs <= 0:
            return None
        x = (x - x.mean()) * np.hanning(x.size)

        # Zero-pad to the next power of 2 for finer bin spacing
        n_fft = max(self.config.min_fft_size, 1 << (x.size - 1).bit_length())
        freqs = np.fft.rfftfreq(n_fft, d=1.0 / fs)
        power = np.abs(np.fft.rfft(x, n=n_fft)) ** 2

        low_hz = self.config.bpm_min / 60.0
        high_hz = self.config.bpm_max / 60.0
        band = np.flatnonzero((freqs >= low_hz) & (freqs <= high_hz))
        if band.size == 0:
            return None
        peak_idx = int(band[np.argmax(power[band])])
        if power[peak_idx] <= 0:
            return None

        freq_step = freqs[1] - freqs[0]
        peak_freq = freqs[peak_idx] + _parabolic_offset(power, peak_idx) * freq_step
        return self._make(peak_freq * 60.0)


class PeakIntervalEstimator(_Estimator):
    """Median inter-beat interval from detected systolic peaks."""

    method = EstimationMethod.PEAK_INTERVAL

    def find_peaks(self, signal: np.ndarray, fs: float) -> np.ndarray:
        """Indices of local maxima above the mid-range threshold."""
        x = np.asarray(signal, dtype=np.float64)
        if x.size < 3:
            return np.array([], dtype=int)
        lo, hi = float(x.min()), float(x.max())
        if hi <= lo:
            return np.array([], dtype=int)
        height = lo + (hi - lo) * self.config.peak_height
        distance = max(1, int(fs * self.config.peak_spacing))
        peaks, _ = find_peaks(x, height=height, distance=distance)
        return peaks

    def estimate(
        self,
        signal: np.ndarray,
        fs: float,
        timestamps: np.ndarray,
    ) -> Optional[BpmEstimate]:
        times = np.asarray(timestamps, dtype=np.float64)
        peaks = self.find_peaks(signal, fs)
        peaks = peaks[peaks < times.size]
        if peaks.size < self.config.min_peaks:
            return None

        intervals = np.diff(self._peak_times(signal, peaks, times))
        lo, hi = self.config.interval_range
        intervals = intervals[(intervals >= lo) & (intervals <= hi)]
        if intervals.size == 0:
            return None
        if intervals.size >= 4:
            intervals = _iqr_trim(intervals, self.config.iqr_factor)

        median_interval = float(np.median(intervals))
        if median_interval <= 0:
            return None
        return self._make(60.0 / median_interval)

    @staticmethod
    def _peak_times(signal: np.ndarray, peaks: np.ndarray, times: np.ndarray) -> np.ndarray:
        """Peak timestamps refined between neighbouring samples."""
        x = np.asarray(signal, dtype=np.float64)
        refined = np.empty(peaks.size, dtype=np.float64)
        for k, p in enumerate(peaks):
            offset = _parabolic_offset(x, int(p)) if p + 1 < times.size else 0.0
            if offset > 0:
                refined[k] = times[p] + offset * (times[p + 1] - times[p])
            elif offset < 0:
                refined[k] = times[p] + offset * (times[p] - times[p - 1])
            else:
                refined[k] = times[p]
        return refined
