"""
Filter stage: median → moving average → Butterworth bandpass.

The bandpass is rebuilt for the sample rate observed in the timestamps.
Phone cameras rarely hold their nominal frame rate with the torch on, and a
filter designed for 30 Hz applied to 24 Hz data shifts the passband by 20 %.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np
from scipy.ndimage import median_filter, uniform_filter1d
from scipy.signal import butter, sosfiltfilt

from ppg_monitor.config import FilterConfig

logger = logging.getLogger(__name__)


def observed_sample_rate(timestamps: np.ndarray, fallback: float) -> float:
    """``(n - 1) / (t_last - t_first)``, or *fallback* when that is undefined."""
    times = np.asarray(timestamps, dtype=np.float64)
    if times.size < 2:
        return fallback
    span = float(times[-1] - times[0])
    if span <= 0:
        return fallback
    return (times.size - 1) / span


def median_smooth(signal: np.ndarray, window: int = 3) -> np.ndarray:
    """Remove isolated spikes."""
    x = np.asarray(signal, dtype=np.float64)
    if window <= 1 or x.size < window:
        return x.copy()
    return median_filter(x, size=window, mode="nearest")


def moving_average(signal: np.ndarray, window: int = 3) -> np.ndarray:
    """Centred moving average; edges are padded with the nearest value."""
    x = np.asarray(signal, dtype=np.float64)
    if window <= 1 or x.size < window:
        return x.copy()
    return uniform_filter1d(x, size=window, mode="nearest")


def build_bandpass(fs: float, low_hz: float, high_hz: float, order: int = 4) -> np.ndarray:
    """Construct a Butterworth bandpass filter (SOS form)."""
    nyq = fs / 2.0
    low = low_hz / nyq
    high = high_hz / nyq
    # Clamp to valid range
    low = max(1e-4, min(low, 0.999))
    high = max(low + 1e-4, min(high, 0.999))
    return butter(order, [low, high], btype="bandpass", output="sos")


def bandpass(
    signal: np.ndarray,
    fs: float,
    low_hz: float = 40.0 / 60.0,
    high_hz: float = 200.0 / 60.0,
    order: int = 4,
) -> np.ndarray:
    """Zero-phase bandpass of the mean-removed *signal*."""
    x = np.asarray(signal, dtype=np.float64)
    x = x - x.mean()
    sos = build_bandpass(fs, low_hz, high_hz, order)
    # sosfiltfilt pads the edges; very short windows cannot be padded
    padlen = 3 * (2 * len(sos) + 1)
    if x.size <= padlen:
        return x
    return sosfiltfilt(sos, x)


class FilterStage:
    """
    Denoise a raw red-channel window and isolate the pulse band.

    Parameters
    ----------
    config:
        Window sizes, passband and the flat-signal guard.  See
        :class:`FilterConfig`.
    """

    def __init__(self, config: FilterConfig | None = None) -> None:
        self.config = config or FilterConfig()

    def apply(self, signal: np.ndarray, fs: float) -> np.ndarray:
        """Return the filtered waveform, whatever its amplitude."""
        c = self.config
        x = median_smooth(signal, c.median_window)
        x = moving_average(x, c.smooth_window)
        return bandpass(x, fs, c.low_hz, c.high_hz, c.order)

    def process(self, signal: np.ndarray, fs: float) -> Optional[np.ndarray]:
        """
        Return the filtered waveform, or *None* when it is too flat to carry
        a pulse.
        """
        filtered = self.apply(signal, fs)
        if filtered.size == 0:
            return None
        variation = float(np.ptp(filtered))
        if variation < self.config.min_variation:
            logger.debug("Filtered signal too flat (p-p %.4f); skipping cycle.", variation)
            return None
        return filtered
