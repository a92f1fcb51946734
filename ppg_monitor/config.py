"""
Tunable thresholds for the fingertip PPG pipeline.

Every numeric constant used by the pipeline lives here.  The values were
settled empirically on phone-class cameras with the torch on at ~30 fps;
expect to retune them for other sensors.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Tuple


@dataclass(frozen=True)
class MotionConfig:
    window_size:   int   = 10     # raw red values kept in the rolling window
    threshold:     float = 20.0   # mean |Δred| above this means motion


@dataclass(frozen=True)
class QualityConfig:
    # Per-frame gate (0 – 255 channel units)
    brightness_floor:  float = 60.0
    ambient_level:     float = 110.0   # green AND blue above this → no finger
    red_dominance:     float = 0.8     # red must reach (green + blue) × this

    # Buffer statistics tier
    stats_window:      int   = 30
    fair_mean:         float = 100.0
    fair_amplitude:    float = 2.5
    fair_std_min:      float = 0.6
    noisy_std:         float = 15.0
    excellent_mean:    float = 120.0
    excellent_amplitude: float = 5.0
    excellent_std:     Tuple[float, float] = (1.2, 5.0)
    good_amplitude:    float = 2.5
    good_std:          Tuple[float, float] = (0.7, 6.0)


@dataclass(frozen=True)
class FilterConfig:
    median_window:   int   = 3
    smooth_window:   int   = 3
    low_hz:          float = 40.0 / 60.0
    high_hz:         float = 200.0 / 60.0
    order:           int   = 4
    min_variation:   float = 0.1     # peak-to-peak floor of the filtered signal


@dataclass(frozen=True)
class EstimatorConfig:
    bpm_min:             float = 40.0
    bpm_max:             float = 200.0
    min_fft_size:        int   = 1024
    peak_spacing:        float = 0.3      # × sample rate, in samples
    peak_height:         float = 0.5      # fraction of the range above the minimum
    min_peaks:           int   = 4
    interval_range:      Tuple[float, float] = (0.3, 1.5)   # seconds
    iqr_factor:          float = 1.5


@dataclass(frozen=True)
class FusionConfig:
    agreement:           int   = 6
    high_rate_agreement: int   = 8
    high_rate_bpm:       int   = 120
    last_resort:         int   = 10
    autocorr_weight:     float = 2.0


@dataclass(frozen=True)
class SessionConfig:
    nominal_rate:        float = 30.0   # Hz; only used when timestamps cannot tell
    duration:            float = 30.0   # seconds of valid signal
    warmup_samples:      int   = 60
    min_samples:         int   = 180
    max_samples:         int   = 900
    max_frame_delta:     float = 0.1


@dataclass(frozen=True)
class PPGConfig:
    """All pipeline settings, grouped per stage."""

    motion:     MotionConfig    = field(default_factory=MotionConfig)
    quality:    QualityConfig   = field(default_factory=QualityConfig)
    filter:     FilterConfig    = field(default_factory=FilterConfig)
    estimator:  EstimatorConfig = field(default_factory=EstimatorConfig)
    fusion:     FusionConfig    = field(default_factory=FusionConfig)
    session:    SessionConfig   = field(default_factory=SessionConfig)

    def validate(self) -> "PPGConfig":
        """Raise ``ValueError`` on inconsistent settings; return *self*."""
        s = self.session
        if s.duration <= 0:
            raise ValueError(f"duration must be positive, got {s.duration}")
        if s.nominal_rate <= 0:
            raise ValueError(f"nominal_rate must be positive, got {s.nominal_rate}")
        if s.max_frame_delta <= 0:
            raise ValueError("max_frame_delta must be positive")
        if not 0 <= s.warmup_samples < s.min_samples <= s.max_samples:
            raise ValueError(
                "expected 0 <= warmup_samples < min_samples <= max_samples, got "
                f"{s.warmup_samples}, {s.min_samples}, {s.max_samples}"
            )
        if self.motion.window_size < 2:
            raise ValueError("motion window needs at least two values")
        f = self.filter
        if not 0 < f.low_hz < f.high_hz:
            raise ValueError(f"invalid passband {f.low_hz}–{f.high_hz} Hz")
        for name in ("median_window", "smooth_window"):
            if getattr(f, name) < 1:
                raise ValueError(f"{name} must be >= 1")
        e = self.estimator
        if not 0 < e.bpm_min < e.bpm_max:
            raise ValueError(f"invalid BPM bounds {e.bpm_min}–{e.bpm_max}")
        for name, (lo, hi) in (
            ("excellent_std", self.quality.excellent_std),
            ("good_std", self.quality.good_std),
            ("interval_range", e.interval_range),
        ):
            if not 0 <= lo <= hi:
                raise ValueError(f"{name} must be an ordered (low, high) pair, got {(lo, hi)}")
        return self


DEFAULT_CONFIG = PPGConfig()
