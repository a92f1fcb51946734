"""
Validation of a session's BPM history.

Produces the figures handed to persistence: a validated average, a
confidence score and a ± error margin.  Camera PPG is never reported with
100 % confidence, and the margin never drops below 2 BPM.
"""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Sequence

import numpy as np

from ppg_monitor.samples import SignalQuality

VALID_BPM_RANGE = (30, 220)
RESTING_BPM_RANGE = (40, 100)

MIN_CONFIDENCE_READINGS = 5
MAX_CONFIDENCE = 0.99
MARGIN_RANGE = (2, 10)
DEFAULT_MARGIN_CONFIDENT = 3
DEFAULT_MARGIN = 5


class BPMCategory(Enum):
    LOW      = "Low (Bradycardia)"
    ATHLETE  = "Athletic Range"
    NORMAL   = "Normal"
    ELEVATED = "Elevated"
    HIGH     = "High (Tachycardia)"


class ConfidenceLevel(Enum):
    VERY_LOW  = "Very Low"
    LOW       = "Low"
    MODERATE  = "Moderate"
    HIGH      = "High"
    VERY_HIGH = "Very High"

    @property
    def description(self) -> str:
        return f"{self.value} Confidence"


@dataclass(frozen=True)
class ErrorBounds:
    min_bpm: int
    max_bpm: int
    margin: int


@dataclass(frozen=True)
class MeasurementSummary:
    """The only record that leaves the pipeline for persistence."""

    bpm: int
    timestamp: float
    confidence: float
    error_margin: int
    min_bpm: Optional[int] = None
    max_bpm: Optional[int] = None

    @property
    def confidence_level(self) -> ConfidenceLevel:
        return confidence_level(self.confidence)

    @property
    def category(self) -> BPMCategory:
        return bpm_category(self.bpm)

    @property
    def error_bounds_text(self) -> str:
        return f"±{self.error_margin} BPM"


# ---------------------------------------------------------------------------
# Single readings
# ---------------------------------------------------------------------------

def is_valid_bpm(bpm: int) -> bool:
    """Absolute physiological limits for an adult."""
    lo, hi = VALID_BPM_RANGE
    return lo <= bpm <= hi


def is_resting_bpm(bpm: int) -> bool:
    lo, hi = RESTING_BPM_RANGE
    return lo <= bpm <= hi


def bpm_category(bpm: int) -> BPMCategory:
    if bpm < 50:
        return BPMCategory.LOW
    if bpm < 60:
        return BPMCategory.ATHLETE
    if bpm < 100:
        return BPMCategory.NORMAL
    if bpm < 120:
        return BPMCategory.ELEVATED
    return BPMCategory.HIGH


def confidence_level(confidence: float) -> ConfidenceLevel:
    if confidence >= 0.85:
        return ConfidenceLevel.VERY_HIGH
    if confidence >= 0.7:
        return ConfidenceLevel.HIGH
    if confidence >= 0.5:
        return ConfidenceLevel.MODERATE
    if confidence >= 0.3:
        return ConfidenceLevel.LOW
    return ConfidenceLevel.VERY_LOW


# ---------------------------------------------------------------------------
# Series
# ---------------------------------------------------------------------------

def filter_valid_readings(readings: Sequence[int]) -> list[int]:
    return [r for r in readings if is_valid_bpm(r)]


def remove_outliers(readings: Sequence[int], factor: float = 1.5) -> list[int]:
    """
    Drop readings outside ``[Q1 - factor·IQR, Q3 + factor·IQR]``.

    Quartiles are taken at indices ``n // 4`` and ``3n // 4`` of the sorted
    series, without interpolation.
    """
    if not readings:
        return []
    ordered = sorted(readings)
    n = len(ordered)
    q1 = float(ordered[n // 4])
    q3 = float(ordered[(3 * n) // 4])
    iqr = q3 - q1
    lower, upper = q1 - factor * iqr, q3 + factor * iqr
    return [r for r in readings if lower <= r <= upper]


def calculate_confidence(
    readings: Sequence[int],
    signal_quality: SignalQuality | float = 1.0,
) -> float:
    """
    Confidence in [0, 0.99] for a series of BPM readings.

    Only extreme outliers (3 × IQR) are removed first.  The score mixes
    consistency (std of 1–2 BPM is excellent, 8+ is worthless), the
    coefficient of variation and the number of readings, then is scaled by
    the signal-quality multiplier.  Fewer than five readings give 0.
    """
    if len(readings) < MIN_CONFIDENCE_READINGS:
        return 0.0
    cleaned = np.asarray(remove_outliers(readings, factor=3.0), dtype=np.float64)
    if cleaned.size < MIN_CONFIDENCE_READINGS:
        return 0.0

    mean = float(cleaned.mean())
    if mean <= 0:
        return 0.0
    std = float(cleaned.std())
    cv = std / mean

    count_factor = min(1.0, cleaned.size / 20.0)
    consistency = float(np.clip(1.0 - std / 8.0, 0.0, 1.0))
    cv_score = float(np.clip(1.0 - cv * 20.0, 0.0, 1.0))
    base = consistency * 0.5 + cv_score * 0.3 + count_factor * 0.2

    if isinstance(signal_quality, SignalQuality):
        signal_quality = signal_quality.score
    return float(np.clip(base * signal_quality, 0.0, MAX_CONFIDENCE))


def calculate_validated_average(readings: Sequence[int]) -> Optional[int]:
    """Mean of the valid, 1.5 × IQR-trimmed readings; needs at least three."""
    valid = filter_valid_readings(readings)
    if len(valid) < 3:
        return None
    kept = remove_outliers(valid)
    if not kept:
        return None
    return sum(kept) // len(kept)


def calculate_error_bounds(readings: Sequence[int]) -> Optional[ErrorBounds]:
    """
    ± margin from the spread of the cleaned readings.

    ``1.5 × std`` covers roughly 87 % of a normal spread; the result is
    clamped to [2, 10] BPM.
    """
    valid = filter_valid_readings(readings)
    if len(valid) < MIN_CONFIDENCE_READINGS:
        return None
    cleaned = remove_outliers(valid)
    if len(cleaned) < 3:
        return None

    std = float(np.std(np.asarray(cleaned, dtype=np.float64)))
    lo, hi = MARGIN_RANGE
    margin = max(lo, min(int(math.ceil(std * 1.5)), hi))
    return ErrorBounds(min_bpm=min(cleaned), max_bpm=max(cleaned), margin=margin)


def summarize(
    readings: Sequence[int],
    signal_quality: SignalQuality = SignalQuality.GOOD,
    timestamp: float | None = None,
) -> Optional[MeasurementSummary]:
    """
    Build the persistence record for a finished session, or *None* when the
    history is empty.

    The reported BPM is the validated average when enough readings exist,
    otherwise the plain mean.
    """
    if not readings:
        return None
    bpm = calculate_validated_average(readings)
    if bpm is None:
        bpm = int(round(sum(readings) / len(readings)))

    confidence = calculate_confidence(readings, signal_quality)
    bounds = calculate_error_bounds(readings)
    if bounds is not None:
        margin = bounds.margin
    else:
        margin = DEFAULT_MARGIN_CONFIDENT if confidence >= 0.7 else DEFAULT_MARGIN

    return MeasurementSummary(
        bpm=bpm,
        timestamp=time.time() if timestamp is None else timestamp,
        confidence=confidence,
        error_margin=margin,
        min_bpm=bounds.min_bpm if bounds else None,
        max_bpm=bounds.max_bpm if bounds else None,
    )
