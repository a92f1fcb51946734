"""
Outbound events of a measurement session.

Listeners are plain callables taking one event.  They are invoked
synchronously, in subscription order, on the thread that processed the frame
or control call.  A failing listener is logged and skipped.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Union

from ppg_monitor.samples import SignalQuality
from ppg_monitor.validator import MeasurementSummary

logger = logging.getLogger(__name__)


class ErrorReason(Enum):
    CAMERA_UNAVAILABLE       = "camera_unavailable"
    ILLUMINATION_UNAVAILABLE = "illumination_unavailable"
    PERMISSION_DENIED        = "permission_denied"
    MEASUREMENT_FAILED       = "measurement_failed"

    @property
    def message(self) -> str:
        return _ERROR_MESSAGES[self]


_ERROR_MESSAGES = {
    ErrorReason.CAMERA_UNAVAILABLE:       "Camera is not available on this device.",
    ErrorReason.ILLUMINATION_UNAVAILABLE: "Flash/torch is not available on this device.",
    ErrorReason.PERMISSION_DENIED:        "Camera permission is required. Please enable it in Settings.",
    ErrorReason.MEASUREMENT_FAILED:       "Measurement failed. Please try again.",
}


class AcquisitionError(RuntimeError):
    """Raised by a sample source that cannot start delivering frames."""

    def __init__(self, reason: ErrorReason, detail: str = "") -> None:
        super().__init__(detail or reason.message)
        self.reason = reason


@dataclass(frozen=True)
class QualityChanged:
    quality: SignalQuality


@dataclass(frozen=True)
class ProgressUpdated:
    fraction: float


@dataclass(frozen=True)
class BpmUpdated:
    bpm: int


@dataclass(frozen=True)
class MeasurementFinished:
    average_bpm: int
    summary: Optional[MeasurementSummary] = None


@dataclass(frozen=True)
class MeasurementError:
    reason: ErrorReason


Event = Union[QualityChanged, ProgressUpdated, BpmUpdated, MeasurementFinished, MeasurementError]
Listener = Callable[[Event], None]


class EventHub:
    """Fan-out of session events to subscribed listeners."""

    def __init__(self) -> None:
        self._listeners: List[Listener] = []
        self._lock = threading.Lock()

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register *listener*; return a callable that unsubscribes it."""
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def publish(self, event: Event) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("Listener %r failed on %s", listener, type(event).__name__)
