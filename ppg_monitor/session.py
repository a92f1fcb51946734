"""
Measurement session controller.

Drives one fixed-length measurement::

    IDLE ──start()──▶ ACQUIRING ──source ok──▶ MEASURING ──30 s valid──▶ FINISHED
                          │                       │
                          └──source error──▶ FAILED ◀──abort()

Progress and auto-stop follow *valid* elapsed time, which only advances
while frames are accepted; lifting the finger pauses the measurement
instead of wasting it.

Thread safety
-------------
Frame processing and the control calls are serialised by one re-entrant
lock, so frames may be pushed from a capture thread while ``stop()`` comes
from a UI thread.  Events are delivered after the lock is released.
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Iterator, List, Optional, Protocol, Tuple

from ppg_monitor.config import PPGConfig
from ppg_monitor.events import (
    AcquisitionError,
    BpmUpdated,
    ErrorReason,
    Event,
    EventHub,
    Listener,
    MeasurementError,
    MeasurementFinished,
    ProgressUpdated,
    QualityChanged,
)
from ppg_monitor.motion_detector import MotionDetector
from ppg_monitor.samples import AcceptedPoint, BpmReading, Sample, SignalQuality
from ppg_monitor.signal_processor import SignalProcessor
from ppg_monitor.signal_quality import SignalQualityEvaluator
from ppg_monitor.validator import MeasurementSummary, summarize

logger = logging.getLogger(__name__)

# Absorbs float drift when summing per-frame deltas
TIME_TOLERANCE = 1e-6


class SessionState(Enum):
    IDLE      = "idle"
    ACQUIRING = "acquiring"
    MEASURING = "measuring"
    FINISHED  = "finished"
    FAILED    = "failed"


class SampleSource(Protocol):
    """Camera plus illumination, as seen by the session."""

    def acquire(self) -> None:
        """Start delivering samples; raise :class:`AcquisitionError` if unable."""

    def release(self) -> None:
        """Stop delivery and switch the illumination off.  Idempotent."""

    def samples(self) -> Iterator[Sample]:
        """Yield samples until released."""


@dataclass(frozen=True)
class FrameResult:
    """What happened to one frame pushed through :meth:`MeasurementSession.on_frame`."""

    quality: SignalQuality
    accepted: bool
    motion: bool
    elapsed: float
    progress: float
    bpm: Optional[int] = None


class MeasurementSession:
    """
    One heart-rate measurement from start to finish.

    Parameters
    ----------
    source:
        Sample source acquired on :meth:`start` and released on every exit
        from MEASURING.  May be *None* when samples are pushed by the caller
        and no hardware needs managing.
    config:
        Pipeline settings.  See :class:`PPGConfig`.
    """

    def __init__(self, source: SampleSource | None = None, config: PPGConfig | None = None) -> None:
        self.config = (config or PPGConfig()).validate()
        self.source = source

        self._motion = MotionDetector(self.config.motion)
        self._quality = SignalQualityEvaluator(self.config.quality)
        self._processor = SignalProcessor(self.config)
        self._events = EventHub()

        self._lock = threading.RLock()
        self._pending: List[Event] = []
        self._state = SessionState.IDLE
        self._failure_reason: Optional[ErrorReason] = None
        self._source_held = False
        self._history: List[BpmReading] = []
        self._last_captured: Optional[float] = None
        self._last_quality = SignalQuality.POOR
        self._summary: Optional[MeasurementSummary] = None

    # ------------------------------------------------------------------
    # Observation
    # ------------------------------------------------------------------

    def subscribe(self, listener: Listener):
        """Register an event listener; returns a callable that removes it."""
        return self._events.subscribe(listener)

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def failure_reason(self) -> Optional[ErrorReason]:
        return self._failure_reason

    @property
    def elapsed(self) -> float:
        """Valid elapsed seconds: the buffer's last timestamp."""
        return self._processor.buffer.last_elapsed

    @property
    def progress(self) -> float:
        return min(self.elapsed / self.config.session.duration, 1.0)

    @property
    def history(self) -> Tuple[BpmReading, ...]:
        return tuple(self._history)

    @property
    def summary(self) -> Optional[MeasurementSummary]:
        """Persistence record of the last finished measurement."""
        return self._summary

    @property
    def processor(self) -> SignalProcessor:
        return self._processor

    # ------------------------------------------------------------------
    # Control
    # ------------------------------------------------------------------

    def start(self) -> bool:
        """
        Reset all state, acquire the source and begin measuring.

        Returns *False* if a measurement is already in progress or the source
        could not be acquired.
        """
        with self._locked():
            if self._state in (SessionState.ACQUIRING, SessionState.MEASURING):
                logger.warning("start() ignored: session is %s.", self._state.value)
                return False

            self._clear()
            self._state = SessionState.ACQUIRING
            if self.source is not None:
                try:
                    self.source.acquire()
                except AcquisitionError as exc:
                    logger.warning("Sample source unavailable: %s", exc)
                    self._fail(exc.reason)
                    return False
                self._source_held = True

            self._state = SessionState.MEASURING
            logger.info("Measurement started (%.0f s of valid signal).",
                        self.config.session.duration)
            return True

    def stop(self) -> bool:
        """Finish the measurement now.  Returns *False* if none was running."""
        with self._locked():
            if self._state is SessionState.MEASURING:
                self._finish(auto=False)
                return True
            if self._state is SessionState.ACQUIRING:
                self._release_source()
                self._state = SessionState.IDLE
                return True
            return False

    def abort(self, reason: ErrorReason = ErrorReason.MEASUREMENT_FAILED) -> bool:
        """Fail the running measurement with *reason*."""
        with self._locked():
            if self._state not in (SessionState.ACQUIRING, SessionState.MEASURING):
                return False
            self._fail(reason)
            return True

    def reset(self) -> None:
        """Return to IDLE from any state, dropping all collected data."""
        with self._locked():
            self._release_source()
            self._clear()
            self._state = SessionState.IDLE

    # ------------------------------------------------------------------
    # Frames
    # ------------------------------------------------------------------

    def on_frame(self, sample: Sample) -> Optional[FrameResult]:
        """
        Push one sample.  Returns *None* unless the session is MEASURING.
        """
        with self._locked():
            if self._state is not SessionState.MEASURING:
                return None
            return self._process(sample)

    def run(self, frames: Iterable[Sample] | None = None) -> Optional[MeasurementSummary]:
        """
        Consume *frames* (default: the source's samples) until the session
        leaves MEASURING, then return the summary, if any.

        The source is released on every exit path.  When the frames run out
        first, the measurement is stopped with whatever was collected.
        """
        if frames is None:
            if self.source is None:
                raise ValueError("run() needs frames when the session has no source")
            frames = self.source.samples()
        try:
            for sample in frames:
                if self._state is not SessionState.MEASURING:
                    break
                self.on_frame(sample)
                if self._state is not SessionState.MEASURING:
                    break
        except AcquisitionError as exc:
            logger.error("Sample source failed: %s", exc)
            self.abort(exc.reason)
        except Exception:
            self.abort(ErrorReason.MEASUREMENT_FAILED)
            raise
        finally:
            self.stop()
        return self._summary

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _locked(self):
        with self._lock:
            try:
                yield
            finally:
                pending, self._pending = self._pending, []
        for event in pending:
            self._events.publish(event)

    def _emit(self, event: Event) -> None:
        self._pending.append(event)

    def _process(self, sample: Sample) -> FrameResult:
        if not self._quality.passes_gate(sample):
            return self._reject(motion=False)
        if self._motion.observe(sample.red):
            return self._reject(motion=True)

        recent = self._processor.buffer.recent_values(self.config.quality.stats_window)
        quality = self._quality.buffer_quality(recent)
        self._last_quality = quality
        self._emit(QualityChanged(quality))

        s = self.config.session
        # Each accepted frame contributes its own period, the first one included
        if len(self._processor.buffer) and self._last_captured is not None:
            delta = min(max(0.0, sample.captured_at - self._last_captured), s.max_frame_delta)
        else:
            delta = min(1.0 / s.nominal_rate, s.max_frame_delta)
        elapsed = self.elapsed + delta
        self._last_captured = sample.captured_at
        self._processor.push(AcceptedPoint(value=sample.red, elapsed_seconds=elapsed))

        progress = self.progress
        self._emit(ProgressUpdated(progress))

        bpm = self._processor.compute_bpm()
        if bpm is not None:
            self._history.append(BpmReading(bpm=bpm, timestamp=sample.captured_at))
            self._emit(BpmUpdated(bpm))

        if elapsed >= s.duration - TIME_TOLERANCE:
            self._finish(auto=True)

        return FrameResult(
            quality=quality, accepted=True, motion=False,
            elapsed=elapsed, progress=progress, bpm=bpm,
        )

    def _reject(self, motion: bool) -> FrameResult:
        self._emit(QualityChanged(SignalQuality.POOR))
        return FrameResult(
            quality=SignalQuality.POOR, accepted=False, motion=motion,
            elapsed=self.elapsed, progress=self.progress,
        )

    def _finish(self, auto: bool) -> None:
        self._state = SessionState.FINISHED
        self._release_source()

        readings = [r.bpm for r in self._history]
        if readings:
            average = int(round(sum(readings) / len(readings)))
            self._summary = summarize(readings, self._last_quality)
            logger.info("Measurement finished: %d BPM from %d readings.", average, len(readings))
            self._emit(MeasurementFinished(average_bpm=average, summary=self._summary))
        elif auto:
            logger.warning("Measurement window elapsed without a reliable reading.")
            self._emit(MeasurementError(ErrorReason.MEASUREMENT_FAILED))
        else:
            logger.info("Measurement stopped before any reading.")

    def _fail(self, reason: ErrorReason) -> None:
        self._state = SessionState.FAILED
        self._failure_reason = reason
        self._release_source()
        self._emit(MeasurementError(reason))

    def _release_source(self) -> None:
        if not self._source_held or self.source is None:
            return
        self._source_held = False
        try:
            self.source.release()
        except Exception:
            logger.exception("Failed to release sample source.")

    def _clear(self) -> None:
        self._processor.reset()
        self._motion.reset()
        self._history.clear()
        self._last_captured = None
        self._last_quality = SignalQuality.POOR
        self._failure_reason = None
        self._summary = None
