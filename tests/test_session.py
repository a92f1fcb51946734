"""
Unit tests for MeasurementSession, the event hub and the sample sources.
Run with:  pytest tests/
"""

from __future__ import annotations

import threading
from dataclasses import replace

import numpy as np
import pytest

from ppg_monitor import camera as camera_module
from ppg_monitor.camera import CameraSampleSource
from ppg_monitor.config import PPGConfig
from ppg_monitor.events import (
    AcquisitionError,
    BpmUpdated,
    ErrorReason,
    EventHub,
    MeasurementError,
    MeasurementFinished,
    ProgressUpdated,
    QualityChanged,
)
from ppg_monitor.samples import Sample, SignalQuality
from ppg_monitor.session import MeasurementSession, SessionState
from ppg_monitor.synthetic import SyntheticSampleSource, generate_synthetic_ppg


class FakeSource:
    """Sample source that records its lifecycle and can fail on demand."""

    def __init__(self, samples=(), acquire_error=None, stream_error=None):
        self._samples = list(samples)
        self.acquire_error = acquire_error
        self.stream_error = stream_error
        self.acquired = False
        self.releases = 0

    def acquire(self):
        if self.acquire_error is not None:
            raise self.acquire_error
        self.acquired = True

    def release(self):
        self.acquired = False
        self.releases += 1

    def samples(self):
        yield from self._samples
        if self.stream_error is not None:
            raise self.stream_error


def _finger(red: float, t: float) -> Sample:
    return Sample(red=red, green=40.0, blue=30.0, captured_at=t)


def _feed_until_done(session, samples):
    results = []
    for sample in samples:
        results.append(session.on_frame(sample))
        if session.state is not SessionState.MEASURING:
            break
    return results


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestSessionLifecycle:

    def test_initial_state(self):
        session = MeasurementSession()
        assert session.state is SessionState.IDLE
        assert session.progress == 0.0
        assert session.history == ()
        assert session.on_frame(_finger(150, 0.0)) is None

    def test_start_and_double_start(self):
        src = FakeSource()
        session = MeasurementSession(src)
        assert session.start() is True
        assert session.state is SessionState.MEASURING
        assert src.acquired
        assert session.start() is False
        assert session.state is SessionState.MEASURING

    def test_acquisition_failure(self, event_log):
        src = FakeSource(acquire_error=AcquisitionError(ErrorReason.PERMISSION_DENIED))
        session = MeasurementSession(src)
        session.subscribe(event_log)
        assert session.start() is False
        assert session.state is SessionState.FAILED
        assert session.failure_reason is ErrorReason.PERMISSION_DENIED
        errors = event_log.of(MeasurementError)
        assert [e.reason for e in errors] == [ErrorReason.PERMISSION_DENIED]

    def test_restart_after_failure(self):
        src = FakeSource(acquire_error=AcquisitionError(ErrorReason.CAMERA_UNAVAILABLE))
        session = MeasurementSession(src)
        session.start()
        src.acquire_error = None
        assert session.start() is True
        assert session.failure_reason is None

    def test_abort_releases_source(self, event_log):
        src = FakeSource()
        session = MeasurementSession(src)
        session.subscribe(event_log)
        session.start()
        assert session.abort() is True
        assert session.state is SessionState.FAILED
        assert not src.acquired
        assert event_log.of(MeasurementError)[-1].reason is ErrorReason.MEASUREMENT_FAILED
        assert session.on_frame(_finger(150, 1.0)) is None
        assert session.abort() is False

    def test_stop_with_empty_history_is_silent(self, event_log):
        src = FakeSource()
        session = MeasurementSession(src)
        session.subscribe(event_log)
        session.start()
        assert session.stop() is True
        assert session.state is SessionState.FINISHED
        assert not src.acquired
        assert event_log.of(MeasurementFinished) == []
        assert event_log.of(MeasurementError) == []
        assert session.stop() is False

    def test_release_happens_once(self):
        src = FakeSource()
        session = MeasurementSession(src)
        session.start()
        session.stop()
        session.reset()
        assert src.releases == 1

    def test_reset(self):
        session = MeasurementSession()
        session.start()
        for i in range(20):
            session.on_frame(_finger(150 + np.sin(i), i / 30))
        session.reset()
        assert session.state is SessionState.IDLE
        assert session.elapsed == 0.0
        assert len(session.processor.buffer) == 0


# ---------------------------------------------------------------------------
# Frame handling
# ---------------------------------------------------------------------------

class TestFrameHandling:

    def test_gate_failure_rejects(self, event_log):
        session = MeasurementSession()
        session.subscribe(event_log)
        session.start()
        result = session.on_frame(Sample(red=40, green=40, blue=30, captured_at=0.0))
        assert result.quality is SignalQuality.POOR
        assert not result.accepted
        assert not result.motion
        assert event_log.of(QualityChanged)[-1].quality is SignalQuality.POOR
        assert event_log.of(ProgressUpdated) == []

    def test_motion_rejects(self):
        session = MeasurementSession()
        session.start()
        results = [session.on_frame(_finger(100.0 if i % 2 else 160.0, i / 30)) for i in range(10)]
        assert all(r.accepted for r in results[:9])
        assert results[9].motion
        assert not results[9].accepted
        assert results[9].quality is SignalQuality.POOR

    def test_gate_failures_skip_motion_window(self):
        """Dropout frames between good ones must not look like motion."""
        session = MeasurementSession()
        session.start()
        results = []
        for i in range(40):
            red = 20.0 if i % 2 else 150.0
            results.append(session.on_frame(_finger(red, i / 30)))
        good = results[::2]
        assert all(r.accepted and not r.motion for r in good)

    def test_valid_time_capped_across_gaps(self):
        session = MeasurementSession()
        session.start()
        session.on_frame(_finger(150.0, 0.0))
        session.on_frame(_finger(150.5, 1 / 30))
        result = session.on_frame(_finger(151.0, 10.0))
        assert result.elapsed == pytest.approx(2 / 30 + 0.1)
        assert session.elapsed == pytest.approx(result.elapsed)
        assert session.elapsed == session.processor.buffer.last_elapsed

    def test_first_frame_counts_one_period(self):
        session = MeasurementSession()
        session.start()
        result = session.on_frame(_finger(150.0, 5.0))
        assert result.elapsed == pytest.approx(1 / 30)
        assert session.elapsed == session.processor.buffer.last_elapsed

    def test_buffer_quality_needs_history(self):
        session = MeasurementSession()
        session.start()
        result = session.on_frame(_finger(150.0, 0.0))
        assert result.accepted
        assert result.quality is SignalQuality.FAIR

    def test_ambient_light_never_progresses(self, event_log):
        src = SyntheticSampleSource(red_level=200, green_level=180, blue_level=170, duration=32)
        session = MeasurementSession(src)
        session.subscribe(event_log)
        session.start()
        for sample in src.build():
            session.on_frame(sample)
        assert session.state is SessionState.MEASURING
        assert session.progress == 0.0
        assert event_log.of(ProgressUpdated) == []
        assert event_log.of(MeasurementFinished) == []
        assert {e.quality for e in event_log.of(QualityChanged)} == {SignalQuality.POOR}

        session.stop()
        assert session.state is SessionState.FINISHED
        assert event_log.of(MeasurementFinished) == []

    def test_listener_failure_does_not_stop_processing(self, event_log):
        def broken(_event):
            raise RuntimeError("listener bug")

        session = MeasurementSession()
        session.subscribe(broken)
        session.subscribe(event_log)
        session.start()
        result = session.on_frame(_finger(150.0, 0.0))
        assert result.accepted
        assert event_log.of(ProgressUpdated)


# ---------------------------------------------------------------------------
# End to end
# ---------------------------------------------------------------------------

class TestEndToEnd:

    def test_steady_pulse_with_artifacts(self, event_log):
        src = SyntheticSampleSource(bpm=72, duration=30, artifact_rate=0.02)
        frames = src.build()
        assert len(frames) == 900
        session = MeasurementSession(src)
        session.subscribe(event_log)
        assert session.start()

        results = _feed_until_done(session, frames)

        assert session.state is SessionState.FINISHED
        assert len(results) == 900
        assert not src.acquired
        assert session.progress == pytest.approx(1.0)

        first_bpm = next(r for r in results if r.bpm is not None)
        assert first_bpm.elapsed < 10.0
        assert event_log.of(BpmUpdated)

        finished = event_log.of(MeasurementFinished)
        assert len(finished) == 1
        assert 69 <= finished[0].average_bpm <= 75, finished[0].average_bpm

        summary = session.summary
        assert summary is finished[0].summary
        assert 69 <= summary.bpm <= 75
        assert 0.0 <= summary.confidence <= 0.99
        assert 2 <= summary.error_margin <= 10

    def test_clean_900_frames_finish_on_last_frame(self):
        src = SyntheticSampleSource(bpm=72, duration=30)
        session = MeasurementSession(src)
        session.start()
        results = _feed_until_done(session, src.build())
        assert len(results) == 900
        assert session.state is SessionState.FINISHED
        assert results[-2].elapsed < 30.0 - 1e-3
        assert session.elapsed == pytest.approx(30.0)

    def test_progress_is_monotonic(self, event_log):
        src = SyntheticSampleSource(bpm=90, duration=33, artifact_rate=0.02, seed=5)
        session = MeasurementSession(src)
        session.subscribe(event_log)
        session.start()
        _feed_until_done(session, src.build())
        fractions = [e.fraction for e in event_log.of(ProgressUpdated)]
        assert fractions == sorted(fractions)
        assert fractions[-1] == pytest.approx(1.0)

    def test_flat_signal_ends_with_error(self, event_log):
        src = SyntheticSampleSource(pulse_amplitude=0.0, noise_level=0.0, duration=33)
        session = MeasurementSession(src)
        session.subscribe(event_log)
        session.start()
        _feed_until_done(session, src.build())
        assert session.state is SessionState.FINISHED
        assert session.summary is None
        assert [e.reason for e in event_log.of(MeasurementError)] == [ErrorReason.MEASUREMENT_FAILED]
        assert event_log.of(BpmUpdated) == []

    def test_short_config_run(self):
        base = PPGConfig()
        config = replace(base, session=replace(base.session, duration=10.0))
        src = SyntheticSampleSource(bpm=120, duration=12)
        session = MeasurementSession(src, config)
        session.start()
        summary = session.run()
        assert session.state is SessionState.FINISHED
        assert summary is not None
        assert abs(summary.bpm - 120) <= 4
        assert not src.acquired

    def test_run_stops_when_frames_run_out(self):
        src = SyntheticSampleSource(bpm=72, duration=15)
        session = MeasurementSession(src)
        session.start()
        summary = session.run()
        assert session.state is SessionState.FINISHED
        assert summary is not None
        assert abs(summary.bpm - 72) <= 3
        assert not src.acquired

    def test_run_source_failure(self, event_log):
        samples = [_finger(150.0, i / 30) for i in range(5)]
        src = FakeSource(samples, stream_error=AcquisitionError(ErrorReason.CAMERA_UNAVAILABLE))
        session = MeasurementSession(src)
        session.subscribe(event_log)
        session.start()
        assert session.run() is None
        assert session.state is SessionState.FAILED
        assert session.failure_reason is ErrorReason.CAMERA_UNAVAILABLE
        assert not src.acquired
        assert src.releases == 1

    def test_run_unexpected_error_propagates(self):
        src = FakeSource([_finger(150.0, 0.0)], stream_error=RuntimeError("boom"))
        session = MeasurementSession(src)
        session.start()
        with pytest.raises(RuntimeError):
            session.run()
        assert session.state is SessionState.FAILED
        assert not src.acquired

    def test_run_without_source_needs_frames(self):
        session = MeasurementSession()
        session.start()
        with pytest.raises(ValueError):
            session.run()


# ---------------------------------------------------------------------------
# Control calls from another thread
# ---------------------------------------------------------------------------

def _gated_frames(frames, pause_after, reached, resume):
    """Yield *frames*, pausing after *pause_after* until *resume* is set."""
    for i, frame in enumerate(frames):
        if i == pause_after:
            reached.set()
            resume.wait(timeout=5.0)
        yield frame


def _long_session(src):
    base = PPGConfig()
    config = replace(base, session=replace(base.session, duration=1000.0))
    return MeasurementSession(src, config)


class TestConcurrentControl:

    def _run_in_thread(self, session, frames):
        worker = threading.Thread(target=session.run, args=(frames,), daemon=True)
        worker.start()
        return worker

    @pytest.mark.parametrize("control", ["stop", "reset"])
    def test_control_while_frames_pending(self, control):
        src = FakeSource()
        session = _long_session(src)
        session.start()
        reached, resume = threading.Event(), threading.Event()
        frames = SyntheticSampleSource(bpm=72, duration=20).build()
        worker = self._run_in_thread(session, _gated_frames(frames, 300, reached, resume))

        assert reached.wait(timeout=10.0)
        assert getattr(session, control)() is True
        buffered = len(session.processor.buffer)
        history = session.history
        resume.set()
        worker.join(timeout=10.0)

        assert not worker.is_alive()
        assert src.releases == 1
        assert len(session.processor.buffer) == buffered
        assert session.history == history
        if control == "stop":
            assert session.state is SessionState.FINISHED
            assert buffered == 300
            assert history
        else:
            assert session.state is SessionState.IDLE
            assert buffered == 0
            assert history == ()

    @pytest.mark.parametrize("control", ["stop", "reset"])
    def test_control_during_busy_stream(self, control):
        src = FakeSource()
        session = _long_session(src)
        session.start()
        started = threading.Event()

        def frames():
            for i, frame in enumerate(SyntheticSampleSource(bpm=72, duration=100).build()):
                if i == 250:
                    started.set()
                yield frame

        worker = self._run_in_thread(session, frames())
        assert started.wait(timeout=10.0)
        getattr(session, control)()
        buffered = len(session.processor.buffer)
        history = session.history
        worker.join(timeout=30.0)

        assert not worker.is_alive()
        assert src.releases == 1
        assert len(session.processor.buffer) == buffered
        assert session.history == history
        expected = SessionState.FINISHED if control == "stop" else SessionState.IDLE
        assert session.state is expected


# ---------------------------------------------------------------------------
# Event hub
# ---------------------------------------------------------------------------

class TestEventHub:

    def test_subscription_order_and_unsubscribe(self):
        hub = EventHub()
        seen = []
        hub.subscribe(lambda e: seen.append(("a", e)))
        unsubscribe = hub.subscribe(lambda e: seen.append(("b", e)))
        hub.publish(BpmUpdated(72))
        unsubscribe()
        hub.publish(BpmUpdated(73))
        assert seen == [("a", BpmUpdated(72)), ("b", BpmUpdated(72)), ("a", BpmUpdated(73))]

    def test_error_reason_messages(self):
        for reason in ErrorReason:
            assert reason.message
        assert str(AcquisitionError(ErrorReason.CAMERA_UNAVAILABLE)) == \
            ErrorReason.CAMERA_UNAVAILABLE.message


# ---------------------------------------------------------------------------
# Sample sources
# ---------------------------------------------------------------------------

class _FakeCapture:
    def __init__(self, opened=True, frames=()):
        self.opened = opened
        self.frames = list(frames)
        self.released = False

    def isOpened(self):
        return self.opened

    def set(self, *_):
        return True

    def read(self):
        if self.frames:
            return True, self.frames.pop(0)
        return False, None

    def release(self):
        self.released = True


class _Torch:
    def __init__(self, fail=False):
        self.fail = fail
        self.lit = False

    def on(self):
        if self.fail:
            raise OSError("no torch")
        self.lit = True

    def off(self):
        self.lit = False


class TestSampleSources:

    def test_synthetic_build(self):
        src = SyntheticSampleSource(bpm=72, fps=30, duration=10)
        samples = src.build()
        assert len(samples) == 300
        assert samples[1].captured_at == pytest.approx(1 / 30)
        assert all(s.green == 40.0 and s.blue == 30.0 for s in samples)

    def test_synthetic_artifacts(self):
        clean = SyntheticSampleSource(duration=10).build()
        dirty = SyntheticSampleSource(duration=10, artifact_rate=0.02).build()
        changed = [i for i, (a, b) in enumerate(zip(clean, dirty)) if a.red != b.red]
        assert len(changed) == 6
        assert min(np.diff(changed)) > 1

    def test_synthetic_stops_when_released(self):
        src = SyntheticSampleSource(duration=10)
        src.acquire()
        taken = []
        for sample in src.samples():
            taken.append(sample)
            if len(taken) == 5:
                src.release()
        assert len(taken) == 5

    def test_synthetic_waveform_period(self):
        wave = generate_synthetic_ppg(fps=30, duration=10, bpm=60, noise_level=0.0)
        np.testing.assert_allclose(wave[:30], wave[30:60], atol=1e-9)

    def test_synthetic_rejects_bad_args(self):
        with pytest.raises(ValueError):
            SyntheticSampleSource(fps=0)
        with pytest.raises(ValueError):
            SyntheticSampleSource(artifact_rate=1.0)

    def test_camera_unavailable(self, monkeypatch):
        monkeypatch.setattr(camera_module.cv2, "VideoCapture", lambda _i: _FakeCapture(opened=False))
        src = CameraSampleSource()
        with pytest.raises(AcquisitionError) as info:
            src.acquire()
        assert info.value.reason is ErrorReason.CAMERA_UNAVAILABLE
        assert not src.is_open

    def test_illumination_failure_releases_camera(self, monkeypatch):
        cap = _FakeCapture()
        monkeypatch.setattr(camera_module.cv2, "VideoCapture", lambda _i: cap)
        src = CameraSampleSource(illumination=_Torch(fail=True))
        with pytest.raises(AcquisitionError) as info:
            src.acquire()
        assert info.value.reason is ErrorReason.ILLUMINATION_UNAVAILABLE
        assert cap.released
        assert not src.is_open

    def test_camera_samples(self, monkeypatch):
        frame = np.zeros((40, 40, 3), dtype=np.uint8)
        frame[:, :] = (30, 40, 150)
        cap = _FakeCapture(frames=[frame, frame, frame])
        torch = _Torch()
        monkeypatch.setattr(camera_module.cv2, "VideoCapture", lambda _i: cap)
        with CameraSampleSource(illumination=torch) as src:
            assert torch.lit
            gen = src.samples()
            samples = [next(gen) for _ in range(3)]
            assert all(s.red == pytest.approx(150.0) for s in samples)
            assert samples[0].captured_at <= samples[2].captured_at
            with pytest.raises(AcquisitionError):
                next(gen)
        assert not torch.lit
        assert cap.released

    def test_camera_session_failure_path(self, monkeypatch):
        monkeypatch.setattr(camera_module.cv2, "VideoCapture", lambda _i: _FakeCapture(opened=False))
        session = MeasurementSession(CameraSampleSource())
        assert session.start() is False
        assert session.failure_reason is ErrorReason.CAMERA_UNAVAILABLE
