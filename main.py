#!/usr/bin/env python3
"""
PPG Monitor – main entry point.

Usage
-----
    python main.py [OPTIONS]

Options
-------
    --camera-index INT   OpenCV camera index (default: 0)
    --resolution WxH     Camera resolution (default: 320x240)
    --fps INT            Target frame rate  (default: 30)
    --duration FLOAT     Seconds of valid signal to collect (default: 30)
    --simulate BPM       Use a synthetic pulse at BPM instead of a camera
    --artifacts FLOAT    Fraction of artifact frames in --simulate mode
    --verbose            Debug logging

Progress, quality and BPM updates are logged as they arrive; the summary
is printed when the measurement ends.
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace

from ppg_monitor.camera import CameraSampleSource
from ppg_monitor.config import PPGConfig
from ppg_monitor.events import (
    BpmUpdated,
    Event,
    MeasurementError,
    MeasurementFinished,
    ProgressUpdated,
    QualityChanged,
)
from ppg_monitor.session import MeasurementSession, SessionState
from ppg_monitor.signal_processor import SignalProcessor
from ppg_monitor.synthetic import SyntheticSampleSource

logger = logging.getLogger("ppg_monitor")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Fingertip PPG heart-rate monitor",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--camera-index", type=int, default=0,
                        help="OpenCV VideoCapture index")
    parser.add_argument("--resolution", default="320x240",
                        help="Camera resolution, e.g. 320x240")
    parser.add_argument("--fps", type=int, default=30,
                        help="Target capture frame rate")
    parser.add_argument("--duration", type=float, default=30.0,
                        help="Seconds of valid signal to collect")
    parser.add_argument("--simulate", type=float, default=None, metavar="BPM",
                        help="Use a synthetic pulse at this rate instead of a camera")
    parser.add_argument("--artifacts", type=float, default=0.02,
                        help="Fraction of artifact frames in --simulate mode")
    parser.add_argument("--verbose", action="store_true",
                        help="Enable debug logging")
    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Event printing
# ---------------------------------------------------------------------------

class ConsoleReporter:
    """
    Logs session events, throttling progress to whole-second steps.

    With a *processor* and debug logging enabled, progress lines also show
    the buffer fill and each BPM update is paired with the spectral peak of
    the current filtered waveform.
    """

    def __init__(self, duration: float, processor: SignalProcessor | None = None) -> None:
        self.duration = duration
        self.processor = processor
        self._last_second = -1
        self._last_quality = None

    def __call__(self, event: Event) -> None:
        if isinstance(event, QualityChanged):
            if event.quality is not self._last_quality:
                self._last_quality = event.quality
                logger.info("Signal %s – %s", event.quality.name, event.quality.hint)
        elif isinstance(event, ProgressUpdated):
            second = int(event.fraction * self.duration)
            if second != self._last_second:
                self._last_second = second
                if self.processor is not None:
                    logger.debug("Progress %3.0f%%  buffer %3.0f%%",
                                 event.fraction * 100, self.processor.buffer_fill_ratio * 100)
                else:
                    logger.debug("Progress %3.0f%%", event.fraction * 100)
        elif isinstance(event, BpmUpdated):
            logger.info("BPM=%d", event.bpm)
            if self.processor is not None and logger.isEnabledFor(logging.DEBUG):
                peak = self.spectral_peak()
                if peak is not None:
                    logger.debug("Spectral peak %.1f BPM", peak)
        elif isinstance(event, MeasurementFinished):
            logger.info("Finished – average %d BPM", event.average_bpm)
        elif isinstance(event, MeasurementError):
            logger.error("%s", event.reason.message)

    def spectral_peak(self) -> float | None:
        """Strongest in-band frequency of the filtered waveform, in BPM."""
        freqs, power = self.processor.get_fft_data()
        if freqs.size == 0:
            return None
        return float(freqs[power.argmax()])


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def run(args: argparse.Namespace) -> int:
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s – %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        res_w, res_h = (int(v) for v in args.resolution.lower().split("x"))
    except ValueError:
        logger.error("Invalid --resolution format.  Use WxH, e.g. 320x240.")
        return 1

    base = PPGConfig()
    try:
        config = replace(base, session=replace(base.session, duration=args.duration)).validate()
    except ValueError as exc:
        logger.error("Invalid configuration: %s", exc)
        return 1

    if args.simulate is not None:
        source = SyntheticSampleSource(
            bpm=args.simulate,
            fps=float(args.fps),
            duration=args.duration + 10.0,
            artifact_rate=args.artifacts,
        )
    else:
        source = CameraSampleSource(
            camera_index=args.camera_index,
            resolution=(res_w, res_h),
            fps=args.fps,
        )

    session = MeasurementSession(source=source, config=config)
    session.subscribe(ConsoleReporter(args.duration, session.processor))

    logger.info("Place your fingertip firmly over the camera lens.")
    if not session.start():
        return 2

    try:
        summary = session.run()
    except KeyboardInterrupt:
        logger.info("Interrupted.")
        session.stop()
        summary = session.summary

    if session.state is SessionState.FAILED:
        return 2
    if summary is None:
        print("No reliable reading. Keep your finger steady and retry.")
        return 3

    print(
        f"Heart rate: {summary.bpm} BPM {summary.error_bounds_text}  "
        f"({summary.category.value}, {summary.confidence_level.description}, "
        f"confidence={summary.confidence:.2f})"
    )
    return 0


def main() -> None:
    sys.exit(run(parse_args()))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    main()
