"""
Synthetic fingertip PPG source.

Generates the channel means a lit fingertip would produce: a bright red
channel pulsing at a known rate, dark green and blue channels, Gaussian
sensor noise, and optional artifact frames.  Used by the ``--simulate``
mode of the CLI and by the tests.
"""

from __future__ import annotations

from typing import Iterator, List, Optional

import numpy as np

from ppg_monitor.samples import Sample


def generate_synthetic_ppg(
    fps: float,
    duration: float,
    bpm: float,
    noise_level: float = 0.05,
    seed: Optional[int] = 0,
) -> np.ndarray:
    """Unit-amplitude PPG waveform with known heart rate."""
    rng = np.random.default_rng(seed)
    t = np.arange(int(round(fps * duration))) / fps
    heart_rate_hz = bpm / 60.0

    # Fundamental frequency + second harmonic for a dicrotic-like shape
    return (
        np.sin(2 * np.pi * heart_rate_hz * t)
        + 0.3 * np.sin(2 * np.pi * 2 * heart_rate_hz * t)
        + noise_level * rng.standard_normal(t.size)
    )


class SyntheticSampleSource:
    """
    Finite sample source with a steady pulse.

    Parameters
    ----------
    bpm:
        Heart rate of the generated pulse.
    fps:
        Sample rate; timestamps are spaced exactly ``1 / fps`` apart.
    duration:
        Seconds of samples to produce.
    red_level, pulse_amplitude:
        DC level and peak amplitude of the red channel (0 – 255 units).
    green_level, blue_level:
        Constant levels of the other channels.  Raise both above ~110 to
        simulate an uncovered lens.
    artifact_rate:
        Fraction of frames replaced by artifacts.  Artifacts alternate
        between a brief brightness spike and a dropout where the finger
        lifts off the lens.
    seed:
        Seed for the noise and artifact positions.
    """

    def __init__(
        self,
        bpm: float = 72.0,
        fps: float = 30.0,
        duration: float = 35.0,
        red_level: float = 150.0,
        pulse_amplitude: float = 4.0,
        green_level: float = 40.0,
        blue_level: float = 30.0,
        noise_level: float = 0.05,
        artifact_rate: float = 0.0,
        seed: Optional[int] = 0,
    ) -> None:
        if fps <= 0 or duration <= 0:
            raise ValueError("fps and duration must be positive")
        if not 0.0 <= artifact_rate < 1.0:
            raise ValueError(f"artifact_rate must be in [0, 1), got {artifact_rate}")
        self.bpm = bpm
        self.fps = fps
        self.duration = duration
        self.red_level = red_level
        self.pulse_amplitude = pulse_amplitude
        self.green_level = green_level
        self.blue_level = blue_level
        self.noise_level = noise_level
        self.artifact_rate = artifact_rate
        self.seed = seed
        self.acquired = False

    def acquire(self) -> None:
        self.acquired = True

    def release(self) -> None:
        self.acquired = False

    def build(self) -> List[Sample]:
        """All samples of the run, artifacts included."""
        wave = generate_synthetic_ppg(
            self.fps, self.duration, self.bpm, self.noise_level, self.seed,
        )
        red = self.red_level + self.pulse_amplitude * wave
        times = np.arange(red.size) / self.fps

        n_artifacts = int(round(self.artifact_rate * red.size))
        if n_artifacts:
            # Evenly spread, never two in a row
            idx = np.linspace(0, red.size - 1, n_artifacts + 2)[1:-1].astype(int)
            for k, i in enumerate(idx):
                if k % 2 == 0:
                    red[i] += 50.0           # brightness spike from a small shift
                else:
                    red[i] = 20.0            # finger lifted for one frame

        return [
            Sample(
                red=float(np.clip(r, 0, 255)),
                green=self.green_level,
                blue=self.blue_level,
                captured_at=float(t),
            )
            for r, t in zip(red, times)
        ]

    def samples(self) -> Iterator[Sample]:
        for sample in self.build():
            if not self.acquired:
                return
            yield sample
