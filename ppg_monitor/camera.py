"""
Camera sample source.

Wraps OpenCV ``VideoCapture`` and turns each frame into a :class:`Sample`
of centre-region channel means.  Implements the session's sample-source
protocol: acquire on start, release on every exit path.

OpenCV has no portable torch control.  An optional *illumination* object
with ``on()`` / ``off()`` methods can be supplied for hardware that has one
(a GPIO LED, a phone bridge, ...).
"""

from __future__ import annotations

import logging
import time
from typing import Generator, Optional, Protocol, Tuple

import cv2
import numpy as np

from ppg_monitor.events import AcquisitionError, ErrorReason
from ppg_monitor.samples import Sample, sample_from_frame

logger = logging.getLogger(__name__)

MAX_NULL_STREAK = 10


class Illumination(Protocol):
    def on(self) -> None: ...

    def off(self) -> None: ...


class CameraSampleSource:
    """
    Sample source backed by an OpenCV capture device.

    Parameters
    ----------
    camera_index:
        OpenCV VideoCapture index.
    resolution:
        (width, height) requested from the device.  Low resolution is
        enough: only the channel means are kept.
    fps:
        Target frame rate.  Actual rate may differ; the pipeline measures
        it from the timestamps.
    illumination:
        Optional light source switched on in :meth:`acquire` and off in
        :meth:`release`.
    """

    def __init__(
        self,
        camera_index: int = 0,
        resolution: Tuple[int, int] = (320, 240),
        fps: int = 30,
        illumination: Optional[Illumination] = None,
    ) -> None:
        self.camera_index = camera_index
        self.resolution = resolution
        self.fps = fps
        self.illumination = illumination

        self._cap: "cv2.VideoCapture | None" = None
        self._light_on = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def acquire(self) -> None:
        """Open the camera and switch the illumination on."""
        if self._cap is not None:
            return
        cap = cv2.VideoCapture(self.camera_index)
        if not cap.isOpened():
            cap.release()
            raise AcquisitionError(
                ErrorReason.CAMERA_UNAVAILABLE,
                f"Cannot open video capture device index={self.camera_index}",
            )
        w, h = self.resolution
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, w)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, h)
        cap.set(cv2.CAP_PROP_FPS, self.fps)
        self._cap = cap

        if self.illumination is not None:
            try:
                self.illumination.on()
            except Exception as exc:
                self.release()
                raise AcquisitionError(ErrorReason.ILLUMINATION_UNAVAILABLE, str(exc)) from exc
            self._light_on = True

        logger.info(
            "Camera opened – index=%d resolution=%s fps=%d",
            self.camera_index, self.resolution, self.fps,
        )

    def release(self) -> None:
        """Switch the illumination off and release the camera."""
        if self._light_on and self.illumination is not None:
            self._light_on = False
            try:
                self.illumination.off()
            except Exception as exc:                         # noqa: BLE001
                logger.warning("Could not switch illumination off: %s", exc)
        if self._cap is None:
            return
        self._cap.release()
        self._cap = None
        logger.info("Camera closed.")

    # Context-manager support
    def __enter__(self) -> "CameraSampleSource":
        self.acquire()
        return self

    def __exit__(self, *_) -> None:
        self.release()

    @property
    def is_open(self) -> bool:
        return self._cap is not None

    # ------------------------------------------------------------------
    # Frame acquisition
    # ------------------------------------------------------------------

    def read_frame(self) -> np.ndarray | None:
        """
        Capture a single frame.

        Returns
        -------
        numpy.ndarray
            BGR image array (H × W × 3, dtype uint8), or *None* on failure.
        """
        if self._cap is None:
            raise RuntimeError("Camera is not open.  Call acquire() first.")
        ok, frame = self._cap.read()
        if not ok:
            logger.warning("VideoCapture.read() returned False.")
            return None
        return frame

    def samples(self) -> Generator[Sample, None, None]:
        """
        Yield one sample per frame until the camera is released.

        Raises :class:`AcquisitionError` after ``MAX_NULL_STREAK``
        consecutive failed reads.
        """
        null_streak = 0
        while self._cap is not None:
            frame = self.read_frame()
            captured_at = time.monotonic()
            if frame is None:
                null_streak += 1
                if null_streak >= MAX_NULL_STREAK:
                    raise AcquisitionError(
                        ErrorReason.CAMERA_UNAVAILABLE,
                        f"Camera returned {MAX_NULL_STREAK} consecutive empty frames",
                    )
                continue
            null_streak = 0
            yield sample_from_frame(frame, captured_at)
