"""
Tick-driven calibration capture loop.

One tick grabs a synchronized frame set (when advancing), runs the
pipeline for every camera and, on committed ticks, accumulates into the
Calibrator. Everything happens on the caller's thread; live refinement
runs between ticks so the optimizer never sees data changing underneath it.
"""

from __future__ import annotations

import logging
from pathlib import Path

import numpy as np

from .calibration.calibrator import Calibrator
from .camera_models import make_camera
from .pipeline import TargetTracker, TickResult, process_tick
from .types import CalibrationConfig, Pose
from .video import FrameSource

logger = logging.getLogger(__name__)

PROGRESS_EVERY = 50


class CalibrationSession:
    """
    Drives a video source through the tracking pipeline.

    Mirrors the interactive controls of a capture UI: play/pause, single
    step, and an add-frames toggle deciding whether grabbed ticks commit
    calibration frames. A renderer can read `tracking`, `live_poses` and
    the calibrator after each tick.
    """

    def __init__(
        self,
        source: FrameSource,
        config: CalibrationConfig | None = None,
        calibrator: Calibrator | None = None,
        tracker: TargetTracker | None = None,
    ):
        self.source = source
        self.config = config or CalibrationConfig()
        self.calibrator = calibrator or Calibrator(self.config.optimizer)
        self.tracker = tracker or TargetTracker(
            self.config.target,
            image_processing=self.config.image_processing,
            conic_finder=self.config.conic_finder,
            matcher=self.config.matcher,
        )

        self.playing = False
        self.add_frames = self.config.add_frames
        self.frame_count = 0  # video frames grabbed
        self.committed_ticks = 0
        self.last_result: TickResult | None = None

        self._images: list[np.ndarray] | None = None
        self._step_requested = False
        self._grab_failed = False

        if not source.stream_sizes:
            source.open()

        if self.calibrator.num_cameras() == 0:
            for width, height in source.stream_sizes:
                self.calibrator.add_camera(make_camera(self.config.camera_model, width, height))

        n = self.calibrator.num_cameras()
        self.tracking = [False] * n
        self.live_poses: list[Pose | None] = [None] * n

    # ------------------------------------------------------------------
    # Controls
    # ------------------------------------------------------------------

    def play(self) -> None:
        self.playing = True

    def pause(self) -> None:
        self.playing = False

    def toggle_play(self) -> None:
        self.playing = not self.playing

    def step(self) -> None:
        """Advance one video frame on the next tick."""
        self._step_requested = True

    @property
    def end_of_stream(self) -> bool:
        """True while the most recent grab failed; the next play() or step() retries."""
        return self._grab_failed

    # ------------------------------------------------------------------
    # Loop
    # ------------------------------------------------------------------

    def tick(self) -> TickResult | None:
        """
        Process one tick.

        Grabs a new frame set on the first tick, while playing, or after
        step(). Otherwise the last images are re-tracked without committing.
        A failed grab pauses playback; the source is asked again on the next
        advancing tick.

        Returns:
            TickResult, or None if no images have been grabbed yet
        """
        advance = self.frame_count == 0 or self.playing or self._step_requested
        self._step_requested = False

        grabbed = False
        if advance:
            ok, images = self.source.grab()
            if ok:
                self._images = images
                self.frame_count += 1
                self._grab_failed = False
                grabbed = True
            else:
                if not self._grab_failed:
                    logger.info("Video stream ended after %d frames", self.frame_count)
                self._grab_failed = True
                self.playing = False

        if self._images is None:
            return None

        commit = grabbed and self.add_frames and self.calibrator.is_capturing
        result = process_tick(self.calibrator, self._images, commit, self.tracker)

        for track in result.tracks:
            self.tracking[track.camera] = track.tracking
            self.live_poses[track.camera] = track.T_cw

        if result.frame is not None:
            self.committed_ticks += 1
            if self.committed_ticks % self.config.optimizer.optimize_every == 0:
                self.calibrator.optimize()

        if grabbed and self.frame_count % PROGRESS_EVERY == 0:
            logger.info(
                "Frame %d: %d calibration frames, %d observations, mse=%.4f",
                self.frame_count,
                self.calibrator.num_frames(),
                self.calibrator.num_observations(),
                self.calibrator.mean_square_error(),
            )

        self.last_result = result
        return result

    def run(self, max_frames: int | None = None) -> None:
        """
        Play with accumulation on until a grab fails or max_frames frames
        have been grabbed.
        """
        self.calibrator.start()
        self.play()

        while max_frames is None or self.frame_count < max_frames:
            self.tick()
            if self._grab_failed:
                break

        self.pause()

    def finish(self, output: Path | None = None) -> float:
        """
        Final refinement, report, and optional camera model output.

        Returns:
            Mean square reprojection error
        """
        mse = self.calibrator.stop()
        self.calibrator.print_results()
        if output is not None:
            self.calibrator.write_camera_models(output)
        self.source.close()
        return mse
