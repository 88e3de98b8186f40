"""
Calibration accumulator.

Owns the registered cameras, committed frames and observations, and hands
them to the optimizer. Mutating operations check the lifecycle state:

    IDLE --start()--> CAPTURING --stop()--> STOPPED --start()--> CAPTURING

Frames and observations are only accepted while CAPTURING. stop() runs a
final refinement over everything accumulated so far.

Single-threaded by contract: refinement must not run while another caller
is adding data.
"""

from __future__ import annotations

import enum
import logging
from dataclasses import replace
from pathlib import Path

import numpy as np

from ..config import save_camera_models
from ..errors import InvalidHandleError
from ..types import (
    CalibrationFrame,
    CameraAndPose,
    CameraModel,
    Observation,
    OptimizerConfig,
    Pose,
    identity_pose,
)
from .optimizer import compute_mse, compute_reprojection_errors, refine

logger = logging.getLogger(__name__)


class CalibratorState(enum.Enum):
    IDLE = "idle"
    CAPTURING = "capturing"
    STOPPED = "stopped"


class Calibrator:
    """
    Accumulates cameras, frames and observations for joint refinement.

    Handles are dense integers: camera handles in registration order,
    frame handles in commit order.
    """

    def __init__(self, config: OptimizerConfig | None = None):
        self.config = config or OptimizerConfig()
        self._state = CalibratorState.IDLE
        self._cameras: list[CameraAndPose] = []
        self._frames: list[CalibrationFrame] = []
        self._observations: list[Observation] = []
        self._mse = 0.0
        self._last_refined_observations = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def state(self) -> CalibratorState:
        return self._state

    @property
    def is_capturing(self) -> bool:
        return self._state is CalibratorState.CAPTURING

    def start(self) -> None:
        """Begin accepting frames and observations."""
        if self._state is CalibratorState.CAPTURING:
            return
        self._state = CalibratorState.CAPTURING
        logger.info("Calibration capture started")

    def stop(self) -> float:
        """
        Stop accepting data and run the final refinement.

        Returns:
            Mean square reprojection error after refinement
        """
        if self._state is CalibratorState.CAPTURING:
            logger.info("Calibration capture stopped")
        self._state = CalibratorState.STOPPED
        return self._refine(self.config.max_iterations)

    def clear(self) -> None:
        """Drop all frames and observations, keeping registered cameras."""
        self._frames.clear()
        self._observations.clear()
        self._mse = 0.0
        self._last_refined_observations = 0

    # ------------------------------------------------------------------
    # Cameras
    # ------------------------------------------------------------------

    def add_camera(self, camera: CameraModel, T_ck: Pose | None = None) -> int:
        """
        Register a camera with its initial intrinsic guess.

        Args:
            camera: Initial intrinsic model (its index is overwritten)
            T_ck: Initial camera-from-reference extrinsic. Ignored for the
                first camera, which defines the reference frame.

        Returns:
            Camera handle
        """
        handle = len(self._cameras)
        if handle == 0 or T_ck is None:
            T_ck = identity_pose()

        self._cameras.append(
            CameraAndPose(camera=replace(camera, index=handle), T_ck=T_ck)
        )
        logger.debug("Registered camera %d (%s %dx%d)", handle, camera.model, camera.width, camera.height)
        return handle

    def get_camera(self, handle: int) -> CameraAndPose:
        self._check_camera(handle)
        return self._cameras[handle]

    def num_cameras(self) -> int:
        return len(self._cameras)

    @property
    def cameras(self) -> tuple[CameraAndPose, ...]:
        return tuple(self._cameras)

    # ------------------------------------------------------------------
    # Frames and Observations
    # ------------------------------------------------------------------

    def add_frame(self, T_kw: Pose) -> int | None:
        """
        Commit a new frame seeded with the given target pose.

        Returns:
            Frame handle, or None when not capturing
        """
        if not self.is_capturing:
            return None

        handle = len(self._frames)
        self._frames.append(CalibrationFrame(index=handle, T_kw=T_kw))
        return handle

    def get_frame(self, handle: int) -> CalibrationFrame:
        self._check_frame(handle)
        return self._frames[handle]

    def num_frames(self) -> int:
        return len(self._frames)

    @property
    def frames(self) -> tuple[CalibrationFrame, ...]:
        return tuple(self._frames)

    def add_observation(
        self,
        frame: int,
        camera: int,
        point3d: np.ndarray,
        pixel: np.ndarray,
    ) -> bool:
        """
        Append one 2D-3D correspondence.

        Raises:
            InvalidHandleError: frame or camera is not registered

        Returns:
            True if stored, False when not capturing
        """
        self._check_frame(frame)
        self._check_camera(camera)

        if not self.is_capturing:
            return False

        self._observations.append(
            Observation(
                frame=frame,
                camera=camera,
                point3d=np.asarray(point3d, dtype=np.float64).reshape(3),
                pixel=np.asarray(pixel, dtype=np.float64).reshape(2),
            )
        )
        return True

    def num_observations(self) -> int:
        return len(self._observations)

    @property
    def observations(self) -> tuple[Observation, ...]:
        return tuple(self._observations)

    # ------------------------------------------------------------------
    # Refinement
    # ------------------------------------------------------------------

    def optimize(self, max_iterations: int | None = None) -> float:
        """
        Incremental refinement for live feedback.

        Skipped until config.min_frames frames exist, or when nothing was
        added since the last refinement.

        Returns:
            Current mean square error
        """
        if len(self._frames) < self.config.min_frames:
            return self.mean_square_error()
        if len(self._observations) == self._last_refined_observations:
            return self.mean_square_error()
        if max_iterations is None:
            max_iterations = self.config.live_iterations
        return self._refine(max_iterations)

    def _refine(self, max_iterations: int | None) -> float:
        result = refine(
            self._cameras,
            self._frames,
            self._observations,
            fix_intrinsics=self.config.fix_intrinsics,
            loss=self.config.loss,
            max_iterations=max_iterations,
        )

        for cap, camera, T_ck in zip(self._cameras, result.cameras, result.extrinsics):
            cap.camera = camera
            cap.T_ck = T_ck
        for frame, T_kw in zip(self._frames, result.frame_poses):
            frame.T_kw = T_kw

        self._mse = result.mse
        self._last_refined_observations = len(self._observations)
        return self._mse

    def mean_square_error(self) -> float:
        """
        Mean squared pixel reprojection error.

        The value from the last refinement while it is current; once
        observations are added after it (or before any refinement) the error
        is evaluated at the current estimates. 0.0 when there are no
        observations.
        """
        if len(self._observations) != self._last_refined_observations:
            return compute_mse(self._cameras, self._frames, self._observations)
        return self._mse

    def reprojection_errors(self) -> dict[str, float]:
        """Per-camera RMS pixel error of the current state."""
        return compute_reprojection_errors(self._cameras, self._frames, self._observations)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def print_results(self) -> None:
        logger.info(
            "Calibration: %d cameras, %d frames, %d observations, mse=%.6f",
            self.num_cameras(), self.num_frames(), self.num_observations(), self.mean_square_error(),
        )
        for cap in self._cameras:
            cam = cap.camera
            params = ", ".join(f"{p:.6g}" for p in cam.params)
            logger.info("Camera %d (%s): [%s]", cam.index, cam.model, params)
            logger.info(
                "Camera %d T_ck: R=%s t=%s",
                cam.index,
                np.array2string(cap.T_ck.rotation, precision=5).replace("\n", ""),
                np.array2string(cap.T_ck.translation, precision=5),
            )

    def write_camera_models(self, path: Path) -> None:
        """Persist the calibrated cameras as TOML."""
        save_camera_models(self, path)
        logger.info("Wrote %d camera models to %s", self.num_cameras(), path)

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _check_camera(self, handle: int) -> None:
        if isinstance(handle, bool) or not isinstance(handle, (int, np.integer)):
            raise InvalidHandleError(f"Unknown camera handle: {handle}")
        if not 0 <= handle < len(self._cameras):
            raise InvalidHandleError(f"Unknown camera handle: {handle}")

    def _check_frame(self, handle: int) -> None:
        if isinstance(handle, bool) or not isinstance(handle, (int, np.integer)):
            raise InvalidHandleError(f"Unknown frame handle: {handle}")
        if not 0 <= handle < len(self._frames):
            raise InvalidHandleError(f"Unknown frame handle: {handle}")
