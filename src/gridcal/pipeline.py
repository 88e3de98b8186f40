"""
Per-tick tracking and accumulation.

For every camera in registration order: detect and match the target,
solve its pose, and (on committed ticks) add observations to the
Calibrator. The first camera that tracks on a committed tick creates the
tick's frame and seeds its pose; later cameras on the same tick reuse that
frame and only contribute observations.

Which camera seeds is purely registration order, not estimate quality.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import cv2
import numpy as np

from .calibration.calibrator import Calibrator
from .calibration.detection import conic_centers, find_conics, process_image
from .calibration.pose import solve_pose
from .calibration.target import match_target
from .errors import TrackingError
from .types import (
    CameraModel,
    Conic,
    ConicFinderParams,
    DotGridTarget,
    ImageProcessingParams,
    MatcherParams,
    Pose,
    compose_poses,
    invert_pose,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Tracking Collaborators
# ============================================================================


@dataclass(frozen=True)
class Detection:
    """
    Detected dots for one camera image and their lattice assignment.
    """

    tracking: bool
    centers: np.ndarray  # (n, 2)
    grid_indices: np.ndarray  # (n, 2), (-1, -1) where unassigned
    conics: tuple[Conic, ...] = ()


class TargetTracker:
    """
    Bundles image processing, conic finding, grid matching and pose solving
    for one target. Holds configuration only; no per-image state.
    """

    def __init__(
        self,
        target: DotGridTarget,
        image_processing: ImageProcessingParams | None = None,
        conic_finder: ConicFinderParams | None = None,
        matcher: MatcherParams | None = None,
    ):
        self.target = target
        self.image_processing = image_processing or ImageProcessingParams()
        self.conic_finder = conic_finder or ConicFinderParams()
        self.matcher = matcher or MatcherParams()

    def detect(self, image: np.ndarray) -> Detection:
        processed = process_image(image, self.image_processing)
        conics = find_conics(processed, self.conic_finder)
        match = match_target(processed, conics, self.target, self.matcher)
        return Detection(
            tracking=match.tracking,
            centers=conic_centers(conics),
            grid_indices=match.grid_indices,
            conics=tuple(conics),
        )

    def solve_pose(
        self,
        camera: CameraModel,
        pixels: np.ndarray,
        points3d: np.ndarray,
    ) -> Pose | None:
        return solve_pose(
            camera, pixels, points3d, ransac_threshold_px=self.matcher.ransac_threshold_px
        )


# ============================================================================
# Tick State
# ============================================================================


@dataclass
class TickContext:
    """
    State shared by the cameras processed within one tick.

    frame is None until the first tracking camera commits it.
    """

    commit: bool
    frame: int | None = None
    seed_camera: int | None = None


@dataclass
class CameraTrack:
    """
    Outcome of one camera on one tick.
    """

    camera: int
    tracking: bool = False
    detection: Detection | None = None
    T_cw: Pose | None = None  # live camera-from-target estimate
    observations_added: int = 0


@dataclass
class TickResult:
    context: TickContext
    tracks: list[CameraTrack] = field(default_factory=list)

    @property
    def frame(self) -> int | None:
        return self.context.frame

    @property
    def observations_added(self) -> int:
        return sum(t.observations_added for t in self.tracks)


# ============================================================================
# Decision Logic
# ============================================================================


def in_bounds_mask(target: DotGridTarget, grid_indices: np.ndarray) -> np.ndarray:
    """
    Boolean mask of lattice indices inside the declared grid.
    """
    grid_indices = np.asarray(grid_indices).reshape(-1, 2)
    return (
        (grid_indices[:, 0] >= 0)
        & (grid_indices[:, 0] < target.columns)
        & (grid_indices[:, 1] >= 0)
        & (grid_indices[:, 1] < target.rows)
    )


def correspondences(
    target: DotGridTarget,
    detection: Detection,
) -> tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    In-bounds matched conics.

    Returns:
        (pixels (m, 2), points3d (m, 3), grid_indices (m, 2))
    """
    mask = in_bounds_mask(target, detection.grid_indices)
    grid = np.asarray(detection.grid_indices).reshape(-1, 2)[mask]
    pixels = np.asarray(detection.centers, dtype=np.float64).reshape(-1, 2)[mask]
    points3d = np.array([target.point3d(g) for g in grid], dtype=np.float64).reshape(-1, 3)
    return pixels, points3d, grid


def process_camera(
    calibrator: Calibrator,
    camera: int,
    image: np.ndarray,
    context: TickContext,
    tracker: TargetTracker,
) -> CameraTrack:
    """
    Track the target in one camera image and accumulate on committed ticks.

    Failures (lost tracking, pose solver failure, OpenCV errors) only
    affect this camera on this tick.
    """
    track = CameraTrack(camera=camera)
    cap = calibrator.get_camera(camera)
    target = tracker.target

    try:
        detection = tracker.detect(image)
        track.detection = detection
        if not detection.tracking:
            return track

        pixels, points3d, _ = correspondences(target, detection)
        T_cw = tracker.solve_pose(cap.camera, pixels, points3d)
    except (cv2.error, np.linalg.LinAlgError, TrackingError) as e:
        logger.debug("Camera %d: tracking failed: %s", camera, e)
        return track

    if T_cw is None:
        logger.debug("Camera %d: pose solver did not converge", camera)
        return track

    track.tracking = True
    track.T_cw = T_cw

    if not context.commit:
        return track

    if context.frame is None:
        # Seed T_kw from this camera: T_kw = T_kc * T_cw
        T_kw = compose_poses(invert_pose(cap.T_ck), T_cw)
        context.frame = calibrator.add_frame(T_kw)
        if context.frame is None:
            return track
        context.seed_camera = camera
        logger.debug("Frame %d seeded from camera %d", context.frame, camera)

    for point3d, pixel in zip(points3d, pixels):
        if calibrator.add_observation(context.frame, camera, point3d, pixel):
            track.observations_added += 1

    return track


def process_tick(
    calibrator: Calibrator,
    images: list[np.ndarray],
    commit: bool,
    tracker: TargetTracker,
) -> TickResult:
    """
    Run process_camera for every registered camera in registration order.

    Args:
        calibrator: Accumulator holding the cameras
        images: One single-channel image per registered camera
        commit: Whether this tick may create a calibration frame
        tracker: Detection and pose collaborators

    Returns:
        TickResult with the tick's frame handle (if any) and per-camera tracks
    """
    if len(images) != calibrator.num_cameras():
        raise ValueError(
            f"Expected {calibrator.num_cameras()} images, got {len(images)}"
        )

    context = TickContext(commit=commit)
    result = TickResult(context=context)

    for camera, image in enumerate(images):
        result.tracks.append(process_camera(calibrator, camera, image, context, tracker))

    return result
