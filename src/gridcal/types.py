"""
Core data structures for gridcal.

Frozen dataclasses are data containers; the two mutable records
(CameraAndPose, CalibrationFrame) are the slots the accumulator hands out
so the optimizer can refine them in place.
Logic lives in separate pure functions.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import cv2
import numpy as np


# ============================================================================
# Rigid Transforms
# ============================================================================


@dataclass(frozen=True, slots=True)
class Pose:
    """
    Rigid transform T_ab: maps points expressed in frame b into frame a.
    """

    rotation: np.ndarray  # 3x3 rotation matrix
    translation: np.ndarray  # (3,) translation vector


def identity_pose() -> Pose:
    return Pose(
        rotation=np.eye(3, dtype=np.float64),
        translation=np.zeros(3, dtype=np.float64),
    )


def compose_poses(a: Pose, b: Pose) -> Pose:
    """
    Compose T_ab and T_bc into T_ac.
    """
    return Pose(
        rotation=a.rotation @ b.rotation,
        translation=a.rotation @ b.translation + a.translation,
    )


def invert_pose(pose: Pose) -> Pose:
    rotation_t = pose.rotation.T
    return Pose(rotation=rotation_t, translation=-rotation_t @ pose.translation)


def transform_points(pose: Pose, points: np.ndarray) -> np.ndarray:
    """
    Apply pose to an (n, 3) array of points.
    """
    points = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    return points @ pose.rotation.T + pose.translation


def pose_matrix(pose: Pose) -> np.ndarray:
    """
    4x4 homogeneous transformation matrix.
    """
    t = np.eye(4, dtype=np.float64)
    t[0:3, 0:3] = pose.rotation
    t[0:3, 3] = pose.translation
    return t


def pose_to_vector(pose: Pose) -> np.ndarray:
    """
    Convert pose to 6-element vector for optimization.
    [rodrigues_x, rodrigues_y, rodrigues_z, tx, ty, tz]
    """
    rodrigues = cv2.Rodrigues(np.asarray(pose.rotation, dtype=np.float64))[0][:, 0]
    return np.hstack([rodrigues, pose.translation]).astype(np.float64)


def pose_from_vector(vector: np.ndarray) -> Pose:
    vector = np.asarray(vector, dtype=np.float64)
    rotation = cv2.Rodrigues(vector[0:3].reshape(3, 1))[0]
    return Pose(rotation=rotation, translation=vector[3:6].copy())


# ============================================================================
# Cameras
# ============================================================================


@dataclass(frozen=True, slots=True)
class CameraModel:
    """
    Intrinsic model for one physical camera.

    `model` selects the parameterization (see camera_models.py).
    `index` is assigned by the Calibrator when the camera is registered.
    """

    model: str  # "pinhole", "fov" or "poly3"
    width: int
    height: int
    params: np.ndarray  # model-specific parameter vector
    index: int = -1

    @property
    def fx(self) -> float:
        return float(self.params[0])

    @property
    def fy(self) -> float:
        return float(self.params[1])

    @property
    def principal_point(self) -> tuple[float, float]:
        return float(self.params[2]), float(self.params[3])

    def K(self) -> np.ndarray:
        """Linear part of the model as a 3x3 matrix."""
        return np.array([
            [self.params[0], 0.0, self.params[2]],
            [0.0, self.params[1], self.params[3]],
            [0.0, 0.0, 1.0],
        ], dtype=np.float64)

    def Kinv(self) -> np.ndarray:
        return np.linalg.inv(self.K())


@dataclass(slots=True)
class CameraAndPose:
    """
    A registered camera plus its rig extrinsic T_ck (camera from reference).
    """

    camera: CameraModel
    T_ck: Pose = field(default_factory=identity_pose)


@dataclass(slots=True)
class CalibrationFrame:
    """
    One committed capture instant, shared by every camera in the rig.

    T_kw maps target (world) coordinates into the reference camera.
    """

    index: int
    T_kw: Pose


@dataclass(frozen=True, slots=True)
class Observation:
    """
    One 2D-3D correspondence tied to a frame and a camera.
    """

    frame: int
    camera: int
    point3d: np.ndarray  # (3,) in target coordinates
    pixel: np.ndarray  # (2,) observed image location


# ============================================================================
# Detection Results
# ============================================================================


@dataclass(frozen=True, slots=True)
class Conic:
    """
    A detected elliptical blob.
    """

    center: np.ndarray  # (2,) sub-pixel centre (x, y)
    bbox: tuple[int, int, int, int]  # (x, y, width, height)
    area: float
    density: float  # area / bbox area
    aspect: float  # short side / long side of bbox


@dataclass(frozen=True, slots=True)
class TargetMatch:
    """
    Result of matching conics against the dot grid.

    grid_indices holds one (column, row) per conic, (-1, -1) where no
    lattice position could be assigned. Assigned positions may fall
    outside the declared grid.
    """

    tracking: bool
    grid_indices: np.ndarray  # (n, 2) int


# ============================================================================
# Target Geometry
# ============================================================================

US_LETTER_GRID_SIZE = (19, 10)
US_LETTER_GRID_SPACING = 0.254 / (19 - 1)


@dataclass(frozen=True, slots=True)
class DotGridTarget:
    """
    Planar grid of dots with known spacing, lying in the target's z = 0 plane.
    """

    grid_spacing: float = US_LETTER_GRID_SPACING  # metres between dot centres
    grid_size: tuple[int, int] = US_LETTER_GRID_SIZE  # (columns, rows)

    @property
    def columns(self) -> int:
        return self.grid_size[0]

    @property
    def rows(self) -> int:
        return self.grid_size[1]

    @property
    def num_points(self) -> int:
        return self.columns * self.rows

    def contains(self, grid_index) -> bool:
        """True when (column, row) lies inside the declared grid."""
        x, y = int(grid_index[0]), int(grid_index[1])
        return 0 <= x < self.columns and 0 <= y < self.rows

    def point3d(self, grid_index) -> np.ndarray:
        return self.grid_spacing * np.array(
            [grid_index[0], grid_index[1], 0.0], dtype=np.float64
        )

    def grid_indices(self) -> np.ndarray:
        """(n, 2) lattice indices in row-major order."""
        xs, ys = np.meshgrid(np.arange(self.columns), np.arange(self.rows))
        return np.stack([xs.ravel(), ys.ravel()], axis=1).astype(np.int32)

    def points3d(self) -> np.ndarray:
        """(n, 3) dot centres in row-major order."""
        grid = self.grid_indices().astype(np.float64)
        return np.hstack([grid * self.grid_spacing, np.zeros((len(grid), 1))])


# ============================================================================
# Pipeline Configuration
# ============================================================================


@dataclass(frozen=True, slots=True)
class ImageProcessingParams:
    """
    Adaptive threshold settings.

    A pixel is foreground when it is darker than at_threshold times the
    mean of a box window of width / at_window_ratio pixels.
    """

    at_threshold: float = 0.9
    at_window_ratio: float = 30.0
    black_on_white: bool = True


@dataclass(frozen=True, slots=True)
class ConicFinderParams:
    conic_min_area: float = 4.0
    conic_max_area: float = 1e4
    conic_min_density: float = 0.6
    conic_min_aspect: float = 0.2


@dataclass(frozen=True, slots=True)
class MatcherParams:
    min_matched: int = 10  # in-bounds conics needed to call tracking good
    max_grid_residual: float = 0.3  # in grid units
    ransac_threshold_px: float = 2.0  # lattice fit and pose solver inlier threshold


@dataclass(frozen=True, slots=True)
class OptimizerConfig:
    fix_intrinsics: bool = False
    loss: str = "linear"  # any scipy.optimize.least_squares loss
    min_frames: int = 3  # frames needed before refinement runs
    max_iterations: int = 100  # final refinement
    live_iterations: int = 10  # incremental refinement during capture
    optimize_every: int = 10  # committed ticks between live refinements


@dataclass(frozen=True, slots=True)
class CalibrationConfig:
    """
    Complete calibration configuration.
    Loaded from a TOML file, see config.py.
    """

    target: DotGridTarget = field(default_factory=DotGridTarget)
    camera_model: str = "fov"
    image_processing: ImageProcessingParams = field(default_factory=ImageProcessingParams)
    conic_finder: ConicFinderParams = field(default_factory=ConicFinderParams)
    matcher: MatcherParams = field(default_factory=MatcherParams)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)
    add_frames: bool = True
    convert_gray: bool = False
