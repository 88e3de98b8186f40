"""
Bundle-style refinement of intrinsics, rig extrinsics and frame poses.

Pure functions - takes the accumulator's records, returns refined values.
The Calibrator writes results back into its own storage.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
from scipy.optimize import least_squares
from scipy.sparse import lil_matrix

from ..camera_models import param_count, project_with_params
from ..types import (
    CalibrationFrame,
    CameraAndPose,
    CameraModel,
    Observation,
    Pose,
    pose_from_vector,
    pose_to_vector,
)

logger = logging.getLogger(__name__)

POSE_PARAM_COUNT = 6


# ============================================================================
# Data Structures
# ============================================================================


@dataclass
class ObservationArrays:
    """
    Observations flattened into parallel arrays for vectorized residuals.
    """

    frame_indices: np.ndarray  # (n,) frame handle per observation
    camera_indices: np.ndarray  # (n,) camera handle per observation
    points3d: np.ndarray  # (n, 3) target points
    pixels: np.ndarray  # (n, 2) observed image points

    @property
    def n_observations(self) -> int:
        return self.pixels.shape[0]

    @classmethod
    def from_observations(cls, observations: list[Observation]) -> "ObservationArrays":
        if not observations:
            return cls(
                frame_indices=np.zeros(0, dtype=np.int32),
                camera_indices=np.zeros(0, dtype=np.int32),
                points3d=np.zeros((0, 3), dtype=np.float64),
                pixels=np.zeros((0, 2), dtype=np.float64),
            )
        return cls(
            frame_indices=np.array([o.frame for o in observations], dtype=np.int32),
            camera_indices=np.array([o.camera for o in observations], dtype=np.int32),
            points3d=np.array([o.point3d for o in observations], dtype=np.float64),
            pixels=np.array([o.pixel for o in observations], dtype=np.float64),
        )


@dataclass
class ParameterLayout:
    """
    Offsets of each block inside the flat parameter vector.

    Blocks that are held fixed have offset -1.
    """

    intrinsic_offsets: list[int]
    extrinsic_offsets: list[int]
    frame_offsets: list[int]
    size: int


@dataclass
class RefinementResult:
    cameras: list[CameraModel]
    extrinsics: list[Pose]
    frame_poses: list[Pose]
    mse: float  # mean squared pixel error per observation
    iterations: int = 0
    success: bool = True

    @property
    def rmse(self) -> float:
        return float(np.sqrt(self.mse))


# ============================================================================
# Parameter Packing
# ============================================================================


def _build_layout(
    cameras: list[CameraAndPose],
    n_frames: int,
    fix_intrinsics: bool,
) -> ParameterLayout:
    offset = 0

    intrinsic_offsets = []
    for cap in cameras:
        if fix_intrinsics:
            intrinsic_offsets.append(-1)
        else:
            intrinsic_offsets.append(offset)
            offset += param_count(cap.camera.model)

    # Reference camera defines the rig frame and stays at identity
    extrinsic_offsets = [-1]
    for _ in cameras[1:]:
        extrinsic_offsets.append(offset)
        offset += POSE_PARAM_COUNT

    frame_offsets = []
    for _ in range(n_frames):
        frame_offsets.append(offset)
        offset += POSE_PARAM_COUNT

    return ParameterLayout(
        intrinsic_offsets=intrinsic_offsets,
        extrinsic_offsets=extrinsic_offsets[: len(cameras)],
        frame_offsets=frame_offsets,
        size=offset,
    )


def _pack(
    cameras: list[CameraAndPose],
    frames: list[CalibrationFrame],
    layout: ParameterLayout,
) -> np.ndarray:
    params = np.zeros(layout.size, dtype=np.float64)

    for cap, offset in zip(cameras, layout.intrinsic_offsets):
        if offset >= 0:
            params[offset : offset + len(cap.camera.params)] = cap.camera.params

    for cap, offset in zip(cameras, layout.extrinsic_offsets):
        if offset >= 0:
            params[offset : offset + POSE_PARAM_COUNT] = pose_to_vector(cap.T_ck)

    for frame, offset in zip(frames, layout.frame_offsets):
        params[offset : offset + POSE_PARAM_COUNT] = pose_to_vector(frame.T_kw)

    return params


def _unpack(
    params: np.ndarray,
    cameras: list[CameraAndPose],
    frames: list[CalibrationFrame],
    layout: ParameterLayout,
) -> tuple[list[np.ndarray], list[Pose], list[Pose]]:
    intrinsics = []
    for cap, offset in zip(cameras, layout.intrinsic_offsets):
        if offset < 0:
            intrinsics.append(cap.camera.params)
        else:
            intrinsics.append(params[offset : offset + len(cap.camera.params)])

    extrinsics = []
    for cap, offset in zip(cameras, layout.extrinsic_offsets):
        if offset < 0:
            extrinsics.append(cap.T_ck)
        else:
            extrinsics.append(pose_from_vector(params[offset : offset + POSE_PARAM_COUNT]))

    frame_poses = [
        pose_from_vector(params[offset : offset + POSE_PARAM_COUNT])
        for offset in layout.frame_offsets
    ]

    return intrinsics, extrinsics, frame_poses


# ============================================================================
# Residuals
# ============================================================================


def _project_observations(
    intrinsics: list[np.ndarray],
    extrinsics: list[Pose],
    frame_poses: list[Pose],
    models: list[str],
    data: ObservationArrays,
) -> np.ndarray:
    """
    Project every observation's target point through T_ck * T_kw.
    """
    projected = np.zeros((data.n_observations, 2), dtype=np.float64)
    if data.n_observations == 0:
        return projected

    R_kw = np.stack([p.rotation for p in frame_poses])
    t_kw = np.stack([p.translation for p in frame_poses])

    # Target -> reference camera
    f = data.frame_indices
    points_k = np.einsum("nij,nj->ni", R_kw[f], data.points3d) + t_kw[f]

    for cam_idx, (model, params, T_ck) in enumerate(zip(models, intrinsics, extrinsics)):
        mask = data.camera_indices == cam_idx
        if not np.any(mask):
            continue

        points_c = points_k[mask] @ T_ck.rotation.T + T_ck.translation
        projected[mask] = project_with_params(model, params, points_c)

    return projected


def _xy_reprojection_error(
    params: np.ndarray,
    cameras: list[CameraAndPose],
    frames: list[CalibrationFrame],
    layout: ParameterLayout,
    data: ObservationArrays,
) -> np.ndarray:
    intrinsics, extrinsics, frame_poses = _unpack(params, cameras, frames, layout)
    models = [cap.camera.model for cap in cameras]
    projected = _project_observations(intrinsics, extrinsics, frame_poses, models, data)
    return (projected - data.pixels).ravel()


def _get_sparsity_pattern(
    cameras: list[CameraAndPose],
    layout: ParameterLayout,
    data: ObservationArrays,
) -> lil_matrix:
    """
    Build sparse Jacobian pattern for least_squares.
    """
    m = data.n_observations * 2
    A = lil_matrix((m, layout.size), dtype=int)

    i = np.arange(data.n_observations)

    for cam_idx, cap in enumerate(cameras):
        rows = i[data.camera_indices == cam_idx]
        if rows.size == 0:
            continue

        blocks = []
        if layout.intrinsic_offsets[cam_idx] >= 0:
            blocks.append((layout.intrinsic_offsets[cam_idx], len(cap.camera.params)))
        if layout.extrinsic_offsets[cam_idx] >= 0:
            blocks.append((layout.extrinsic_offsets[cam_idx], POSE_PARAM_COUNT))

        for offset, count in blocks:
            for s in range(count):
                A[2 * rows, offset + s] = 1
                A[2 * rows + 1, offset + s] = 1

    frame_offsets = np.array(layout.frame_offsets, dtype=np.int64)
    for s in range(POSE_PARAM_COUNT):
        A[2 * i, frame_offsets[data.frame_indices] + s] = 1
        A[2 * i + 1, frame_offsets[data.frame_indices] + s] = 1

    return A


def _mse(residuals: np.ndarray) -> float:
    if residuals.size == 0:
        return 0.0
    per_observation = np.sum(residuals.reshape(-1, 2) ** 2, axis=1)
    return float(np.mean(per_observation))


# ============================================================================
# Refinement
# ============================================================================


def refine(
    cameras: list[CameraAndPose],
    frames: list[CalibrationFrame],
    observations: list[Observation],
    fix_intrinsics: bool = False,
    loss: str = "linear",
    max_iterations: int | None = None,
) -> RefinementResult:
    """
    Jointly refine intrinsics, rig extrinsics and frame poses.

    Args:
        cameras: Registered cameras in index order (index 0 is the reference)
        frames: Committed frames in index order
        observations: All accumulated observations
        fix_intrinsics: Hold camera parameters constant
        loss: least_squares loss ("linear", "huber", "cauchy", ...)
        max_iterations: Cap on function evaluations (None = solver default)

    Returns:
        RefinementResult; with no observations, the inputs are returned
        unchanged and mse is 0.0
    """
    data = ObservationArrays.from_observations(observations)

    unchanged = RefinementResult(
        cameras=[cap.camera for cap in cameras],
        extrinsics=[cap.T_ck for cap in cameras],
        frame_poses=[frame.T_kw for frame in frames],
        mse=0.0,
        iterations=0,
        success=True,
    )

    if data.n_observations == 0 or not cameras:
        return unchanged

    layout = _build_layout(cameras, len(frames), fix_intrinsics)
    initial_params = _pack(cameras, frames, layout)
    sparsity = _get_sparsity_pattern(cameras, layout, data)

    result = least_squares(
        _xy_reprojection_error,
        initial_params,
        jac_sparsity=sparsity,
        verbose=0,
        x_scale="jac",
        loss=loss,
        ftol=1e-8,
        method="trf",
        max_nfev=max_iterations,
        args=(cameras, frames, layout, data),
    )

    intrinsics, extrinsics, frame_poses = _unpack(result.x, cameras, frames, layout)

    refined_cameras = [
        CameraModel(
            model=cap.camera.model,
            width=cap.camera.width,
            height=cap.camera.height,
            params=np.array(params, dtype=np.float64),
            index=cap.camera.index,
        )
        for cap, params in zip(cameras, intrinsics)
    ]

    mse = _mse(result.fun)
    logger.debug(
        "Refinement: %d observations, %d params, %d evaluations, mse=%.6f",
        data.n_observations, layout.size, result.nfev, mse,
    )

    return RefinementResult(
        cameras=refined_cameras,
        extrinsics=extrinsics,
        frame_poses=frame_poses,
        mse=mse,
        iterations=int(result.nfev),
        success=bool(result.success),
    )


def _squared_errors(
    cameras: list[CameraAndPose],
    frames: list[CalibrationFrame],
    data: ObservationArrays,
) -> np.ndarray:
    """Squared pixel error per observation at the current estimates."""
    models = [cap.camera.model for cap in cameras]
    projected = _project_observations(
        [cap.camera.params for cap in cameras],
        [cap.T_ck for cap in cameras],
        [frame.T_kw for frame in frames],
        models,
        data,
    )
    return np.sum((projected - data.pixels) ** 2, axis=1)


def compute_mse(
    cameras: list[CameraAndPose],
    frames: list[CalibrationFrame],
    observations: list[Observation],
) -> float:
    """
    Mean square pixel error of the current state, without refining.

    Returns:
        0.0 when there are no observations
    """
    data = ObservationArrays.from_observations(observations)
    if data.n_observations == 0:
        return 0.0
    return float(np.mean(_squared_errors(cameras, frames, data)))


def compute_reprojection_errors(
    cameras: list[CameraAndPose],
    frames: list[CalibrationFrame],
    observations: list[Observation],
) -> dict[str, float]:
    """
    RMS pixel error of the current state.

    Returns:
        Dict with 'overall' RMSE and per-camera RMSE keyed by camera index
    """
    data = ObservationArrays.from_observations(observations)
    if data.n_observations == 0:
        return {"overall": 0.0}

    squared = _squared_errors(cameras, frames, data)

    rmse = {"overall": float(np.sqrt(np.mean(squared)))}
    for cam_idx in range(len(cameras)):
        mask = data.camera_indices == cam_idx
        if np.any(mask):
            rmse[str(cam_idx)] = float(np.sqrt(np.mean(squared[mask])))

    return rmse
