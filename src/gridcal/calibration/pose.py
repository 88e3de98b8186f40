"""
Robust target pose estimation.

Pure functions - no state.
"""

from __future__ import annotations

import cv2
import numpy as np

from ..camera_models import unproject
from ..types import CameraModel, Pose

MIN_CORRESPONDENCES = 4


def solve_pose(
    camera: CameraModel,
    pixels: np.ndarray,
    points3d: np.ndarray,
    ransac_threshold_px: float = 2.0,
    iterations: int = 100,
) -> Pose | None:
    """
    Estimate camera-from-target pose with RANSAC PnP.

    Pixels are unprojected through the camera model first, so any model in
    camera_models.py works with OpenCV's pinhole PnP (identity K, no
    distortion). Inliers are refined with Levenberg-Marquardt.

    Args:
        camera: Current intrinsic estimate
        pixels: (n, 2) observed image points
        points3d: (n, 3) corresponding target points
        ransac_threshold_px: Inlier threshold in pixels
        iterations: RANSAC iteration count

    Returns:
        Pose T_cw, or None if estimation failed or the target ends up
        behind the camera
    """
    pixels = np.asarray(pixels, dtype=np.float64).reshape(-1, 2)
    points3d = np.asarray(points3d, dtype=np.float64).reshape(-1, 3)

    if len(pixels) < MIN_CORRESPONDENCES or len(pixels) != len(points3d):
        return None

    normalized = unproject(camera, pixels)
    focal = max(abs(camera.fx), abs(camera.fy), 1e-9)
    K = np.eye(3, dtype=np.float64)

    success, rvec, tvec, inliers = cv2.solvePnPRansac(
        points3d,
        normalized,
        K,
        None,
        iterationsCount=iterations,
        reprojectionError=ransac_threshold_px / focal,
        flags=cv2.SOLVEPNP_ITERATIVE,
    )

    if not success or inliers is None or len(inliers) < MIN_CORRESPONDENCES:
        return None

    inliers = inliers[:, 0]
    rvec, tvec = cv2.solvePnPRefineLM(
        points3d[inliers], normalized[inliers], K, None, rvec, tvec
    )

    pose = Pose(rotation=cv2.Rodrigues(rvec)[0], translation=tvec[:, 0].astype(np.float64))

    if pose.translation[2] <= 0:
        return None

    return pose
