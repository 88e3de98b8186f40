"""
Pytest configuration and shared fixtures.
"""

import tempfile
from pathlib import Path

import cv2
import numpy as np
import pytest


@pytest.fixture
def temp_dir():
    """Provide a temporary directory that's cleaned up after test."""
    with tempfile.TemporaryDirectory() as td:
        yield Path(td)


@pytest.fixture
def small_target():
    """3x3 dot grid with 5cm spacing."""
    from gridcal.types import DotGridTarget
    return DotGridTarget(grid_spacing=0.05, grid_size=(3, 3))


@pytest.fixture
def letter_target():
    """Default US-letter 19x10 grid."""
    from gridcal.types import DotGridTarget
    return DotGridTarget()


@pytest.fixture
def pinhole_camera():
    """640x480 pinhole camera, f=500."""
    from gridcal.camera_models import make_camera
    return make_camera("pinhole", 640, 480, np.array([500.0, 500.0, 320.0, 240.0]))


@pytest.fixture
def fov_camera():
    """640x480 FOV camera with mild distortion."""
    from gridcal.camera_models import make_camera
    return make_camera("fov", 640, 480, np.array([500.0, 505.0, 322.0, 238.0, 0.4]))


@pytest.fixture
def target_pose():
    """Target 0.5m in front of the camera, slightly tilted."""
    from gridcal.types import Pose
    rotation = cv2.Rodrigues(np.array([0.15, -0.1, 0.05]))[0]
    return Pose(rotation=rotation, translation=np.array([-0.09, -0.06, 0.5]))


# ============================================================================
# Fake tracking collaborators
# ============================================================================


class FakeTracker:
    """
    Stands in for TargetTracker.

    Images passed through the pipeline are keys (or arrays whose first
    pixel is the key); detections and poses are looked up per key so tests
    fully control each camera.
    """

    def __init__(self, target, detections, poses):
        self.target = target
        self.detections = detections
        self.poses = poses
        self.pose_calls = []

    def detect(self, image):
        key = int(image[0, 0]) if isinstance(image, np.ndarray) else image
        detection = self.detections[key]
        if isinstance(detection, Exception):
            raise detection
        return detection

    def solve_pose(self, camera, pixels, points3d):
        self.pose_calls.append((camera.index, len(pixels)))
        return self.poses.get(camera.index)


def grid_detection(target, grid_indices=None, tracking=True, offset=0.0):
    """Detection with one conic per grid index, centred at a fake pixel."""
    from gridcal.pipeline import Detection

    if grid_indices is None:
        grid_indices = target.grid_indices()
    grid_indices = np.asarray(grid_indices, dtype=np.int32).reshape(-1, 2)
    centers = grid_indices.astype(np.float64) * 40.0 + 100.0 + offset
    return Detection(tracking=tracking, centers=centers, grid_indices=grid_indices)


@pytest.fixture
def make_tracker():
    return FakeTracker


@pytest.fixture
def make_detection():
    return grid_detection


# ============================================================================
# Synthetic images
# ============================================================================


def render_dot_grid(camera, target, T_cw, radius_m=None, size=None, skip=None):
    """
    Render black dots on white as seen by camera at pose T_cw.

    Dots are drawn as projected ellipses approximated by the projected
    radius at their centre. Lattice positions in skip are left blank but
    still have their centre returned.
    """
    from gridcal.camera_models import project
    from gridcal.types import transform_points

    width, height = size or (camera.width, camera.height)
    if radius_m is None:
        radius_m = target.grid_spacing * 0.2

    image = np.full((height, width), 255, dtype=np.uint8)
    points = transform_points(T_cw, target.points3d())
    centers = project(camera, points)
    edges = project(camera, points + np.array([radius_m, 0.0, 0.0]))
    radii = np.linalg.norm(edges - centers, axis=1)

    skip = skip or set()
    for (x, y), r, key in zip(centers, radii, target.grid_indices()):
        if (int(key[0]), int(key[1])) in skip:
            continue
        cv2.circle(
            image,
            (int(round(x * 16)), int(round(y * 16))),
            int(round(r * 16)),
            0,
            thickness=-1,
            lineType=cv2.LINE_AA,
            shift=4,
        )

    return image, centers


@pytest.fixture
def render_grid():
    return render_dot_grid
