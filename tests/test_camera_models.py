"""
Tests for gridcal.camera_models.
"""

import numpy as np
import pytest

from gridcal.camera_models import (
    MODELS,
    default_params,
    make_camera,
    param_count,
    project,
    unproject,
)
from gridcal.errors import ConfigError


@pytest.fixture
def points_cam():
    """Points spread across the field of view in front of the camera."""
    return np.array([
        [0.0, 0.0, 1.0],
        [0.2, -0.1, 1.0],
        [-0.3, 0.25, 2.0],
        [0.15, 0.3, 0.8],
    ], dtype=np.float64)


@pytest.fixture(params=[
    ("pinhole", [500.0, 500.0, 320.0, 240.0]),
    ("fov", [500.0, 505.0, 322.0, 238.0, 0.6]),
    ("poly3", [500.0, 505.0, 322.0, 238.0, -0.2, 0.05, -0.01]),
])
def camera(request):
    model, params = request.param
    return make_camera(model, 640, 480, np.array(params))


class TestModelTable:
    def test_param_counts(self):
        assert param_count("pinhole") == 4
        assert param_count("fov") == 5
        assert param_count("poly3") == 7

    def test_unknown_model(self):
        with pytest.raises(ConfigError, match="Unknown camera model"):
            param_count("fisheye9000")

    def test_default_fov_params(self):
        params = default_params("fov", 640, 480)
        np.testing.assert_array_equal(params, [300.0, 300.0, 320.0, 240.0, 0.2])

    def test_default_params_for_every_model(self):
        for name, spec in MODELS.items():
            assert default_params(name, 100, 50).shape == (spec.param_count,)


class TestMakeCamera:
    def test_wrong_param_count(self):
        with pytest.raises(ConfigError, match="takes 5 parameters"):
            make_camera("fov", 640, 480, np.array([1.0, 2.0, 3.0]))

    def test_defaults_used(self):
        cam = make_camera("poly3", 800, 600)
        assert cam.principal_point == (400.0, 300.0)
        assert cam.index == -1


class TestProjection:
    def test_principal_point(self, camera):
        """Optical axis projects onto the principal point."""
        pixel = project(camera, np.array([[0.0, 0.0, 3.0]]))
        np.testing.assert_array_almost_equal(pixel[0], camera.principal_point)

    def test_unproject_inverts_project(self, camera, points_cam):
        pixels = project(camera, points_cam)
        normalized = unproject(camera, pixels)
        expected = points_cam[:, 0:2] / points_cam[:, 2:3]
        np.testing.assert_array_almost_equal(normalized, expected, decimal=6)

    def test_output_shape(self, camera, points_cam):
        assert project(camera, points_cam).shape == (len(points_cam), 2)
        assert unproject(camera, np.zeros((0, 2))).shape == (0, 2)

    def test_fov_is_barrel_distortion(self, points_cam):
        """Positive w shrinks the radial scale as points move off-axis."""
        pinhole = make_camera("pinhole", 640, 480, np.array([500.0, 500.0, 320.0, 240.0]))
        fov = make_camera("fov", 640, 480, np.array([500.0, 500.0, 320.0, 240.0, 0.8]))

        center = np.array([320.0, 240.0])
        r_pinhole = np.linalg.norm(project(pinhole, points_cam[1:]) - center, axis=1)
        r_fov = np.linalg.norm(project(fov, points_cam[1:]) - center, axis=1)

        order = np.argsort(r_pinhole)
        scale = r_fov[order] / r_pinhole[order]
        assert np.all(np.diff(scale) < 0)

    def test_fov_zero_w_is_pinhole(self, points_cam):
        pinhole = make_camera("pinhole", 640, 480, np.array([500.0, 500.0, 320.0, 240.0]))
        fov = make_camera("fov", 640, 480, np.array([500.0, 500.0, 320.0, 240.0, 0.0]))
        np.testing.assert_array_almost_equal(
            project(fov, points_cam), project(pinhole, points_cam)
        )
