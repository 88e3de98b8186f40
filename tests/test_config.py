"""
Tests for gridcal.config (TOML settings + camera model files).
"""

import numpy as np
import pytest
import rtoml

from gridcal.calibration.calibrator import Calibrator
from gridcal.config import (
    default_config,
    load_camera_models,
    load_config,
    save_camera_models,
    save_config,
)
from gridcal.errors import ConfigError
from gridcal.types import (
    CalibrationConfig,
    DotGridTarget,
    MatcherParams,
    OptimizerConfig,
    Pose,
)


class TestCalibrationConfig:
    def test_default_is_us_letter_fov(self):
        config = default_config()
        assert config.target.grid_size == (19, 10)
        assert config.camera_model == "fov"

    def test_save_and_load_roundtrip(self, temp_dir):
        """Config should survive save/load cycle."""
        original = CalibrationConfig(
            target=DotGridTarget(grid_spacing=0.02, grid_size=(8, 6)),
            camera_model="poly3",
            matcher=MatcherParams(min_matched=20, max_grid_residual=0.25, ransac_threshold_px=1.5),
            optimizer=OptimizerConfig(fix_intrinsics=True, loss="huber", min_frames=5),
            add_frames=False,
            convert_gray=True,
        )

        path = temp_dir / "config.toml"
        save_config(original, path)
        loaded = load_config(path)

        assert loaded.target.grid_size == (8, 6)
        assert loaded.target.grid_spacing == pytest.approx(0.02)
        assert loaded.camera_model == "poly3"
        assert loaded.matcher == original.matcher
        assert loaded.optimizer == original.optimizer
        assert loaded.image_processing == original.image_processing
        assert loaded.conic_finder == original.conic_finder
        assert loaded.add_frames is False
        assert loaded.convert_gray is True

    def test_missing_sections_use_defaults(self, temp_dir):
        path = temp_dir / "partial.toml"
        path.write_text('[camera]\nmodel = "pinhole"\n')

        config = load_config(path)

        assert config.camera_model == "pinhole"
        assert config.target == DotGridTarget()
        assert config.optimizer == OptimizerConfig()

    def test_unknown_camera_model(self, temp_dir):
        path = temp_dir / "bad.toml"
        path.write_text('[camera]\nmodel = "fisheye9000"\n')

        with pytest.raises(ConfigError, match="Unknown camera model"):
            load_config(path)

    @pytest.mark.parametrize("grid_size", ["[19]", "[0, 10]", "[19, 10, 2]"])
    def test_invalid_grid_size(self, temp_dir, grid_size):
        path = temp_dir / "bad.toml"
        path.write_text(f"[target]\ngrid_size = {grid_size}\n")

        with pytest.raises(ConfigError, match="grid_size"):
            load_config(path)


class TestCameraModels:
    @pytest.fixture
    def calibrator(self, pinhole_camera, fov_camera):
        calib = Calibrator()
        calib.add_camera(fov_camera)
        calib.add_camera(
            pinhole_camera,
            T_ck=Pose(rotation=np.eye(3), translation=np.array([-0.12, 0.0, 0.01])),
        )
        return calib

    def test_save_and_load_roundtrip(self, temp_dir, calibrator):
        path = temp_dir / "out" / "cameras.toml"
        save_camera_models(calibrator, path)

        cameras = load_camera_models(path)

        assert [cap.camera.index for cap in cameras] == [0, 1]
        for loaded, original in zip(cameras, calibrator.cameras):
            assert loaded.camera.model == original.camera.model
            assert (loaded.camera.width, loaded.camera.height) == (640, 480)
            np.testing.assert_array_almost_equal(loaded.camera.params, original.camera.params)
            np.testing.assert_array_almost_equal(loaded.T_ck.rotation, original.T_ck.rotation)
            np.testing.assert_array_almost_equal(loaded.T_ck.translation, original.T_ck.translation)

    def test_file_layout(self, temp_dir, calibrator):
        path = temp_dir / "cameras.toml"
        calibrator.write_camera_models(path)

        data = rtoml.load(path)

        assert data["summary"]["num_frames"] == 0
        assert data["summary"]["mse"] == 0.0
        assert data["cameras"]["0"]["model"] == "fov"
        assert data["cameras"]["0"]["param_names"] == ["fx", "fy", "cx", "cy", "w"]
        assert data["cameras"]["1"]["translation"] == pytest.approx([-0.12, 0.0, 0.01])

    def test_malformed_entry(self, temp_dir):
        path = temp_dir / "cameras.toml"
        path.write_text('[cameras.0]\nmodel = "pinhole"\nwidth = 640\n')

        with pytest.raises(ConfigError, match="Malformed camera entry"):
            load_camera_models(path)

    def test_wrong_param_count(self, temp_dir):
        path = temp_dir / "cameras.toml"
        path.write_text(
            '[cameras.0]\nmodel = "fov"\nwidth = 640\nheight = 480\n'
            "params = [1.0, 2.0]\nrotation = [0.0, 0.0, 0.0]\ntranslation = [0.0, 0.0, 0.0]\n"
        )

        with pytest.raises(ConfigError, match="takes 5 parameters"):
            load_camera_models(path)
