"""
Configuration loading/saving.

Pure functions operating on dataclasses.
- TOML for calibration settings
- TOML for calibrated camera models (intrinsics + rig extrinsics)
"""

from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
import rtoml

from .camera_models import get_model_spec, make_camera
from .errors import ConfigError
from .types import (
    CalibrationConfig,
    CameraAndPose,
    ConicFinderParams,
    DotGridTarget,
    ImageProcessingParams,
    MatcherParams,
    OptimizerConfig,
    pose_from_vector,
    pose_to_vector,
)

if TYPE_CHECKING:
    from .calibration.calibrator import Calibrator


# ============================================================================
# Calibration Settings
# ============================================================================


def default_config() -> CalibrationConfig:
    """
    US-letter 19x10 dot grid, FOV camera model.
    """
    return CalibrationConfig()


def load_config(path: Path) -> CalibrationConfig:
    """
    Load calibration configuration from TOML file.

    Missing sections and keys fall back to defaults.

    Args:
        path: Path to config.toml file

    Returns:
        CalibrationConfig dataclass

    Raises:
        ConfigError: for unknown camera models or invalid grid sizes
    """
    data = rtoml.load(Path(path))

    defaults = default_config()

    target_data = data.get("target", {})
    grid_size = tuple(target_data.get("grid_size", list(defaults.target.grid_size)))
    if len(grid_size) != 2 or min(grid_size) < 1:
        raise ConfigError(f"target.grid_size must be [columns, rows], got {list(grid_size)}")
    target = DotGridTarget(
        grid_spacing=float(target_data.get("grid_spacing", defaults.target.grid_spacing)),
        grid_size=(int(grid_size[0]), int(grid_size[1])),
    )

    camera_model = data.get("camera", {}).get("model", defaults.camera_model)
    get_model_spec(camera_model)  # validates

    proc_data = data.get("image_processing", {})
    image_processing = ImageProcessingParams(
        at_threshold=proc_data.get("at_threshold", 0.9),
        at_window_ratio=proc_data.get("at_window_ratio", 30.0),
        black_on_white=proc_data.get("black_on_white", True),
    )

    conic_data = data.get("conic_finder", {})
    conic_finder = ConicFinderParams(
        conic_min_area=conic_data.get("min_area", 4.0),
        conic_max_area=conic_data.get("max_area", 1e4),
        conic_min_density=conic_data.get("min_density", 0.6),
        conic_min_aspect=conic_data.get("min_aspect", 0.2),
    )

    matcher_data = data.get("matcher", {})
    matcher = MatcherParams(
        min_matched=matcher_data.get("min_matched", 10),
        max_grid_residual=matcher_data.get("max_grid_residual", 0.3),
        ransac_threshold_px=matcher_data.get("ransac_threshold_px", 2.0),
    )

    opt_data = data.get("optimizer", {})
    optimizer = OptimizerConfig(
        fix_intrinsics=opt_data.get("fix_intrinsics", False),
        loss=opt_data.get("loss", "linear"),
        min_frames=opt_data.get("min_frames", 3),
        max_iterations=opt_data.get("max_iterations", 100),
        live_iterations=opt_data.get("live_iterations", 10),
        optimize_every=opt_data.get("optimize_every", 10),
    )

    capture_data = data.get("capture", {})

    return CalibrationConfig(
        target=target,
        camera_model=camera_model,
        image_processing=image_processing,
        conic_finder=conic_finder,
        matcher=matcher,
        optimizer=optimizer,
        add_frames=capture_data.get("add_frames", True),
        convert_gray=capture_data.get("convert_gray", False),
    )


def save_config(config: CalibrationConfig, path: Path) -> None:
    """
    Save calibration configuration to TOML file.
    """
    data = {
        "target": {
            "grid_spacing": config.target.grid_spacing,
            "grid_size": list(config.target.grid_size),
        },
        "camera": {"model": config.camera_model},
        "image_processing": {
            "at_threshold": config.image_processing.at_threshold,
            "at_window_ratio": config.image_processing.at_window_ratio,
            "black_on_white": config.image_processing.black_on_white,
        },
        "conic_finder": {
            "min_area": config.conic_finder.conic_min_area,
            "max_area": config.conic_finder.conic_max_area,
            "min_density": config.conic_finder.conic_min_density,
            "min_aspect": config.conic_finder.conic_min_aspect,
        },
        "matcher": {
            "min_matched": config.matcher.min_matched,
            "max_grid_residual": config.matcher.max_grid_residual,
            "ransac_threshold_px": config.matcher.ransac_threshold_px,
        },
        "optimizer": {
            "fix_intrinsics": config.optimizer.fix_intrinsics,
            "loss": config.optimizer.loss,
            "min_frames": config.optimizer.min_frames,
            "max_iterations": config.optimizer.max_iterations,
            "live_iterations": config.optimizer.live_iterations,
            "optimize_every": config.optimizer.optimize_every,
        },
        "capture": {
            "add_frames": config.add_frames,
            "convert_gray": config.convert_gray,
        },
    }

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        rtoml.dump(data, f)


# ============================================================================
# Camera Model Storage
# ============================================================================


def save_camera_models(calibrator: "Calibrator", path: Path) -> None:
    """
    Save calibrated cameras to a TOML file.

    One [cameras.N] table per camera with the intrinsic model and the
    camera-from-reference extrinsic (Rodrigues rotation + translation).

    Args:
        calibrator: Calibrator holding the refined cameras
        path: Path to the output .toml file
    """
    data = {
        "summary": {
            "num_frames": calibrator.num_frames(),
            "num_observations": calibrator.num_observations(),
            "mse": calibrator.mean_square_error(),
        },
        "cameras": {},
    }

    for cap in calibrator.cameras:
        cam = cap.camera
        vector = pose_to_vector(cap.T_ck)
        data["cameras"][str(cam.index)] = {
            "index": cam.index,
            "model": cam.model,
            "width": cam.width,
            "height": cam.height,
            "param_names": list(get_model_spec(cam.model).param_names),
            "params": [float(p) for p in cam.params],
            "rotation": [float(v) for v in vector[0:3]],
            "translation": [float(v) for v in vector[3:6]],
        }

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)

    with open(path, "w") as f:
        rtoml.dump(data, f)


def load_camera_models(path: Path) -> list[CameraAndPose]:
    """
    Load cameras written by save_camera_models().

    Returns:
        CameraAndPose list ordered by camera index

    Raises:
        ConfigError: if a camera entry is malformed
    """
    data = rtoml.load(Path(path))
    cameras = []

    for key, cam_data in data.get("cameras", {}).items():
        try:
            camera = make_camera(
                cam_data["model"],
                cam_data["width"],
                cam_data["height"],
                np.array(cam_data["params"], dtype=np.float64),
            )
            vector = np.array(cam_data["rotation"] + cam_data["translation"], dtype=np.float64)
            index = int(cam_data.get("index", key))
        except (KeyError, TypeError, ValueError) as e:
            raise ConfigError(f"Malformed camera entry '{key}' in {path}: {e}") from e

        cameras.append(
            CameraAndPose(
                camera=replace(camera, index=index),
                T_ck=pose_from_vector(vector),
            )
        )

    return sorted(cameras, key=lambda cap: cap.camera.index)
