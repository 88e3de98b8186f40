"""
Intrinsic camera models.

Closed set of parameterizations, each a fixed-length parameter vector
with a vectorized project/unproject pair:

    pinhole  fx, fy, cx, cy
    fov      fx, fy, cx, cy, w            (Devernay-Faugeras FOV distortion)
    poly3    fx, fy, cx, cy, k1, k2, k3   (radial polynomial)

Pure functions - models are selected by name, parameters are numpy arrays.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import numpy as np

from .errors import ConfigError
from .types import CameraModel

# Below this radius the distortion factors use their analytic limit.
_SMALL_RADIUS = 1e-9
_POLY_UNPROJECT_ITERATIONS = 20


# ============================================================================
# Distortion Factors
# ============================================================================


def _fov_distort_factor(w: float, ru: np.ndarray) -> np.ndarray:
    if abs(w) < _SMALL_RADIUS:
        return np.ones_like(ru)
    mul2tanwby2 = 2.0 * np.tan(w / 2.0)
    safe = np.where(ru < _SMALL_RADIUS, 1.0, ru)
    factor = np.arctan(safe * mul2tanwby2) / (safe * w)
    return np.where(ru < _SMALL_RADIUS, mul2tanwby2 / w, factor)


def _fov_undistort_factor(w: float, rd: np.ndarray) -> np.ndarray:
    if abs(w) < _SMALL_RADIUS:
        return np.ones_like(rd)
    mul2tanwby2 = 2.0 * np.tan(w / 2.0)
    safe = np.where(rd < _SMALL_RADIUS, 1.0, rd)
    factor = np.tan(safe * w) / (safe * mul2tanwby2)
    return np.where(rd < _SMALL_RADIUS, w / mul2tanwby2, factor)


def _poly3_distort_factor(k: np.ndarray, ru: np.ndarray) -> np.ndarray:
    r2 = ru * ru
    return 1.0 + r2 * (k[0] + r2 * (k[1] + r2 * k[2]))


def _poly3_undistort_factor(k: np.ndarray, rd: np.ndarray) -> np.ndarray:
    # Newton iterations on r * d(r) - rd = 0, starting from the distorted radius
    r = rd.copy()
    for _ in range(_POLY_UNPROJECT_ITERATIONS):
        r2 = r * r
        f = r * (1.0 + r2 * (k[0] + r2 * (k[1] + r2 * k[2]))) - rd
        df = 1.0 + r2 * (3.0 * k[0] + r2 * (5.0 * k[1] + r2 * 7.0 * k[2]))
        r = r - f / np.where(np.abs(df) < _SMALL_RADIUS, 1.0, df)
    safe = np.where(rd < _SMALL_RADIUS, 1.0, rd)
    return np.where(rd < _SMALL_RADIUS, 1.0, r / safe)


# ============================================================================
# Model Table
# ============================================================================


@dataclass(frozen=True)
class ModelSpec:
    """
    Description of one intrinsic parameterization.
    """

    name: str
    param_names: tuple[str, ...]
    distort: Callable[[np.ndarray, np.ndarray], np.ndarray]
    undistort: Callable[[np.ndarray, np.ndarray], np.ndarray]

    @property
    def param_count(self) -> int:
        return len(self.param_names)


MODELS: dict[str, ModelSpec] = {
    "pinhole": ModelSpec(
        name="pinhole",
        param_names=("fx", "fy", "cx", "cy"),
        distort=lambda extra, r: np.ones_like(r),
        undistort=lambda extra, r: np.ones_like(r),
    ),
    "fov": ModelSpec(
        name="fov",
        param_names=("fx", "fy", "cx", "cy", "w"),
        distort=lambda extra, r: _fov_distort_factor(float(extra[0]), r),
        undistort=lambda extra, r: _fov_undistort_factor(float(extra[0]), r),
    ),
    "poly3": ModelSpec(
        name="poly3",
        param_names=("fx", "fy", "cx", "cy", "k1", "k2", "k3"),
        distort=_poly3_distort_factor,
        undistort=_poly3_undistort_factor,
    ),
}


def get_model_spec(model: str) -> ModelSpec:
    try:
        return MODELS[model]
    except KeyError:
        raise ConfigError(
            f"Unknown camera model '{model}' (expected one of {sorted(MODELS)})"
        ) from None


def param_count(model: str) -> int:
    return get_model_spec(model).param_count


# ============================================================================
# Projection
# ============================================================================


def project_with_params(
    model: str,
    params: np.ndarray,
    points_cam: np.ndarray,
) -> np.ndarray:
    """
    Project (n, 3) camera-frame points to (n, 2) pixels.

    Split out from project() so the optimizer can evaluate candidate
    parameter vectors without building CameraModel instances.
    """
    spec = get_model_spec(model)
    points_cam = np.asarray(points_cam, dtype=np.float64).reshape(-1, 3)

    z = points_cam[:, 2]
    z = np.where(np.abs(z) < _SMALL_RADIUS, _SMALL_RADIUS, z)
    xy = points_cam[:, 0:2] / z[:, None]

    ru = np.linalg.norm(xy, axis=1)
    factor = spec.distort(params[4:], ru)
    xy_d = xy * factor[:, None]

    pixels = np.empty_like(xy_d)
    pixels[:, 0] = params[0] * xy_d[:, 0] + params[2]
    pixels[:, 1] = params[1] * xy_d[:, 1] + params[3]
    return pixels


def project(camera: CameraModel, points_cam: np.ndarray) -> np.ndarray:
    return project_with_params(camera.model, camera.params, points_cam)


def unproject(camera: CameraModel, pixels: np.ndarray) -> np.ndarray:
    """
    Map (n, 2) pixels to (n, 2) undistorted normalized image coordinates
    (points on the z = 1 plane).
    """
    spec = get_model_spec(camera.model)
    params = camera.params
    pixels = np.asarray(pixels, dtype=np.float64).reshape(-1, 2)

    xy_d = np.empty_like(pixels)
    xy_d[:, 0] = (pixels[:, 0] - params[2]) / params[0]
    xy_d[:, 1] = (pixels[:, 1] - params[3]) / params[1]

    rd = np.linalg.norm(xy_d, axis=1)
    factor = spec.undistort(params[4:], rd)
    return xy_d * factor[:, None]


# ============================================================================
# Construction
# ============================================================================


def default_params(model: str, width: int, height: int) -> np.ndarray:
    """
    Initial guess for a stream of the given size.
    """
    spec = get_model_spec(model)
    params = np.zeros(spec.param_count, dtype=np.float64)
    params[0:4] = (300.0, 300.0, width / 2.0, height / 2.0)
    if model == "fov":
        params[4] = 0.2
    return params


def make_camera(
    model: str,
    width: int,
    height: int,
    params: np.ndarray | None = None,
) -> CameraModel:
    """
    Build a CameraModel, validating the parameter count.
    """
    spec = get_model_spec(model)
    if params is None:
        params = default_params(model, width, height)
    params = np.asarray(params, dtype=np.float64).ravel()

    if params.shape[0] != spec.param_count:
        raise ConfigError(
            f"Camera model '{model}' takes {spec.param_count} parameters, "
            f"got {params.shape[0]}"
        )

    return CameraModel(model=model, width=int(width), height=int(height), params=params)
