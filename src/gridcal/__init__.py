# gridcal - multi-camera calibration from a planar dot grid

__version__ = "0.1.0"

# Core types
from gridcal.types import (
    Pose,
    CameraModel,
    CameraAndPose,
    CalibrationFrame,
    Observation,
    Conic,
    TargetMatch,
    DotGridTarget,
    CalibrationConfig,
    identity_pose,
    compose_poses,
    invert_pose,
)

# Camera models
from gridcal.camera_models import (
    make_camera,
    project,
    unproject,
)

# Errors
from gridcal.errors import (
    GridCalError,
    ConfigError,
    VideoSourceError,
    VideoFormatError,
    InvalidHandleError,
    TrackingError,
)

# Accumulation
from gridcal.calibration import Calibrator, CalibratorState
from gridcal.pipeline import (
    TargetTracker,
    TickContext,
    process_camera,
    process_tick,
)
from gridcal.session import CalibrationSession
from gridcal.video import VideoSource, ArraySource

# Configuration
from gridcal.config import (
    default_config,
    load_config,
    save_config,
    save_camera_models,
    load_camera_models,
)

__all__ = [
    # Core types
    "Pose",
    "CameraModel",
    "CameraAndPose",
    "CalibrationFrame",
    "Observation",
    "Conic",
    "TargetMatch",
    "DotGridTarget",
    "CalibrationConfig",
    "identity_pose",
    "compose_poses",
    "invert_pose",
    # Camera models
    "make_camera",
    "project",
    "unproject",
    # Errors
    "GridCalError",
    "ConfigError",
    "VideoSourceError",
    "VideoFormatError",
    "InvalidHandleError",
    "TrackingError",
    # Accumulation
    "Calibrator",
    "CalibratorState",
    "TargetTracker",
    "TickContext",
    "process_camera",
    "process_tick",
    "CalibrationSession",
    "VideoSource",
    "ArraySource",
    # Configuration
    "default_config",
    "load_config",
    "save_config",
    "save_camera_models",
    "load_camera_models",
]
