"""
Calibration module for gridcal.

Detection, matching and pose functions are pure; the Calibrator is the
one stateful accumulator. No threading - the caller drives ticks.
"""

from .calibrator import (
    Calibrator,
    CalibratorState,
)

from .detection import (
    ProcessedImage,
    process_image,
    find_conics,
    conic_centers,
)

from .target import (
    locate_grid,
    match_target,
)

from .pose import solve_pose

from .optimizer import (
    RefinementResult,
    refine,
    compute_reprojection_errors,
)

__all__ = [
    # Accumulator
    "Calibrator",
    "CalibratorState",
    # Detection
    "ProcessedImage",
    "process_image",
    "find_conics",
    "conic_centers",
    # Target
    "locate_grid",
    "match_target",
    # Pose
    "solve_pose",
    # Optimizer
    "RefinementResult",
    "refine",
    "compute_reprojection_errors",
]
