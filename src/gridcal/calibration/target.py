"""
Dot-grid target matching.

Maps detected conics to (column, row) lattice positions on a DotGridTarget.
When the whole grid is in view it is located with OpenCV's circle-grid
finder. Otherwise a lattice is grown outward from a seed conic and its
nearest neighbours, so partly visible targets still track. Either way a
grid-to-image homography then assigns every conic to its nearest lattice
position. Positions can fall past the declared grid edges, so callers must
bounds-check with DotGridTarget.contains().
"""

from __future__ import annotations

import logging

import cv2
import numpy as np

from ..errors import TrackingError
from ..types import Conic, DotGridTarget, MatcherParams, TargetMatch
from .detection import ProcessedImage, conic_centers

logger = logging.getLogger(__name__)

# Homography needs 4 points; the seed neighbourhood gives up to 9
MIN_LATTICE_POINTS = 4
SEED_NEIGHBOURS = 8
SEED_ATTEMPTS = 3
# Neighbour directions closer than this |cos| to the first axis are not
# used as the second axis (rejects diagonals and the opposite neighbour)
MAX_AXIS_COS = 0.5


def make_blob_detector(black_on_white: bool = True) -> cv2.SimpleBlobDetector:
    """
    Blob detector tuned for small printed dots.
    """
    params = cv2.SimpleBlobDetector_Params()
    params.blobColor = 0 if black_on_white else 255
    params.filterByArea = True
    params.minArea = 4.0
    params.maxArea = 1e4
    params.filterByCircularity = False
    params.filterByConvexity = True
    params.minConvexity = 0.8
    params.filterByInertia = True
    params.minInertiaRatio = 0.2
    return cv2.SimpleBlobDetector_create(params)


def _unmatched(n: int) -> TargetMatch:
    return TargetMatch(
        tracking=False,
        grid_indices=np.full((n, 2), -1, dtype=np.int32),
    )


# ============================================================================
# Full Grid
# ============================================================================


def locate_grid(
    processed: ProcessedImage,
    target: DotGridTarget,
) -> np.ndarray | None:
    """
    Find the full lattice in the image.

    Returns:
        (columns * rows, 2) image positions in row-major lattice order,
        or None if the grid was not found

    Raises:
        TrackingError: if the grid finder reports success with the wrong
            number of points
    """
    found, centers = cv2.findCirclesGrid(
        processed.image,
        (target.columns, target.rows),
        flags=cv2.CALIB_CB_SYMMETRIC_GRID,
        blobDetector=make_blob_detector(processed.black_on_white),
    )

    if not found or centers is None:
        return None

    centers = centers.reshape(-1, 2).astype(np.float64)
    if len(centers) != target.num_points:
        raise TrackingError(
            f"Circle grid finder returned {len(centers)} points, expected {target.num_points}"
        )
    return centers


# ============================================================================
# Lattice Assignment
# ============================================================================


def _to_lattice(centers: np.ndarray, H: np.ndarray) -> np.ndarray | None:
    """Image -> lattice coordinates through the inverse of H."""
    try:
        H_inv = np.linalg.inv(H)
    except np.linalg.LinAlgError:
        return None
    return cv2.perspectiveTransform(centers.reshape(-1, 1, 2), H_inv).reshape(-1, 2)


def _assign_lattice(
    lattice_xy: np.ndarray,
    max_residual: float,
) -> tuple[np.ndarray, np.ndarray]:
    """
    Round lattice coordinates to integer positions.

    Conics further than max_residual from a lattice position stay
    unassigned; when two conics round to the same position the closer one
    wins it.

    Returns:
        (indices (n, 2) int32, assigned (n,) bool)
    """
    n = len(lattice_xy)
    rounded = np.round(lattice_xy)
    residual = np.linalg.norm(lattice_xy - rounded, axis=1)

    indices = np.zeros((n, 2), dtype=np.int32)
    assigned = np.zeros(n, dtype=bool)
    taken: set[tuple[int, int]] = set()

    for i in np.argsort(residual):
        if residual[i] > max_residual:
            break
        key = (int(rounded[i, 0]), int(rounded[i, 1]))
        if key in taken:
            continue
        taken.add(key)
        indices[i] = key
        assigned[i] = True

    return indices, assigned


# ============================================================================
# Partial Grid
# ============================================================================


def _seed_axes(centers: np.ndarray, seed: int) -> tuple[np.ndarray, np.ndarray] | None:
    """
    Two lattice steps from the seed's nearest neighbours.

    The first axis is the nearest neighbour; the second is the next nearest
    one that is not (anti)parallel or diagonal to it.
    """
    offsets = centers - centers[seed]
    distances = np.linalg.norm(offsets, axis=1)
    neighbours = np.argsort(distances)[1 : SEED_NEIGHBOURS + 1]
    if len(neighbours) < 2:
        return None

    u = offsets[neighbours[0]]
    u_norm = distances[neighbours[0]]
    if u_norm <= 0:
        return None

    for j in neighbours[1:]:
        cos = abs(np.dot(offsets[j], u)) / (distances[j] * u_norm)
        if cos < MAX_AXIS_COS:
            return u, offsets[j]
    return None


def _grow_lattice(
    centers: np.ndarray,
    seed: int,
    axes: tuple[np.ndarray, np.ndarray],
    target: DotGridTarget,
    params: MatcherParams,
) -> tuple[np.ndarray | None, int]:
    """
    Refit a lattice-to-image homography one ring of positions at a time.

    Starts from the affine guess spanned by the seed axes; each pass only
    accepts positions within the current ring radius of the seed, so
    perspective is picked up before far conics are assigned.

    Returns:
        (H, number of assigned conics), H None on failure
    """
    u, v = axes
    origin = centers[seed]
    H = np.array([
        [u[0], v[0], origin[0]],
        [u[1], v[1], origin[1]],
        [0.0, 0.0, 1.0],
    ], dtype=np.float64)

    for radius in range(1, max(target.columns, target.rows) + 1):
        lattice_xy = _to_lattice(centers, H)
        if lattice_xy is None:
            return None, 0

        indices, assigned = _assign_lattice(lattice_xy, params.max_grid_residual)
        ring = assigned & np.all(np.abs(indices) <= radius, axis=1)
        if ring.sum() < MIN_LATTICE_POINTS:
            return None, 0

        H_new, _ = cv2.findHomography(
            indices[ring].astype(np.float64),
            centers[ring],
            cv2.RANSAC,
            params.ransac_threshold_px,
        )
        if H_new is None:
            return None, 0
        H = H_new

    lattice_xy = _to_lattice(centers, H)
    if lattice_xy is None:
        return None, 0
    _, assigned = _assign_lattice(lattice_xy, params.max_grid_residual)
    return H, int(assigned.sum())


def fit_lattice(
    centers: np.ndarray,
    target: DotGridTarget,
    params: MatcherParams | None = None,
) -> np.ndarray | None:
    """
    Grow a lattice from the conics themselves.

    Seeds are tried in order of distance to the median conic; the
    homography assigning the most conics wins.

    Returns:
        3x3 homography from local lattice coordinates (seed at the origin)
        to pixels, or None if no lattice could be grown
    """
    if params is None:
        params = MatcherParams()

    centers = np.asarray(centers, dtype=np.float64).reshape(-1, 2)
    if len(centers) < MIN_LATTICE_POINTS:
        return None

    median = np.median(centers, axis=0)
    seeds = np.argsort(np.linalg.norm(centers - median, axis=1))[:SEED_ATTEMPTS]

    best_H, best_count = None, 0
    for seed in seeds:
        axes = _seed_axes(centers, int(seed))
        if axes is None:
            continue
        H, count = _grow_lattice(centers, int(seed), axes, target, params)
        if H is not None and count > best_count:
            best_H, best_count = H, count

    return best_H


def align_to_target(
    indices: np.ndarray,
    assigned: np.ndarray,
    H: np.ndarray,
    target: DotGridTarget,
) -> np.ndarray:
    """
    Map local lattice positions onto target (column, row) indices.

    Columns run along the image axis closest to +x and rows along +y; the
    top-left assigned position becomes (0, 0). The axes are swapped when
    only the swapped extent fits the target. A partial view that misses
    the target's first column or row is therefore indexed from the first
    visible one.

    Returns:
        (n, 2) int32 indices, (-1, -1) where unassigned; all (-1, -1) when
        the lattice is larger than the target either way round
    """
    aligned = np.full((len(indices), 2), -1, dtype=np.int32)
    if not assigned.any():
        return aligned

    center = indices[assigned].mean(axis=0)
    samples = np.array([[center, center + (1.0, 0.0), center + (0.0, 1.0)]], dtype=np.float64)
    base, step_a, step_b = cv2.perspectiveTransform(samples, H)[0]
    da = step_a - base
    db = step_b - base

    if abs(da[0]) >= abs(db[0]):
        M = np.array([[1, 0], [0, 1]])
        col_dir, row_dir = da, db
    else:
        M = np.array([[0, 1], [1, 0]])
        col_dir, row_dir = db, da
    if col_dir[0] < 0:
        M[0] *= -1
    if row_dir[1] < 0:
        M[1] *= -1

    local = indices[assigned] @ M.T
    span = local.max(axis=0) - local.min(axis=0) + 1
    if span[0] > target.columns or span[1] > target.rows:
        if span[1] > target.columns or span[0] > target.rows:
            logger.debug(
                "Lattice extent %dx%d exceeds target %dx%d",
                span[0], span[1], target.columns, target.rows,
            )
            return aligned
        local = local[:, ::-1]

    aligned[assigned] = local - local.min(axis=0)
    return aligned


# ============================================================================
# Matching
# ============================================================================


def match_target(
    processed: ProcessedImage,
    conics: list[Conic],
    target: DotGridTarget,
    params: MatcherParams | None = None,
) -> TargetMatch:
    """
    Assign lattice positions to detected conics.

    Args:
        processed: Output of process_image()
        conics: Output of find_conics() on the same image
        target: Target geometry
        params: Matching tolerances (defaults if None)

    Returns:
        TargetMatch; tracking is True when at least params.min_matched
        conics received an in-bounds lattice position
    """
    if params is None:
        params = MatcherParams()

    n = len(conics)
    if n < params.min_matched:
        return _unmatched(n)

    centers = conic_centers(conics)

    lattice_px = locate_grid(processed, target)
    if lattice_px is not None:
        H, _ = cv2.findHomography(target.grid_indices().astype(np.float64), lattice_px, 0)
        full_grid = True
    else:
        logger.debug("Full circle grid not found, growing lattice from %d conics", n)
        H = fit_lattice(centers, target, params)
        full_grid = False

    if H is None:
        return _unmatched(n)

    lattice_xy = _to_lattice(centers, H)
    if lattice_xy is None:
        return _unmatched(n)

    indices, assigned = _assign_lattice(lattice_xy, params.max_grid_residual)
    if full_grid:
        grid_indices = np.where(assigned[:, None], indices, -1).astype(np.int32)
    else:
        grid_indices = align_to_target(indices, assigned, H, target)

    in_bounds = sum(
        1 for key, ok in zip(grid_indices, assigned) if ok and target.contains(key)
    )
    tracking = in_bounds >= params.min_matched

    logger.debug(
        "Matched %d/%d conics (%d in bounds, full grid %s), tracking=%s",
        int(assigned.sum()), n, in_bounds, full_grid, tracking,
    )

    return TargetMatch(tracking=tracking, grid_indices=grid_indices)
