"""
Image processing and conic (dot) detection.

Pure functions - no state. The caller owns the images.
"""

from __future__ import annotations

from dataclasses import dataclass

import cv2
import numpy as np

from ..types import Conic, ConicFinderParams, ImageProcessingParams


# ============================================================================
# Image Processing
# ============================================================================


@dataclass(frozen=True, slots=True)
class ProcessedImage:
    """
    A grayscale image and its binary foreground mask (255 = dot pixel).
    """

    image: np.ndarray  # (h, w) uint8
    threshold: np.ndarray  # (h, w) uint8
    black_on_white: bool = True

    @property
    def width(self) -> int:
        return self.image.shape[1]

    @property
    def height(self) -> int:
        return self.image.shape[0]


def process_image(
    image: np.ndarray,
    params: ImageProcessingParams | None = None,
) -> ProcessedImage:
    """
    Adaptive threshold against a local box mean.

    Args:
        image: Single-channel (h, w) uint8 image
        params: Threshold settings (defaults if None)

    Returns:
        ProcessedImage with the thresholded mask
    """
    if params is None:
        params = ImageProcessingParams()

    if image.ndim != 2:
        raise ValueError(f"Expected single-channel image, got shape {image.shape}")

    gray = np.ascontiguousarray(image, dtype=np.uint8)
    height, width = gray.shape

    window = max(3, int(width / params.at_window_ratio))
    if window % 2 == 0:
        window += 1

    local_mean = cv2.blur(
        gray.astype(np.float32), (window, window), borderType=cv2.BORDER_REPLICATE
    )
    pixels = gray.astype(np.float32)

    if params.black_on_white:
        foreground = pixels < params.at_threshold * local_mean
    else:
        foreground = pixels * params.at_threshold > local_mean

    threshold = np.where(foreground, 255, 0).astype(np.uint8)

    return ProcessedImage(
        image=gray,
        threshold=threshold,
        black_on_white=params.black_on_white,
    )


# ============================================================================
# Conic Finder
# ============================================================================


def find_conics(
    processed: ProcessedImage,
    params: ConicFinderParams | None = None,
) -> list[Conic]:
    """
    Extract dot-shaped connected components from the threshold mask.

    Components are filtered on pixel area, fill density of their bounding
    box and bounding box aspect ratio. Centres are intensity-weighted
    centroids over the component's pixels.

    Args:
        processed: Output of process_image()
        params: Shape filters (defaults if None)

    Returns:
        List of Conic in raster order of their bounding boxes
    """
    if params is None:
        params = ConicFinderParams()

    n_labels, labels, stats, centroids = cv2.connectedComponentsWithStats(
        processed.threshold, connectivity=8
    )

    conics = []

    # Label 0 is the background
    for label in range(1, n_labels):
        x, y, w, h, area = (int(v) for v in stats[label])

        if area < params.conic_min_area or area > params.conic_max_area:
            continue

        density = area / float(w * h)
        aspect = min(w, h) / float(max(w, h))

        if density < params.conic_min_density or aspect < params.conic_min_aspect:
            continue

        center = _weighted_centroid(processed, labels, label, (x, y, w, h))
        if center is None:
            center = centroids[label].astype(np.float64)

        conics.append(
            Conic(
                center=center,
                bbox=(x, y, w, h),
                area=float(area),
                density=density,
                aspect=aspect,
            )
        )

    return conics


def _weighted_centroid(
    processed: ProcessedImage,
    labels: np.ndarray,
    label: int,
    bbox: tuple[int, int, int, int],
) -> np.ndarray | None:
    x, y, w, h = bbox
    mask = labels[y : y + h, x : x + w] == label
    patch = processed.image[y : y + h, x : x + w].astype(np.float64)

    weights = (255.0 - patch) if processed.black_on_white else patch
    weights = np.where(mask, weights, 0.0)

    total = weights.sum()
    if total <= 0:
        return None

    ys, xs = np.mgrid[0:h, 0:w]
    cx = (weights * xs).sum() / total + x
    cy = (weights * ys).sum() / total + y
    return np.array([cx, cy], dtype=np.float64)


def conic_centers(conics: list[Conic]) -> np.ndarray:
    """(n, 2) array of conic centres."""
    if not conics:
        return np.zeros((0, 2), dtype=np.float64)
    return np.array([c.center for c in conics], dtype=np.float64)
