"""
Synchronized multi-stream video input.

VideoSource wraps one cv2.VideoCapture per stream (video files, printf-style
image sequences such as "frames/img_%04d.png", or device indices), or
splits a single stream into side-by-side regions of interest.
ArraySource serves pre-loaded frames with the same interface.

All streams must deliver single-channel images. Three-channel frames with
equal channels (how VideoCapture decodes gray video) are collapsed; real
colour streams are rejected at open() unless convert_gray is set.
"""

from __future__ import annotations

import logging
from pathlib import Path

import cv2
import numpy as np

from .errors import VideoFormatError, VideoSourceError

logger = logging.getLogger(__name__)


def check_single_channel(images: list[np.ndarray]) -> None:
    """
    Raises:
        VideoFormatError: if any image has more than one channel
    """
    for i, image in enumerate(images):
        if image.ndim == 3 and image.shape[2] != 1:
            raise VideoFormatError(
                f"Video stream {i} has {image.shape[2]} channels; streams must be "
                "GRAY8 format. Convert the input or pass --gray (convert_gray)."
            )
        if image.ndim not in (2, 3):
            raise VideoFormatError(f"Video stream {i} has unexpected shape {image.shape}")


def collapse_gray(image: np.ndarray) -> np.ndarray:
    """
    Single-channel view of an image that is gray in content.

    VideoCapture decodes gray video as 3-channel BGR with equal channels;
    those collapse to one channel. Real colour is returned unchanged.
    """
    if image.ndim != 3:
        return image
    if image.shape[2] == 1:
        return image[:, :, 0]
    if image.shape[2] == 3 and np.array_equal(image[:, :, 0], image[:, :, 1]) and np.array_equal(
        image[:, :, 0], image[:, :, 2]
    ):
        return image[:, :, 0]
    return image


def to_gray(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return image
    if image.shape[2] == 1:
        return image[:, :, 0]
    if image.shape[2] == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)


def parse_roi(text: str) -> tuple[int, int, int, int]:
    """
    Parse "x,y,w,h" (or "x+y+wxh") into a region of interest.
    """
    normalized = text.replace("+", ",").replace("x", ",")
    try:
        x, y, w, h = (int(v) for v in normalized.split(","))
    except ValueError:
        raise ValueError(f"Invalid region of interest '{text}' (expected x,y,w,h)") from None
    if w <= 0 or h <= 0:
        raise ValueError(f"Region of interest '{text}' has empty size")
    return x, y, w, h


class FrameSource:
    """
    Shared behaviour: first frame set is read and validated on open().
    """

    def __init__(self, convert_gray: bool = False):
        self.convert_gray = convert_gray
        self._pending: list[np.ndarray] | None = None
        self._sizes: list[tuple[int, int]] = []
        self._opened = False

    def _read(self) -> tuple[bool, list[np.ndarray]]:
        raise NotImplementedError

    def open(self) -> None:
        ok, images = self._read()
        if not ok:
            raise VideoSourceError("Video source delivered no frames")
        images = self._prepare(images)
        check_single_channel(images)

        self._pending = images
        self._sizes = [(img.shape[1], img.shape[0]) for img in images]
        self._opened = True
        logger.info(
            "Opened %d stream(s): %s",
            len(images), ", ".join(f"{w}x{h}" for w, h in self._sizes),
        )

    def _prepare(self, images: list[np.ndarray]) -> list[np.ndarray]:
        if self.convert_gray:
            return [to_gray(img) for img in images]
        return [collapse_gray(img) for img in images]

    @property
    def num_streams(self) -> int:
        return len(self._sizes)

    @property
    def stream_sizes(self) -> list[tuple[int, int]]:
        """(width, height) per stream."""
        return list(self._sizes)

    def grab(self) -> tuple[bool, list[np.ndarray]]:
        """
        Next synchronized frame set.

        Returns:
            (ok, images); ok is False at end of stream or on read failure
        """
        if not self._opened:
            self.open()

        if self._pending is not None:
            images, self._pending = self._pending, None
            return True, images

        ok, images = self._read()
        if not ok:
            return False, []

        images = self._prepare(images)
        check_single_channel(images)
        return True, images

    def close(self) -> None:
        self._opened = False

    def __enter__(self):
        self.open()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class VideoSource(FrameSource):
    """
    One or more OpenCV captures read in lock-step.

    Args:
        uris: Video paths, image sequence patterns or device indices
        rois: Optional regions (x, y, w, h) that split a single stream
            into several camera streams
        convert_gray: Convert colour frames to grayscale
    """

    def __init__(
        self,
        uris: list[str | int | Path],
        rois: list[tuple[int, int, int, int]] | None = None,
        convert_gray: bool = False,
    ):
        super().__init__(convert_gray=convert_gray)
        if not uris:
            raise VideoSourceError("No video streams given")
        if rois and len(uris) != 1:
            raise VideoSourceError("Regions of interest require exactly one input stream")

        self.uris = [_parse_uri(u) for u in uris]
        self.rois = list(rois) if rois else []
        self._captures: list[cv2.VideoCapture] = []

    def open(self) -> None:
        for uri in self.uris:
            capture = cv2.VideoCapture(uri)
            if not capture.isOpened():
                self._release()
                raise VideoSourceError(f"Could not open video stream: {uri}")
            self._captures.append(capture)
        super().open()

    def _read(self) -> tuple[bool, list[np.ndarray]]:
        images = []
        for capture in self._captures:
            ok, image = capture.read()
            if not ok or image is None:
                return False, []
            images.append(image)

        if self.rois:
            full = images[0]
            images = [full[y : y + h, x : x + w] for x, y, w, h in self.rois]

        return True, images

    def _release(self) -> None:
        for capture in self._captures:
            capture.release()
        self._captures = []

    def close(self) -> None:
        self._release()
        super().close()


class ArraySource(FrameSource):
    """
    Frame sets held in memory, one list of images per tick.
    """

    def __init__(self, frame_sets: list[list[np.ndarray]], convert_gray: bool = False):
        super().__init__(convert_gray=convert_gray)
        self._frame_sets = list(frame_sets)
        self._position = 0

    def _read(self) -> tuple[bool, list[np.ndarray]]:
        if self._position >= len(self._frame_sets):
            return False, []
        images = list(self._frame_sets[self._position])
        self._position += 1
        return True, images


def _parse_uri(uri: str | int | Path) -> str | int:
    if isinstance(uri, Path):
        return str(uri)
    if isinstance(uri, str) and uri.isdigit():
        return int(uri)
    return uri
