"""
Exception types raised by gridcal.
"""


class GridCalError(Exception):
    """Base class for gridcal errors."""


class ConfigError(GridCalError, ValueError):
    """Invalid configuration value or camera model description."""


class VideoSourceError(GridCalError):
    """A video stream could not be opened."""


class VideoFormatError(GridCalError):
    """Stream format violates the single-channel (GRAY8) requirement."""


class InvalidHandleError(GridCalError, LookupError):
    """Frame or camera handle does not name a registered entity."""


class TrackingError(GridCalError):
    """Detection, matching or pose estimation failed for one camera."""
