#!/usr/bin/env python3
"""
gridcal CLI - calibrate a camera rig from video of a dot-grid target.

Usage:
    gridcal VIDEO [VIDEO ...]                   - one stream per camera
    gridcal VIDEO --split 0,0,640,480 --split 640,0,640,480
                                                - side-by-side rig in one stream
    gridcal --help                              - show all options

VIDEO may be a video file, an image sequence pattern (frames/img_%04d.png)
or a device index.
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import replace
from pathlib import Path

from .camera_models import MODELS
from .config import default_config, load_config
from .errors import GridCalError
from .session import CalibrationSession
from .types import CalibrationConfig
from .video import VideoSource, parse_roi

logger = logging.getLogger("gridcal")

DEFAULT_OUTPUT = "cameras.toml"


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="gridcal",
        description="Calibrate camera intrinsics and rig extrinsics from dot-grid video.",
    )
    parser.add_argument(
        "videos",
        nargs="+",
        help="Video file, image sequence pattern or device index per camera.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="TOML calibration config. Command-line options override it.",
    )
    parser.add_argument(
        "--grid-spacing",
        type=float,
        default=None,
        help="Distance between dot centres in metres. Default: 0.254/18 (US letter).",
    )
    parser.add_argument(
        "--grid-size",
        type=int,
        nargs=2,
        metavar=("COLUMNS", "ROWS"),
        default=None,
        help="Dot grid size. Default: 19 10.",
    )
    parser.add_argument(
        "--model",
        choices=sorted(MODELS),
        default=None,
        help="Camera intrinsic model. Default: fov.",
    )
    parser.add_argument(
        "--split",
        action="append",
        default=None,
        metavar="X,Y,W,H",
        help="Split a single stream into cameras by region of interest (repeatable).",
    )
    parser.add_argument(
        "--gray",
        action="store_true",
        help="Convert colour streams to grayscale instead of rejecting them.",
    )
    parser.add_argument(
        "--no-add",
        action="store_true",
        help="Track only; do not commit calibration frames.",
    )
    parser.add_argument(
        "--max-frames",
        type=int,
        default=None,
        help="Stop after this many video frames.",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=Path(DEFAULT_OUTPUT),
        help=f"Camera model output path. Default: {DEFAULT_OUTPUT}",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Debug logging.",
    )
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> CalibrationConfig:
    config = load_config(args.config) if args.config else default_config()

    target = config.target
    if args.grid_spacing is not None:
        target = replace(target, grid_spacing=args.grid_spacing)
    if args.grid_size is not None:
        target = replace(target, grid_size=tuple(args.grid_size))

    return replace(
        config,
        target=target,
        camera_model=args.model or config.camera_model,
        add_frames=config.add_frames and not args.no_add,
        convert_gray=config.convert_gray or args.gray,
    )


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    try:
        config = build_config(args)
        rois = [parse_roi(r) for r in args.split] if args.split else None
        source = VideoSource(args.videos, rois=rois, convert_gray=config.convert_gray)
        source.open()
    except (GridCalError, ValueError, OSError) as e:
        logger.error("%s", e)
        return 1

    session = CalibrationSession(source, config)
    logger.info(
        "Calibrating %d camera(s) against a %dx%d grid (spacing %.5f m)",
        session.calibrator.num_cameras(),
        config.target.columns,
        config.target.rows,
        config.target.grid_spacing,
    )

    try:
        session.run(max_frames=args.max_frames)
    except KeyboardInterrupt:
        logger.info("Interrupted, finishing with data collected so far")

    mse = session.finish(args.output)
    print(f"Frames: {session.calibrator.num_frames()}  "
          f"Observations: {session.calibrator.num_observations()}  MSE: {mse:.6f}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
