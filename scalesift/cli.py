"""
Command-line interface: detect SIFT features in an image or match two images.
"""

from __future__ import annotations

import argparse
import logging
import sys
from typing import List, Optional

from .detector import SiftDetector
from .io import read_gray_bt709
from .matcher import SiftMatcher
from .params import MatchDistanceNorm, SiftParams

logger = logging.getLogger(__name__)


def _load_params(args: argparse.Namespace) -> SiftParams:
    params = SiftParams.from_json(args.config) if args.config else SiftParams()
    changes = {}
    if args.octaves is not None:
        changes["octave_count"] = args.octaves
    if getattr(args, "ratio", None) is not None:
        changes["match_ratio_threshold"] = args.ratio
    if getattr(args, "norm", None) is not None:
        changes["match_distance_norm"] = MatchDistanceNorm.parse(args.norm)
    if getattr(args, "symmetric", False):
        changes["symmetric_matching"] = True
    return params.replace(**changes) if changes else params


def _cmd_detect(args: argparse.Namespace) -> int:
    params = _load_params(args)
    image = read_gray_bt709(args.image)
    detector = SiftDetector(params)
    descriptors = detector.detect(image)
    print(f"{args.image}: {len(descriptors)} descriptors")
    for d in descriptors[: args.top]:
        print(
            f"  x={d.x:8.2f} y={d.y:8.2f} scale={d.scale:7.3f} "
            f"orientation={d.orientation:6.3f} magnitude={d.magnitude:.4f}"
        )
    logger.debug("rejections: %s", detector.last_stats.as_dict())
    return 0


def _cmd_match(args: argparse.Namespace) -> int:
    params = _load_params(args)
    detector = SiftDetector(params)
    set_a = detector.detect(read_gray_bt709(args.image_a))
    set_b = detector.detect(read_gray_bt709(args.image_b))
    matches = SiftMatcher(params).match3(set_a, set_b)
    print(
        f"{len(matches)} matches between {args.image_a} ({len(set_a)} descriptors) "
        f"and {args.image_b} ({len(set_b)} descriptors)"
    )
    for m in matches[: args.top]:
        a, b = m.descriptor1, m.descriptor2
        print(
            f"  ({a.x:8.2f}, {a.y:8.2f}) -> ({b.x:8.2f}, {b.y:8.2f}) "
            f"distance={m.distance:.4f} ratio={m.ratio:.3f}"
        )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="scalesift",
        description="Scale-invariant feature detection and matching",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Log pipeline progress at DEBUG level",
    )
    common.add_argument(
        "--config",
        type=str,
        default=None,
        help="JSON file with SIFT options (snake_case or camelCase keys)",
    )
    common.add_argument(
        "--octaves",
        type=int,
        default=None,
        help="Number of octaves (default: as many as the image supports)",
    )
    common.add_argument(
        "--top",
        type=int,
        default=10,
        help="Number of strongest results to print (default: 10)",
    )

    detect = sub.add_parser("detect", parents=[common], help="Detect SIFT features")
    detect.add_argument("image", type=str, help="Path to the image file")
    detect.set_defaults(func=_cmd_detect)

    match = sub.add_parser("match", parents=[common], help="Match two images")
    match.add_argument("image_a", type=str, help="Path to the first image")
    match.add_argument("image_b", type=str, help="Path to the second image")
    match.add_argument(
        "--ratio",
        type=float,
        default=None,
        help="Ratio test threshold (default: 0.8)",
    )
    match.add_argument(
        "--norm",
        type=str,
        default=None,
        choices=[n.value for n in MatchDistanceNorm],
        help="Descriptor distance norm (default: L2)",
    )
    match.add_argument(
        "--symmetric",
        action="store_true",
        help="Keep only matches that are mutual nearest neighbours",
    )
    match.set_defaults(func=_cmd_match)
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )
    try:
        return args.func(args)
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2
