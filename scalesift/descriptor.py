from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Optional

import numpy as np

from .kernels import TWO_PI, descriptor_histogram
from .keypoint import KeyPoint
from .params import SiftParams
from .scale_space import Level

logger = logging.getLogger(__name__)

FEATURE_SCALE = 512.0


@dataclass(frozen=True, eq=False)
class SiftDescriptor:
    """Oriented keypoint with its gradient histogram feature vector.

    Position and scale are in input image coordinates, ``orientation`` is in
    ``[0, 2pi)`` and ``features`` is a read-only unit-length float32 vector.
    Matches refer to descriptors by identity.
    """

    x: float
    y: float
    scale: float
    orientation: float
    magnitude: float
    octave: int
    level: float
    features: np.ndarray

    def __len__(self) -> int:
        return self.features.shape[0]

    def quantized(self) -> np.ndarray:
        """Features scaled by 512 and saturated to ``uint8``."""
        q = np.minimum(np.floor(self.features * FEATURE_SCALE), 255.0)
        return q.astype(np.uint8)

    def __repr__(self) -> str:
        return (
            f"SiftDescriptor(x={self.x:.2f}, y={self.y:.2f}, scale={self.scale:.3f}, "
            f"orientation={self.orientation:.3f}, magnitude={self.magnitude:.4f})"
        )


def canonical_angle(theta: float) -> float:
    theta = math.fmod(theta, TWO_PI)
    if theta < 0.0:
        theta += TWO_PI
    # fmod of a tiny negative value can round up to exactly 2pi
    return 0.0 if theta >= TWO_PI else theta


def normalize_features(hist: np.ndarray, clip: float) -> Optional[np.ndarray]:
    """L2-normalize, clip at ``clip`` and renormalize. None for a zero histogram."""
    norm = float(np.linalg.norm(hist))
    if norm == 0.0 or not math.isfinite(norm):
        return None
    feats = np.minimum(hist / norm, clip)
    norm = float(np.linalg.norm(feats))
    return (feats / norm).astype(np.float32)


def make_descriptor(
    level: Level, keypoint: KeyPoint, theta: float, params: SiftParams
) -> Optional[SiftDescriptor]:
    """Descriptor of ``keypoint`` in the frame rotated by ``theta``.

    ``level`` is the Gaussian level the keypoint was localized at. Returns None
    if the patch leaves the octave or holds no gradient at all.
    """
    y0, x0, sigma = keypoint.octave_coords(level.delta)
    mag, ori = level.gradients
    hist = np.empty(params.descriptor_length, dtype=np.float64)
    inside = descriptor_histogram(
        mag,
        ori,
        y0,
        x0,
        sigma,
        theta,
        params.lambda_desc,
        params.descriptor_grid_size,
        params.descriptor_histogram_bins,
        hist,
    )
    if not inside:
        return None
    features = normalize_features(hist, params.descriptor_clip_threshold)
    if features is None:
        logger.debug("flat descriptor patch at (%.1f, %.1f)", keypoint.x, keypoint.y)
        return None
    features.flags.writeable = False
    return SiftDescriptor(
        x=keypoint.x,
        y=keypoint.y,
        scale=keypoint.sigma,
        orientation=canonical_angle(theta),
        magnitude=keypoint.magnitude,
        octave=keypoint.octave,
        level=keypoint.level,
        features=features,
    )
