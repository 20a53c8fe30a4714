from __future__ import annotations

import dataclasses
import enum
import json
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

import numpy as np

from .errors import InvalidInputError
from .kernels import gaussian_symm_kernel

# Smallest side, in octave pixels, an octave may have.
MIN_OCTAVE_SIZE = 12


class MatchDistanceNorm(enum.Enum):
    L1 = "L1"
    L2 = "L2"
    LINF = "LINF"

    @classmethod
    def parse(cls, value: "MatchDistanceNorm | str") -> "MatchDistanceNorm":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).upper())
        except ValueError:
            names = ", ".join(m.value for m in cls)
            raise ValueError(
                f"unknown distance norm {value!r}, expected one of {names}"
            ) from None


_CAMEL_NAMES = {
    "octaveCount": "octave_count",
    "levelsPerOctave": "levels_per_octave",
    "initialSigma": "initial_sigma",
    "scaleFactor": "scale_factor",
    "inputSigma": "input_sigma",
    "deltaMin": "delta_min",
    "contrastThreshold": "contrast_threshold",
    "curvatureRatioThreshold": "curvature_ratio_threshold",
    "maxRefinementSteps": "max_refinement_steps",
    "orientationHistogramBins": "orientation_histogram_bins",
    "orientationPeakFraction": "orientation_peak_fraction",
    "orientationSmoothingIterations": "orientation_smoothing_iterations",
    "orientationIsotropyThreshold": "orientation_isotropy_threshold",
    "lambdaOri": "lambda_ori",
    "descriptorGridSize": "descriptor_grid_size",
    "descriptorHistogramBins": "descriptor_histogram_bins",
    "descriptorClipThreshold": "descriptor_clip_threshold",
    "lambdaDesc": "lambda_desc",
    "borderLambda": "border_lambda",
    "maxExtrema": "max_extrema",
    "matchDistanceNorm": "match_distance_norm",
    "matchRatioThreshold": "match_ratio_threshold",
    "symmetricMatching": "symmetric_matching",
}


@dataclass
class SiftParams:
    """Detector and matcher configuration.

    ``contrast_threshold`` is expressed for three levels per octave and an
    input normalized to ``[0, 1]``; ``scaled_contrast_threshold`` is the value
    actually applied for ``levels_per_octave``.
    Keypoints whose gradient second-moment matrix has a coherence below
    ``orientation_isotropy_threshold`` have no dominant direction and keep only
    their strongest orientation.
    """

    octave_count: Optional[int] = None
    levels_per_octave: int = 3
    initial_sigma: float = 0.8
    scale_factor: Optional[float] = None
    input_sigma: float = 0.5
    delta_min: float = 0.5

    contrast_threshold: float = 0.013333333
    curvature_ratio_threshold: float = 10.0
    max_refinement_steps: int = 5

    orientation_histogram_bins: int = 36
    orientation_peak_fraction: float = 0.8
    orientation_smoothing_iterations: int = 6
    orientation_isotropy_threshold: float = 0.05
    lambda_ori: float = 1.5

    descriptor_grid_size: int = 4
    descriptor_histogram_bins: int = 8
    descriptor_clip_threshold: float = 0.2
    lambda_desc: float = 6.0

    border_lambda: float = 1.0
    max_extrema: int = 100_000

    match_distance_norm: MatchDistanceNorm = MatchDistanceNorm.L2
    match_ratio_threshold: float = 0.8
    symmetric_matching: bool = False

    def __post_init__(self) -> None:
        self.match_distance_norm = MatchDistanceNorm.parse(self.match_distance_norm)
        self._check_ranges()
        derived = 2.0 ** (1.0 / self.levels_per_octave)
        if self.scale_factor is None:
            self.scale_factor = derived
        elif not math.isclose(self.scale_factor, derived, rel_tol=1e-6):
            raise ValueError(
                f"scale_factor={self.scale_factor} disagrees with "
                f"levels_per_octave={self.levels_per_octave} (expected {derived:.6f})"
            )

    def _check_ranges(self) -> None:
        if self.octave_count is not None and self.octave_count < 1:
            raise ValueError(f"octave_count must be >= 1, got {self.octave_count}")
        if self.levels_per_octave < 1:
            raise ValueError(
                f"levels_per_octave must be >= 1, got {self.levels_per_octave}"
            )
        if not 0.0 < self.delta_min <= 1.0:
            raise ValueError(f"delta_min must be in (0, 1], got {self.delta_min}")
        if self.input_sigma < 0.0 or self.initial_sigma < self.input_sigma:
            raise ValueError(
                "need 0 <= input_sigma <= initial_sigma, got "
                f"{self.input_sigma} and {self.initial_sigma}"
            )
        if self.curvature_ratio_threshold <= 0.0:
            raise ValueError("curvature_ratio_threshold must be positive")
        if self.max_refinement_steps < 1:
            raise ValueError("max_refinement_steps must be >= 1")
        if self.orientation_histogram_bins < 3:
            raise ValueError("orientation_histogram_bins must be >= 3")
        if not 0.0 < self.orientation_peak_fraction <= 1.0:
            raise ValueError("orientation_peak_fraction must be in (0, 1]")
        if not 0.0 <= self.orientation_isotropy_threshold < 1.0:
            raise ValueError("orientation_isotropy_threshold must be in [0, 1)")
        if self.descriptor_grid_size < 1 or self.descriptor_histogram_bins < 1:
            raise ValueError("descriptor grid and bin counts must be >= 1")
        if not 0.0 < self.descriptor_clip_threshold <= 1.0:
            raise ValueError("descriptor_clip_threshold must be in (0, 1]")
        if self.max_extrema < 1:
            raise ValueError("max_extrema must be >= 1")
        if self.match_ratio_threshold <= 0.0:
            raise ValueError("match_ratio_threshold must be positive")

    @property
    def scaled_contrast_threshold(self) -> float:
        kn = 2.0 ** (1.0 / self.levels_per_octave)
        k3 = 2.0 ** (1.0 / 3.0)
        return self.contrast_threshold * (kn - 1.0) / (k3 - 1.0)

    @property
    def edge_threshold(self) -> float:
        r = self.curvature_ratio_threshold
        return (r + 1.0) * (r + 1.0) / r

    @property
    def descriptor_length(self) -> int:
        return self.descriptor_grid_size**2 * self.descriptor_histogram_bins

    def replace(self, **changes: Any) -> "SiftParams":
        if "levels_per_octave" in changes and "scale_factor" not in changes:
            changes["scale_factor"] = None
        return dataclasses.replace(self, **changes)

    @classmethod
    def from_mapping(cls, mapping: Mapping[str, Any]) -> "SiftParams":
        known = {f.name for f in dataclasses.fields(cls)}
        kwargs: Dict[str, Any] = {}
        for key, value in mapping.items():
            name = _CAMEL_NAMES.get(key, key)
            if name not in known:
                raise ValueError(f"unknown SIFT option {key!r}")
            kwargs[name] = value
        return cls(**kwargs)

    @classmethod
    def from_json(cls, path: str | Path) -> "SiftParams":
        data = json.loads(Path(path).read_text())
        if not isinstance(data, dict):
            raise ValueError(f"{path}: expected a JSON object")
        return cls.from_mapping(data)


def max_octave_count(img_dims: Tuple[int, int], delta_min: float) -> int:
    return math.floor(math.log2(min(img_dims) / delta_min / MIN_OCTAVE_SIZE)) + 1


@dataclass
class ScaleSpaceLayout:
    """Per-image geometry of the pyramid derived from ``SiftParams``."""

    img_dims: Tuple[int, int]
    params: SiftParams
    n_oct: int = -1
    sigmas: np.ndarray | None = None
    gss_shapes: np.ndarray | None = None
    inc_sigmas: np.ndarray | None = None
    gauss_kernels: Dict[float, Tuple[np.ndarray, int]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        self._update_octave_count()
        self.sigmas = self._make_sigmas()
        self.gss_shapes = self._make_gss_shapes()
        self.inc_sigmas = self._make_sigma_increments()
        self.gauss_kernels = self._precompute_gaussian_kernels()

    @property
    def n_spo(self) -> int:
        return self.params.levels_per_octave

    @property
    def n_levels(self) -> int:
        return self.n_spo + 3

    def delta(self, octave_index: int) -> float:
        return self.params.delta_min * float(1 << octave_index)

    def _update_octave_count(self) -> None:
        h, w = self.img_dims
        if h < 1 or w < 1:
            raise InvalidInputError(f"empty image of shape {self.img_dims}")
        limit = max_octave_count(self.img_dims, self.params.delta_min)
        if limit < 1:
            raise InvalidInputError(
                f"image of shape {self.img_dims} is too small for a single octave "
                f"(each octave side must keep at least {MIN_OCTAVE_SIZE} samples)"
            )
        requested = self.params.octave_count
        if requested is None:
            self.n_oct = limit
        elif requested > limit:
            raise InvalidInputError(
                f"image of shape {self.img_dims} supports at most {limit} octaves, "
                f"{requested} requested"
            )
        else:
            self.n_oct = requested

    def _make_sigmas(self) -> np.ndarray:
        octave_indices = np.arange(self.n_oct, dtype=np.float64)[:, None]
        scale_offsets = (np.arange(self.n_levels, dtype=np.float64) / self.n_spo)[
            None, :
        ]
        return self.params.initial_sigma * (2.0 ** (octave_indices + scale_offsets))

    def _make_gss_shapes(self) -> np.ndarray:
        base = np.array(
            [
                int(self.img_dims[0] / self.params.delta_min),
                int(self.img_dims[1] / self.params.delta_min),
            ],
            dtype=np.int64,
        )
        return base // (1 << np.arange(self.n_oct, dtype=np.int64))[:, None]

    def _make_sigma_increments(self) -> np.ndarray:
        sig = self.sigmas
        prev = np.empty_like(sig)
        prev[:, 1:] = sig[:, :-1]
        # Column 0 of octave 0 is the seed blur; the other octaves start by
        # decimation and have no increment.
        prev[0, 0] = self.params.input_sigma
        prev[1:, 0] = sig[1:, 0]
        deltas = (
            self.params.delta_min * (2.0 ** np.arange(self.n_oct, dtype=np.float64))
        )[:, None]
        diff2 = np.maximum(sig * sig - prev * prev, 0.0)
        return np.sqrt(diff2) / deltas

    def _precompute_gaussian_kernels(self) -> Dict[float, Tuple[np.ndarray, int]]:
        kernels: Dict[float, Tuple[np.ndarray, int]] = {}
        for sig in np.unique(self.inc_sigmas).tolist():
            kernels[float(sig)] = gaussian_symm_kernel(float(sig))
        return kernels

    def kernel_for(self, octave_index: int, level_index: int) -> Tuple[np.ndarray, int]:
        return self.gauss_kernels[float(self.inc_sigmas[octave_index, level_index])]
