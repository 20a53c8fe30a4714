from __future__ import annotations

import dataclasses
import enum
import logging
import threading
from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from .descriptor import SiftDescriptor, canonical_angle, make_descriptor
from .errors import DetectionCancelled
from .kernels import (
    TWO_PI,
    find_extrema,
    orientation_histogram,
    quadratic_fit,
    smooth_circular,
    spatial_hessian,
)
from .keypoint import Candidate, KeyPoint
from .params import SiftParams
from .scale_space import DogOctave, DogScaleSpace, GaussianScaleSpace, Level

logger = logging.getLogger(__name__)

# A fit has converged once no offset component exceeds this.
OFFSET_LIMIT = 0.5
# Pre-refinement contrast filter, relative to the contrast threshold.
PRE_CONTRAST_FACTOR = 0.8

STAGES = (
    "extrema",
    "contrast_pre",
    "refined",
    "contrast_post",
    "edge",
    "border",
    "keys",
)

Snapshot = Dict[str, object]


class Rejection(enum.Enum):
    SINGULAR = "singular"
    OUT_OF_BOUNDS = "out_of_bounds"
    NOT_CONVERGED = "not_converged"


@dataclass
class DetectionStats:
    extrema: int = 0
    overflow: int = 0
    low_contrast_pre: int = 0
    singular: int = 0
    out_of_bounds: int = 0
    not_converged: int = 0
    duplicate: int = 0
    low_contrast: int = 0
    on_edge: int = 0
    near_border: int = 0
    keypoints: int = 0
    no_orientation: int = 0
    isotropic: int = 0
    descriptor_outside: int = 0
    descriptors: int = 0

    def reject(self, reason: Rejection) -> None:
        name = reason.value
        setattr(self, name, getattr(self, name) + 1)

    def as_dict(self) -> Dict[str, int]:
        return dataclasses.asdict(self)


def _check_cancel(cancel: Optional[threading.Event], where: str) -> None:
    if cancel is not None and cancel.is_set():
        raise DetectionCancelled(f"detection cancelled {where}")


def localize(
    dog_oct: DogOctave, cand: Candidate, params: SiftParams
) -> Union[KeyPoint, Rejection]:
    """Refine ``cand`` by iterated quadratic fits of the DoG.

    At most ``params.max_refinement_steps`` fits are made. The candidate moves
    by the rounded offset whenever a component exceeds ``OFFSET_LIMIT``.
    """
    data = dog_oct.data
    ns, h, w = data.shape
    for step in range(params.max_refinement_steps):
        cand.iterations = step + 1
        ok, g0, g1, g2, o0, o1, o2 = quadratic_fit(data, cand.level, cand.row, cand.col)
        if not ok:
            return Rejection.SINGULAR
        if max(abs(o0), abs(o1), abs(o2)) <= OFFSET_LIMIT:
            value = float(data[cand.level, cand.row, cand.col]) + 0.5 * (
                g0 * o0 + g1 * o1 + g2 * o2
            )
            n_spo = params.levels_per_octave
            return KeyPoint(
                octave=cand.octave,
                level_index=cand.level,
                row=cand.row,
                col=cand.col,
                level=cand.level + o0,
                x=(cand.col + o2) * dog_oct.delta,
                y=(cand.row + o1) * dog_oct.delta,
                sigma=float(dog_oct.sigmas[cand.level]) * 2.0 ** (o0 / n_spo),
                value=value,
                iterations=cand.iterations,
            )
        cand.shift(int(round(o0)), int(round(o1)), int(round(o2)))
        if not (1 <= cand.level < ns - 1 and 1 <= cand.row < h - 1 and 1 <= cand.col < w - 1):
            return Rejection.OUT_OF_BOUNDS
    return Rejection.NOT_CONVERGED


def is_on_edge(dog_oct: DogOctave, kp: KeyPoint, edge_threshold: float) -> bool:
    h_yy, h_xx, h_xy = spatial_hessian(dog_oct.data, kp.level_index, kp.row, kp.col)
    det = h_yy * h_xx - h_xy * h_xy
    if det <= 0.0:
        return True
    trace = h_yy + h_xx
    return trace * trace / det > edge_threshold


def is_near_border(kp: KeyPoint, img_dims: Tuple[int, int], border_lambda: float) -> bool:
    height, width = img_dims
    r = border_lambda * kp.sigma
    return not (
        kp.y - r > 0.0 and kp.y + r < height and kp.x - r > 0.0 and kp.x + r < width
    )


def _refined_peak_angle(hist: np.ndarray, i: int) -> float:
    n = hist.shape[0]
    p, c, q = float(hist[i - 1]), float(hist[i]), float(hist[(i + 1) % n])
    denom = p - 2.0 * c + q
    offset = 0.5 * (p - q) / denom if denom != 0.0 else 0.0
    return canonical_angle((i + offset + 0.5) * TWO_PI / n)


def orientation_peaks(hist: np.ndarray, peak_fraction: float) -> List[float]:
    """Angles of the local maxima of a circular histogram.

    Bin ``i`` covers ``[i, i + 1) * 2pi / n``; each peak is refined with a
    parabola through its two neighbours.
    """
    vmax = float(hist.max())
    if vmax <= 0.0:
        return []
    prev = np.roll(hist, 1)
    nxt = np.roll(hist, -1)
    is_peak = (hist > prev) & (hist > nxt) & (hist >= peak_fraction * vmax)
    return [_refined_peak_angle(hist, int(i)) for i in np.flatnonzero(is_peak)]


def gradient_coherence(moments: np.ndarray) -> float:
    """Anisotropy of the weighted gradient structure tensor, in [0, 1].

    ``moments`` holds its (xx, yy, xy) components; 0 means the gradients
    around the keypoint point equally in every direction.
    """
    jxx, jyy, jxy = (float(v) for v in moments)
    trace = jxx + jyy
    if trace <= 0.0:
        return 0.0
    return float(np.hypot(jxx - jyy, 2.0 * jxy)) / trace


def dominant_orientations(
    level: Level,
    kp: KeyPoint,
    params: SiftParams,
    stats: Optional[DetectionStats] = None,
) -> List[float]:
    """Reference orientations of ``kp``.

    Every histogram peak within ``orientation_peak_fraction`` of the highest
    one is returned, except around isotropic structures (coherence below
    ``orientation_isotropy_threshold``) whose histogram peaks are noise:
    there only the highest bin is kept, even when no bin is a strict peak.
    """
    y0, x0, sigma = kp.octave_coords(level.delta)
    mag, ori = level.gradients
    hist = np.empty(params.orientation_histogram_bins, dtype=np.float64)
    moments = np.empty(3, dtype=np.float64)
    orientation_histogram(mag, ori, y0, x0, sigma, params.lambda_ori, hist, moments)
    smooth_circular(hist, params.orientation_smoothing_iterations)
    thetas = orientation_peaks(hist, params.orientation_peak_fraction)
    if (
        len(thetas) != 1
        and hist.max() > 0.0
        and gradient_coherence(moments) < params.orientation_isotropy_threshold
    ):
        if stats is not None:
            stats.isotropic += 1
        return [_refined_peak_angle(hist, int(np.argmax(hist)))]
    return thetas


def _keypoint_arrays(keypoints: Sequence[KeyPoint]) -> Tuple[np.ndarray, np.ndarray]:
    ints = np.array(
        [(kp.octave, kp.level_index, kp.row, kp.col) for kp in keypoints],
        dtype=np.int32,
    ).reshape(-1, 4)
    flts = np.array(
        [(kp.y, kp.x, kp.sigma, kp.value) for kp in keypoints], dtype=np.float32
    ).reshape(-1, 4)
    return ints, flts


class SiftDetector:
    """Scale-space extrema detection and SIFT description of one image.

    ``detect`` returns descriptors ordered by decreasing DoG magnitude;
    ``record`` additionally keeps per-octave snapshots of what survived each
    stage, keyed by the names in ``STAGES``.
    """

    def __init__(self, params: Optional[SiftParams] = None):
        self.params = SiftParams() if params is None else params
        self.last_stats = DetectionStats()

    def build_scale_space(
        self, image, cancel: Optional[threading.Event] = None
    ) -> Tuple[GaussianScaleSpace, DogScaleSpace]:
        gss = GaussianScaleSpace.build(image, self.params, cancel)
        return gss, DogScaleSpace.build(gss)

    def detect_keypoints(
        self, image, cancel: Optional[threading.Event] = None
    ) -> List[KeyPoint]:
        gss, dog = self.build_scale_space(image, cancel)
        stats = DetectionStats()
        keypoints: List[KeyPoint] = []
        for dog_oct in dog:
            _check_cancel(cancel, f"before octave {dog_oct.index}")
            keypoints.extend(self._keypoints_in_octave(gss, dog_oct, stats, None))
        stats.keypoints = len(keypoints)
        self.last_stats = stats
        return keypoints

    def detect(
        self, image, cancel: Optional[threading.Event] = None
    ) -> List[SiftDescriptor]:
        descriptors, _ = self._run(image, cancel, record=False)
        return descriptors

    def record(self, image) -> Tuple[List[SiftDescriptor], List[Snapshot]]:
        return self._run(image, None, record=True)

    def describe(
        self, level: Level, kp: KeyPoint, stats: Optional[DetectionStats] = None
    ) -> List[SiftDescriptor]:
        """One descriptor per dominant orientation of ``kp``."""
        stats = DetectionStats() if stats is None else stats
        thetas = dominant_orientations(level, kp, self.params, stats)
        if not thetas:
            stats.no_orientation += 1
            return []
        out = []
        for theta in thetas:
            desc = make_descriptor(level, kp, theta, self.params)
            if desc is None:
                stats.descriptor_outside += 1
                continue
            out.append(desc)
        return out

    def _run(
        self, image, cancel: Optional[threading.Event], record: bool
    ) -> Tuple[List[SiftDescriptor], List[Snapshot]]:
        gss, dog = self.build_scale_space(image, cancel)
        stats = DetectionStats()
        descriptors: List[SiftDescriptor] = []
        snapshots: List[Snapshot] = []
        for dog_oct in dog:
            o = dog_oct.index
            _check_cancel(cancel, f"before octave {o}")
            snapshot: Optional[Snapshot] = None
            if record:
                snapshot = {"gss": gss[o].data, "dog": dog_oct.data}
            keypoints = self._keypoints_in_octave(gss, dog_oct, stats, snapshot)
            stats.keypoints += len(keypoints)

            rows = []
            for kp in keypoints:
                _check_cancel(cancel, f"in octave {o}")
                for desc in self.describe(gss[o][kp.level_index], kp, stats):
                    rows.append((kp, desc))
            descriptors.extend(desc for _, desc in rows)

            if snapshot is not None:
                ints, _ = _keypoint_arrays([kp for kp, _ in rows])
                flts = np.array(
                    [(d.y, d.x, d.scale, d.orientation) for _, d in rows],
                    dtype=np.float32,
                ).reshape(-1, 4)
                feats = np.array(
                    [d.features for _, d in rows], dtype=np.float32
                ).reshape(-1, self.params.descriptor_length)
                snapshot["keys"] = (ints, flts, feats)
                snapshots.append(snapshot)
            logger.debug(
                "octave %d: %d keypoints, %d descriptors", o, len(keypoints), len(rows)
            )

        descriptors.sort(key=lambda d: d.magnitude, reverse=True)
        stats.descriptors = len(descriptors)
        self.last_stats = stats
        logger.info(
            "detected %d descriptors from %d keypoints (%d extrema, %d octaves)",
            stats.descriptors,
            stats.keypoints,
            stats.extrema,
            len(gss),
        )
        return descriptors, snapshots

    def _keypoints_in_octave(
        self,
        gss: GaussianScaleSpace,
        dog_oct: DogOctave,
        stats: DetectionStats,
        snapshot: Optional[Snapshot],
    ) -> List[KeyPoint]:
        params = self.params
        o = dog_oct.index
        threshold = params.scaled_contrast_threshold

        def snap(key: str, ints: np.ndarray, flts: np.ndarray) -> None:
            if snapshot is not None:
                snapshot[key] = (ints.copy(), flts.copy())

        int_buf = np.empty((params.max_extrema, 4), dtype=np.int32)
        float_buf = np.empty((params.max_extrema, 4), dtype=np.float32)
        counter = np.zeros(2, dtype=np.int64)
        find_extrema(
            dog_oct.data,
            o,
            int_buf,
            float_buf,
            counter,
            params.initial_sigma,
            params.levels_per_octave,
            dog_oct.delta,
        )
        n, overflow = int(counter[0]), int(counter[1])
        stats.extrema += n
        if overflow:
            stats.overflow += overflow
            logger.warning(
                "octave %d: extrema buffer full, %d candidates dropped "
                "(raise max_extrema above %d)",
                o,
                overflow,
                params.max_extrema,
            )
        ints, flts = int_buf[:n], float_buf[:n]
        snap("extrema", ints, flts)

        keep = np.abs(flts[:, 3]) >= PRE_CONTRAST_FACTOR * threshold
        stats.low_contrast_pre += int(n - keep.sum())
        ints, flts = ints[keep], flts[keep]
        snap("contrast_pre", ints, flts)

        keypoints: List[KeyPoint] = []
        seen = set()
        for (_, s, y, x), v in zip(ints.tolist(), flts[:, 3].tolist()):
            result = localize(dog_oct, Candidate(o, s, y, x, v), params)
            if isinstance(result, Rejection):
                stats.reject(result)
                continue
            key = (result.level_index, result.row, result.col)
            if key in seen:
                stats.duplicate += 1
                continue
            seen.add(key)
            keypoints.append(result)
        snap("refined", *_keypoint_arrays(keypoints))

        before = len(keypoints)
        keypoints = [kp for kp in keypoints if abs(kp.value) >= threshold]
        stats.low_contrast += before - len(keypoints)
        snap("contrast_post", *_keypoint_arrays(keypoints))

        before = len(keypoints)
        edge_threshold = params.edge_threshold
        keypoints = [kp for kp in keypoints if not is_on_edge(dog_oct, kp, edge_threshold)]
        stats.on_edge += before - len(keypoints)
        snap("edge", *_keypoint_arrays(keypoints))

        before = len(keypoints)
        keypoints = [
            kp
            for kp in keypoints
            if not is_near_border(kp, gss.img_dims, params.border_lambda)
        ]
        stats.near_border += before - len(keypoints)
        snap("border", *_keypoint_arrays(keypoints))

        logger.debug(
            "octave %d: %d extrema, %d after contrast pre-filter, %d accepted",
            o,
            n,
            int(keep.sum()),
            len(keypoints),
        )
        return keypoints
