from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass
from operator import attrgetter
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .descriptor import SiftDescriptor
from .errors import DetectionCancelled, InvalidInputError
from .params import MatchDistanceNorm, SiftParams

logger = logging.getLogger(__name__)

# Queries handed to one knnMatch call; cancellation is checked between blocks.
QUERY_BLOCK = 512

# Distances from one feature vector of shape (d,) to each row of (n, d).
DistanceFn = Callable[[np.ndarray, np.ndarray], np.ndarray]
Nearest = Tuple[int, float, int, float]


def l1_distance(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    return np.abs(b - a).sum(axis=1)


def l2_distance(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    diff = b - a
    return np.sqrt(np.einsum("ij,ij->i", diff, diff))


def linf_distance(a: np.ndarray, b: np.ndarray) -> np.ndarray:
    return np.abs(b - a).max(axis=1)


DISTANCES: Dict[MatchDistanceNorm, DistanceFn] = {
    MatchDistanceNorm.L1: l1_distance,
    MatchDistanceNorm.L2: l2_distance,
    MatchDistanceNorm.LINF: linf_distance,
}

# cv2.BFMatcher has no float NORM_INF, so LINF stays on numpy.
CV2_NORMS: Dict[MatchDistanceNorm, int] = {
    MatchDistanceNorm.L1: cv2.NORM_L1,
    MatchDistanceNorm.L2: cv2.NORM_L2,
}


@dataclass(frozen=True, eq=False)
class SiftMatch:
    descriptor1: SiftDescriptor
    descriptor2: SiftDescriptor
    distance: float


@dataclass(frozen=True, eq=False)
class SiftMatch3(SiftMatch):
    """A match that also keeps the runner-up from the second set.

    ``second`` is None when the second set holds a single descriptor, in which
    case ``second_distance`` is infinite.
    """

    second: Optional[SiftDescriptor]
    second_distance: float

    @property
    def ratio(self) -> float:
        if math.isinf(self.second_distance):
            return 0.0
        return self.distance / self.second_distance


def two_nearest(dists: np.ndarray) -> Nearest:
    j1 = int(np.argmin(dists))
    if dists.shape[0] == 1:
        return j1, float(dists[j1]), -1, math.inf
    rest = dists.copy()
    rest[j1] = np.inf
    j2 = int(np.argmin(rest))
    return j1, float(dists[j1]), j2, float(rest[j2])


def passes_ratio_test(d1: float, d2: float, ratio: float) -> bool:
    if math.isinf(d2):
        return True
    if d2 == 0.0:
        return False
    return d1 / d2 < ratio


def _feature_matrix(descriptors: Sequence[SiftDescriptor], name: str) -> np.ndarray:
    if len(descriptors) == 0:
        raise InvalidInputError(f"descriptor set {name} is empty")
    lengths = {len(d) for d in descriptors}
    if len(lengths) != 1:
        raise InvalidInputError(
            f"descriptor set {name} mixes feature lengths {sorted(lengths)}"
        )
    return np.stack([d.features for d in descriptors]).astype(np.float32)


def _check_cancel(cancel: Optional[threading.Event], query: int) -> None:
    if cancel is not None and cancel.is_set():
        raise DetectionCancelled(f"matching cancelled at query {query}")


class SiftMatcher:
    """Nearest-neighbour matching of two descriptor sets with Lowe's ratio test.

    The distance norm comes from ``params.match_distance_norm`` unless a
    distance function is passed explicitly. L1 and L2 are searched with
    ``cv2.BFMatcher``; LINF and custom distances are evaluated with numpy,
    one query at a time.
    """

    def __init__(
        self,
        params: Optional[SiftParams] = None,
        distance: Optional[DistanceFn] = None,
    ):
        self.params = SiftParams() if params is None else params
        norm = self.params.match_distance_norm
        self.distance = DISTANCES[norm] if distance is None else distance
        self.cv2_norm = CV2_NORMS.get(norm) if distance is None else None

    def match(
        self,
        set_a: Sequence[SiftDescriptor],
        set_b: Sequence[SiftDescriptor],
        cancel: Optional[threading.Event] = None,
    ) -> List[SiftMatch]:
        return [
            SiftMatch(m.descriptor1, m.descriptor2, m.distance)
            for m in self.match3(set_a, set_b, cancel)
        ]

    def match3(
        self,
        set_a: Sequence[SiftDescriptor],
        set_b: Sequence[SiftDescriptor],
        cancel: Optional[threading.Event] = None,
    ) -> List[SiftMatch3]:
        fa = _feature_matrix(set_a, "A")
        fb = _feature_matrix(set_b, "B")
        if fa.shape[1] != fb.shape[1]:
            raise InvalidInputError(
                f"feature lengths differ: {fa.shape[1]} (A) vs {fb.shape[1]} (B)"
            )
        ratio = self.params.match_ratio_threshold
        symmetric = self.params.symmetric_matching

        if self.cv2_norm is not None:
            bf = cv2.BFMatcher(self.cv2_norm, crossCheck=False)
            nearest = self._knn_cv2(bf, fa, fb, cancel)
            back_of = None
            if symmetric:
                back_of = [knn[0].trainIdx for knn in bf.knnMatch(fb, fa, k=1)]
        else:
            fa, fb = fa.astype(np.float64), fb.astype(np.float64)
            nearest = self._knn_numpy(fa, fb, cancel)
            back_of = None

        matches: List[SiftMatch3] = []
        ambiguous = 0
        one_sided = 0
        for i, (j1, d1, j2, d2) in enumerate(nearest):
            if not passes_ratio_test(d1, d2, ratio):
                ambiguous += 1
                continue
            if symmetric:
                if back_of is not None:
                    back = back_of[j1]
                else:
                    back = int(np.argmin(self.distance(fb[j1], fa)))
                if back != i:
                    one_sided += 1
                    continue
            matches.append(
                SiftMatch3(
                    set_a[i],
                    set_b[j1],
                    d1,
                    set_b[j2] if j2 >= 0 else None,
                    d2,
                )
            )
        matches.sort(key=attrgetter("distance"))
        logger.info(
            "matched %d of %d descriptors against %d (%d ambiguous, %d one-sided)",
            len(matches),
            len(set_a),
            len(set_b),
            ambiguous,
            one_sided,
        )
        return matches

    @staticmethod
    def _knn_cv2(
        bf, fa: np.ndarray, fb: np.ndarray, cancel: Optional[threading.Event]
    ) -> List[Nearest]:
        out: List[Nearest] = []
        for start in range(0, fa.shape[0], QUERY_BLOCK):
            _check_cancel(cancel, start)
            for knn in bf.knnMatch(fa[start : start + QUERY_BLOCK], fb, k=2):
                m = knn[0]
                if len(knn) < 2:
                    out.append((m.trainIdx, float(m.distance), -1, math.inf))
                    continue
                n = knn[1]
                out.append((m.trainIdx, float(m.distance), n.trainIdx, float(n.distance)))
        return out

    def _knn_numpy(
        self, fa: np.ndarray, fb: np.ndarray, cancel: Optional[threading.Event]
    ) -> List[Nearest]:
        out: List[Nearest] = []
        for i in range(fa.shape[0]):
            _check_cancel(cancel, i)
            out.append(two_nearest(self.distance(fa[i], fb)))
        return out
