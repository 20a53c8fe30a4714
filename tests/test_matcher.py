import threading

import numpy as np
import pytest

from scalesift import (
    DetectionCancelled,
    InvalidInputError,
    MatchDistanceNorm,
    SiftDescriptor,
    SiftMatch3,
    SiftMatcher,
    SiftParams,
)
from scalesift.matcher import (
    CV2_NORMS,
    DISTANCES,
    QUERY_BLOCK,
    l1_distance,
    l2_distance,
    linf_distance,
    passes_ratio_test,
)


def make_set(features):
    out = []
    for i, f in enumerate(np.asarray(features, dtype=np.float32)):
        f = f.copy()
        f.flags.writeable = False
        out.append(SiftDescriptor(float(i), 0.0, 1.0, 0.0, 1.0, 0, 1.0, f))
    return out


@pytest.fixture
def random_sets():
    rng = np.random.default_rng(3)
    a = rng.random((40, 16))
    b = np.concatenate([a[:25] + rng.normal(0, 0.02, (25, 16)), rng.random((30, 16))])
    return make_set(a), make_set(b)


def test_distances():
    a = np.array([0.0, 0.0, 0.0])
    b = np.array([[3.0, 4.0, 0.0], [1.0, -2.0, 2.0]])
    np.testing.assert_allclose(l1_distance(a, b), [7.0, 5.0])
    np.testing.assert_allclose(l2_distance(a, b), [5.0, 3.0])
    np.testing.assert_allclose(linf_distance(a, b), [4.0, 2.0])


def test_ratio_test():
    assert passes_ratio_test(0.5, 1.0, 0.8)
    assert not passes_ratio_test(0.8, 1.0, 0.8)
    assert not passes_ratio_test(0.0, 0.0, 0.8)
    assert passes_ratio_test(3.0, float("inf"), 0.8)


@pytest.mark.parametrize("norm", list(MatchDistanceNorm))
def test_matches_are_nearest_and_pass_ratio(random_sets, norm):
    set_a, set_b = random_sets
    matcher = SiftMatcher(SiftParams(match_distance_norm=norm))
    fb = np.stack([d.features for d in set_b]).astype(np.float64)
    matches = matcher.match3(set_a, set_b)
    assert matches
    for m in matches:
        dists = matcher.distance(m.descriptor1.features.astype(np.float64), fb)
        order = np.argsort(dists)
        assert m.descriptor2 is set_b[order[0]]
        assert m.distance == pytest.approx(dists[order[0]], rel=1e-4)
        assert m.second_distance == pytest.approx(dists[order[1]], rel=1e-4)
        assert m.distance < 0.8 * m.second_distance
        assert m.ratio < 0.8
    distances = [m.distance for m in matches]
    assert distances == sorted(distances)


def test_noisy_copies_are_recovered(random_sets):
    set_a, set_b = random_sets
    matches = SiftMatcher().match(set_a, set_b)
    found = {(int(m.descriptor1.x), int(m.descriptor2.x)) for m in matches}
    assert {(i, i) for i in range(25)} <= found


def test_symmetric_matches_pass_reverse_check(random_sets):
    set_a, set_b = random_sets
    params = SiftParams(symmetric_matching=True, match_ratio_threshold=0.95)
    matcher = SiftMatcher(params)
    fa = np.stack([d.features for d in set_a]).astype(np.float64)
    matches = matcher.match3(set_a, set_b)
    asymmetric = SiftMatcher(params.replace(symmetric_matching=False)).match3(set_a, set_b)
    assert len(matches) <= len(asymmetric)
    for m in matches:
        back = matcher.distance(m.descriptor2.features.astype(np.float64), fa)
        assert set_a[int(np.argmin(back))] is m.descriptor1


def test_self_match_is_one_to_one(textured_descriptors):
    matches = SiftMatcher().match(textured_descriptors, textured_descriptors)
    assert len(matches) == len(textured_descriptors)
    for m in matches:
        assert m.descriptor1 is m.descriptor2
        assert m.distance < 1e-6
    assert len({id(m.descriptor1) for m in matches}) == len(matches)


def test_single_candidate_is_accepted():
    set_a = make_set([[1.0, 0.0], [0.0, 1.0]])
    set_b = make_set([[0.9, 0.1]])
    matches = SiftMatcher().match3(set_a, set_b)
    assert len(matches) == 2
    assert all(isinstance(m, SiftMatch3) and m.second is None for m in matches)
    assert all(m.ratio == 0.0 for m in matches)


def test_duplicate_candidates_are_ambiguous():
    set_a = make_set([[1.0, 0.0]])
    set_b = make_set([[1.0, 0.0], [1.0, 0.0]])
    assert SiftMatcher().match(set_a, set_b) == []


def test_empty_set_rejected():
    one = make_set([[1.0, 0.0]])
    with pytest.raises(InvalidInputError, match="empty"):
        SiftMatcher().match([], one)
    with pytest.raises(InvalidInputError, match="empty"):
        SiftMatcher().match(one, [])


def test_length_mismatch_rejected():
    with pytest.raises(InvalidInputError, match="feature lengths"):
        SiftMatcher().match(make_set([[1.0, 0.0]]), make_set([[1.0, 0.0, 0.0]]))
    mixed = make_set([[1.0, 0.0]]) + make_set([[1.0, 0.0, 0.0]])
    with pytest.raises(InvalidInputError, match="mixes"):
        SiftMatcher().match(mixed, make_set([[1.0, 0.0]]))


def test_custom_distance():
    calls = []

    def dot_distance(a, b):
        calls.append(a.shape)
        return 1.0 - b @ a

    set_a = make_set([[1.0, 0.0]])
    set_b = make_set([[0.0, 1.0], [1.0, 0.0]])
    matches = SiftMatcher(distance=dot_distance).match(set_a, set_b)
    assert calls and matches[0].descriptor2 is set_b[1]


@pytest.mark.parametrize("norm", list(MatchDistanceNorm))
def test_matching_cancelled(random_sets, norm):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(DetectionCancelled):
        SiftMatcher(SiftParams(match_distance_norm=norm)).match(*random_sets, cancel=cancel)


def test_norm_backends():
    l1 = SiftMatcher(SiftParams(match_distance_norm="L1"))
    assert l1.cv2_norm == CV2_NORMS[MatchDistanceNorm.L1]
    assert SiftMatcher().cv2_norm == CV2_NORMS[MatchDistanceNorm.L2]
    assert SiftMatcher(SiftParams(match_distance_norm="LINF")).cv2_norm is None
    assert SiftMatcher(distance=l2_distance).cv2_norm is None


@pytest.mark.parametrize("norm", [MatchDistanceNorm.L1, MatchDistanceNorm.L2])
@pytest.mark.parametrize("symmetric", [False, True])
def test_opencv_and_numpy_searches_agree(random_sets, norm, symmetric):
    params = SiftParams(match_distance_norm=norm, symmetric_matching=symmetric)
    fast = SiftMatcher(params).match3(*random_sets)
    slow = SiftMatcher(params, distance=DISTANCES[norm]).match3(*random_sets)
    by_query = {id(m.descriptor1): m for m in slow}
    assert len(fast) == len(slow)
    for f in fast:
        s = by_query[id(f.descriptor1)]
        assert f.descriptor2 is s.descriptor2
        assert f.second is s.second
        assert f.distance == pytest.approx(s.distance, rel=1e-4)


def test_many_queries_span_several_blocks():
    rng = np.random.default_rng(11)
    b = rng.random((50, 8))
    idx = rng.integers(0, 50, QUERY_BLOCK + 37)
    a = b[idx] + rng.normal(0, 1e-3, (idx.size, 8))
    set_a, set_b = make_set(a), make_set(b)
    matches = SiftMatcher().match(set_a, set_b)
    assert len(matches) == idx.size
    assert all(set_b[idx[int(m.descriptor1.x)]] is m.descriptor2 for m in matches)
