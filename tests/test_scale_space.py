import threading

import numpy as np
import pytest

from scalesift import (
    DetectionCancelled,
    DogScaleSpace,
    GaussianScaleSpace,
    InvalidInputError,
    SiftParams,
)
from scalesift.scale_space import GaussianOctave


@pytest.fixture(scope="module")
def gss(textured_img):
    return GaussianScaleSpace.build(textured_img, SiftParams(octave_count=3))


@pytest.fixture(scope="module")
def dog(gss):
    return DogScaleSpace.build(gss)


def test_octave_shapes_and_levels(gss):
    assert len(gss) == 3
    assert gss.img_dims == (160, 160)
    for o, octave in enumerate(gss):
        assert octave.shape == (320 >> o, 320 >> o)
        assert len(octave) == 6
        assert octave.delta == 0.5 * 2**o
        assert octave.data.dtype == np.float32


def test_level_sigmas_follow_scale_factor(gss):
    k = 2.0 ** (1.0 / 3.0)
    for octave in gss:
        sigmas = [level.sigma for level in octave]
        np.testing.assert_allclose(np.diff(np.log(sigmas)), np.log(k))
        assert octave[0].sigma == pytest.approx(0.8 * 2**octave.index)


def test_next_octave_starts_by_decimation(gss):
    for o in range(1, len(gss)):
        prev = gss[o - 1][3].data
        np.testing.assert_array_equal(gss[o][0].data, prev[::2, ::2])
        assert gss[o][0].sigma == pytest.approx(gss[o - 1][3].sigma)


def test_blur_grows_with_level(gss):
    octave = gss[0]
    spread = [float(level.data.std()) for level in octave]
    assert all(b < a for a, b in zip(spread, spread[1:]))


def test_levels_are_read_only(gss):
    with pytest.raises(ValueError):
        gss[0][0].data[0, 0] = 1.0


def test_level_gradients_cached(gss):
    level = gss[1][2]
    mag, ori = level.gradients
    assert level.gradients[0] is mag
    assert mag.shape == level.shape
    assert np.all((ori >= 0.0) & (ori < 2 * np.pi))


def test_dog_is_difference_of_adjacent_levels(gss, dog):
    assert len(dog) == len(gss)
    for octave, dog_oct in zip(gss, dog):
        assert len(dog_oct) == len(octave) - 1
        for q in range(len(dog_oct)):
            np.testing.assert_allclose(
                dog_oct[q], octave[q + 1].data - octave[q].data, atol=1e-6
            )
        np.testing.assert_allclose(dog_oct.sigmas, [lv.sigma for lv in octave][:-1])


def test_flat_image_has_zero_dog(flat_img):
    dog = DogScaleSpace.build(GaussianScaleSpace.build(flat_img))
    for dog_oct in dog:
        assert np.abs(dog_oct.data).max() < 1e-6


@pytest.mark.parametrize("octaves", [3, 4])
def test_small_image_rejected(octaves):
    side = 2**octaves
    with pytest.raises(InvalidInputError):
        GaussianScaleSpace.build(
            np.zeros((side, side), np.float32), SiftParams(octave_count=octaves)
        )


@pytest.mark.parametrize(
    "image",
    [
        np.zeros((32,), np.float32),
        np.zeros((32, 32, 3), np.float32),
        np.zeros((0, 32), np.float32),
        np.full((32, 32), np.nan, np.float32),
    ],
)
def test_bad_images_rejected(image):
    with pytest.raises(InvalidInputError):
        GaussianScaleSpace.build(image)


def test_dog_needs_three_levels(gss):
    short = GaussianOctave.from_stack(
        0, 0.5, np.array([0.8, 1.0]), np.zeros((2, 24, 24), np.float32)
    )
    broken = GaussianScaleSpace(gss.params, gss.layout, (short,))
    with pytest.raises(InvalidInputError, match="at least 3"):
        DogScaleSpace.build(broken)


def test_build_cancelled(textured_img):
    cancel = threading.Event()
    cancel.set()
    with pytest.raises(DetectionCancelled):
        GaussianScaleSpace.build(textured_img, cancel=cancel)
