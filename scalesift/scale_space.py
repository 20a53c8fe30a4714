from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from functools import cached_property
from typing import Iterator, Optional, Tuple

import numpy as np

from .errors import DetectionCancelled, InvalidInputError
from .kernels import downsample, gaussian_blur, gradient_polar, oversample_bilinear
from .params import ScaleSpaceLayout, SiftParams

logger = logging.getLogger(__name__)


def as_image(image) -> np.ndarray:
    """Validate a grayscale image and return it as contiguous float32."""
    arr = np.asarray(image)
    if arr.ndim != 2:
        raise InvalidInputError(f"expected a 2-D grayscale image, got shape {arr.shape}")
    if arr.size == 0:
        raise InvalidInputError(f"empty image of shape {arr.shape}")
    if not np.issubdtype(arr.dtype, np.number) or np.iscomplexobj(arr):
        raise InvalidInputError(f"image samples must be real numbers, got {arr.dtype}")
    arr = np.ascontiguousarray(arr, dtype=np.float32)
    if not np.isfinite(arr).all():
        raise InvalidInputError("image contains NaN or infinite samples")
    return arr


def _frozen(arr: np.ndarray) -> np.ndarray:
    arr.flags.writeable = False
    return arr


@dataclass(frozen=True, eq=False)
class Level:
    """One blurred image of an octave at absolute scale ``sigma``.

    ``delta`` is the distance between two samples measured in input pixels.
    """

    octave: int
    index: int
    sigma: float
    delta: float
    data: np.ndarray

    @property
    def shape(self) -> Tuple[int, int]:
        return self.data.shape

    @property
    def octave_sigma(self) -> float:
        return self.sigma / self.delta

    @cached_property
    def gradients(self) -> Tuple[np.ndarray, np.ndarray]:
        """Gradient magnitude and orientation in ``[0, 2pi)``."""
        mag = np.empty_like(self.data)
        ori = np.empty_like(self.data)
        gradient_polar(self.data, mag, ori)
        return _frozen(mag), _frozen(ori)


@dataclass(frozen=True, eq=False)
class GaussianOctave:
    index: int
    delta: float
    data: np.ndarray
    levels: Tuple[Level, ...]

    @classmethod
    def from_stack(
        cls, index: int, delta: float, sigmas: np.ndarray, stack: np.ndarray
    ) -> "GaussianOctave":
        stack = _frozen(stack)
        levels = tuple(
            Level(index, q, float(sigmas[q]), delta, stack[q])
            for q in range(stack.shape[0])
        )
        return cls(index, delta, stack, levels)

    @property
    def shape(self) -> Tuple[int, int]:
        return self.data.shape[1:]

    def __len__(self) -> int:
        return len(self.levels)

    def __getitem__(self, q: int) -> Level:
        return self.levels[q]

    def __iter__(self) -> Iterator[Level]:
        return iter(self.levels)


@dataclass(frozen=True, eq=False)
class GaussianScaleSpace:
    params: SiftParams
    layout: ScaleSpaceLayout
    octaves: Tuple[GaussianOctave, ...]

    @classmethod
    def build(
        cls,
        image,
        params: Optional[SiftParams] = None,
        cancel: Optional[threading.Event] = None,
    ) -> "GaussianScaleSpace":
        params = SiftParams() if params is None else params
        img = as_image(image)
        layout = ScaleSpaceLayout(img.shape, params)
        n_levels = layout.n_levels
        octaves: list[GaussianOctave] = []
        for o in range(layout.n_oct):
            if cancel is not None and cancel.is_set():
                raise DetectionCancelled(f"cancelled before octave {o}")
            height, width = (int(v) for v in layout.gss_shapes[o])
            stack = np.empty((n_levels, height, width), dtype=np.float32)
            if o == 0:
                seed = np.empty((height, width), dtype=np.float32)
                oversample_bilinear(img, seed, params.delta_min)
                stack[0] = gaussian_blur(seed, *layout.kernel_for(0, 0))
            else:
                downsample(octaves[-1].data[layout.n_spo], stack[0])
            for q in range(1, n_levels):
                stack[q] = gaussian_blur(stack[q - 1], *layout.kernel_for(o, q))
            octaves.append(
                GaussianOctave.from_stack(o, layout.delta(o), layout.sigmas[o], stack)
            )
            logger.debug("octave %d: %d levels of %dx%d", o, n_levels, width, height)
        return cls(params, layout, tuple(octaves))

    @property
    def img_dims(self) -> Tuple[int, int]:
        return self.layout.img_dims

    def __len__(self) -> int:
        return len(self.octaves)

    def __getitem__(self, o: int) -> GaussianOctave:
        return self.octaves[o]

    def __iter__(self) -> Iterator[GaussianOctave]:
        return iter(self.octaves)


@dataclass(frozen=True, eq=False)
class DogOctave:
    index: int
    delta: float
    sigmas: np.ndarray
    data: np.ndarray

    @property
    def shape(self) -> Tuple[int, int]:
        return self.data.shape[1:]

    def __len__(self) -> int:
        return self.data.shape[0]

    def __getitem__(self, q: int) -> np.ndarray:
        return self.data[q]


@dataclass(frozen=True, eq=False)
class DogScaleSpace:
    octaves: Tuple[DogOctave, ...]

    @classmethod
    def build(cls, gss: GaussianScaleSpace) -> "DogScaleSpace":
        octaves = []
        for octave in gss:
            if len(octave) < 3:
                raise InvalidInputError(
                    f"octave {octave.index} has {len(octave)} levels, need at least 3"
                )
            if any(level.shape != octave.shape for level in octave):
                raise InvalidInputError(f"octave {octave.index} mixes level shapes")
            diff = octave.data[1:] - octave.data[:-1]
            sigmas = np.array([level.sigma for level in octave.levels[:-1]])
            octaves.append(DogOctave(octave.index, octave.delta, sigmas, _frozen(diff)))
        return cls(tuple(octaves))

    def __len__(self) -> int:
        return len(self.octaves)

    def __getitem__(self, o: int) -> DogOctave:
        return self.octaves[o]

    def __iter__(self) -> Iterator[DogOctave]:
        return iter(self.octaves)
