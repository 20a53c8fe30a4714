from .descriptor import SiftDescriptor
from .detector import DetectionStats, SiftDetector
from .errors import DetectionCancelled, InvalidInputError, SiftError
from .keypoint import KeyPoint
from .matcher import SiftMatch, SiftMatch3, SiftMatcher
from .params import MatchDistanceNorm, SiftParams
from .scale_space import DogScaleSpace, GaussianScaleSpace

__all__ = [
    "DetectionCancelled",
    "DetectionStats",
    "DogScaleSpace",
    "GaussianScaleSpace",
    "InvalidInputError",
    "KeyPoint",
    "MatchDistanceNorm",
    "SiftDescriptor",
    "SiftDetector",
    "SiftError",
    "SiftMatch",
    "SiftMatch3",
    "SiftMatcher",
    "SiftParams",
]
