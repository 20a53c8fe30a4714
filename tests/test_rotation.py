import math

import cv2
import numpy as np
import pytest

from scalesift import SiftDetector, SiftMatcher


def rotate(img: np.ndarray, degrees: float) -> np.ndarray:
    h, w = img.shape
    m = cv2.getRotationMatrix2D(((w - 1) / 2.0, (h - 1) / 2.0), degrees, 1.0)
    return cv2.warpAffine(
        img, m, (w, h), flags=cv2.INTER_CUBIC, borderMode=cv2.BORDER_REPLICATE
    )


def circular_diff(a: float, b: float) -> float:
    return abs((a - b + math.pi) % (2 * math.pi) - math.pi)


@pytest.mark.parametrize("degrees", [30.0, 90.0])
def test_rotation_is_recovered(textured_img, textured_descriptors, degrees):
    rotated = rotate(textured_img, degrees)
    desc_r = SiftDetector().detect(rotated)
    matches = SiftMatcher().match(textured_descriptors, desc_r)
    assert len(matches) >= 5

    # a counter-clockwise turn of the picture (y pointing down) turns every
    # gradient by -theta
    expected = (-math.radians(degrees)) % (2 * math.pi)
    deltas = [
        (m.descriptor2.orientation - m.descriptor1.orientation) % (2 * math.pi)
        for m in matches
    ]
    good = sum(circular_diff(d, expected) < 0.2 for d in deltas)
    assert good >= 0.6 * len(matches)

    h, w = textured_img.shape
    c = np.array([(w - 1) / 2.0, (h - 1) / 2.0])
    t = math.radians(degrees)
    rot = np.array([[math.cos(t), math.sin(t)], [-math.sin(t), math.cos(t)]])
    close = 0
    for m in matches:
        p = rot @ (np.array([m.descriptor1.x, m.descriptor1.y]) - c) + c
        if np.hypot(*(p - [m.descriptor2.x, m.descriptor2.y])) < 2.0:
            close += 1
    assert close >= 0.6 * len(matches)


def rotate_and_scale(img: np.ndarray, degrees: float, scale: float):
    """Turn ``img`` about its centre and enlarge it into a bigger frame.

    Returns the warped image and the centres of the source and target frames.
    """
    h, w = img.shape
    out_w, out_h = int(round(w * scale)), int(round(h * scale))
    c_src = np.array([(w - 1) / 2.0, (h - 1) / 2.0])
    c_dst = np.array([(out_w - 1) / 2.0, (out_h - 1) / 2.0])
    m = cv2.getRotationMatrix2D(tuple(c_src), degrees, scale)
    m[:, 2] += c_dst - c_src
    warped = cv2.warpAffine(
        img, m, (out_w, out_h), flags=cv2.INTER_CUBIC, borderMode=cv2.BORDER_REPLICATE
    )
    return warped, c_src, c_dst


def test_rotation_and_scale_are_recovered(textured_img, textured_descriptors):
    degrees, scale = 30.0, 1.4
    warped, c_src, c_dst = rotate_and_scale(textured_img, degrees, scale)
    matches = SiftMatcher().match(textured_descriptors, SiftDetector().detect(warped))
    assert len(matches) >= 5

    expected = (-math.radians(degrees)) % (2 * math.pi)
    good = sum(
        circular_diff(
            (m.descriptor2.orientation - m.descriptor1.orientation) % (2 * math.pi),
            expected,
        )
        < 0.2
        for m in matches
    )
    assert good >= 0.5 * len(matches)

    t = math.radians(degrees)
    rot = scale * np.array([[math.cos(t), math.sin(t)], [-math.sin(t), math.cos(t)]])
    located = []
    for m in matches:
        p = rot @ (np.array([m.descriptor1.x, m.descriptor1.y]) - c_src) + c_dst
        if np.hypot(*(p - [m.descriptor2.x, m.descriptor2.y])) < 3.0:
            located.append(m)
    assert len(located) >= 0.5 * len(matches)

    log_ratios = [
        math.log2(m.descriptor2.scale / m.descriptor1.scale / scale) for m in located
    ]
    assert abs(float(np.median(log_ratios))) < 0.2
    assert sum(abs(r) < 0.25 for r in log_ratios) >= 0.5 * len(located)
