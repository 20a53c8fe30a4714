from __future__ import annotations

from pathlib import Path

import cv2
import numpy as np

from .errors import InvalidInputError

W709_BGR = np.array(
    [0.072192315360734, 0.715168678767756, 0.212639005871510], dtype=np.float32
)


def read_gray_bt709(path: str | Path) -> np.ndarray:
    """Load an image file as BT.709 luma in ``[0, 1)``."""
    raw = np.fromfile(str(path), np.uint8)
    im = cv2.imdecode(raw, cv2.IMREAD_UNCHANGED)
    if im is None:
        raise InvalidInputError(f"cannot decode image {path}")
    scale = 65536.0 if im.dtype == np.uint16 else 256.0
    im = im.astype(np.float32)
    if im.ndim == 3 and im.shape[2] >= 3:
        im = (im[..., :3] * W709_BGR).sum(axis=2)
    elif im.ndim == 3:
        im = im[..., 0]
    return im / scale
