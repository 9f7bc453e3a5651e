"""Geometry and tone helpers for portrait normalisation.

All images are OpenCV-style ``uint8`` arrays.  Rotation always returns BGRA so
the corners exposed by the rotation can be marked fully transparent; the crop
search then reads that alpha channel to stay clear of them.
"""

from __future__ import annotations

import math
from typing import Callable, Optional, Tuple

import cv2
import numpy as np

from errors import PupilsUndetectedError
from face_locator import Face

# Alpha value a corner pixel must reach to count as opaque.
OPAQUE_ALPHA = 255
# Crop center sits this fraction of the crop height below the eye line.
CENTER_DROP_RATIO = 0.1


def ensure_bgra(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return cv2.cvtColor(image, cv2.COLOR_GRAY2BGRA)
    channels = image.shape[2]
    if channels == 4:
        return image
    if channels == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2BGRA)
    if channels == 1:
        return cv2.cvtColor(image[:, :, 0], cv2.COLOR_GRAY2BGRA)
    raise ValueError(f"Unsupported channel count: {channels}")


def alpha_channel(image: np.ndarray) -> np.ndarray:
    """Return the alpha plane, or a fully opaque plane for images without one."""
    if image.ndim == 3 and image.shape[2] == 4:
        return image[:, :, 3]
    return np.full(image.shape[:2], 255, dtype=np.uint8)


# Rotation ------------------------------------------------------------------

def rotation_angle(face: Face) -> float:
    """Angle in degrees (counter-clockwise) that makes the pupil line horizontal."""
    left, right = face.left_eye, face.right_eye
    return math.degrees(
        math.atan2(
            -float(left.row - right.row),
            -float(left.col - right.col),
        )
    )


def rotate_image(image: np.ndarray, angle: float) -> np.ndarray:
    """Rotate counter-clockwise about the center, growing the canvas to fit.

    Pixels that do not come from the source are fully transparent.
    """
    bgra = ensure_bgra(image)
    h, w = bgra.shape[:2]
    cx, cy = w / 2.0, h / 2.0
    matrix = cv2.getRotationMatrix2D((cx, cy), angle, 1.0)
    cos_a, sin_a = abs(matrix[0, 0]), abs(matrix[0, 1])
    new_w = max(1, int(round(h * sin_a + w * cos_a)))
    new_h = max(1, int(round(h * cos_a + w * sin_a)))
    matrix[0, 2] += new_w / 2.0 - cx
    matrix[1, 2] += new_h / 2.0 - cy
    return cv2.warpAffine(
        bgra,
        matrix,
        (new_w, new_h),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=(0, 0, 0, 0),
    )


def rotate_to_level(image: np.ndarray, face: Face) -> np.ndarray:
    if not face.pupils_detected:
        raise PupilsUndetectedError("cannot level a face without both pupils", face=face)
    return rotate_image(image, rotation_angle(face))


# Cropping ------------------------------------------------------------------

def crop_rect(cx: int, cy: int, width: int, height: int) -> Tuple[int, int, int, int]:
    """Return ``(x1, y1, x2, y2)`` with exclusive end coordinates."""
    x1 = cx - width // 2
    y1 = cy - height // 2
    return x1, y1, x1 + width, y1 + height


def corners_opaque(alpha: np.ndarray, cx: int, cy: int, width: int, height: int) -> bool:
    """True when all four corner pixels of the rectangle are inside and opaque."""
    rows, cols = alpha.shape[:2]
    x1, y1, x2, y2 = crop_rect(cx, cy, width, height)
    for x, y in ((x1, y1), (x2 - 1, y1), (x1, y2 - 1), (x2 - 1, y2 - 1)):
        if not (0 <= x < cols and 0 <= y < rows):
            return False
        if alpha[y, x] < OPAQUE_ALPHA:
            return False
    return True


def bisect_crop_width(min_width: int, max_width: int, is_opaque: Callable[[int], bool]) -> int:
    """Widest width reachable by bisection for which ``is_opaque`` holds.

    ``max_width`` wins outright when it passes.  Otherwise the bracket between
    the last good width (starting at ``min_width``, assumed good) and the last
    bad width is halved until the midpoint falls back onto the good bound.
    """
    max_width = max(min_width, max_width)
    if is_opaque(max_width):
        return max_width

    good, bad = min_width, max_width
    while True:
        width = (good + bad) // 2
        if width == good:
            return good
        if is_opaque(width):
            good = width
        else:
            bad = width


def crop_center(face: Face, height: int) -> Tuple[int, int]:
    """Return ``(cx, cy)``: the eye midpoint dropped by a tenth of ``height``."""
    row, col = face.eye_midpoint
    return col, row + int(height * CENTER_DROP_RATIO)


def crop_image(image: np.ndarray, cx: int, cy: int, width: int, height: int) -> np.ndarray:
    rows, cols = image.shape[:2]
    x1, y1, x2, y2 = crop_rect(cx, cy, width, height)
    xi1, yi1 = max(0, x1), max(0, y1)
    xi2, yi2 = min(cols, x2), min(rows, y2)
    if xi2 <= xi1 or yi2 <= yi1:
        raise ValueError(f"Crop rectangle {x1},{y1},{x2},{y2} lies outside a {cols}x{rows} image")
    return image[yi1:yi2, xi1:xi2].copy()


def adaptive_crop(
    image: np.ndarray,
    face: Face,
    aspect_ratio: float,
    max_width_ratio: float,
    alpha: Optional[np.ndarray] = None,
) -> np.ndarray:
    """Widest ``aspect_ratio`` crop around the eyes whose corners are opaque.

    Widths range from the face scale to ``face.scale * max_width_ratio``.  Only
    the corners are sampled, so a transparent notch along an edge can slip
    through; for the convex wedges left by a rotation this does not happen.
    """
    if aspect_ratio <= 0:
        raise ValueError("aspect_ratio must be > 0")
    if alpha is None:
        alpha = alpha_channel(image)

    def rect_for(width: int) -> Tuple[int, int, int, int]:
        height = int(width / aspect_ratio)
        cx, cy = crop_center(face, height)
        return cx, cy, width, height

    min_width = face.scale
    max_width = int(face.scale * max_width_ratio)
    width = bisect_crop_width(min_width, max_width, lambda w: corners_opaque(alpha, *rect_for(w)))
    return crop_image(image, *rect_for(width))


# Tone ----------------------------------------------------------------------

_LEVELS = np.arange(256, dtype=np.float64)


def _to_lut(values: np.ndarray) -> np.ndarray:
    return np.clip(np.floor(values + 0.5), 0, 255).astype(np.uint8)


def brightness_lut(percentage: float) -> np.ndarray:
    percentage = min(max(percentage, -100.0), 100.0)
    return _to_lut(_LEVELS + 255.0 * percentage / 100.0)


def contrast_lut(percentage: float) -> np.ndarray:
    """Stretch (or squeeze) levels around mid grey.

    Negative percentages scale linearly towards grey.  Positive ones use the
    steeper ``1 / (2 - v)`` slope, and +100 becomes a hard threshold at 128.
    """
    percentage = min(max(percentage, -100.0), 100.0)
    v = (100.0 + percentage) / 100.0
    if v >= 2.0:
        return np.where(_LEVELS >= 128, 255, 0).astype(np.uint8)
    slope = v if v <= 1.0 else 1.0 / (2.0 - v)
    return _to_lut((0.5 + (_LEVELS / 255.0 - 0.5) * slope) * 255.0)


def gamma_lut(gamma: float) -> np.ndarray:
    exponent = 1.0 / max(gamma, 0.0001)
    return _to_lut(np.power(_LEVELS / 255.0, exponent) * 255.0)


def tone_map(image: np.ndarray, brightness: float, contrast: float, gamma: float) -> np.ndarray:
    """Brightness, then contrast, then gamma on the colour channels.

    Each step rounds back to 8 bits before the next one, so the combined table
    equals running the three adjustments one after another.  Alpha is left
    alone.  ``(0, 0, 1.0)`` is the identity.
    """
    lut = gamma_lut(gamma)[contrast_lut(contrast)[brightness_lut(brightness)]]
    if image.ndim == 2:
        return lut[image]
    out = image.copy()
    colour = min(3, image.shape[2])
    out[:, :, :colour] = lut[image[:, :, :colour]]
    return out
