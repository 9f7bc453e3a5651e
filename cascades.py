"""OpenCV-backed cascade models used by ``FaceLocator``.

``HaarCascadeClassifier`` wraps OpenCV's pretrained frontal-face Haar cascade
and exposes the ``FaceClassifier`` protocol.  Pupils are refined by
``DarkPupilLocator``, which looks for a small dark blob around an approximate
eye position and repeats the search from randomly perturbed windows so one
bad window does not decide the answer.

Models are read-only after construction and are meant to be built once per
process and shared between worker threads.
"""

from __future__ import annotations

import logging
import os
from typing import List, Optional, Tuple

import cv2
import numpy as np

from errors import CascadeLoadError
from face_locator import DetectParams, Detection, PupilLocation

logger = logging.getLogger(__name__)

DEFAULT_FACE_CASCADE = "haarcascade_frontalface_default.xml"

# Perturbation ranges for the pupil search, relative to the window scale.
_PERTURB_SHIFT = 0.075
_PERTURB_SCALE_LOW = 0.925
_PERTURB_SCALE_HIGH = 1.094

# Blob scale (iris radius) and surround width, relative to the window size.
_BLOB_SIGMA = 0.06
_SURROUND_RATIO = 3.0


def _default_cascade_path() -> str:
    return os.path.join(cv2.data.haarcascades, DEFAULT_FACE_CASCADE)


def _rotated_view(gray: np.ndarray, angle: float) -> Tuple[np.ndarray, Optional[np.ndarray], Optional[np.ndarray]]:
    """Rotate ``gray`` counter-clockwise by ``angle`` degrees about its center.

    Returns the rotated view together with the forward and inverse affine
    matrices, or ``None`` matrices when no rotation is needed.
    """
    if not angle:
        return gray, None, None
    rows, cols = gray.shape[:2]
    forward = cv2.getRotationMatrix2D((cols / 2.0, rows / 2.0), angle, 1.0)
    view = cv2.warpAffine(gray, forward, (cols, rows), flags=cv2.INTER_LINEAR)
    inverse = cv2.invertAffineTransform(forward)
    return view, forward, inverse


def _map_point(matrix: Optional[np.ndarray], x: float, y: float) -> Tuple[float, float]:
    if matrix is None:
        return x, y
    nx = matrix[0, 0] * x + matrix[0, 1] * y + matrix[0, 2]
    ny = matrix[1, 0] * x + matrix[1, 1] * y + matrix[1, 2]
    return float(nx), float(ny)


class DarkPupilLocator:
    """Finds the dark, compact blob (iris and pupil) nearest an eye estimate.

    Each window is scored with a centre-surround response (wide blur minus
    narrow blur), which peaks on small dark spots ringed by brighter sclera
    and stays low along eyebrows, lashes and hair edges.
    """

    def __init__(self, seed: int = 0) -> None:
        self.seed = seed

    def locate(self, gray: np.ndarray, row: int, col: int, scale: float, perturbs: int) -> PupilLocation:
        rows, cols = gray.shape[:2]
        if scale <= 0 or not (0 <= row < rows and 0 <= col < cols):
            return PupilLocation(row=-1, col=-1, scale=scale)

        # A fresh generator per call keeps concurrent jobs independent.
        rng = np.random.default_rng(self.seed)
        found_rows: List[int] = []
        found_cols: List[int] = []
        for _ in range(max(1, perturbs)):
            size = scale * rng.uniform(_PERTURB_SCALE_LOW, _PERTURB_SCALE_HIGH)
            cy = int(round(row + scale * rng.uniform(-_PERTURB_SHIFT, _PERTURB_SHIFT)))
            cx = int(round(col + scale * rng.uniform(-_PERTURB_SHIFT, _PERTURB_SHIFT)))
            half = max(1, int(size / 2))

            r0, r1 = max(0, cy - half), min(rows, cy + half + 1)
            c0, c1 = max(0, cx - half), min(cols, cx + half + 1)
            window = gray[r0:r1, c0:c1]
            if window.size == 0:
                continue

            response = _blob_response(window.astype(np.float32), size)
            _, _, _, max_loc = cv2.minMaxLoc(response)
            found_rows.append(r0 + max_loc[1])
            found_cols.append(c0 + max_loc[0])

        if not found_rows:
            return PupilLocation(row=-1, col=-1, scale=scale)
        return PupilLocation(
            row=int(np.median(found_rows)),
            col=int(np.median(found_cols)),
            scale=scale,
        )


def _blob_response(window: np.ndarray, size: float) -> np.ndarray:
    narrow = max(1.0, _BLOB_SIGMA * size)
    wide = _SURROUND_RATIO * narrow
    inner = cv2.GaussianBlur(window, (0, 0), sigmaX=narrow, borderType=cv2.BORDER_REPLICATE)
    outer = cv2.GaussianBlur(window, (0, 0), sigmaX=wide, borderType=cv2.BORDER_REPLICATE)
    return outer - inner


class HaarCascadeClassifier:
    """Face candidates from OpenCV's Haar cascade, pupils from ``DarkPupilLocator``.

    OpenCV slides its window with a fixed stride, so ``DetectParams.shift_factor``
    has no effect on this backend.
    """

    def __init__(
        self,
        cascade_path: Optional[str] = None,
        pupil_locator: Optional[DarkPupilLocator] = None,
    ) -> None:
        if not hasattr(cv2, "CascadeClassifier"):
            raise CascadeLoadError(
                f"OpenCV {cv2.__version__} has no CascadeClassifier; install opencv-python<5"
            )
        path = cascade_path or _default_cascade_path()
        if not os.path.isfile(path):
            raise CascadeLoadError(f"Cascade file not found: {path}")
        try:
            cascade = cv2.CascadeClassifier(path)
        except cv2.error as exc:
            raise CascadeLoadError(f"Could not load cascade {path}: {exc}") from exc
        if cascade.empty():
            raise CascadeLoadError(f"Could not load cascade {path}")

        self.cascade_path = path
        self._cascade = cascade
        self._pupils = pupil_locator or DarkPupilLocator()
        logger.debug("Loaded face cascade from %s", path)

    def detect(
        self,
        gray: np.ndarray,
        min_size: int,
        max_size: int,
        params: DetectParams,
        angle: float = 0.0,
    ) -> List[Detection]:
        view, _, inverse = _rotated_view(gray, angle)
        min_size = max(0, int(min_size))
        max_size = max(min_size, int(max_size))
        rects, _levels, weights = self._cascade.detectMultiScale3(
            view,
            scaleFactor=params.scale_factor,
            minNeighbors=params.min_neighbors,
            minSize=(min_size, min_size),
            maxSize=(max_size, max_size),
            outputRejectLevels=True,
        )
        if len(rects) == 0:
            return []

        scores = np.asarray(weights, dtype=np.float64).reshape(-1)
        detections: List[Detection] = []
        for (x, y, w, h), score in zip(np.asarray(rects).reshape(-1, 4), scores):
            cx, cy = _map_point(inverse, x + w / 2.0, y + h / 2.0)
            detections.append(
                Detection(
                    row=int(round(cy)),
                    col=int(round(cx)),
                    scale=int(w),
                    quality=float(score),
                )
            )
        return detections

    def locate_pupil(
        self,
        gray: np.ndarray,
        row: int,
        col: int,
        scale: float,
        perturbs: int,
        angle: float = 0.0,
    ) -> PupilLocation:
        view, forward, inverse = _rotated_view(gray, angle)
        vx, vy = _map_point(forward, col, row)
        found = self._pupils.locate(view, int(round(vy)), int(round(vx)), scale, perturbs)
        if forward is None or not found.detected:
            return found
        x, y = _map_point(inverse, found.col, found.row)
        return PupilLocation(row=int(round(y)), col=int(round(x)), scale=found.scale)


def load_default_models(cascade_path: Optional[str] = None) -> HaarCascadeClassifier:
    """Build the process-wide classifier; raises ``CascadeLoadError`` on failure."""
    return HaarCascadeClassifier(cascade_path=cascade_path)
