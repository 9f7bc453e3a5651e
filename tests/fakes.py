"""Test doubles for the classifier and the face locator."""

from __future__ import annotations

import threading
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np

from face_locator import DetectParams, Detection, Face, PupilLocation


class ScriptedClassifier:
    """Returns canned detections per profile name and echoes pupil queries."""

    def __init__(
        self,
        by_profile: Optional[Dict[str, List[Detection]]] = None,
        detect_fn: Optional[Callable[[int, int, DetectParams], List[Detection]]] = None,
        pupil_fn: Optional[Callable[[int, int, float], PupilLocation]] = None,
    ) -> None:
        self.by_profile = by_profile or {}
        self.detect_fn = detect_fn
        self.pupil_fn = pupil_fn
        self.detect_calls: List[Tuple[str, int, int, float]] = []
        self.pupil_calls: List[Tuple[int, int, float, int]] = []

    def detect(self, gray, min_size, max_size, params, angle=0.0):
        self.detect_calls.append((params.name, min_size, max_size, angle))
        if self.detect_fn is not None:
            return self.detect_fn(min_size, max_size, params)
        return list(self.by_profile.get(params.name, []))

    def locate_pupil(self, gray, row, col, scale, perturbs, angle=0.0):
        self.pupil_calls.append((row, col, scale, perturbs))
        if self.pupil_fn is not None:
            return self.pupil_fn(row, col, scale)
        return PupilLocation(row=row, col=col, scale=scale)


class SequenceLocator:
    """Stands in for ``FaceLocator``: each call pops the next face or error."""

    def __init__(self, outcomes: Sequence[Union[Face, Exception]]) -> None:
        self._outcomes = list(outcomes)
        self._lock = threading.Lock()
        self.images: List[np.ndarray] = []

    def detect_face(self, image, angle=0.0):
        with self._lock:
            self.images.append(image)
            outcome = self._outcomes.pop(0) if len(self._outcomes) > 1 else self._outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


def make_face(
    left: Tuple[int, int] = (180, 170),
    right: Tuple[int, int] = (180, 230),
    scale: int = 100,
    quality: float = 10.0,
) -> Face:
    row = (left[0] + right[0]) // 2 + 10
    col = (left[1] + right[1]) // 2
    return Face(
        detection=Detection(row=row, col=col, scale=scale, quality=quality),
        left_eye=PupilLocation(row=left[0], col=left[1], scale=scale * 0.4),
        right_eye=PupilLocation(row=right[0], col=right[1], scale=scale * 0.4),
    )


def make_photo(height: int = 400, width: int = 400, seed: int = 1) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)


def encode(image: np.ndarray, ext: str = ".png") -> bytes:
    ok, buf = cv2.imencode(ext, image)
    assert ok
    return buf.tobytes()
