"""Single-face localization on top of a cascade classifier.

The locator walks an ordered table of detection profiles (``fast`` first,
``slow`` as a fallback), merges overlapping candidates, keeps the best scoring
one and then refines both pupils around it.  The classifier itself is a
collaborator described by the ``FaceClassifier`` protocol; ``cascades.py``
provides the OpenCV-backed implementation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Protocol, Sequence, Tuple

import cv2
import numpy as np

from errors import FaceUndetectedError

logger = logging.getLogger(__name__)

# Pupil search windows, as fractions of the face scale.
PUPIL_ROW_OFFSET = 0.085
PUPIL_COL_OFFSET = 0.185
PUPIL_SCALE = 0.4
DEFAULT_PERTURBS = 50


@dataclass(frozen=True)
class DetectParams:
    """Tuning profile for one detection pass.

    Size factors are fractions of the image's largest dimension.  ``iou_threshold``
    controls duplicate merging; a value of zero or less keeps every candidate.
    """

    name: str
    min_size_factor: float
    max_size_factor: float
    shift_factor: float
    scale_factor: float
    iou_threshold: float
    min_neighbors: int = 3


FAST_DETECT_PARAMS = DetectParams(
    name="fast",
    min_size_factor=0.2,
    max_size_factor=0.8,
    shift_factor=0.15,
    scale_factor=1.15,
    iou_threshold=0.15,
)

SLOW_DETECT_PARAMS = DetectParams(
    name="slow",
    min_size_factor=0.1,
    max_size_factor=0.9,
    shift_factor=0.05,
    scale_factor=1.03,
    iou_threshold=0.0,
)

DETECTION_PROFILES: Tuple[DetectParams, ...] = (FAST_DETECT_PARAMS, SLOW_DETECT_PARAMS)


@dataclass(frozen=True)
class Detection:
    row: int
    col: int
    scale: int
    quality: float

    @property
    def bounds(self) -> Tuple[float, float, float, float]:
        half = self.scale / 2.0
        return (self.col - half, self.row - half, self.col + half, self.row + half)


@dataclass(frozen=True)
class PupilLocation:
    row: int
    col: int
    scale: float

    @property
    def detected(self) -> bool:
        return self.row > 0 and self.col > 0


@dataclass(frozen=True)
class Face:
    """A chosen detection plus both refined pupils.

    Coordinates only hold for the pixel orientation the face was detected in;
    rotating the image requires running detection again.
    """

    detection: Detection
    left_eye: PupilLocation
    right_eye: PupilLocation

    @property
    def scale(self) -> int:
        return self.detection.scale

    @property
    def pupils_detected(self) -> bool:
        return self.left_eye.detected and self.right_eye.detected

    @property
    def eye_midpoint(self) -> Tuple[int, int]:
        """Return ``(row, col)`` halfway between the pupils."""
        row = (self.left_eye.row + self.right_eye.row) // 2
        col = (self.left_eye.col + self.right_eye.col) // 2
        return row, col


class FaceClassifier(Protocol):
    """Protocol for the cascade models driven by ``FaceLocator``."""

    def detect(
        self,
        gray: np.ndarray,
        min_size: int,
        max_size: int,
        params: DetectParams,
        angle: float = 0.0,
    ) -> List[Detection]:
        """Return raw face candidates (unmerged) found in ``gray``."""
        ...

    def locate_pupil(
        self,
        gray: np.ndarray,
        row: int,
        col: int,
        scale: float,
        perturbs: int,
        angle: float = 0.0,
    ) -> PupilLocation:
        """Refine an approximate pupil position; non-positive coordinates mean failure."""
        ...


def to_grayscale(image: np.ndarray) -> np.ndarray:
    if image.ndim == 2:
        return image
    channels = image.shape[2]
    if channels == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    if channels == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    if channels == 1:
        return image[:, :, 0]
    raise ValueError(f"Unsupported channel count: {channels}")


def detection_iou(a: Detection, b: Detection) -> float:
    ax1, ay1, ax2, ay2 = a.bounds
    bx1, by1, bx2, by2 = b.bounds
    iw = max(0.0, min(ax2, bx2) - max(ax1, bx1))
    ih = max(0.0, min(ay2, by2) - max(ay1, by1))
    inter = iw * ih
    if inter <= 0.0:
        return 0.0
    union = a.scale * a.scale + b.scale * b.scale - inter
    return inter / union if union > 0 else 0.0


def cluster_detections(detections: Sequence[Detection], iou_threshold: float) -> List[Detection]:
    """Merge overlapping candidates whose IoU exceeds ``iou_threshold``.

    Candidates are visited in first-seen order; every group is replaced by the
    average position/scale with the summed quality.
    """
    if iou_threshold <= 0 or len(detections) < 2:
        return list(detections)

    assigned = [False] * len(detections)
    clusters: List[Detection] = []
    for i, anchor in enumerate(detections):
        if assigned[i]:
            continue
        members: List[Detection] = []
        for j in range(i, len(detections)):
            if assigned[j]:
                continue
            if j == i or detection_iou(anchor, detections[j]) > iou_threshold:
                assigned[j] = True
                members.append(detections[j])
        n = len(members)
        clusters.append(
            Detection(
                row=int(sum(m.row for m in members) / n),
                col=int(sum(m.col for m in members) / n),
                scale=int(sum(m.scale for m in members) / n),
                quality=float(sum(m.quality for m in members)),
            )
        )
    return clusters


def choose_best_face(detections: Sequence[Detection]) -> Detection:
    """Return the candidate with the highest quality; ties keep the earliest."""
    if not detections:
        raise ValueError("choose_best_face needs at least one detection")
    if len(detections) == 1:
        return detections[0]
    best = detections[0]
    for det in detections[1:]:
        if det.quality > best.quality:
            best = det
    return best


class FaceLocator:
    def __init__(
        self,
        classifier: FaceClassifier,
        profiles: Sequence[DetectParams] = DETECTION_PROFILES,
        perturbs: int = DEFAULT_PERTURBS,
    ) -> None:
        if not profiles:
            raise ValueError("At least one detection profile is required")
        self.classifier = classifier
        self.profiles = tuple(profiles)
        self.perturbs = perturbs

    def detect_faces(self, gray: np.ndarray, params: DetectParams, angle: float = 0.0) -> List[Detection]:
        rows, cols = gray.shape[:2]
        max_dim = max(rows, cols)
        min_size = int(params.min_size_factor * max_dim)
        max_size = int(params.max_size_factor * max_dim)
        raw = self.classifier.detect(gray, min_size, max_size, params, angle)
        faces = cluster_detections(raw, params.iou_threshold)
        logger.debug(
            "profile=%s raw=%d merged=%d size_range=%d-%d",
            params.name,
            len(raw),
            len(faces),
            min_size,
            max_size,
        )
        return faces

    def detect_pupils(
        self,
        gray: np.ndarray,
        detection: Detection,
        angle: float = 0.0,
    ) -> Tuple[PupilLocation, PupilLocation]:
        row = detection.row - int(PUPIL_ROW_OFFSET * detection.scale)
        col_offset = int(PUPIL_COL_OFFSET * detection.scale)
        scale = detection.scale * PUPIL_SCALE

        left = self.classifier.locate_pupil(gray, row, detection.col - col_offset, scale, self.perturbs, angle)
        right = self.classifier.locate_pupil(gray, row, detection.col + col_offset, scale, self.perturbs, angle)
        return left, right

    def detect_face(self, image: np.ndarray, angle: float = 0.0) -> Face:
        """Locate the single best face in ``image`` and refine its pupils.

        Raises:
            FaceUndetectedError: If no profile yields a candidate.

        The returned face may have ``pupils_detected == False``; deciding what
        to do about it is left to the caller.
        """
        gray = to_grayscale(image)

        faces: List[Detection] = []
        for params in self.profiles:
            faces = self.detect_faces(gray, params, angle)
            if faces:
                break
            logger.debug("No face found with %s profile", params.name)
        if not faces:
            raise FaceUndetectedError()

        best = choose_best_face(faces)
        left, right = self.detect_pupils(gray, best, angle)
        face = Face(detection=best, left_eye=left, right_eye=right)
        if not face.pupils_detected:
            logger.debug(
                "Pupils undetected for face at row=%d col=%d (left=%s right=%s)",
                best.row,
                best.col,
                left,
                right,
            )
        return face


def describe_face(face: Face) -> str:
    d = face.detection
    return (
        f"row={d.row} col={d.col} scale={d.scale} q={d.quality:.2f} "
        f"left=({face.left_eye.row},{face.left_eye.col}) right=({face.right_eye.row},{face.right_eye.col})"
    )
