"""Tests for the OpenCV-backed classifier and the pupil locator."""

from __future__ import annotations

import cv2
import numpy as np
import pytest

from cascades import DarkPupilLocator, HaarCascadeClassifier, load_default_models
from errors import CascadeLoadError, FaceUndetectedError
from face_locator import FAST_DETECT_PARAMS, FaceLocator


def _gray_with_dot(row: int = 100, col: int = 120, radius: int = 3) -> np.ndarray:
    gray = np.full((200, 200), 200, dtype=np.uint8)
    cv2.circle(gray, (col, row), radius, 0, -1)
    return gray


@pytest.fixture(scope="module")
def classifier() -> HaarCascadeClassifier:
    return load_default_models()


class TestModelLoading:
    def test_missing_cascade_fails_fast(self, tmp_path) -> None:
        with pytest.raises(CascadeLoadError, match="not found"):
            HaarCascadeClassifier(cascade_path=str(tmp_path / "missing.xml"))

    def test_garbage_cascade_fails_fast(self, tmp_path) -> None:
        bogus = tmp_path / "bogus.xml"
        bogus.write_text("<opencv_storage></opencv_storage>")
        with pytest.raises(CascadeLoadError):
            HaarCascadeClassifier(cascade_path=str(bogus))

    def test_opencv_without_cascades_fails_fast(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delattr(cv2, "CascadeClassifier", raising=False)
        with pytest.raises(CascadeLoadError, match="no CascadeClassifier"):
            HaarCascadeClassifier()

    def test_default_models_load(self, classifier: HaarCascadeClassifier) -> None:
        assert classifier.cascade_path.endswith("haarcascade_frontalface_default.xml")


class TestHaarDetection:
    def test_blank_image_has_no_candidates(self, classifier: HaarCascadeClassifier) -> None:
        gray = np.full((240, 320), 128, dtype=np.uint8)
        assert classifier.detect(gray, 48, 256, FAST_DETECT_PARAMS) == []

    def test_locator_reports_undetected_face(self, classifier: HaarCascadeClassifier) -> None:
        blank = np.full((200, 200, 3), 90, dtype=np.uint8)
        with pytest.raises(FaceUndetectedError):
            FaceLocator(classifier).detect_face(blank)


class TestDarkPupilLocator:
    def test_finds_dark_pupil_near_the_guess(self) -> None:
        found = DarkPupilLocator().locate(_gray_with_dot(), 96, 116, 40.0, 50)

        assert found.detected
        assert abs(found.row - 100) <= 1
        assert abs(found.col - 120) <= 1

    def test_prefers_iris_over_eyebrow(self) -> None:
        gray = np.full((200, 240), 170, dtype=np.uint8)
        cv2.rectangle(gray, (80, 70), (160, 76), 40, -1)
        cv2.ellipse(gray, (120, 100), (22, 10), 0, 0, 360, 235, -1)
        cv2.circle(gray, (120, 100), 7, 40, -1)

        found = DarkPupilLocator().locate(gray, 92, 116, 60.0, 50)

        assert abs(found.row - 100) <= 2
        assert abs(found.col - 120) <= 2

    def test_guess_outside_image_fails(self) -> None:
        found = DarkPupilLocator().locate(_gray_with_dot(), -5, 116, 40.0, 50)

        assert not found.detected
        assert found.row <= 0 and found.col <= 0

    def test_same_seed_is_deterministic(self) -> None:
        gray = np.random.default_rng(3).integers(0, 256, size=(120, 120), dtype=np.uint8)
        a = DarkPupilLocator(seed=7).locate(gray, 60, 60, 30.0, 50)
        b = DarkPupilLocator(seed=7).locate(gray, 60, 60, 30.0, 50)
        assert a == b

    def test_rotated_search_maps_back(self, classifier: HaarCascadeClassifier) -> None:
        found = classifier.locate_pupil(_gray_with_dot(), 96, 116, 40.0, 50, angle=30.0)

        assert found.detected
        assert abs(found.row - 100) <= 2
        assert abs(found.col - 120) <= 2
