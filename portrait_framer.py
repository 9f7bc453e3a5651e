"""High-level interface for the portrait normalisation pipeline.

``FaceFramingPipeline`` runs the fixed five-stage flow on one image: detect,
level, re-detect, crop and tone.  ``PortraitFramer`` is the reusable facade
that owns the shared face locator and output policy and is used by the CLI,
the batch converter and the HTTP service alike.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

import numpy as np

from cascades import load_default_models
from errors import (
    ConversionCancelledError,
    FaceUndetectedError,
    PupilsUndetectedError,
)
from face_locator import Face, FaceLocator, describe_face
from functions import adaptive_crop, rotate_to_level, rotation_angle, tone_map
from image_io import decode_image, encode_png, read_image_file, write_image_file

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PortraitConfig:
    aspect_ratio: float = 3.0 / 4.0
    max_width_ratio: float = 1.5
    brightness: float = 0.0
    contrast: float = 5.0
    gamma: float = 1.4

    def __post_init__(self) -> None:
        if not self.aspect_ratio > 0:
            raise ValueError("aspect_ratio must be > 0")
        if not self.max_width_ratio >= 1.0:
            raise ValueError("max_width_ratio must be >= 1")
        if not -100.0 <= self.brightness <= 100.0:
            raise ValueError("brightness must be within [-100, 100]")
        if not -100.0 <= self.contrast <= 100.0:
            raise ValueError("contrast must be within [-100, 100]")
        if not self.gamma > 0:
            raise ValueError("gamma must be > 0")


DEFAULT_PORTRAIT_CONFIG = PortraitConfig()


class FaceFramingPipeline:
    def __init__(
        self,
        img: np.ndarray,
        locator: FaceLocator,
        config: PortraitConfig,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        self.img = img
        self.locator = locator
        self.config = config
        self.cancel_event = cancel_event
        self.face: Optional[Face] = None
        self.rotated: Optional[np.ndarray] = None
        self.rotated_face: Optional[Face] = None
        self.cropped: Optional[np.ndarray] = None

    def run(self) -> np.ndarray:
        face = self._detect_face()
        rotated = self._level_eyes(face)
        rotated_face = self._detect_rotated_face(rotated)
        cropped = self._crop(rotated, rotated_face)
        return self._adjust_tone(cropped)

    def _check_cancelled(self, stage: str) -> None:
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise ConversionCancelledError(f"cancelled before {stage}")

    # Stage 1 -----------------------------------------------------------------
    def _detect_face(self) -> Face:
        self._check_cancelled("face detection")
        try:
            face = self.locator.detect_face(self.img, 0.0)
        except FaceUndetectedError as exc:
            raise FaceUndetectedError(f"could not detect face: {exc}") from exc
        if not face.pupils_detected:
            raise PupilsUndetectedError("could not detect face: pupils undetected", face=face)
        logger.debug("[Stage 1] Face %s", describe_face(face))
        self.face = face
        return face

    # Stage 2 -----------------------------------------------------------------
    def _level_eyes(self, face: Face) -> np.ndarray:
        self._check_cancelled("rotation")
        logger.debug("[Stage 2] Rotating by %.2f degrees", rotation_angle(face))
        self.rotated = rotate_to_level(self.img, face)
        return self.rotated

    # Stage 3 -----------------------------------------------------------------
    def _detect_rotated_face(self, rotated: np.ndarray) -> Face:
        # Stage 1 coordinates are stale once the image has been rotated.
        self._check_cancelled("rotated face detection")
        try:
            face = self.locator.detect_face(rotated, 0.0)
        except FaceUndetectedError as exc:
            raise FaceUndetectedError(f"could not detect rotated face: {exc}") from exc
        if not face.pupils_detected:
            raise PupilsUndetectedError("could not detect rotated face: pupils undetected", face=face)
        logger.debug("[Stage 3] Rotated face %s", describe_face(face))
        self.rotated_face = face
        return face

    # Stage 4 -----------------------------------------------------------------
    def _crop(self, rotated: np.ndarray, face: Face) -> np.ndarray:
        self._check_cancelled("crop")
        self.cropped = adaptive_crop(
            rotated,
            face,
            self.config.aspect_ratio,
            self.config.max_width_ratio,
        )
        logger.debug("[Stage 4] Crop %dx%d px", self.cropped.shape[1], self.cropped.shape[0])
        return self.cropped

    # Stage 5 -----------------------------------------------------------------
    def _adjust_tone(self, cropped: np.ndarray) -> np.ndarray:
        self._check_cancelled("tone mapping")
        return tone_map(
            cropped,
            self.config.brightness,
            self.config.contrast,
            self.config.gamma,
        )


class PortraitFramer:
    """Reusable facade for the portrait pipeline.

    The locator (and the cascade models behind it) is shared read-only by
    every call, so one framer can serve many threads.
    """

    def __init__(
        self,
        locator: Optional[FaceLocator] = None,
        config: Optional[PortraitConfig] = None,
    ) -> None:
        if locator is None:
            locator = FaceLocator(load_default_models())
        self.locator = locator
        self.config = config or DEFAULT_PORTRAIT_CONFIG

    def process_array(
        self,
        image: np.ndarray,
        *,
        cancel_event: Optional[threading.Event] = None,
    ) -> np.ndarray:
        """Run the pipeline on an already-decoded image array."""
        pipeline = FaceFramingPipeline(
            img=image,
            locator=self.locator,
            config=self.config,
            cancel_event=cancel_event,
        )
        return pipeline.run()

    def process_bytes(self, data: bytes, *, use_exif: bool = True) -> bytes:
        """Decode ``data``, build the portrait and return it PNG-encoded."""
        image = decode_image(data, use_exif=use_exif)
        return encode_png(self.process_array(image))

    def convert_file(
        self,
        input_path: str,
        output_path: str,
        *,
        use_exif: bool = True,
        cancel_event: Optional[threading.Event] = None,
    ) -> None:
        image = read_image_file(input_path, use_exif=use_exif)
        portrait = self.process_array(image, cancel_event=cancel_event)
        if cancel_event is not None and cancel_event.is_set():
            raise ConversionCancelledError("cancelled before write")
        write_image_file(output_path, portrait)


@lru_cache(maxsize=1)
def default_framer() -> PortraitFramer:
    """Process-wide framer with the default models and config."""
    return PortraitFramer()


async def convert_portrait(data: bytes, *, framer: Optional[PortraitFramer] = None) -> bytes:
    """Convert an encoded image into a PNG-encoded portrait.

    Uses the default portrait config and EXIF-aware decoding.  Failures surface
    as ``PortraitError`` with a readable message.
    """
    framer = framer or default_framer()
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, framer.process_bytes, data)
