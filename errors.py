"""Exception hierarchy shared by the portrait conversion modules."""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from face_locator import Face


class PortraitError(Exception):
    """Base class for every failure raised while building a portrait."""


class FaceUndetectedError(PortraitError):
    def __init__(self, message: str = "face undetected") -> None:
        super().__init__(message)


class PupilsUndetectedError(PortraitError):
    """A face was found but at least one pupil could not be refined.

    The partially detected face is kept on ``face`` for callers that want to
    inspect or draw it.
    """

    def __init__(self, message: str = "pupils undetected", face: Optional["Face"] = None) -> None:
        super().__init__(message)
        self.face = face


class DecodeError(PortraitError):
    pass


class MetadataError(PortraitError):
    pass


class EncodeError(PortraitError):
    pass


class CascadeLoadError(PortraitError):
    pass


class ConversionCancelledError(PortraitError):
    pass
