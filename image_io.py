"""Decoding, EXIF orientation and encoding for portrait images.

Decoding goes through Pillow so EXIF metadata is available; the rest of the
project works on OpenCV-style BGRA ``numpy`` arrays.
"""

from __future__ import annotations

import io
import logging
import os

import cv2
import numpy as np
from PIL import Image, ImageOps, UnidentifiedImageError

from errors import DecodeError, EncodeError, MetadataError

logger = logging.getLogger(__name__)

EXIF_ORIENTATION_TAG = 0x0112

# Formats Pillow cannot store with an alpha channel.
_NO_ALPHA_EXTENSIONS = {".jpg", ".jpeg", ".jpe", ".jfif", ".bmp"}


def read_exif_orientation(img: Image.Image) -> int:
    """Return the EXIF orientation (1-8) of ``img``.

    Raises:
        MetadataError: If the tag is missing, malformed or out of range.
    """
    try:
        exif = img.getexif()
    except Exception as exc:
        raise MetadataError(f"could not parse exif data: {exc}") from exc

    value = exif.get(EXIF_ORIENTATION_TAG)
    if value is None:
        raise MetadataError("no orientation tag")
    if isinstance(value, (tuple, list)):
        if not value:
            raise MetadataError("invalid orientation tag")
        value = value[0]
    if isinstance(value, bool) or not isinstance(value, int) or not 1 <= value <= 8:
        raise MetadataError(f"invalid orientation tag: {value!r}")
    return value


def pil_to_bgra(img: Image.Image) -> np.ndarray:
    rgba = np.asarray(img.convert("RGBA"))
    return cv2.cvtColor(rgba, cv2.COLOR_RGBA2BGRA)


def bgra_to_pil(image: np.ndarray) -> Image.Image:
    if image.ndim == 2:
        return Image.fromarray(image)
    if image.shape[2] == 4:
        return Image.fromarray(cv2.cvtColor(image, cv2.COLOR_BGRA2RGBA))
    return Image.fromarray(cv2.cvtColor(image, cv2.COLOR_BGR2RGB))


def decode_image(data: bytes, use_exif: bool = True) -> np.ndarray:
    """Decode an encoded image into a BGRA array.

    With ``use_exif`` the EXIF orientation is applied; missing or broken
    orientation metadata is logged and the image is used as stored.
    """
    if not data:
        raise DecodeError("could not decode image: empty buffer")
    try:
        img = Image.open(io.BytesIO(data))
        img.load()
    except (UnidentifiedImageError, OSError, ValueError) as exc:
        raise DecodeError(f"could not decode image: {exc}") from exc

    if use_exif:
        try:
            orientation = read_exif_orientation(img)
        except MetadataError as exc:
            logger.debug("could not parse EXIF data: %s", exc)
        else:
            if orientation != 1:
                img = ImageOps.exif_transpose(img)

    return pil_to_bgra(img)


def read_image_file(path: str, use_exif: bool = True) -> np.ndarray:
    try:
        with open(path, "rb") as fh:
            data = fh.read()
    except OSError as exc:
        raise DecodeError(f"could not open image {path}: {exc}") from exc
    return decode_image(data, use_exif=use_exif)


def encode_png(image: np.ndarray) -> bytes:
    ok, buf = cv2.imencode(".png", image)
    if not ok:
        raise EncodeError("could not encode to png")
    return buf.tobytes()


def write_image_file(path: str, image: np.ndarray) -> None:
    """Write ``image`` in the format implied by the extension of ``path``.

    Alpha is dropped for formats that cannot hold it.  The write is not atomic.
    """
    img = bgra_to_pil(image)
    ext = os.path.splitext(path)[1].lower()
    if ext in _NO_ALPHA_EXTENSIONS and img.mode != "RGB":
        img = img.convert("RGB")
    try:
        if ext in (".jpg", ".jpeg", ".jpe", ".jfif"):
            img.save(path, quality=95, subsampling=0)
        else:
            img.save(path)
    except (OSError, ValueError, KeyError) as exc:
        raise EncodeError(f"could not write portrait {path}: {exc}") from exc
