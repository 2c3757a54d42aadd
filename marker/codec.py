"""Data-URL image decoding, validation and re-encoding."""

from __future__ import annotations

import base64
import binascii
import io
import logging
import re
from typing import Tuple

from PIL import Image, UnidentifiedImageError

from .errors import InvalidInput
from .types import ImagePayload, Size

logger = logging.getLogger(__name__)

SUPPORTED_MIME_SUBTYPES = frozenset({"png", "jpeg", "jpg", "webp", "gif", "bmp"})
# Anything shorter than this cannot be a real photographed page.
MIN_BASE64_LENGTH = 50
# Below this many decoded bytes there is nothing meaningful to compress.
MIN_COMPRESSIBLE_BYTES = 100
DEFAULT_DIMENSIONS: Size = (800, 600)

_DATA_URL_RE = re.compile(r"^data:image/(?P<subtype>[A-Za-z0-9.+-]+);base64,(?P<body>.*)$", re.DOTALL)
_WHITESPACE_RE = re.compile(r"\s+")


def decode(payload: str) -> ImagePayload:
    """Validate a ``data:image/...;base64,`` string and return its bytes.

    Each rejection carries its own ``reason`` so callers can tell "not an
    image" apart from "too small to be real".
    """

    if not payload or not payload.strip():
        raise InvalidInput("No image data was provided", reason="empty")

    match = _DATA_URL_RE.match(payload.strip())
    if match is None:
        raise InvalidInput(
            "Image data must be a base64 data URL (data:image/<type>;base64,...)",
            reason="unsupported_mime",
        )
    subtype = match.group("subtype").lower()
    if subtype not in SUPPORTED_MIME_SUBTYPES:
        raise InvalidInput(f"Unsupported image type: image/{subtype}", reason="unsupported_mime")

    body = _WHITESPACE_RE.sub("", match.group("body"))
    if len(body) < MIN_BASE64_LENGTH:
        raise InvalidInput(
            f"Image data is too short to be a real image ({len(body)} base64 characters)",
            reason="too_short",
        )

    try:
        data = base64.b64decode(body, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise InvalidInput("Image data is not valid base64", reason="invalid_base64") from exc
    if not data:
        raise InvalidInput("Image data decoded to an empty buffer", reason="empty_buffer")

    try:
        with Image.open(io.BytesIO(data)) as im:
            im.verify()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as exc:
        raise InvalidInput("Image data could not be decoded as an image", reason="undecodable") from exc

    return ImagePayload(data=data, mime_subtype="jpeg" if subtype == "jpg" else subtype)


def dimensions(image: ImagePayload) -> Size:
    size = image.size
    if size is None:
        logger.warning(
            "Could not read image dimensions; using default %sx%s canvas", *DEFAULT_DIMENSIONS
        )
        return DEFAULT_DIMENSIONS
    return size


def compress(image: ImagePayload, max_dim: Tuple[int, int], quality: int) -> ImagePayload:
    """Downscale to fit ``max_dim`` (never upscaling) and re-encode as JPEG."""

    if len(image.data) < MIN_COMPRESSIBLE_BYTES:
        logger.debug("Skipping compression of %s-byte image", len(image.data))
        return image

    try:
        with Image.open(io.BytesIO(image.data)) as im:
            im.load()
            working = im.convert("RGB")
    except (UnidentifiedImageError, OSError) as exc:
        raise InvalidInput("Image data could not be decoded", reason="undecodable") from exc

    original_size = working.size
    # thumbnail() keeps the aspect ratio and never enlarges.
    working.thumbnail(max_dim, Image.Resampling.LANCZOS)

    buf = io.BytesIO()
    working.save(buf, format="JPEG", quality=max(1, min(int(quality), 100)))
    logger.info(
        "Compressed image %sx%s -> %sx%s (%s -> %s bytes)",
        original_size[0],
        original_size[1],
        working.size[0],
        working.size[1],
        len(image.data),
        buf.tell(),
    )
    return ImagePayload(data=buf.getvalue(), mime_subtype="jpeg")


def encode_png(im: Image.Image) -> ImagePayload:
    buf = io.BytesIO()
    im.save(buf, format="PNG")
    return ImagePayload(data=buf.getvalue(), mime_subtype="png")


def to_data_url(image: ImagePayload) -> str:
    return image.data_url()


__all__ = [
    "DEFAULT_DIMENSIONS",
    "MIN_BASE64_LENGTH",
    "MIN_COMPRESSIBLE_BYTES",
    "SUPPORTED_MIME_SUBTYPES",
    "compress",
    "decode",
    "dimensions",
    "encode_png",
    "to_data_url",
]
