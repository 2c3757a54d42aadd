"""Typed structures shared by the marking pipeline modules."""

from __future__ import annotations

import base64
import io
import logging
from dataclasses import dataclass, field
from enum import Enum
from functools import cached_property
from typing import Any, Dict, List, Tuple

from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel, ConfigDict

logger = logging.getLogger(__name__)

Point = Tuple[float, float]
BBox = Tuple[float, float, float, float]
Size = Tuple[int, int]


@dataclass(frozen=True)
class ImagePayload:
    """Encoded image bytes plus the MIME subtype they were declared with."""

    data: bytes
    mime_subtype: str

    @cached_property
    def size(self) -> Size | None:
        try:
            with Image.open(io.BytesIO(self.data)) as im:
                return im.size
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            logger.debug("Unable to read image metadata: %s", exc)
            return None

    def data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:image/{self.mime_subtype};base64,{encoded}"


@dataclass(frozen=True)
class TextRegion:
    """Axis-aligned OCR rectangle in source-image pixel coordinates."""

    x: float
    y: float
    width: float
    height: float
    text: str
    confidence: float

    def __post_init__(self) -> None:
        object.__setattr__(self, "confidence", min(1.0, max(0.0, float(self.confidence))))

    def clipped(self, bounds: Size) -> "TextRegion":
        img_w, img_h = bounds
        x0 = min(max(self.x, 0.0), float(img_w))
        y0 = min(max(self.y, 0.0), float(img_h))
        x1 = min(max(self.x + self.width, 0.0), float(img_w))
        y1 = min(max(self.y + self.height, 0.0), float(img_h))
        return TextRegion(x0, y0, x1 - x0, y1 - y0, self.text, self.confidence)

    def to_wire(self) -> Dict[str, Any]:
        return {
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "text": self.text,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class OCRResult:
    text: str
    confidence: float
    regions: Tuple[TextRegion, ...] = ()
    degraded: bool = False


class Action(str, Enum):
    CIRCLE = "circle"
    WRITE = "write"
    TICK = "tick"
    CROSS = "cross"
    UNDERLINE = "underline"


class AnnotationCommand(BaseModel):
    """A validated marking instruction; ``bbox`` holds two opposite corners."""

    model_config = ConfigDict(frozen=True)

    action: Action
    bbox: BBox
    comment: str = ""

    @property
    def width(self) -> float:
        return self.bbox[2] - self.bbox[0]

    @property
    def height(self) -> float:
        return self.bbox[3] - self.bbox[1]

    @property
    def center(self) -> Point:
        x0, y0, x1, y1 = self.bbox
        return ((x0 + x1) / 2.0, (y0 + y1) / 2.0)

    def to_wire(self) -> Dict[str, Any]:
        return {"action": self.action.value, "bbox": list(self.bbox), "comment": self.comment}


# Ordered: later commands draw over earlier ones.
AnnotationSet = Tuple[AnnotationCommand, ...]


def annotations_to_wire(annotations: AnnotationSet) -> Dict[str, List[Dict[str, Any]]]:
    return {"annotations": [command.to_wire() for command in annotations]}


class OCRProvenance(str, Enum):
    PRIMARY = "primary"
    DEGRADED = "degraded"

    @property
    def wire_value(self) -> str:
        return "primary" if self is OCRProvenance.PRIMARY else "degraded-fallback"


@dataclass(frozen=True)
class PipelineResult:
    final_image: ImagePayload
    annotations: AnnotationSet
    ocr_provenance: OCRProvenance
    model_provenance: str
    ocr: OCRResult | None = field(default=None, compare=False)


__all__ = [
    "Action",
    "AnnotationCommand",
    "AnnotationSet",
    "BBox",
    "ImagePayload",
    "OCRProvenance",
    "OCRResult",
    "PipelineResult",
    "Point",
    "Size",
    "TextRegion",
    "annotations_to_wire",
]
