"""Render annotation commands as a vector overlay and merge it onto the page."""

from __future__ import annotations

import io
import logging
from dataclasses import dataclass
from typing import Dict, Tuple, Union

from PIL import Image, ImageDraw, ImageFont, UnidentifiedImageError

from .codec import encode_png
from .errors import CompositingFailure, InvalidInput
from .types import Action, AnnotationSet, ImagePayload, Point, Size

logger = logging.getLogger(__name__)

CORRECTION_COLOR = (220, 20, 20, 255)
GLYPH_MIN_SIZE = 24.0
GLYPH_STROKE_RATIO = 0.12
TEXT_MIN_FONT_SIZE = 18.0
TEXT_MAX_FONT_SIZE = 96.0
TEXT_HEIGHT_RATIO = 0.8

GLYPH_ACTIONS = frozenset({Action.TICK, Action.CROSS})

FontType = Union[ImageFont.FreeTypeFont, ImageFont.ImageFont]


@dataclass(frozen=True)
class GlyphMark:
    kind: Action
    center: Point
    size: float


@dataclass(frozen=True)
class TextMark:
    text: str
    origin: Point
    font_size: float


Mark = Union[GlyphMark, TextMark]


@dataclass(frozen=True)
class VectorOverlay:
    """Resolution-independent marks laid out on a ``width`` x ``height`` canvas."""

    width: int
    height: int
    marks: Tuple[Mark, ...]

    @property
    def canvas_size(self) -> Size:
        return (self.width, self.height)

    def scaled(self, width: int, height: int) -> "VectorOverlay":
        sx = width / float(self.width)
        sy = height / float(self.height)
        factor = min(sx, sy)
        marks: list[Mark] = []
        for mark in self.marks:
            if isinstance(mark, GlyphMark):
                marks.append(GlyphMark(mark.kind, (mark.center[0] * sx, mark.center[1] * sy), mark.size * factor))
            else:
                marks.append(TextMark(mark.text, (mark.origin[0] * sx, mark.origin[1] * sy), mark.font_size * factor))
        return VectorOverlay(width, height, tuple(marks))


def render(annotations: AnnotationSet, canvas_size: Size) -> VectorOverlay | None:
    """Lay out one mark per command; ``None`` means there is nothing to draw.

    tick/cross become a large glyph centred in the bbox. write, circle and
    underline all render their comment text at the bbox's top-left corner;
    no circles or lines are drawn for them.
    """

    if not annotations:
        return None
    marks: list[Mark] = []
    for command in annotations:
        if command.action in GLYPH_ACTIONS:
            size = max(GLYPH_MIN_SIZE, min(command.width, command.height))
            marks.append(GlyphMark(command.action, command.center, size))
            continue
        if not command.comment.strip():
            logger.debug("Skipping %s annotation with no comment", command.action.value)
            continue
        font_size = min(TEXT_MAX_FONT_SIZE, max(TEXT_MIN_FONT_SIZE, command.height * TEXT_HEIGHT_RATIO))
        marks.append(TextMark(command.comment, (command.bbox[0], command.bbox[1]), font_size))
    width, height = canvas_size
    return VectorOverlay(int(width), int(height), tuple(marks))


def _glyph_strokes(mark: GlyphMark) -> list[list[Point]]:
    cx, cy = mark.center
    half = mark.size / 2.0
    if mark.kind is Action.TICK:
        return [[(cx - half, cy), (cx - half / 3.0, cy + half * 0.6), (cx + half, cy - half * 0.7)]]
    arm = half * 0.8
    return [
        [(cx - arm, cy - arm), (cx + arm, cy + arm)],
        [(cx - arm, cy + arm), (cx + arm, cy - arm)],
    ]


class OverlayCompositor:
    def __init__(self, handwriting_font: str | None = None) -> None:
        self._font_path = handwriting_font
        self._fonts: Dict[int, FontType] = {}

    def render(self, annotations: AnnotationSet, canvas_size: Size) -> VectorOverlay | None:
        return render(annotations, canvas_size)

    def _font(self, size: float) -> FontType:
        px = max(1, int(round(size)))
        cached = self._fonts.get(px)
        if cached is not None:
            return cached
        font: FontType
        if self._font_path:
            try:
                font = ImageFont.truetype(self._font_path, px)
            except OSError:
                logger.warning("Handwriting font %s unreadable; using Pillow default", self._font_path)
                self._font_path = None
                font = ImageFont.load_default(size=px)
        else:
            font = ImageFont.load_default(size=px)
        self._fonts[px] = font
        return font

    def rasterize(self, overlay: VectorOverlay) -> Image.Image:
        layer = Image.new("RGBA", overlay.canvas_size, (0, 0, 0, 0))
        draw = ImageDraw.Draw(layer)
        for mark in overlay.marks:
            if isinstance(mark, GlyphMark):
                stroke = max(2, int(round(mark.size * GLYPH_STROKE_RATIO)))
                for points in _glyph_strokes(mark):
                    draw.line(points, fill=CORRECTION_COLOR, width=stroke, joint="curve")
            else:
                draw.multiline_text(mark.origin, mark.text, font=self._font(mark.font_size), fill=CORRECTION_COLOR)
        return layer

    def composite(self, image: ImagePayload, overlay: VectorOverlay | None) -> ImagePayload:
        """Merge ``overlay`` at (0, 0) in the image's own pixel space; output is PNG."""

        if overlay is None:
            return image
        try:
            with Image.open(io.BytesIO(image.data)) as im:
                im.load()
                base = im.convert("RGBA")
        except (UnidentifiedImageError, OSError) as exc:
            raise InvalidInput("Image could not be decoded for marking", reason="undecodable") from exc

        if overlay.canvas_size != base.size:
            logger.info(
                "Rescaling overlay from %sx%s to image size %sx%s",
                overlay.width,
                overlay.height,
                base.size[0],
                base.size[1],
            )
            overlay = overlay.scaled(*base.size)

        try:
            base.alpha_composite(self.rasterize(overlay), dest=(0, 0))
            return encode_png(base)
        except (OSError, ValueError) as exc:
            raise CompositingFailure(f"Failed to apply annotations to image: {exc}") from exc


__all__ = [
    "CORRECTION_COLOR",
    "GlyphMark",
    "OverlayCompositor",
    "TextMark",
    "VectorOverlay",
    "render",
]
