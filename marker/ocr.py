"""OCR client for the Mathpix text endpoint."""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Sequence, Tuple

import requests

from .config import Settings
from .errors import OCRFailure, OCRUnavailable
from .types import ImagePayload, OCRResult, TextRegion

logger = logging.getLogger(__name__)

DEFAULT_TEXT_CONFIDENCE = 0.8  # text came back but no per-region scores
DEFAULT_EMPTY_CONFIDENCE = 0.3  # neither text nor scores

# Placeholder geometry for text that arrives without any polygons.
PLACEHOLDER_LEFT = 50
PLACEHOLDER_TOP = 50
PLACEHOLDER_LINE_STEP = 30
PLACEHOLDER_HEIGHT = 25
PLACEHOLDER_CHAR_WIDTH = 10
PLACEHOLDER_MIN_WIDTH = 100

Rect = Tuple[float, float, float, float]


def polygon_to_rect(points: Sequence[Sequence[float]]) -> Rect:
    """Collapse a contour to its axis-aligned ``(x, y, width, height)``."""
    xs = [float(p[0]) for p in points]
    ys = [float(p[1]) for p in points]
    x0, y0 = min(xs), min(ys)
    return (x0, y0, max(xs) - x0, max(ys) - y0)


def aggregate_confidence(text: str, confidences: Sequence[float]) -> float:
    if confidences:
        return max(0.0, min(1.0, sum(confidences) / len(confidences)))
    if text.strip():
        return DEFAULT_TEXT_CONFIDENCE
    return DEFAULT_EMPTY_CONFIDENCE


def synthesize_line_regions(text: str) -> List[TextRegion]:
    """One placeholder rectangle per non-blank line, stacked down the left margin."""
    lines = [line for line in text.split("\n") if line.strip()]
    return [
        TextRegion(
            x=float(PLACEHOLDER_LEFT),
            y=float(PLACEHOLDER_TOP + index * PLACEHOLDER_LINE_STEP),
            width=float(max(len(line) * PLACEHOLDER_CHAR_WIDTH, PLACEHOLDER_MIN_WIDTH)),
            height=float(PLACEHOLDER_HEIGHT),
            text=line,
            confidence=DEFAULT_TEXT_CONFIDENCE,
        )
        for index, line in enumerate(lines)
    ]


def _contour_items(body: Dict[str, Any]) -> Iterable[Dict[str, Any]]:
    for key in ("word_data", "data"):
        items = body.get(key)
        if not isinstance(items, list):
            continue
        found = [item for item in items if isinstance(item, dict) and item.get("cnt")]
        if found:
            return found
    return []


def parse_response(body: Dict[str, Any]) -> Tuple[str, List[TextRegion], List[float]]:
    """Return ``(text, regions, reported_confidences)`` from a Mathpix body."""
    text = body.get("text") or ""
    if not isinstance(text, str):
        text = str(text)

    regions: List[TextRegion] = []
    reported: List[float] = []
    for item in _contour_items(body):
        contour = item.get("cnt")
        item_text = item.get("text")
        if not isinstance(contour, list) or not item_text:
            continue
        try:
            x, y, width, height = polygon_to_rect(contour)
        except (TypeError, ValueError, IndexError):
            logger.debug("Skipping malformed contour: %r", contour)
            continue
        raw_conf = item.get("confidence")
        if isinstance(raw_conf, (int, float)):
            confidence = float(raw_conf)
            reported.append(confidence)
        else:
            confidence = DEFAULT_TEXT_CONFIDENCE
        regions.append(TextRegion(x, y, width, height, str(item_text), confidence))
    return text, regions, reported


class OCRClient:
    """Single-backend OCR; there is no local engine to fall back on."""

    def __init__(self, settings: Settings, session: requests.Session | None = None) -> None:
        self._settings = settings
        self._session = session or requests.Session()

    def is_available(self) -> bool:
        return bool(self._settings.mathpix_app_key)

    def close(self) -> None:
        self._session.close()

    def extract(self, image: ImagePayload) -> OCRResult:
        if not self.is_available():
            raise OCRUnavailable("OCR backend is not configured (MATHPIX_APP_KEY missing)")

        headers = {"Content-Type": "application/json", "app_key": self._settings.mathpix_app_key or ""}
        if self._settings.mathpix_app_id:
            headers["app_id"] = self._settings.mathpix_app_id
        request_body = {
            "src": image.data_url(),
            "formats": ["text", "data"],
            "include_word_data": True,
        }

        try:
            response = self._session.post(
                self._settings.mathpix_api_url,
                headers=headers,
                json=request_body,
                timeout=self._settings.ocr_timeout,
            )
        except requests.Timeout as exc:
            raise OCRFailure(f"OCR request timed out after {self._settings.ocr_timeout:.0f}s") from exc
        except requests.RequestException as exc:
            raise OCRFailure(f"OCR request failed: {exc}") from exc

        if not response.ok:
            raise OCRFailure(f"OCR backend returned HTTP {response.status_code}: {response.text[:200]}")
        try:
            body = response.json()
        except ValueError as exc:
            raise OCRFailure("OCR backend returned a non-JSON body") from exc
        if not isinstance(body, dict):
            raise OCRFailure("OCR backend returned an unexpected payload")
        if body.get("error"):
            raise OCRFailure(f"OCR backend error: {body['error']}")

        text, regions, reported = parse_response(body)
        confidence = aggregate_confidence(text, reported)
        degraded = False
        if not regions and text.strip():
            logger.info("OCR returned text without geometry; synthesizing line regions")
            regions = synthesize_line_regions(text)
            degraded = True

        bounds = image.size
        if bounds is not None:
            regions = [region.clipped(bounds) for region in regions]

        logger.info(
            "OCR extracted %s characters in %s regions (confidence %.1f%%)",
            len(text),
            len(regions),
            confidence * 100,
        )
        return OCRResult(text=text, confidence=confidence, regions=tuple(regions), degraded=degraded)


__all__ = [
    "DEFAULT_EMPTY_CONFIDENCE",
    "DEFAULT_TEXT_CONFIDENCE",
    "OCRClient",
    "aggregate_confidence",
    "parse_response",
    "polygon_to_rect",
    "synthesize_line_regions",
]
