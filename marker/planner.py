"""Annotation planning against vision-capable chat backends.

The planner asks a backend for red-pen marking instructions, validates the
reply against a strict schema and walks a fixed fallback ladder when a
backend is unavailable, errors, times out or replies with something that is
not a valid annotation document.
"""

from __future__ import annotations

import base64
import json
import logging
import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Protocol, Sequence, Tuple

import requests
from pydantic import BaseModel, ConfigDict, ValidationError

from .config import Settings
from .errors import AnnotationParseError, InvalidInput, PlanningFailure
from .types import Action, AnnotationCommand, AnnotationSet, ImagePayload, OCRResult, Size

logger = logging.getLogger(__name__)

MAX_RATE_LIMIT_RETRIES = 2
MAX_RETRY_DELAY_SECONDS = 10.0
INITIAL_RETRY_DELAY_SECONDS = 2.0
MAX_OUTPUT_TOKENS = 2000


class Backend(str, Enum):
    CHATGPT_5 = "chatgpt-5"
    CHATGPT_4O = "chatgpt-4o"
    GEMINI = "gemini-2.5-pro"

    @property
    def label(self) -> str:
        return _BACKEND_LABELS[self]

    @classmethod
    def parse(cls, value: str | None) -> "Backend | None":
        if value is None or not value.strip():
            return None
        key = value.strip().lower()
        for backend in cls:
            if backend.value == key:
                return backend
        alias = _BACKEND_ALIASES.get(key)
        if alias is None:
            raise InvalidInput(f"Unknown model '{value}'", reason="unknown_model")
        return alias


_BACKEND_LABELS = {
    Backend.CHATGPT_5: "OpenAI GPT-5",
    Backend.CHATGPT_4O: "OpenAI GPT-4 Omni",
    Backend.GEMINI: "Google Gemini 2.5 Pro",
}

_BACKEND_ALIASES = {
    "providera-flagship": Backend.CHATGPT_5,
    "providera-standard": Backend.CHATGPT_4O,
    "providerb-vision": Backend.GEMINI,
    "gpt-5": Backend.CHATGPT_5,
    "gpt-4o": Backend.CHATGPT_4O,
    "gemini": Backend.GEMINI,
}

FALLBACK_ORDER: Tuple[Backend, ...] = (Backend.CHATGPT_5, Backend.CHATGPT_4O, Backend.GEMINI)

SYSTEM_PROMPT_TEXT = """You are an experienced GCSE maths teacher marking a student's handwritten homework with a red pen.
Respond with raw JSON only. Do not wrap it in markdown, code fences or commentary.

The JSON must have exactly this shape:
{"annotations": [{"action": "<action>", "bbox": [x, y, width, height], "comment": "<text>"}]}

Rules:
- "action" must be one of: circle, write, tick, cross, underline.
- "bbox" is [x, y, width, height] in pixels of the supplied image, measured from its top-left corner.
- Use "tick" for correct steps and "cross" for incorrect ones.
- Use "write" for corrections or short teacher comments; keep comments under 40 characters.
- Use "circle" or "underline" to point at a specific value, with the comment explaining why.
- Place annotations next to the work they refer to without covering the student's writing.
- If the work is entirely correct, still tick each final answer."""

USER_PROMPT_PREFIX = "Mark this student's homework and return the annotation JSON."

OCR_SECTION_HEADER = (
    "OCR text regions detected on the page (positional ground truth; align every "
    "annotation bbox with these regions):"
)

_FENCE_RE = re.compile(r"```(?:json|JSON)?\s*(.*?)\s*```", re.DOTALL)


def _px(value: float) -> int:
    return int(round(value))


def format_region_hints(ocr: OCRResult) -> List[str]:
    return [
        f"bbox[{_px(r.x)},{_px(r.y)},{_px(r.width)},{_px(r.height)}], "
        f"text:{json.dumps(r.text, ensure_ascii=False)}, confidence:\"{r.confidence * 100:.1f}%\""
        for r in ocr.regions
    ]


def build_prompts(ocr: OCRResult | None, canvas_size: Size | None = None) -> Tuple[str, str]:
    """Return ``(system_prompt, user_prompt)`` for one planning request."""
    sections: List[str] = [USER_PROMPT_PREFIX]
    if canvas_size is not None:
        sections.append(f"The image is {canvas_size[0]}x{canvas_size[1]} pixels.")
    if ocr is not None:
        hints = format_region_hints(ocr)
        if hints:
            sections.append(OCR_SECTION_HEADER + "\n" + "\n".join(hints))
        elif ocr.text.strip():
            sections.append("OCR text (no positions available):\n" + ocr.text)
    return SYSTEM_PROMPT_TEXT, "\n\n".join(sections)


class _WireAnnotation(BaseModel):
    model_config = ConfigDict(extra="ignore", allow_inf_nan=False)

    action: Action
    bbox: Tuple[float, float, float, float]
    comment: str | None = None


class _WireDocument(BaseModel):
    model_config = ConfigDict(extra="ignore")

    annotations: List[_WireAnnotation]


def _to_command(entry: _WireAnnotation) -> AnnotationCommand:
    x, y, width, height = entry.bbox
    x0, y0, x1, y1 = x, y, x + width, y + height
    if x1 < x0:
        x0, x1 = x1, x0
    if y1 < y0:
        y0, y1 = y1, y0
    return AnnotationCommand(action=entry.action, bbox=(x0, y0, x1, y1), comment=entry.comment or "")


def _reject_constant(token: str) -> Any:
    raise AnnotationParseError(f"Response contains a non-finite number: {token}")


def parse_annotations(raw: str) -> AnnotationSet:
    """Parse a backend reply into validated commands.

    A fenced ```json block wins when present; otherwise the whole reply must
    be JSON. Anything else raises ``AnnotationParseError``.
    """

    if not raw or not raw.strip():
        raise AnnotationParseError("Backend returned an empty response")
    match = _FENCE_RE.search(raw)
    candidate = match.group(1) if match else raw.strip()
    try:
        document: Any = json.loads(candidate, parse_constant=_reject_constant)
    except json.JSONDecodeError as exc:
        raise AnnotationParseError(f"Response is not valid JSON: {exc.msg}") from exc
    try:
        parsed = _WireDocument.model_validate(document)
    except ValidationError as exc:
        raise AnnotationParseError(
            f"Response does not match the annotation schema ({exc.error_count()} errors)"
        ) from exc
    return tuple(_to_command(entry) for entry in parsed.annotations)


class BackendError(Exception):
    """Raised when a planning backend cannot produce a completion."""


class PlanningBackend(Protocol):
    backend: Backend

    def is_available(self) -> bool:
        ...

    def complete(self, system_prompt: str, user_prompt: str, image: ImagePayload) -> str:
        ...

    def close(self) -> None:
        ...


def _retry_after_seconds(response: requests.Response, fallback: float) -> float:
    header_value = response.headers.get("Retry-After")
    if not header_value:
        return fallback
    try:
        return min(float(header_value), MAX_RETRY_DELAY_SECONDS)
    except (TypeError, ValueError):
        return fallback


def _post(
    session: requests.Session,
    backend: Backend,
    url: str,
    *,
    timeout: float,
    **kwargs: Any,
) -> Dict[str, Any]:
    """POST with bounded waits; only HTTP 429 is retried on the same backend."""

    delay = INITIAL_RETRY_DELAY_SECONDS
    for attempt in range(MAX_RATE_LIMIT_RETRIES + 1):
        try:
            response = session.post(url, timeout=timeout, **kwargs)
        except requests.Timeout as exc:
            raise BackendError(f"{backend.label} timed out after {timeout:.0f}s") from exc
        except requests.RequestException as exc:
            raise BackendError(f"{backend.label} request failed: {exc}") from exc

        if response.status_code == 429 and attempt < MAX_RATE_LIMIT_RETRIES:
            wait = _retry_after_seconds(response, delay)
            logger.warning(
                "%s rate limited (attempt %s/%s); retrying in %.1fs",
                backend.label,
                attempt + 1,
                MAX_RATE_LIMIT_RETRIES + 1,
                wait,
            )
            time.sleep(wait)
            delay = min(delay * 1.5, MAX_RETRY_DELAY_SECONDS)
            continue
        if not response.ok:
            detail = ""
            try:
                detail = str(response.json().get("error", {}).get("message", ""))
            except (ValueError, AttributeError):
                detail = response.text[:200]
            raise BackendError(f"{backend.label} returned HTTP {response.status_code}: {detail}")
        try:
            body = response.json()
        except ValueError as exc:
            raise BackendError(f"{backend.label} returned a non-JSON body") from exc
        if not isinstance(body, dict):
            raise BackendError(f"{backend.label} returned an unexpected payload")
        return body
    raise BackendError(f"{backend.label} still rate limited after retries")


class OpenAIBackend:
    def __init__(self, backend: Backend, model: str, settings: Settings, session: requests.Session | None = None) -> None:
        self.backend = backend
        self._model = model
        self._api_key = settings.openai_api_key
        self._url = settings.openai_api_url
        self._timeout = settings.planner_timeout
        self._session = session or requests.Session()

    def is_available(self) -> bool:
        return bool(self._api_key)

    def close(self) -> None:
        self._session.close()

    def complete(self, system_prompt: str, user_prompt: str, image: ImagePayload) -> str:
        if not self._api_key:
            raise BackendError("OPENAI_API_KEY not configured")

        payload: Dict[str, Any] = {
            "model": self._model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": user_prompt},
                        {"type": "image_url", "image_url": {"url": image.data_url()}},
                    ],
                },
            ],
        }
        if self.backend is Backend.CHATGPT_5:
            payload["max_completion_tokens"] = MAX_OUTPUT_TOKENS
        else:
            payload["max_tokens"] = MAX_OUTPUT_TOKENS
            payload["temperature"] = 0.1

        body = _post(
            self._session,
            self.backend,
            self._url,
            timeout=self._timeout,
            headers={"Authorization": f"Bearer {self._api_key}"},
            json=payload,
        )
        choices: Sequence[Any] = body.get("choices") or []
        if not choices:
            raise BackendError(f"{self.backend.label} returned no choices")
        content = (choices[0].get("message") or {}).get("content")
        if not content:
            raise BackendError(f"{self.backend.label} returned an empty message")
        return str(content)


class GeminiBackend:
    def __init__(self, settings: Settings, session: requests.Session | None = None) -> None:
        self.backend = Backend.GEMINI
        self._api_key = settings.gemini_api_key
        self._url = f"{settings.gemini_api_base}/{settings.gemini_model}:generateContent"
        self._timeout = settings.planner_timeout
        self._session = session or requests.Session()

    def is_available(self) -> bool:
        return bool(self._api_key)

    def close(self) -> None:
        self._session.close()

    def complete(self, system_prompt: str, user_prompt: str, image: ImagePayload) -> str:
        if not self._api_key:
            raise BackendError("GEMINI_API_KEY not configured")

        body = _post(
            self._session,
            self.backend,
            self._url,
            timeout=self._timeout,
            params={"key": self._api_key},
            json={
                "contents": [
                    {
                        "role": "user",
                        "parts": [
                            {"text": system_prompt + "\n\n" + user_prompt},
                            {
                                "inline_data": {
                                    "mime_type": f"image/{image.mime_subtype}",
                                    "data": base64.b64encode(image.data).decode("ascii"),
                                }
                            },
                        ],
                    }
                ],
                "generationConfig": {
                    "temperature": 0.1,
                    "maxOutputTokens": MAX_OUTPUT_TOKENS,
                    "responseMimeType": "application/json",
                },
            },
        )
        candidates = body.get("candidates") or []
        if not candidates:
            raise BackendError("Gemini returned no candidates")
        parts = (candidates[0].get("content") or {}).get("parts") or []
        text = "".join(str(part.get("text", "")) for part in parts if isinstance(part, dict))
        if not text:
            raise BackendError("Gemini candidate missing text")
        return text


def build_backends(settings: Settings) -> Dict[Backend, PlanningBackend]:
    return {
        Backend.CHATGPT_5: OpenAIBackend(Backend.CHATGPT_5, "gpt-5", settings),
        Backend.CHATGPT_4O: OpenAIBackend(Backend.CHATGPT_4O, "gpt-4o", settings),
        Backend.GEMINI: GeminiBackend(settings),
    }


def fallback_ladder(preferred: Backend | None) -> List[Backend]:
    if preferred is None:
        return list(FALLBACK_ORDER)
    return [preferred] + [backend for backend in FALLBACK_ORDER if backend is not preferred]


@dataclass(frozen=True)
class PlanOutcome:
    annotations: AnnotationSet
    backend: Backend


class AnnotationPlanner:
    def __init__(self, backends: Mapping[Backend, PlanningBackend], default: Backend | None = None) -> None:
        self._backends = dict(backends)
        self._default = default

    @classmethod
    def from_settings(cls, settings: Settings) -> "AnnotationPlanner":
        try:
            default = Backend.parse(settings.default_backend)
        except InvalidInput:
            logger.warning(
                "Ignoring MARKER_DEFAULT_BACKEND=%r: not a known backend", settings.default_backend
            )
            default = None
        return cls(build_backends(settings), default=default)

    def close(self) -> None:
        for client in self._backends.values():
            client.close()

    def availability(self) -> Dict[str, bool]:
        return {
            backend.value: self._backends[backend].is_available()
            for backend in FALLBACK_ORDER
            if backend in self._backends
        }

    def plan(
        self,
        image: ImagePayload,
        ocr: OCRResult | None,
        preferred: Backend | None = None,
        canvas_size: Size | None = None,
    ) -> PlanOutcome:
        system_prompt, user_prompt = build_prompts(ocr, canvas_size)
        tried: List[str] = []
        last_error: BaseException | None = None

        for backend in fallback_ladder(preferred or self._default):
            client = self._backends.get(backend)
            if client is None:
                continue
            tried.append(backend.value)
            if not client.is_available():
                last_error = BackendError(f"{backend.label} is not configured")
                logger.info("Skipping %s: not configured", backend.label)
                continue
            try:
                raw = client.complete(system_prompt, user_prompt, image)
                annotations = parse_annotations(raw)
            except (BackendError, AnnotationParseError) as exc:
                last_error = exc
                logger.warning("%s failed to produce annotations: %s", backend.label, exc)
                continue
            logger.info("%s produced %s annotations", backend.label, len(annotations))
            return PlanOutcome(annotations=annotations, backend=backend)

        detail = f": {last_error}" if last_error is not None else ""
        raise PlanningFailure(
            f"All annotation backends failed ({', '.join(tried) or 'none configured'}){detail}",
            tried=tried,
            last_error=last_error,
        )


__all__ = [
    "AnnotationPlanner",
    "Backend",
    "BackendError",
    "FALLBACK_ORDER",
    "GeminiBackend",
    "OpenAIBackend",
    "PlanOutcome",
    "PlanningBackend",
    "build_backends",
    "build_prompts",
    "fallback_ladder",
    "parse_annotations",
]
