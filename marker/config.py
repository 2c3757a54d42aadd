"""Environment-driven settings for the marking service."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Tuple

logger = logging.getLogger(__name__)

DEFAULT_MATHPIX_API_URL = "https://api.mathpix.com/v3/text"
DEFAULT_OPENAI_API_URL = "https://api.openai.com/v1/chat/completions"
DEFAULT_GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta/models"
DEFAULT_GEMINI_MODEL = "gemini-2.5-pro"

DEFAULT_OCR_TIMEOUT_SECONDS = 30.0
DEFAULT_PLANNER_TIMEOUT_SECONDS = 60.0
DEFAULT_TRANSPORT_QUALITY = 85


def _float_env(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r; using %s", name, raw, default)
        return default


def _dim_env(env: Mapping[str, str], name: str) -> Tuple[int, int] | None:
    """Parse ``1600x1600`` (or a bare ``1600``) into a max-dimension pair."""
    raw = (env.get(name) or "").strip().lower()
    if not raw:
        return None
    parts = raw.split("x") if "x" in raw else [raw, raw]
    try:
        w, h = (int(part) for part in parts)
    except ValueError:
        logger.warning("Ignoring malformed %s=%r", name, raw)
        return None
    if w <= 0 or h <= 0:
        return None
    return (w, h)


@dataclass(frozen=True)
class Settings:
    mathpix_app_id: str | None = None
    mathpix_app_key: str | None = None
    mathpix_api_url: str = DEFAULT_MATHPIX_API_URL
    openai_api_key: str | None = None
    openai_api_url: str = DEFAULT_OPENAI_API_URL
    gemini_api_key: str | None = None
    gemini_api_base: str = DEFAULT_GEMINI_API_BASE
    gemini_model: str = DEFAULT_GEMINI_MODEL
    ocr_timeout: float = DEFAULT_OCR_TIMEOUT_SECONDS
    planner_timeout: float = DEFAULT_PLANNER_TIMEOUT_SECONDS
    default_backend: str | None = None
    transport_max_dim: Tuple[int, int] | None = None
    transport_quality: int = DEFAULT_TRANSPORT_QUALITY
    handwriting_font: str | None = None

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        env = os.environ if env is None else env
        return cls(
            mathpix_app_id=env.get("MATHPIX_APP_ID") or None,
            mathpix_app_key=env.get("MATHPIX_APP_KEY") or env.get("MATHPIX_API_KEY") or None,
            mathpix_api_url=env.get("MATHPIX_API_URL", DEFAULT_MATHPIX_API_URL),
            openai_api_key=env.get("OPENAI_API_KEY") or None,
            openai_api_url=env.get("OPENAI_API_URL", DEFAULT_OPENAI_API_URL),
            gemini_api_key=env.get("GEMINI_API_KEY") or None,
            gemini_api_base=env.get("GEMINI_API_BASE", DEFAULT_GEMINI_API_BASE),
            gemini_model=env.get("GEMINI_MODEL", DEFAULT_GEMINI_MODEL),
            ocr_timeout=_float_env(env, "MARKER_OCR_TIMEOUT", DEFAULT_OCR_TIMEOUT_SECONDS),
            planner_timeout=_float_env(env, "MARKER_PLANNER_TIMEOUT", DEFAULT_PLANNER_TIMEOUT_SECONDS),
            default_backend=env.get("MARKER_DEFAULT_BACKEND") or None,
            transport_max_dim=_dim_env(env, "MARKER_TRANSPORT_MAX_DIM"),
            transport_quality=int(_float_env(env, "MARKER_TRANSPORT_QUALITY", DEFAULT_TRANSPORT_QUALITY)),
            handwriting_font=env.get("MARKER_HANDWRITING_FONT") or None,
        )


__all__ = ["Settings"]
