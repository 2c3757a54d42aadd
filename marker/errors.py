"""Caller-facing failure taxonomy for the marking pipeline."""

from __future__ import annotations

from typing import Any, Dict, Sequence


class MarkingError(Exception):
    """Base class for failures surfaced to the caller.

    ``stage`` names the pipeline stage that was running when the failure
    happened; the orchestrator fills it in when a component does not.
    """

    kind = "marking_error"
    status_code = 500

    def __init__(self, message: str, *, stage: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.stage = stage

    def to_wire(self) -> Dict[str, Any]:
        return {"error": self.message, "kind": self.kind, "stage": self.stage}


class InvalidInput(MarkingError):
    """Image data is missing or malformed; the user can fix this."""

    kind = "invalid_input"
    status_code = 400

    def __init__(self, message: str, *, reason: str, stage: str | None = None) -> None:
        super().__init__(message, stage=stage)
        self.reason = reason

    def to_wire(self) -> Dict[str, Any]:
        body = super().to_wire()
        body["reason"] = self.reason
        return body


class OCRUnavailable(MarkingError):
    kind = "ocr_unavailable"
    status_code = 503


class OCRFailure(MarkingError):
    kind = "ocr_failure"
    status_code = 502


class PlanningFailure(MarkingError):
    """Every annotation backend on the ladder failed."""

    kind = "planning_failure"
    status_code = 502

    def __init__(
        self,
        message: str,
        *,
        tried: Sequence[str],
        last_error: BaseException | None,
        stage: str | None = None,
    ) -> None:
        super().__init__(message, stage=stage)
        self.tried = tuple(tried)
        self.last_error = last_error

    def to_wire(self) -> Dict[str, Any]:
        body = super().to_wire()
        body["tried"] = list(self.tried)
        return body


class CompositingFailure(MarkingError):
    kind = "compositing_failure"
    status_code = 500


class AnnotationParseError(ValueError):
    """Raised when a backend response does not hold a valid annotation document."""


__all__ = [
    "AnnotationParseError",
    "CompositingFailure",
    "InvalidInput",
    "MarkingError",
    "OCRFailure",
    "OCRUnavailable",
    "PlanningFailure",
]
