"""Linear marking pipeline: validate, OCR, plan, composite."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Dict

from . import codec
from .compositor import OverlayCompositor
from .config import Settings
from .errors import MarkingError, OCRUnavailable
from .ocr import OCRClient
from .planner import AnnotationPlanner, Backend
from .types import ImagePayload, OCRProvenance, OCRResult, PipelineResult

logger = logging.getLogger(__name__)


class Stage(str, Enum):
    INGESTED = "ingested"
    VALIDATED = "validated"
    OCR_COMPLETE = "ocr_complete"
    PLAN_COMPLETE = "plan_complete"
    COMPOSITED = "composited"
    DONE = "done"


# The stage each failure is attributed to is the one being worked towards.
_FAILING_STAGE = {
    Stage.INGESTED: Stage.VALIDATED,
    Stage.VALIDATED: Stage.OCR_COMPLETE,
    Stage.OCR_COMPLETE: Stage.PLAN_COMPLETE,
    Stage.PLAN_COMPLETE: Stage.COMPOSITED,
    Stage.COMPOSITED: Stage.DONE,
}


class MarkingPipeline:
    """Sequences the marking components for a single request.

    Nothing is retried here; the planner's backend ladder is the only
    fallback. A failure at any stage is re-raised tagged with that stage and
    no partially marked image is ever returned.
    """

    def __init__(
        self,
        ocr_client: OCRClient,
        planner: AnnotationPlanner,
        compositor: OverlayCompositor,
        settings: Settings | None = None,
    ) -> None:
        self._ocr = ocr_client
        self._planner = planner
        self._compositor = compositor
        self._settings = settings or Settings()

    @classmethod
    def from_settings(cls, settings: Settings) -> "MarkingPipeline":
        return cls(
            OCRClient(settings),
            AnnotationPlanner.from_settings(settings),
            OverlayCompositor(settings.handwriting_font),
            settings,
        )

    def close(self) -> None:
        """Release the HTTP sessions held by the OCR client and the backends."""
        try:
            self._ocr.close()
        finally:
            self._planner.close()

    def availability(self) -> Dict[str, Any]:
        return {"ocr": self._ocr.is_available(), "backends": self._planner.availability()}

    def prepare(self, image_data: str) -> ImagePayload:
        """Decode and, when transport compression is configured, shrink the image.

        The returned payload is the single working canvas: OCR, planning,
        rendering and compositing all use its pixel space.
        """

        image = codec.decode(image_data)
        if self._settings.transport_max_dim is not None:
            image = codec.compress(image, self._settings.transport_max_dim, self._settings.transport_quality)
        return image

    def extract_text(self, image: ImagePayload) -> OCRResult:
        if not self._ocr.is_available():
            raise OCRUnavailable("OCR backend unavailable: MATHPIX_APP_KEY is not configured")
        return self._ocr.extract(image)

    def run(
        self,
        image_data: str,
        image_name: str,
        preferred: Backend | str | None = None,
    ) -> PipelineResult:
        stage = Stage.INGESTED
        logger.info("Marking %s: %s", image_name, stage.value)
        try:
            if not isinstance(preferred, Backend):
                preferred = Backend.parse(preferred)
            image = self.prepare(image_data)
            canvas = codec.dimensions(image)
            stage = Stage.VALIDATED
            logger.info(
                "Marking %s: %s (%sx%s, %s bytes)",
                image_name,
                stage.value,
                canvas[0],
                canvas[1],
                len(image.data),
            )

            ocr = self.extract_text(image)
            stage = Stage.OCR_COMPLETE
            logger.info("Marking %s: %s (%s regions)", image_name, stage.value, len(ocr.regions))

            outcome = self._planner.plan(image, ocr, preferred, canvas_size=canvas)
            stage = Stage.PLAN_COMPLETE
            logger.info(
                "Marking %s: %s via %s (%s annotations)",
                image_name,
                stage.value,
                outcome.backend.label,
                len(outcome.annotations),
            )

            overlay = self._compositor.render(outcome.annotations, canvas)
            final_image = self._compositor.composite(image, overlay)
            stage = Stage.COMPOSITED
        except MarkingError as exc:
            failed = _FAILING_STAGE.get(stage, stage)
            if exc.stage is None:
                exc.stage = failed.value
            logger.error("Marking %s failed at %s: %s", image_name, exc.stage, exc.message)
            raise

        logger.info("Marking %s: %s", image_name, Stage.DONE.value)
        return PipelineResult(
            final_image=final_image,
            annotations=outcome.annotations,
            ocr_provenance=OCRProvenance.DEGRADED if ocr.degraded else OCRProvenance.PRIMARY,
            model_provenance=outcome.backend.label,
            ocr=ocr,
        )


__all__ = ["MarkingPipeline", "Stage"]
