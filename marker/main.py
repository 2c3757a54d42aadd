"""FastAPI server exposing the homework marking pipeline."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Dict, Iterator, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from .codec import dimensions, to_data_url
from .config import Settings
from .errors import MarkingError
from .logging_config import configure_logging
from .pipeline import MarkingPipeline, Stage
from .types import OCRProvenance, annotations_to_wire

logger = logging.getLogger(__name__)


@asynccontextmanager
async def _lifespan(_: FastAPI) -> AsyncIterator[None]:
    configure_logging()
    yield


app: FastAPI = FastAPI(title="Homework Marker API", version="0.1.0", lifespan=_lifespan)


class MarkRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_data: str = Field(..., alias="imageData")
    image_name: str = Field(..., alias="imageName", min_length=1)
    model: Optional[str] = Field(default=None, description="chatgpt-5, chatgpt-4o or gemini-2.5-pro")


class ProcessImageRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    image_data: str = Field(..., alias="imageData")


def get_settings() -> Settings:
    return Settings.from_env()


def get_pipeline(settings: Settings = Depends(get_settings)) -> Iterator[MarkingPipeline]:
    # One pipeline per request; its sessions are closed once the response is built.
    pipeline = MarkingPipeline.from_settings(settings)
    try:
        yield pipeline
    finally:
        pipeline.close()


@app.exception_handler(MarkingError)
async def _marking_error_handler(_: Request, exc: MarkingError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content=exc.to_wire())


@app.post("/mark-homework")
def mark_homework(req: MarkRequest, pipeline: MarkingPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    result = pipeline.run(req.image_data, req.image_name, req.model)
    return {
        "markedImage": to_data_url(result.final_image),
        "instructions": annotations_to_wire(result.annotations),
        "message": "Homework marked successfully",
        "apiUsed": result.model_provenance,
        "ocrMethod": result.ocr_provenance.wire_value,
    }


@app.post("/process-image")
def process_image(req: ProcessImageRequest, pipeline: MarkingPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    try:
        image = pipeline.prepare(req.image_data)
    except MarkingError as exc:
        exc.stage = exc.stage or Stage.VALIDATED.value
        raise
    try:
        ocr = pipeline.extract_text(image)
    except MarkingError as exc:
        exc.stage = exc.stage or Stage.OCR_COMPLETE.value
        raise

    width, height = dimensions(image)
    provenance = OCRProvenance.DEGRADED if ocr.degraded else OCRProvenance.PRIMARY
    return {
        "success": True,
        "result": {
            "ocrText": ocr.text,
            "confidence": ocr.confidence,
            "boundingBoxes": [region.to_wire() for region in ocr.regions],
            "imageDimensions": {"width": width, "height": height},
            "ocrMethod": provenance.wire_value,
        },
    }


@app.get("/health")
def health(pipeline: MarkingPipeline = Depends(get_pipeline)) -> Dict[str, Any]:
    return {"status": "ok", **pipeline.availability()}
