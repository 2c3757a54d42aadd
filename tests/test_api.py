from __future__ import annotations

import base64
import io
import unittest
from unittest import mock

from fastapi.testclient import TestClient
from PIL import Image

from marker import app
from marker.compositor import OverlayCompositor
from marker.config import Settings
from marker.errors import OCRFailure
from marker.main import get_pipeline
from marker.pipeline import MarkingPipeline
from marker.planner import AnnotationPlanner, Backend, BackendError
from marker.types import ImagePayload, OCRResult

TICK_REPLY = '{"annotations":[{"action":"tick","bbox":[10,10,50,40],"comment":"Correct"}]}'


def _page_url() -> str:
    buf = io.BytesIO()
    Image.effect_noise((200, 120), 40).convert("RGB").save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


class _OCR:
    def __init__(self, result: OCRResult | None = None, error: Exception | None = None) -> None:
        self.result = result or OCRResult(text="3x+7=22", confidence=0.8, regions=(), degraded=False)
        self.error = error

    def is_available(self) -> bool:
        return True

    def close(self) -> None:
        pass

    def extract(self, image: ImagePayload) -> OCRResult:
        if self.error is not None:
            raise self.error
        return self.result


class _Backend:
    def __init__(self, backend: Backend, reply: str | None = None, error: Exception | None = None) -> None:
        self.backend = backend
        self.reply = reply
        self.error = error

    def is_available(self) -> bool:
        return True

    def close(self) -> None:
        pass

    def complete(self, system_prompt: str, user_prompt: str, image: ImagePayload) -> str:
        if self.error is not None:
            raise self.error
        return self.reply or ""


class TestHttpSurface(unittest.TestCase):
    def setUp(self) -> None:
        self.ocr = _OCR()
        self.backends = {
            Backend.CHATGPT_5: _Backend(Backend.CHATGPT_5, error=BackendError("down")),
            Backend.CHATGPT_4O: _Backend(Backend.CHATGPT_4O, reply=TICK_REPLY),
        }
        app.dependency_overrides[get_pipeline] = lambda: MarkingPipeline(
            self.ocr,  # type: ignore[arg-type]
            AnnotationPlanner(self.backends),
            OverlayCompositor(),
        )
        self.client = TestClient(app)

    def tearDown(self) -> None:
        app.dependency_overrides.clear()

    def test_mark_homework_response_shape(self) -> None:
        resp = self.client.post(
            "/mark-homework",
            json={"imageData": _page_url(), "imageName": "hw.png", "model": "chatgpt-5"},
        )
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertTrue(body["markedImage"].startswith("data:image/png;base64,"))
        self.assertEqual(
            body["instructions"],
            {"annotations": [{"action": "tick", "bbox": [10.0, 10.0, 60.0, 50.0], "comment": "Correct"}]},
        )
        self.assertEqual(body["apiUsed"], "OpenAI GPT-4 Omni")
        self.assertEqual(body["ocrMethod"], "primary")
        self.assertEqual(body["message"], "Homework marked successfully")

    def test_invalid_image_is_400_with_reason(self) -> None:
        resp = self.client.post(
            "/mark-homework",
            json={"imageData": "data:image/jpeg;base64,test", "imageName": "hw.jpg"},
        )
        self.assertEqual(resp.status_code, 400)
        body = resp.json()
        self.assertEqual(body["kind"], "invalid_input")
        self.assertEqual(body["reason"], "too_short")
        self.assertEqual(body["stage"], "validated")
        self.assertIn("too short", body["error"])

    def test_missing_fields_are_rejected(self) -> None:
        resp = self.client.post("/mark-homework", json={"imageData": _page_url()})
        self.assertEqual(resp.status_code, 422)

    def test_ocr_failure_is_502(self) -> None:
        self.ocr.error = OCRFailure("OCR backend returned HTTP 500")
        resp = self.client.post("/mark-homework", json={"imageData": _page_url(), "imageName": "hw.png"})
        self.assertEqual(resp.status_code, 502)
        self.assertEqual(resp.json()["kind"], "ocr_failure")
        self.assertNotIn("markedImage", resp.json())

    def test_planning_failure_lists_backends_tried(self) -> None:
        self.backends[Backend.CHATGPT_4O].reply = "sorry"
        resp = self.client.post("/mark-homework", json={"imageData": _page_url(), "imageName": "hw.png"})
        self.assertEqual(resp.status_code, 502)
        body = resp.json()
        self.assertEqual(body["kind"], "planning_failure")
        self.assertEqual(body["tried"], ["chatgpt-5", "chatgpt-4o"])

    def test_process_image_returns_regions(self) -> None:
        resp = self.client.post("/process-image", json={"imageData": _page_url()})
        self.assertEqual(resp.status_code, 200)
        result = resp.json()["result"]
        self.assertEqual(result["ocrText"], "3x+7=22")
        self.assertEqual(result["imageDimensions"], {"width": 200, "height": 120})
        self.assertEqual(result["boundingBoxes"], [])

    def test_health_reports_availability(self) -> None:
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        body = resp.json()
        self.assertEqual(body["status"], "ok")
        self.assertTrue(body["ocr"])
        self.assertEqual(body["backends"], {"chatgpt-5": True, "chatgpt-4o": True})


class TestPipelineDependency(unittest.TestCase):
    def test_pipeline_is_closed_after_the_request(self) -> None:
        pipeline = mock.Mock(spec=MarkingPipeline)
        with mock.patch.object(MarkingPipeline, "from_settings", return_value=pipeline):
            dependency = get_pipeline(Settings())
            self.assertIs(next(dependency), pipeline)
            pipeline.close.assert_not_called()
            dependency.close()
        pipeline.close.assert_called_once_with()


if __name__ == "__main__":
    unittest.main()
