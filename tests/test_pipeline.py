from __future__ import annotations

import base64
import io
import unittest

from PIL import Image

from marker.compositor import OverlayCompositor
from marker.config import Settings
from marker.errors import InvalidInput, OCRFailure, OCRUnavailable, PlanningFailure
from marker.pipeline import MarkingPipeline
from marker.planner import AnnotationPlanner, Backend, BackendError
from marker.types import Action, ImagePayload, OCRProvenance, OCRResult, TextRegion

TICK_REPLY = '{"annotations":[{"action":"tick","bbox":[10,10,50,40],"comment":"Correct"}]}'


def _page_url(width: int = 240, height: int = 160) -> str:
    buf = io.BytesIO()
    Image.effect_noise((width, height), 40).convert("RGB").save(buf, format="PNG")
    return "data:image/png;base64," + base64.b64encode(buf.getvalue()).decode("ascii")


class StubOCR:
    def __init__(self, result: OCRResult | None = None, error: Exception | None = None, available: bool = True) -> None:
        self.result = result or OCRResult(
            text="3x+7=22",
            confidence=0.9,
            regions=(TextRegion(10, 10, 60, 20, "3x+7=22", 0.9),),
        )
        self.error = error
        self.available = available
        self.calls = 0
        self.images: list[ImagePayload] = []
        self.closed = False

    def is_available(self) -> bool:
        return self.available

    def close(self) -> None:
        self.closed = True

    def extract(self, image: ImagePayload) -> OCRResult:
        self.calls += 1
        self.images.append(image)
        if self.error is not None:
            raise self.error
        return self.result


class StubBackend:
    def __init__(self, backend: Backend, reply: str | None = None, error: Exception | None = None) -> None:
        self.backend = backend
        self.reply = reply
        self.error = error
        self.user_prompts: list[str] = []
        self.closed = False

    def is_available(self) -> bool:
        return True

    def close(self) -> None:
        self.closed = True

    def complete(self, system_prompt: str, user_prompt: str, image: ImagePayload) -> str:
        self.user_prompts.append(user_prompt)
        if self.error is not None:
            raise self.error
        return self.reply or ""


def _pipeline(
    ocr: StubOCR | None = None,
    backends: tuple[StubBackend, ...] | None = None,
    settings: Settings | None = None,
) -> MarkingPipeline:
    if backends is None:
        backends = (StubBackend(Backend.CHATGPT_5, reply=TICK_REPLY),)
    planner = AnnotationPlanner({b.backend: b for b in backends})
    return MarkingPipeline(ocr or StubOCR(), planner, OverlayCompositor(), settings)  # type: ignore[arg-type]


class TestMarkingPipeline(unittest.TestCase):
    def test_successful_run_assembles_result(self) -> None:
        result = _pipeline().run(_page_url(), "hw.png")
        self.assertEqual(result.model_provenance, "OpenAI GPT-5")
        self.assertIs(result.ocr_provenance, OCRProvenance.PRIMARY)
        self.assertEqual(len(result.annotations), 1)
        self.assertEqual(result.annotations[0].action, Action.TICK)
        self.assertEqual(result.annotations[0].bbox, (10, 10, 60, 50))
        self.assertEqual(result.final_image.mime_subtype, "png")
        self.assertEqual(result.final_image.size, (240, 160))

    def test_provenance_names_the_backend_that_answered(self) -> None:
        failing = StubBackend(Backend.GEMINI, error=BackendError("quota"))
        fallback = StubBackend(Backend.CHATGPT_5, reply=TICK_REPLY)
        result = _pipeline(backends=(failing, fallback)).run(_page_url(), "hw.png", "gemini-2.5-pro")
        self.assertEqual(result.model_provenance, "OpenAI GPT-5")
        self.assertEqual(len(failing.user_prompts), 1)

    def test_short_payload_fails_before_any_external_call(self) -> None:
        ocr = StubOCR()
        backend = StubBackend(Backend.CHATGPT_5, reply=TICK_REPLY)
        with self.assertRaises(InvalidInput) as ctx:
            _pipeline(ocr, (backend,)).run("data:image/jpeg;base64,test", "hw.jpg")
        self.assertEqual(ctx.exception.reason, "too_short")
        self.assertEqual(ctx.exception.stage, "validated")
        self.assertEqual(ocr.calls, 0)
        self.assertEqual(backend.user_prompts, [])

    def test_non_image_payload_fails_before_any_external_call(self) -> None:
        ocr = StubOCR()
        backend = StubBackend(Backend.CHATGPT_5, reply=TICK_REPLY)
        body = base64.b64encode(b"these are my answers to question four " * 3).decode("ascii")
        with self.assertRaises(InvalidInput) as ctx:
            _pipeline(ocr, (backend,)).run("data:image/png;base64," + body, "hw.png")
        self.assertEqual(ctx.exception.reason, "undecodable")
        self.assertEqual(ctx.exception.stage, "validated")
        self.assertEqual(ocr.calls, 0)
        self.assertEqual(backend.user_prompts, [])

    def test_close_releases_ocr_and_backends(self) -> None:
        ocr = StubOCR()
        backends = (StubBackend(Backend.CHATGPT_5), StubBackend(Backend.GEMINI))
        _pipeline(ocr, backends).close()
        self.assertTrue(ocr.closed)
        self.assertTrue(all(b.closed for b in backends))

    def test_unknown_model_is_input_error(self) -> None:
        with self.assertRaises(InvalidInput) as ctx:
            _pipeline().run(_page_url(), "hw.png", "mystery-model")
        self.assertEqual(ctx.exception.reason, "unknown_model")

    def test_ocr_unavailable_fails_fast(self) -> None:
        ocr = StubOCR(available=False)
        backend = StubBackend(Backend.CHATGPT_5, reply=TICK_REPLY)
        with self.assertRaises(OCRUnavailable) as ctx:
            _pipeline(ocr, (backend,)).run(_page_url(), "hw.png")
        self.assertEqual(ctx.exception.stage, "ocr_complete")
        self.assertEqual(ocr.calls, 0)
        self.assertEqual(backend.user_prompts, [])

    def test_ocr_failure_is_terminal_and_not_retried(self) -> None:
        ocr = StubOCR(error=OCRFailure("HTTP 500"))
        backend = StubBackend(Backend.CHATGPT_5, reply=TICK_REPLY)
        with self.assertRaises(OCRFailure) as ctx:
            _pipeline(ocr, (backend,)).run(_page_url(), "hw.png")
        self.assertEqual(ctx.exception.stage, "ocr_complete")
        self.assertEqual(ocr.calls, 1)
        self.assertEqual(backend.user_prompts, [])

    def test_planning_failure_is_tagged_with_stage(self) -> None:
        backends = (
            StubBackend(Backend.CHATGPT_5, reply="no json here"),
            StubBackend(Backend.GEMINI, error=BackendError("down")),
        )
        with self.assertRaises(PlanningFailure) as ctx:
            _pipeline(backends=backends).run(_page_url(), "hw.png")
        self.assertEqual(ctx.exception.stage, "plan_complete")
        self.assertEqual(ctx.exception.tried, ("chatgpt-5", "gemini-2.5-pro"))

    def test_empty_plan_returns_original_image(self) -> None:
        url = _page_url()
        backend = StubBackend(Backend.CHATGPT_5, reply='{"annotations": []}')
        result = _pipeline(backends=(backend,)).run(url, "hw.png")
        self.assertEqual(result.annotations, ())
        self.assertEqual(result.final_image.data_url(), url)

    def test_degraded_ocr_is_reported(self) -> None:
        ocr = StubOCR(
            OCRResult("x=1", 0.8, (TextRegion(50, 50, 100, 25, "x=1", 0.8),), degraded=True)
        )
        result = _pipeline(ocr).run(_page_url(), "hw.png")
        self.assertIs(result.ocr_provenance, OCRProvenance.DEGRADED)
        self.assertEqual(result.ocr_provenance.wire_value, "degraded-fallback")

    def test_transport_compression_gives_one_canvas_end_to_end(self) -> None:
        ocr = StubOCR()
        backend = StubBackend(Backend.CHATGPT_5, reply=TICK_REPLY)
        settings = Settings(transport_max_dim=(120, 120), transport_quality=90)
        result = _pipeline(ocr, (backend,), settings).run(_page_url(480, 240), "hw.png")
        self.assertEqual(ocr.images[0].size, (120, 60))
        self.assertIn("120x60", backend.user_prompts[0])
        self.assertEqual(result.final_image.size, (120, 60))


if __name__ == "__main__":
    unittest.main()
