"""
Tests for OCR providers and transcript assembly.
"""

import threading
from unittest.mock import MagicMock

import pytest

from homework.config import PipelineConfig
from homework.errors import CancelledError, ConfigError, ExtractionError
from homework.ocr import (
    OcrSpaceProvider,
    StubOcrProvider,
    TextExtractor,
    build_transcript,
    compute_ocr_quality_score,
    get_ocr_provider,
)
from homework.schema import AnswerImage, OcrResult, PageResult


def _images(*names):
    return [AnswerImage(filename=n, content_type="image/jpeg", data=n.encode()) for n in names]


class FailingPageProvider:
    """OCR provider that errors for selected filenames."""

    def __init__(self, texts, failing):
        self.texts = texts
        self.failing = set(failing)

    def process_image(self, image_bytes, filename="", content_type=""):
        if filename in self.failing:
            raise RuntimeError(f"OCR API error: 500 for {filename}")
        return OcrResult(text=self.texts.get(filename, ""))


# ---------------------------------------------------------------------------
# Transcript assembly
# ---------------------------------------------------------------------------

class TestBuildTranscript:

    def test_blank_page_is_omitted_and_numbering_kept(self):
        pages = [
            PageResult(page_number=1, text="  "),
            PageResult(page_number=2, text="2+2=4"),
        ]
        transcript = build_transcript(pages)
        assert transcript.text == "[Page 2]\n2+2=4"
        assert "[Page 1]" not in transcript.text

    def test_pages_joined_with_blank_line(self):
        pages = [PageResult(page_number=1, text=" a \n"), PageResult(page_number=2, text="b")]
        assert build_transcript(pages).text == "[Page 1]\na\n\n[Page 2]\nb"

    def test_all_blank_gives_empty_transcript(self):
        transcript = build_transcript([PageResult(page_number=1, text="\n\t")])
        assert transcript.is_empty
        assert transcript.text == ""

    def test_failed_pages_are_skipped(self):
        pages = [PageResult(page_number=1, error="boom"), PageResult(page_number=2, text="ok")]
        assert build_transcript(pages).text == "[Page 2]\nok"


# ---------------------------------------------------------------------------
# TextExtractor
# ---------------------------------------------------------------------------

class TestTextExtractor:

    def test_whitespace_page_dropped_from_transcript(self):
        provider = StubOcrProvider(texts={"p1.jpg": "  ", "p2.jpg": "2+2=4"})
        transcript = TextExtractor(provider).extract(_images("p1.jpg", "p2.jpg"))
        assert [p.page_number for p in transcript.pages] == [2]
        assert transcript.text == "[Page 2]\n2+2=4"

    def test_order_follows_input_not_completion(self):
        names = [f"p{i}.jpg" for i in range(1, 7)]
        provider = StubOcrProvider(texts={n: n.upper() for n in names})
        transcript = TextExtractor(provider, max_workers=6).extract(_images(*names))
        assert [p.page_number for p in transcript.pages] == [1, 2, 3, 4, 5, 6]
        assert transcript.pages[0].text == "P1.JPG"

    def test_strict_policy_fails_on_any_page(self):
        provider = FailingPageProvider({"p1.jpg": "a", "p3.jpg": "c"}, failing=["p2.jpg"])
        with pytest.raises(ExtractionError) as exc_info:
            TextExtractor(provider).extract(_images("p1.jpg", "p2.jpg", "p3.jpg"))
        assert exc_info.value.page_number == 2
        assert "page 2" in str(exc_info.value)

    def test_best_effort_keeps_good_pages(self):
        provider = FailingPageProvider({"p1.jpg": "a", "p3.jpg": "c"}, failing=["p2.jpg"])
        transcript = TextExtractor(provider, policy="best_effort").extract(_images("p1.jpg", "p2.jpg", "p3.jpg"))
        assert transcript.text == "[Page 1]\na\n\n[Page 3]\nc"

    def test_best_effort_fails_when_every_page_fails(self):
        provider = FailingPageProvider({}, failing=["p1.jpg", "p2.jpg"])
        with pytest.raises(ExtractionError):
            TextExtractor(provider, policy="best_effort").extract(_images("p1.jpg", "p2.jpg"))

    def test_extract_pages_reports_tagged_results(self):
        provider = FailingPageProvider({"p1.jpg": "a"}, failing=["p2.jpg"])
        pages = TextExtractor(provider, policy="best_effort").extract_pages(_images("p1.jpg", "p2.jpg"))
        assert pages[0].ok and pages[0].text == "a"
        assert not pages[1].ok and "500" in pages[1].error

    def test_empty_transcript_is_not_a_failure(self):
        transcript = TextExtractor(StubOcrProvider(default_text="")).extract(_images("p1.jpg"))
        assert transcript.is_empty

    def test_cancelled(self):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(CancelledError):
            TextExtractor(StubOcrProvider()).extract(_images("p1.jpg"), cancel)

    def test_unknown_policy(self):
        with pytest.raises(ConfigError):
            TextExtractor(StubOcrProvider(), policy="lenient")


# ---------------------------------------------------------------------------
# OCR.space provider
# ---------------------------------------------------------------------------

def _response(ok=True, status_code=200, payload=None):
    response = MagicMock()
    response.ok = ok
    response.status_code = status_code
    response.json.return_value = payload or {}
    return response


class TestOcrSpaceProvider:

    def test_sends_engine_two_request(self):
        session = MagicMock()
        session.post.return_value = _response(payload={
            "IsErroredOnProcessing": False,
            "ParsedResults": [{"ParsedText": "x = 7\r\n", "TextOverlay": {"HasOverlay": False}}],
        })
        provider = OcrSpaceProvider(api_key="k", session=session, timeout=5)

        result = provider.process_image(b"img", "p1.jpg", "image/jpeg")

        assert result.text == "x = 7\r\n"
        assert result.confidence == 0.6
        kwargs = session.post.call_args.kwargs
        assert kwargs["data"]["apikey"] == "k"
        assert kwargs["data"]["language"] == "eng"
        assert kwargs["data"]["OCREngine"] == "2"
        assert kwargs["files"]["file"] == ("p1.jpg", b"img", "image/jpeg")
        assert kwargs["timeout"] == 5

    def test_overlay_raises_confidence_hint(self):
        session = MagicMock()
        session.post.return_value = _response(payload={
            "ParsedResults": [{"ParsedText": "a", "TextOverlay": {"HasOverlay": True}}],
        })
        assert OcrSpaceProvider(api_key="k", session=session).process_image(b"i").confidence == 0.8

    def test_http_error(self):
        session = MagicMock()
        session.post.return_value = _response(ok=False, status_code=403)
        with pytest.raises(RuntimeError, match="403"):
            OcrSpaceProvider(api_key="k", session=session).process_image(b"i")

    def test_processing_error(self):
        session = MagicMock()
        session.post.return_value = _response(payload={
            "IsErroredOnProcessing": True,
            "ErrorMessage": ["Unable to recognize the file type"],
        })
        with pytest.raises(RuntimeError, match="Unable to recognize"):
            OcrSpaceProvider(api_key="k", session=session).process_image(b"i")

    def test_no_parsed_results(self):
        session = MagicMock()
        session.post.return_value = _response(payload={"ParsedResults": []})
        with pytest.raises(RuntimeError, match="No text found"):
            OcrSpaceProvider(api_key="k", session=session).process_image(b"i")

    def test_requires_api_key(self):
        with pytest.raises(ConfigError):
            OcrSpaceProvider(api_key="")


class TestProviderFactory:

    def test_stub(self):
        assert isinstance(get_ocr_provider(PipelineConfig(ocr_provider="stub")), StubOcrProvider)

    def test_ocrspace_uses_config(self):
        config = PipelineConfig(ocr_provider="ocrspace", ocr_space_api_key="key", ocr_language="spa")
        provider = get_ocr_provider(config)
        assert isinstance(provider, OcrSpaceProvider)
        assert provider.language == "spa"

    def test_ocrspace_missing_key(self):
        with pytest.raises(ConfigError):
            get_ocr_provider(PipelineConfig(ocr_provider="ocrspace"))


class TestOcrQualityScore:

    def test_empty_text_returns_zero(self):
        assert compute_ocr_quality_score("") == 0.0
        assert compute_ocr_quality_score("   ") == 0.0

    def test_clean_text_scores_high(self):
        assert compute_ocr_quality_score("The answer is seven") > 0.9

    def test_garbage_scores_low(self):
        assert compute_ocr_quality_score("#$%^&*") < 0.1
