"""
OCR provider abstraction and transcript assembly.

Providers: OCR.space (HTTP API), Google Cloud Vision, and a stub for offline runs.
"""

import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Dict, List, Optional, Protocol, Sequence

import requests

from homework.config import PipelineConfig
from homework.errors import CancelledError, ConfigError, ExtractionError
from homework.schema import AnswerImage, OcrResult, PageResult, PipelineStage, Transcript, TranscriptPage

logger = logging.getLogger(__name__)

POLICY_STRICT = "strict"
POLICY_BEST_EFFORT = "best_effort"


class OcrProvider(Protocol):
    """Protocol for OCR providers."""

    def process_image(self, image_bytes: bytes, filename: str = "", content_type: str = "") -> OcrResult:
        """Process an image and return OCR results. Raises on provider failure."""
        ...


class StubOcrProvider:
    """
    Stub OCR provider for offline runs.
    Returns the text registered for a filename, or a fixed handwritten-style answer.
    """

    DEFAULT_TEXT = "x + 5 = 12\nx = 12 - 5\nx = 7"

    def __init__(self, texts: Optional[Dict[str, str]] = None, default_text: Optional[str] = None):
        self.texts = texts or {}
        self.default_text = self.DEFAULT_TEXT if default_text is None else default_text

    def process_image(self, image_bytes: bytes, filename: str = "", content_type: str = "") -> OcrResult:
        text = self.texts.get(filename, self.default_text)
        return OcrResult(text=text, confidence=0.6, lines=text.split("\n") if text else [])


class OcrSpaceProvider:
    """
    OCR.space provider (https://ocr.space/ocrapi), engine 2 for handwriting.

    The API reports no per-page confidence, so the hint is 0.8 when a text
    overlay came back and 0.6 otherwise.
    """

    def __init__(
        self,
        api_key: str,
        url: str = "https://api.ocr.space/parse/image",
        language: str = "eng",
        timeout: float = 60,
        session: Optional[requests.Session] = None,
    ):
        if not api_key:
            raise ConfigError("OCR.space requires OCR_SPACE_API_KEY to be set")
        self.api_key = api_key
        self.url = url
        self.language = language
        self.timeout = timeout
        self.session = session or requests.Session()

    def process_image(self, image_bytes: bytes, filename: str = "", content_type: str = "") -> OcrResult:
        response = self.session.post(
            self.url,
            data={
                "apikey": self.api_key,
                "language": self.language,
                "isOverlayRequired": "false",
                "detectOrientation": "true",
                "scale": "true",
                "OCREngine": "2",
            },
            files={"file": (filename or "image", image_bytes, content_type or "application/octet-stream")},
            timeout=self.timeout,
        )
        if not response.ok:
            raise RuntimeError(f"OCR API error: {response.status_code}")

        result = response.json()
        if result.get("IsErroredOnProcessing"):
            error_message = result.get("ErrorMessage")
            if isinstance(error_message, list):
                error_message = "; ".join(str(m) for m in error_message)
            raise RuntimeError(f"OCR processing error: {error_message}")

        parsed_results = result.get("ParsedResults") or []
        if not parsed_results:
            raise RuntimeError("No text found in image")

        parsed = parsed_results[0]
        text = parsed.get("ParsedText") or ""
        overlay = parsed.get("TextOverlay") or {}
        return OcrResult(
            text=text,
            confidence=0.8 if overlay.get("HasOverlay") else 0.6,
            lines=text.splitlines(),
        )


def compute_ocr_quality_score(text: str) -> float:
    """
    Compute a 0-1 quality score using heuristics on extracted text.

    Used as a confidence hint when the OCR vendor doesn't provide one.
    score = (alpha_ratio * 0.8) + ((1 - garbage_ratio) * 0.2)
    """
    non_whitespace = [c for c in (text or "") if not c.isspace()]
    if not non_whitespace:
        return 0.0

    total = len(non_whitespace)
    alpha_ratio = sum(1 for c in non_whitespace if c.isalpha()) / total
    garbage_ratio = (total - sum(1 for c in non_whitespace if c.isalnum())) / total
    score = (alpha_ratio * 0.8) + ((1 - garbage_ratio) * 0.2)
    return max(0.0, min(1.0, score))


class GoogleVisionOcrProvider:
    """
    Google Cloud Vision OCR provider with handwriting support.

    Credentials come either from inline service-account JSON or, when that is
    absent, from GOOGLE_APPLICATION_CREDENTIALS.
    """

    def __init__(self, credentials_json: Optional[str] = None, client=None):
        if client is not None:
            self.client = client
            return
        try:
            from google.cloud import vision
            from google.oauth2 import service_account
        except ImportError as e:
            raise ConfigError("google-cloud-vision not installed. Install with: pip install google-cloud-vision") from e

        try:
            if credentials_json:
                credentials = service_account.Credentials.from_service_account_info(json.loads(credentials_json))
                self.client = vision.ImageAnnotatorClient(credentials=credentials)
            else:
                self.client = vision.ImageAnnotatorClient()
        except Exception as e:
            raise ConfigError(
                f"Failed to initialize Google Cloud Vision client: {e}\n"
                "Set GOOGLE_CLOUD_VISION_CREDENTIALS_JSON or GOOGLE_APPLICATION_CREDENTIALS."
            ) from e

    def process_image(self, image_bytes: bytes, filename: str = "", content_type: str = "") -> OcrResult:
        from google.cloud import vision

        response = self.client.document_text_detection(image=vision.Image(content=image_bytes))
        if response.error.message:
            raise RuntimeError(f"Google Cloud Vision API error: {response.error.message}")

        text = ""
        if response.full_text_annotation and response.full_text_annotation.text:
            text = response.full_text_annotation.text.strip()
        elif response.text_annotations:
            text = response.text_annotations[0].description.strip()
        return OcrResult(
            text=text,
            confidence=compute_ocr_quality_score(text),
            lines=text.split("\n") if text else [],
        )


def get_ocr_provider(config: PipelineConfig) -> OcrProvider:
    """
    Factory function to get the configured OCR provider.

    Raises:
        ConfigError for unknown providers or missing credentials
    """
    name = config.ocr_provider
    if name == "stub":
        return StubOcrProvider()
    elif name == "ocrspace":
        return OcrSpaceProvider(
            api_key=config.ocr_space_api_key,
            url=config.ocr_space_url,
            language=config.ocr_language,
            timeout=config.ocr_timeout_seconds,
        )
    elif name == "google":
        return GoogleVisionOcrProvider(credentials_json=config.google_credentials_json)
    else:
        raise ConfigError(f"Unknown OCR provider: {name}")


def build_transcript(pages: Sequence[PageResult]) -> Transcript:
    """
    Assemble successful pages into a transcript.

    Pages keep their original 1-based number. Whitespace-only pages and failed
    pages are left out; if nothing remains the transcript is empty.
    """
    kept = []
    for page in sorted(pages, key=lambda p: p.page_number):
        if not page.ok:
            continue
        text = (page.text or "").strip()
        if text:
            kept.append(TranscriptPage(page_number=page.page_number, text=text))
    return Transcript(pages=kept)


class TextExtractor:
    """
    Runs OCR over every image concurrently and builds one ordered transcript.

    Policy ``strict`` fails the stage on the first page error. Policy
    ``best_effort`` keeps the pages that worked and only fails when none did.
    """

    def __init__(self, provider: OcrProvider, policy: str = POLICY_STRICT, max_workers: int = 4):
        if policy not in (POLICY_STRICT, POLICY_BEST_EFFORT):
            raise ConfigError(f"Unknown OCR policy: {policy}")
        self.provider = provider
        self.policy = policy
        self.max_workers = max(1, max_workers)

    def _ocr_page(self, page_number: int, image: AnswerImage, cancel_event: Optional[threading.Event]) -> PageResult:
        if cancel_event is not None and cancel_event.is_set():
            raise CancelledError("Submission cancelled during text extraction", PipelineStage.EXTRACTING)
        try:
            result = self.provider.process_image(image.data, image.filename, image.content_type)
        except Exception as e:
            logger.warning(f"⚠️ OCR failed for page {page_number} ({image.filename}): {e}")
            return PageResult(page_number=page_number, filename=image.filename, error=str(e) or type(e).__name__)
        return PageResult(
            page_number=page_number,
            filename=image.filename,
            text=result.text,
            confidence=result.confidence,
        )

    def extract_pages(
        self,
        images: Sequence[AnswerImage],
        cancel_event: Optional[threading.Event] = None,
    ) -> List[PageResult]:
        """
        OCR every image, returning one PageResult per image in input order.

        Raises:
            ExtractionError in strict mode as soon as any page fails
        """
        results: List[Optional[PageResult]] = [None] * len(images)
        with ThreadPoolExecutor(max_workers=min(self.max_workers, max(1, len(images)))) as executor:
            futures = {
                executor.submit(self._ocr_page, number, image, cancel_event): number
                for number, image in enumerate(images, 1)
            }
            try:
                for future in as_completed(futures):
                    page = future.result()
                    if not page.ok and self.policy == POLICY_STRICT:
                        raise ExtractionError(
                            f"Text extraction failed for page {page.page_number} ({page.filename}): {page.error}",
                            page.page_number,
                        )
                    results[page.page_number - 1] = page
            except BaseException:
                for future in futures:
                    future.cancel()
                raise
        return [page for page in results if page is not None]

    def extract(
        self,
        images: Sequence[AnswerImage],
        cancel_event: Optional[threading.Event] = None,
    ) -> Transcript:
        """
        OCR all images and return the page-labeled transcript.

        Raises:
            ExtractionError when the policy does not allow the failures seen
        """
        logger.info(f"🔍 Extracting text from {len(images)} image(s) (policy={self.policy})")
        pages = self.extract_pages(images, cancel_event)
        failed = [page for page in pages if not page.ok]
        if failed and len(failed) == len(pages):
            raise ExtractionError(
                f"Text extraction failed for every page: {failed[0].error}",
                failed[0].page_number,
            )
        if failed:
            logger.warning(
                f"⚠️ Continuing without {len(failed)} unreadable page(s): "
                f"{', '.join(str(page.page_number) for page in failed)}"
            )

        transcript = build_transcript(pages)
        if transcript.is_empty:
            logger.info("No readable text found on any page")
        return transcript
