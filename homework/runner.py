"""
Pipeline runner: orchestrates one homework submission attempt.
Runs upload → OCR → evaluation → recording and reports progress as events.
"""

import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Dict, Iterator, Optional, Sequence, Set, Tuple

from auth.supabase_client import get_service_role_client, get_supabase_client, get_user_id
from homework.config import PipelineConfig
from homework.errors import CancelledError, PipelineError, ValidationError
from homework.evaluate import Evaluator, get_llm_client
from homework.ocr import TextExtractor, get_ocr_provider
from homework.schema import (
    AnswerImage,
    Assignment,
    PipelineEvent,
    PipelineResults,
    PipelineStage,
)
from homework.storage import ObjectUploader, SupabaseObjectStore
from homework.supabase_db import SubmissionRecorder
from homework.validate import require_images, validate_images

logger = logging.getLogger(__name__)

STAGE_PROGRESS: Dict[PipelineStage, int] = {
    PipelineStage.IDLE: 0,
    PipelineStage.UPLOADING: 10,
    PipelineStage.EXTRACTING: 35,
    PipelineStage.EVALUATING: 65,
    PipelineStage.RECORDING: 85,
    PipelineStage.COMPLETED: 100,
}

STAGE_MESSAGES: Dict[PipelineStage, str] = {
    PipelineStage.UPLOADING: "Uploading images...",
    PipelineStage.EXTRACTING: "Extracting text from images...",
    PipelineStage.EVALUATING: "AI is evaluating your answer...",
    PipelineStage.RECORDING: "Saving your submission...",
}

_ALLOWED_TRANSITIONS: Dict[PipelineStage, Set[PipelineStage]] = {
    PipelineStage.IDLE: {PipelineStage.UPLOADING},
    PipelineStage.UPLOADING: {PipelineStage.EXTRACTING, PipelineStage.FAILED},
    PipelineStage.EXTRACTING: {PipelineStage.EVALUATING, PipelineStage.FAILED},
    PipelineStage.EVALUATING: {PipelineStage.RECORDING, PipelineStage.FAILED},
    PipelineStage.RECORDING: {PipelineStage.COMPLETED, PipelineStage.FAILED},
    PipelineStage.COMPLETED: {PipelineStage.IDLE},
    PipelineStage.FAILED: {PipelineStage.IDLE},
}


class SingleFlight:
    """Allows at most one in-flight attempt per (assignment, submitter)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._active: Set[Tuple[str, str]] = set()

    def acquire(self, key: Tuple[str, str]) -> bool:
        with self._lock:
            if key in self._active:
                return False
            self._active.add(key)
            return True

    def release(self, key: Tuple[str, str]) -> None:
        with self._lock:
            self._active.discard(key)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _prepend(first: PipelineEvent, events: Iterator[PipelineEvent]) -> Iterator[PipelineEvent]:
    try:
        yield first
        yield from events
    finally:
        events.close()


class PipelineOrchestrator:
    """
    State machine for a submission attempt.

    ``stage`` and ``results`` may be read at any time for progress display;
    only the orchestrator changes them. A failed attempt reports its stage and
    message and then returns to Idle so the student can start over.
    """

    def __init__(
        self,
        uploader: ObjectUploader,
        extractor: TextExtractor,
        evaluator: Evaluator,
        recorder: SubmissionRecorder,
        identity_provider: Optional[Callable[[Optional[str]], Optional[str]]] = None,
        single_flight: Optional[SingleFlight] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.uploader = uploader
        self.extractor = extractor
        self.evaluator = evaluator
        self.recorder = recorder
        self.identity_provider = identity_provider
        self.single_flight = single_flight or SingleFlight()
        self.clock = clock

        self.stage = PipelineStage.IDLE
        self.results = PipelineResults()
        self.last_error: Optional[PipelineError] = None
        self.rejected_files: list = []
        self._cancel_event = threading.Event()
        self._busy = threading.Lock()

    def _transition(self, next_stage: PipelineStage) -> None:
        allowed = _ALLOWED_TRANSITIONS.get(self.stage, set())
        if next_stage not in allowed:
            raise RuntimeError(f"Invalid pipeline transition {self.stage.value} → {next_stage.value}")
        logger.info(f"➡️ {self.stage.value} → {next_stage.value}")
        self.stage = next_stage

    def _check_cancelled(self) -> None:
        if self._cancel_event.is_set():
            raise CancelledError("Submission cancelled", self.stage)

    def _event(self, message: str = "") -> PipelineEvent:
        return PipelineEvent(
            stage=self.stage,
            progress=STAGE_PROGRESS.get(self.stage, 0),
            message=message or STAGE_MESSAGES.get(self.stage, ""),
        )

    def cancel(self) -> None:
        """Abandon the in-flight attempt; it ends as Failed at the current stage."""
        self._cancel_event.set()

    def resolve_submitter(self, submitter_id: Optional[str], access_token: Optional[str]) -> str:
        if submitter_id:
            return submitter_id
        if self.identity_provider is not None:
            resolved = self.identity_provider(access_token)
            if resolved:
                return resolved
        raise ValidationError("No authenticated submitter: please sign in again")

    def submit(
        self,
        assignment: Assignment,
        files: Sequence[AnswerImage],
        submitter_id: Optional[str] = None,
        access_token: Optional[str] = None,
    ) -> Iterator[PipelineEvent]:
        """
        Start a submission attempt.

        Input problems and concurrent attempts are raised here, before
        anything is uploaded, and the orchestrator stays Idle. Everything
        after that is reported through the returned event stream, which ends
        with a Completed or Failed event. By the time that last event is
        delivered the attempt has released its guards, so the caller may stop
        reading there and submit again.

        Args:
            assignment: The homework being answered
            files: Candidate files selected by the student
            submitter_id: Stable student id; resolved from access_token when omitted
            access_token: Session token handed to the identity provider

        Returns:
            Iterator of PipelineEvent

        Raises:
            ValidationError for no images, unknown submitter, or an attempt already running
        """
        accepted, rejected = validate_images(files)
        require_images(accepted)
        student_id = self.resolve_submitter(submitter_id, access_token)
        if self.stage not in (PipelineStage.IDLE, PipelineStage.COMPLETED):
            raise ValidationError("A submission is already in progress")

        self.rejected_files = rejected
        events = self._run(assignment, accepted, student_id)
        # Runs up to the Uploading event: guards are taken (or refused) now.
        first = next(events)
        return _prepend(first, events)

    def run(self, *args, **kwargs) -> PipelineEvent:
        """Drive submit() to the end and return the terminal event."""
        event = None
        for event in self.submit(*args, **kwargs):
            pass
        return event

    def _acquire(self, key: Tuple[str, str]) -> None:
        if not self._busy.acquire(blocking=False):
            raise ValidationError("A submission is already in progress")
        if not self.single_flight.acquire(key):
            self._busy.release()
            logger.warning(f"⚠️ Rejected concurrent attempt for assignment {key[0]}")
            raise ValidationError("A submission for this assignment is already in progress")

    def _release(self, key: Tuple[str, str]) -> None:
        if self.stage not in (PipelineStage.IDLE, PipelineStage.COMPLETED):
            self.stage = PipelineStage.IDLE
        self.single_flight.release(key)
        self._busy.release()

    def _run(self, assignment: Assignment, images: Sequence[AnswerImage], student_id: str) -> Iterator[PipelineEvent]:
        key = (assignment.id, student_id)
        self._acquire(key)
        self._cancel_event.clear()
        self.results = PipelineResults()
        self.last_error = None
        released = False
        try:
            for event in self._stages(assignment, images, student_id):
                if event.is_terminal:
                    self._release(key)
                    released = True
                yield event
        finally:
            # Abandoned mid-stream (generator closed) counts as a failed attempt.
            if not released:
                self._release(key)

    def _stages(self, assignment: Assignment, images: Sequence[AnswerImage], student_id: str) -> Iterator[PipelineEvent]:
        if self.stage == PipelineStage.COMPLETED:
            self._transition(PipelineStage.IDLE)
        try:
            self._transition(PipelineStage.UPLOADING)
            message = STAGE_MESSAGES[PipelineStage.UPLOADING]
            if self.rejected_files:
                message += f" (skipped non-image files: {', '.join(self.rejected_files)})"
            yield self._event(message)
            self._check_cancelled()
            urls = self.uploader.upload(student_id, assignment.id, images, self._cancel_event)
            for image, url in zip(images, urls):
                image.url = url
            self.results.image_urls = urls

            self._check_cancelled()
            self._transition(PipelineStage.EXTRACTING)
            yield self._event()
            self._check_cancelled()
            transcript = self.extractor.extract(images, self._cancel_event)
            self.results.transcript = transcript

            self._check_cancelled()
            self._transition(PipelineStage.EVALUATING)
            yield self._event()
            self._check_cancelled()
            evaluation = self.evaluator.evaluate(assignment.original_question, transcript)
            self.results.evaluation = evaluation

            self._check_cancelled()
            self._transition(PipelineStage.RECORDING)
            yield self._event()
            self._check_cancelled()
            record = self.recorder.build_record(
                assignment.id, student_id, urls, transcript.text, evaluation, self.clock()
            )
            self.results.submission = self.recorder.save_submission(record)
        except PipelineError as e:
            yield from self._fail(e)
            return
        except Exception as e:
            logger.exception(f"❌ Unexpected error during {self.stage.value}")
            yield from self._fail(PipelineError(f"{self.stage.value} failed: {e}", self.stage))
            return

        self._transition(PipelineStage.COMPLETED)
        score = self.results.evaluation.score
        logger.info(f"✅ Submission complete for assignment {assignment.id}: score={score}/10")
        yield PipelineEvent(
            stage=PipelineStage.COMPLETED,
            progress=100,
            message=f"Your answer has been submitted and evaluated. Score: {score:g}/10",
            score=score,
        )

    def _fail(self, error: PipelineError) -> Iterator[PipelineEvent]:
        failed_stage = error.stage if error.stage != PipelineStage.IDLE else self.stage
        logger.error(f"❌ Submission failed during {failed_stage.value}: {error}")
        self.last_error = error
        self._transition(PipelineStage.FAILED)
        event = PipelineEvent(
            stage=PipelineStage.FAILED,
            progress=STAGE_PROGRESS.get(failed_stage, 0),
            message=f"Submission failed: {error}",
            failed_stage=failed_stage,
            error=str(error),
        )
        self._transition(PipelineStage.IDLE)
        yield event


def build_orchestrator(config: PipelineConfig, single_flight: Optional[SingleFlight] = None) -> PipelineOrchestrator:
    """
    Wire every stage from configuration.

    Raises:
        ConfigError when a selected capability has no credentials
    """
    config.require_credentials()
    if config.supabase_service_role_key:
        db_client = get_service_role_client(config.supabase_url, config.supabase_service_role_key)
    else:
        db_client = get_supabase_client(config.supabase_url, config.supabase_anon_key)

    def identity_provider(access_token: Optional[str]) -> Optional[str]:
        if not access_token:
            return None
        client = get_supabase_client(config.supabase_url, config.supabase_anon_key or config.database_key)
        return get_user_id(client, access_token)

    return PipelineOrchestrator(
        uploader=ObjectUploader(SupabaseObjectStore(db_client, config.bucket), config.upload_max_workers),
        extractor=TextExtractor(get_ocr_provider(config), config.ocr_policy, config.ocr_max_workers),
        evaluator=Evaluator(get_llm_client(config)),
        recorder=SubmissionRecorder(db_client, config.table, config.record_mode),
        identity_provider=identity_provider,
        single_flight=single_flight,
    )
