"""
Data models for homework submissions.
Uses Pydantic for validation and type safety.
"""

from datetime import datetime
from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, ConfigDict, Field

SCORE_MIN = 0
SCORE_MAX = 10
MAX_MISTAKES = 5
MAX_SUGGESTIONS = 2


class PipelineStage(str, Enum):
    """Processing state of one submission attempt."""
    IDLE = "Idle"
    UPLOADING = "Uploading"
    EXTRACTING = "Extracting"
    EVALUATING = "Evaluating"
    RECORDING = "Recording"
    COMPLETED = "Completed"
    FAILED = "Failed"


class Assignment(BaseModel):
    """Homework assignment. Read-only input to the pipeline."""
    model_config = ConfigDict(frozen=True)

    id: str
    title: str = ""
    description: str = ""
    question_text: Optional[str] = None
    question_image_url: Optional[str] = None
    class_id: Optional[str] = None
    due_date: Optional[datetime] = None

    @property
    def original_question(self) -> str:
        """Explicit question text, falling back to the assignment description."""
        return self.question_text or self.description


class AnswerImage(BaseModel):
    """One user-supplied photo of a handwritten answer page."""
    filename: str
    content_type: str = ""
    data: bytes = b""
    url: Optional[str] = None  # set once uploaded


class OcrResult(BaseModel):
    """Raw OCR output for a single image."""
    text: str
    confidence: Optional[float] = None  # provider hint, not a calibrated probability
    lines: List[str] = []


class PageResult(BaseModel):
    """Outcome of OCR for one page: either text or an error, never both."""
    page_number: int  # 1-based position in the submission
    filename: str = ""
    text: Optional[str] = None
    confidence: Optional[float] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class TranscriptPage(BaseModel):
    page_number: int
    text: str


class Transcript(BaseModel):
    """
    Ordered, page-labeled text derived from all submitted images.
    Blank pages are never stored, so ``text`` never contains an empty page.
    """
    pages: List[TranscriptPage] = []

    @property
    def text(self) -> str:
        return "\n\n".join(f"[Page {p.page_number}]\n{p.text}" for p in self.pages)

    @property
    def is_empty(self) -> bool:
        return not self.pages


class Evaluation(BaseModel):
    """AI score and feedback, already normalized to its value constraints."""
    score: float = Field(ge=SCORE_MIN, le=SCORE_MAX)
    mistakes: List[str] = Field(default_factory=list, max_length=MAX_MISTAKES)
    suggestions: List[str] = Field(default_factory=list, max_length=MAX_SUGGESTIONS)

    def feedback(self) -> dict:
        """Feedback payload as stored in the ai_feedback column."""
        return {"mistakes": list(self.mistakes), "suggestions": list(self.suggestions)}


class SubmissionRecord(BaseModel):
    """
    Durable submission record.
    Created only after upload, extraction and evaluation have all succeeded.
    """
    id: Optional[str] = None  # generated by the database
    homework_id: str
    student_id: str
    answer_images: List[str]
    extracted_text: str
    evaluation: Evaluation
    submitted_at: datetime
    evaluated_at: datetime


class PipelineResults(BaseModel):
    """Accumulated outputs of the stages completed so far in one attempt."""
    image_urls: List[str] = []
    transcript: Optional[Transcript] = None
    evaluation: Optional[Evaluation] = None
    submission: Optional[SubmissionRecord] = None


class PipelineEvent(BaseModel):
    """
    One progress notification emitted to the caller.

    Terminal events carry either ``score`` (stage Completed) or
    ``failed_stage`` + ``error`` (stage Failed).
    """
    stage: PipelineStage
    progress: int = Field(ge=0, le=100)
    message: str = ""
    score: Optional[float] = None
    failed_stage: Optional[PipelineStage] = None
    error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.stage in (PipelineStage.COMPLETED, PipelineStage.FAILED)
