"""
Error taxonomy for the submission pipeline.

Every stage failure carries the stage it happened in plus a message that can
be shown to the student as-is. None of these are retried automatically.
"""

from typing import Optional

from homework.schema import PipelineStage


class ConfigError(RuntimeError):
    """Missing or invalid configuration, raised at startup."""


class PipelineError(Exception):
    stage: PipelineStage = PipelineStage.IDLE

    def __init__(self, message: str, stage: Optional[PipelineStage] = None):
        super().__init__(message)
        self.message = message
        if stage is not None:
            self.stage = stage

    def __str__(self) -> str:
        return self.message


class ValidationError(PipelineError):
    """Bad input (no images, nobody to attribute the submission to). The pipeline never starts."""
    stage = PipelineStage.IDLE


class UploadError(PipelineError):
    stage = PipelineStage.UPLOADING

    def __init__(self, message: str, filename: Optional[str] = None):
        super().__init__(message)
        self.filename = filename


class ExtractionError(PipelineError):
    stage = PipelineStage.EXTRACTING

    def __init__(self, message: str, page_number: Optional[int] = None):
        super().__init__(message)
        self.page_number = page_number


class EvaluationError(PipelineError):
    stage = PipelineStage.EVALUATING


class RecordingError(PipelineError):
    stage = PipelineStage.RECORDING


class CancelledError(PipelineError):
    """The caller cancelled the attempt; ``stage`` is where it was noticed."""
