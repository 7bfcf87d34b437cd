"""
Handwritten homework evaluation pipeline.

Photos of a handwritten answer go through upload, OCR, AI scoring and
persistence; ``homework.runner.PipelineOrchestrator`` drives the stages.
"""

from homework.runner import PipelineOrchestrator, build_orchestrator
from homework.schema import Assignment, AnswerImage, PipelineEvent, PipelineStage

__all__ = [
    "PipelineOrchestrator",
    "build_orchestrator",
    "Assignment",
    "AnswerImage",
    "PipelineEvent",
    "PipelineStage",
]
