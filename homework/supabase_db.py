"""
Supabase PostgreSQL storage for submission records.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

from pydantic import ValidationError as PydanticValidationError

from homework.errors import RecordingError
from homework.schema import Evaluation, SubmissionRecord

logger = logging.getLogger(__name__)

DEFAULT_TABLE = "submissions"
UNIQUE_SUBMISSION_COLUMNS = "homework_id,student_id"


def record_to_row(record: SubmissionRecord) -> Dict[str, Any]:
    """Convert a SubmissionRecord to the submissions table row shape."""
    return {
        "homework_id": record.homework_id,
        "student_id": record.student_id,
        "answer_images": list(record.answer_images),
        "extracted_text": record.extracted_text,
        "ai_score": record.evaluation.score,
        "ai_feedback": record.evaluation.feedback(),
        "submitted_at": record.submitted_at.isoformat(),
        "evaluated_at": record.evaluated_at.isoformat(),
    }


def row_to_record(row: Dict[str, Any]) -> SubmissionRecord:
    """Convert a submissions table row back into a SubmissionRecord."""
    feedback = row.get("ai_feedback") or {}
    row_id = row.get("id")
    return SubmissionRecord(
        id=str(row_id) if row_id is not None else None,
        homework_id=row["homework_id"],
        student_id=row["student_id"],
        answer_images=row.get("answer_images") or [],
        extracted_text=row.get("extracted_text") or "",
        evaluation=Evaluation(
            score=row["ai_score"],
            mistakes=feedback.get("mistakes") or [],
            suggestions=feedback.get("suggestions") or [],
        ),
        submitted_at=row["submitted_at"],
        evaluated_at=row["evaluated_at"],
    )


class SubmissionRecorder:
    """
    Persists the final submission record in one statement.

    Mode ``insert`` appends a row per attempt. Mode ``upsert`` keeps one row
    per (homework_id, student_id) and relies on a unique constraint on those
    columns.
    """

    def __init__(self, client, table: str = DEFAULT_TABLE, mode: str = "insert"):
        if mode not in ("insert", "upsert"):
            raise ValueError(f"Unknown record mode: {mode}")
        self.client = client
        self.table = table
        self.mode = mode

    def build_record(
        self,
        homework_id: str,
        student_id: str,
        image_urls,
        transcript_text: str,
        evaluation: Evaluation,
        now: datetime,
    ) -> SubmissionRecord:
        return SubmissionRecord(
            homework_id=homework_id,
            student_id=student_id,
            answer_images=list(image_urls),
            extracted_text=transcript_text,
            evaluation=evaluation,
            submitted_at=now,
            evaluated_at=now,
        )

    def save_submission(self, record: SubmissionRecord) -> SubmissionRecord:
        """
        Write the record and return it with the generated id attached.

        Raises:
            RecordingError on constraint violations or connectivity problems
        """
        row = record_to_row(record)
        try:
            query = self.client.table(self.table)
            if self.mode == "upsert":
                result = query.upsert(row, on_conflict=UNIQUE_SUBMISSION_COLUMNS).execute()
            else:
                result = query.insert(row).execute()
        except Exception as e:
            raise RecordingError(f"Recording failed: {getattr(e, 'message', None) or e}") from e

        saved = record.model_copy()
        if result.data:
            row_id = result.data[0].get("id")
            saved.id = str(row_id) if row_id is not None else None
        logger.info(f"💾 Saved submission for homework {record.homework_id} (id={saved.id or 'n/a'})")
        return saved

    def get_submission(self, homework_id: str, student_id: str) -> Optional[SubmissionRecord]:
        """Return the most recent submission for (homework, student), or None."""
        try:
            result = (
                self.client.table(self.table)
                .select("*")
                .eq("homework_id", homework_id)
                .eq("student_id", student_id)
                .order("submitted_at", desc=True)
                .limit(1)
                .execute()
            )
        except Exception as e:
            raise RecordingError(f"Could not read submission: {getattr(e, 'message', None) or e}") from e
        if not result.data:
            return None
        try:
            return row_to_record(result.data[0])
        except (KeyError, PydanticValidationError) as e:
            raise RecordingError(f"Stored submission is malformed: {e}") from e
