"""
Validation module: filters candidate files down to the images we can grade.
"""

import logging
from typing import List, Sequence, Tuple

from homework.errors import ValidationError
from homework.schema import AnswerImage

logger = logging.getLogger(__name__)


def is_image(candidate: AnswerImage) -> bool:
    return (candidate.content_type or "").strip().lower().startswith("image/")


def validate_images(candidates: Sequence[AnswerImage]) -> Tuple[List[AnswerImage], List[str]]:
    """
    Keep only candidates whose declared media type is an image.

    Rejected files are reported, never silently dropped. Accepted files are
    returned as given and in the original order.

    Args:
        candidates: Files selected by the student

    Returns:
        Tuple of (accepted images, rejected filenames)
    """
    accepted = []
    rejected = []
    for candidate in candidates:
        if is_image(candidate):
            accepted.append(candidate)
        else:
            rejected.append(candidate.filename)

    if rejected:
        logger.warning(
            f"⚠️ Ignoring {len(rejected)} non-image file(s): {', '.join(rejected)} "
            "(please select only image files)"
        )
    return accepted, rejected


def require_images(accepted: Sequence[AnswerImage]) -> None:
    """Raise ValidationError when nothing is left to submit."""
    if not accepted:
        raise ValidationError("No files selected: please select at least one image to submit")
