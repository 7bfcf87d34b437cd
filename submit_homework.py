#!/usr/bin/env python3
"""
Submit a handwritten answer from the command line.

Uploads the images, extracts text, asks the AI for a score and saves the
submission, printing each pipeline stage as it happens.

Usage:
    python submit_homework.py --assignment-id HW1 --question "Solve x + 5 = 12" \
        --student-id 1b2c... page1.jpg page2.png
"""

import argparse
import logging
import mimetypes
import sys
from pathlib import Path

from homework.config import load_config
from homework.errors import ConfigError, ValidationError
from homework.runner import build_orchestrator
from homework.schema import AnswerImage, Assignment, PipelineStage

logger = logging.getLogger(__name__)


def read_answer_images(paths):
    """Read local files, declaring the media type from the extension."""
    images = []
    for path in paths:
        file_path = Path(path)
        content_type, _ = mimetypes.guess_type(file_path.name)
        images.append(
            AnswerImage(
                filename=file_path.name,
                content_type=content_type or "application/octet-stream",
                data=file_path.read_bytes(),
            )
        )
    return images


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Evaluate a handwritten homework answer")
    parser.add_argument("images", nargs="+", help="Photos of the answer, in page order")
    parser.add_argument("--assignment-id", required=True, help="Homework id")
    parser.add_argument("--title", default="", help="Homework title")
    parser.add_argument("--question", default=None, help="Question text")
    parser.add_argument("--description", default="", help="Used as the question when --question is omitted")
    parser.add_argument("--student-id", default=None, help="Submitter id (or use --access-token)")
    parser.add_argument("--access-token", default=None, help="Supabase session token to resolve the submitter")
    parser.add_argument("--env-file", default=None, help="Path to a .env file")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def main(argv=None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
    )

    try:
        config = load_config(dotenv_path=args.env_file)
        orchestrator = build_orchestrator(config)
    except ConfigError as e:
        logger.error(f"❌ {e}")
        return 2

    assignment = Assignment(
        id=args.assignment_id,
        title=args.title,
        description=args.description,
        question_text=args.question,
    )
    try:
        images = read_answer_images(args.images)
    except OSError as e:
        logger.error(f"❌ Could not read answer image: {e}")
        print(f"[{PipelineStage.FAILED.value}] Could not read {e.filename}: {e.strerror}")
        return 1

    try:
        events = orchestrator.submit(
            assignment,
            images,
            submitter_id=args.student_id,
            access_token=args.access_token,
        )
    except ValidationError as e:
        print(f"[{PipelineStage.FAILED.value}] {e}")
        return 1

    final = None
    for final in events:
        print(f"[{final.stage.value:>10}] {final.progress:3d}% {final.message}")

    if final is None or final.stage != PipelineStage.COMPLETED:
        return 1
    for mistake in orchestrator.results.evaluation.mistakes:
        print(f"  - mistake: {mistake}")
    for suggestion in orchestrator.results.evaluation.suggestions:
        print(f"  - suggestion: {suggestion}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
