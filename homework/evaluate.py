"""
AI evaluation of a transcribed answer.

One prompt per submission; the model must answer with a single JSON object
holding score, mistakes and suggestions. Clients: Gemini (default), OpenAI,
Groq, and a stub.
"""

import json
import logging
import math
from typing import Optional, Protocol

from homework.config import PipelineConfig
from homework.errors import ConfigError, EvaluationError
from homework.schema import (
    Evaluation,
    MAX_MISTAKES,
    MAX_SUGGESTIONS,
    SCORE_MAX,
    SCORE_MIN,
    Transcript,
)

logger = logging.getLogger(__name__)

NO_ANSWER_PLACEHOLDER = "(No answer text could be read from the submitted images.)"

PROMPT_TEMPLATE = """
You are an AI teacher evaluating student homework. Please analyze the student's answer against the original question and provide structured feedback.

ORIGINAL QUESTION:
{question}

STUDENT'S ANSWER:
{answer}

Please respond with ONLY a valid JSON object in this exact format:
{{
  "score": [number from {score_min}-{score_max}],
  "mistakes": ["mistake 1", "mistake 2", ...],
  "suggestions": ["suggestion 1", "suggestion 2"]
}}

Rules:
- Score should be between {score_min}-{score_max} based on accuracy, completeness, and understanding
- Mistakes should be specific errors or omissions (max {max_mistakes} items)
- Suggestions should be brief, actionable advice for improvement (max {max_suggestions} items)
- Keep all text concise and student-friendly
- If answer is mostly correct, focus on minor improvements
- If answer is incomplete, highlight key missing elements
{extra_rules}"""

EMPTY_ANSWER_RULE = "- No answer was supplied: give a score of 0 and say so in mistakes\n"


def build_evaluation_prompt(question: str, transcript_text: str) -> str:
    """Embed the literal question and transcript in the grading prompt."""
    has_answer = bool((transcript_text or "").strip())
    return PROMPT_TEMPLATE.format(
        question=question,
        answer=transcript_text if has_answer else NO_ANSWER_PLACEHOLDER,
        score_min=SCORE_MIN,
        score_max=SCORE_MAX,
        max_mistakes=MAX_MISTAKES,
        max_suggestions=MAX_SUGGESTIONS,
        extra_rules="" if has_answer else EMPTY_ANSWER_RULE,
    )


def find_json_object(text: str) -> Optional[str]:
    """
    Return the first top-level ``{...}`` span in text, or None.

    Braces inside JSON strings are ignored, so feedback like "use {x}" does
    not end the object early.
    """
    start = (text or "").find("{")
    if start < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return text[start:index + 1]
    return None


def _is_number(value) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    # Compared without float conversion: very long integers overflow it.
    return not (isinstance(value, float) and math.isnan(value))


def _is_text_list(value) -> bool:
    return isinstance(value, list) and all(isinstance(item, str) for item in value)


def parse_evaluation(response_text: str) -> Evaluation:
    """
    Parse and normalize the model's answer.

    Score is clamped into [0, 10]; mistakes and suggestions are truncated to
    their maximum lengths. A wrong shape is a hard failure, not a retry.

    Raises:
        EvaluationError("Malformed AI response: ...")
    """
    span = find_json_object(response_text)
    if span is None:
        raise EvaluationError("Malformed AI response: no JSON object found")
    try:
        payload = json.loads(span)
    except json.JSONDecodeError as e:
        raise EvaluationError(f"Malformed AI response: invalid JSON ({e.msg})") from e

    score = payload.get("score")
    mistakes = payload.get("mistakes")
    suggestions = payload.get("suggestions")
    if not _is_number(score):
        raise EvaluationError("Malformed AI response: score must be a number")
    if not _is_text_list(mistakes):
        raise EvaluationError("Malformed AI response: mistakes must be a list of strings")
    if not _is_text_list(suggestions):
        raise EvaluationError("Malformed AI response: suggestions must be a list of strings")

    return Evaluation(
        score=max(SCORE_MIN, min(SCORE_MAX, score)),
        mistakes=mistakes[:MAX_MISTAKES],
        suggestions=suggestions[:MAX_SUGGESTIONS],
    )


class LlmClient(Protocol):
    """Generative capability: prompt in, free-form text out."""

    def generate(self, prompt: str) -> str:
        ...


class StubLlmClient:
    """Returns a canned response; records the last prompt for inspection."""

    DEFAULT_RESPONSE = '{"score": 7, "mistakes": ["Show each step"], "suggestions": ["Check your arithmetic"]}'

    def __init__(self, response_text: Optional[str] = None):
        self.response_text = self.DEFAULT_RESPONSE if response_text is None else response_text
        self.last_prompt: Optional[str] = None

    def generate(self, prompt: str) -> str:
        self.last_prompt = prompt
        return self.response_text


class GeminiClient:
    """Google Gemini through the google-genai SDK."""

    def __init__(self, api_key: Optional[str], model: str = "gemini-1.5-flash", client=None):
        self.model = model
        if client is not None:
            self.client = client
            return
        if not api_key:
            raise ConfigError("Gemini requires GEMINI_API_KEY to be set")
        try:
            from google import genai
        except ImportError as e:
            raise ConfigError("google-genai not installed. Install with: pip install google-genai") from e
        self.client = genai.Client(api_key=api_key)

    def generate(self, prompt: str) -> str:
        response = self.client.models.generate_content(model=self.model, contents=prompt)
        return response.text or ""


class _ChatCompletionsClient:
    """OpenAI-compatible chat completions (OpenAI and Groq share the API shape)."""

    system_prompt = "You are a strict but fair teacher. Return only valid JSON."

    def __init__(self, client, model: str):
        self.client = client
        self.model = model

    def generate(self, prompt: str) -> str:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": self.system_prompt},
                {"role": "user", "content": prompt},
            ],
            temperature=0.2,
            max_tokens=800,
            response_format={"type": "json_object"},
        )
        return response.choices[0].message.content or ""


class OpenAIChatClient(_ChatCompletionsClient):
    def __init__(self, api_key: Optional[str], model: str = "gpt-4o-mini", client=None):
        if client is None:
            if not api_key:
                raise ConfigError("OpenAI requires OPENAI_API_KEY to be set")
            from openai import OpenAI
            client = OpenAI(api_key=api_key)
        super().__init__(client, model)


class GroqChatClient(_ChatCompletionsClient):
    def __init__(self, api_key: Optional[str], model: str = "llama-3.3-70b-versatile", client=None):
        if client is None:
            if not api_key:
                raise ConfigError("Groq requires GROQ_API_KEY to be set")
            from groq import Groq
            client = Groq(api_key=api_key)
        super().__init__(client, model)


def get_llm_client(config: PipelineConfig) -> LlmClient:
    """
    Factory function to get the configured generative client.

    Raises:
        ConfigError for unknown providers or missing credentials
    """
    name = config.llm_provider
    if name == "gemini":
        return GeminiClient(config.gemini_api_key, config.model_name)
    elif name == "openai":
        return OpenAIChatClient(config.openai_api_key, config.model_name)
    elif name == "groq":
        return GroqChatClient(config.groq_api_key, config.model_name)
    elif name == "stub":
        return StubLlmClient()
    else:
        raise ConfigError(f"Unknown LLM provider: {name}")


class Evaluator:
    """Scores a transcript against the original question."""

    def __init__(self, client: LlmClient):
        self.client = client

    def evaluate(self, question: str, transcript: Transcript) -> Evaluation:
        """
        Args:
            question: Question text (or the assignment description)
            transcript: Page-labeled answer; may be empty

        Returns:
            Normalized Evaluation

        Raises:
            EvaluationError when the call fails or the answer is malformed
        """
        prompt = build_evaluation_prompt(question, transcript.text)
        logger.info(f"🤖 Requesting evaluation ({len(transcript.pages)} page(s) of answer text)")
        try:
            response_text = self.client.generate(prompt)
        except Exception as e:
            raise EvaluationError(f"Evaluation failed: {e}") from e

        evaluation = parse_evaluation(response_text)
        logger.info(f"✅ Evaluation complete: score={evaluation.score}")
        return evaluation
