"""Parse and validate the question payload returned by the model."""

from __future__ import annotations

import json
import re
from typing import Literal

from pydantic import BaseModel, ValidationError

from quizpipe.errors import ProviderError

_FENCE = re.compile(r"```[a-zA-Z]*\s*\n?([\s\S]*?)```")


class OptionSet(BaseModel):
    a: str
    b: str
    c: str
    d: str


class GeneratedQuestion(BaseModel):
    stem: str
    options: OptionSet
    correct_option: Literal["a", "b", "c", "d"]
    explanation: str
    difficulty: Literal["easy", "medium", "hard"]


class GenerationPayload(BaseModel):
    questions: list[GeneratedQuestion]


def _extract_json(text: str) -> object:
    cleaned = text.strip()
    match = _FENCE.search(cleaned)
    if match and match.group(1).strip():
        cleaned = match.group(1).strip()
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass
    # Last resort: the outermost {...} block
    start, end = cleaned.find("{"), cleaned.rfind("}")
    if start != -1 and end > start:
        try:
            return json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError:
            pass
    raise ProviderError("Model response contained no JSON object")


def parse_questions(text: str) -> list[GeneratedQuestion]:
    """Turn raw model output into validated questions.

    Raises ProviderError when the output is not a valid payload; an
    unusable response is treated like any other provider failure.
    """
    if not text or not text.strip():
        raise ProviderError("Empty response from model")
    raw = _extract_json(text)
    try:
        return GenerationPayload.model_validate(raw).questions
    except ValidationError as exc:
        raise ProviderError(f"Invalid question payload: {exc.error_count()} error(s)") from exc
