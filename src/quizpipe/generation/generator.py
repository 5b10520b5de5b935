"""Question generation for a single page."""

from __future__ import annotations

import time
from dataclasses import dataclass, field

from quizpipe.errors import ProviderError
from quizpipe.llm.client import ClaudeClient, Completion
from quizpipe.llm.parser import GeneratedQuestion, parse_questions
from quizpipe.llm.prompts import render

DIFFICULTY_MIX = {"easy": 50, "medium": 30, "hard": 20}
MIN_LINE_LENGTH = 20


@dataclass
class PageRequest:
    """Input for one page generation call."""

    page_id: str
    content: str
    custom_prompt: str | None = None
    model: str | None = None


@dataclass
class PageResult:
    """Output of a page generation call."""

    completion: Completion
    questions: list[GeneratedQuestion] = field(default_factory=list)
    error: str | None = None
    metadata: dict = field(default_factory=dict)


class PageGenerator:
    """Builds the prompt, calls Claude once and parses the questions."""

    TEMPLATE = "generate_questions.j2"

    def __init__(
        self,
        client: ClaudeClient,
        *,
        escalation_model: str | None = None,
        escalate_after_failures: int = 2,
    ) -> None:
        self._client = client
        self._escalation_model = escalation_model
        self._escalate_after = escalate_after_failures

    def choose_model(self, failed_attempts: int) -> str:
        """Switch to the stronger model once a page keeps failing."""
        if self._escalation_model and failed_attempts >= self._escalate_after:
            return self._escalation_model
        return self._client.default_model

    def get_system_prompt(self, request: PageRequest) -> str:
        return render(
            self.TEMPLATE,
            custom_prompt=request.custom_prompt or "",
            mix=DIFFICULTY_MIX,
            min_line_length=MIN_LINE_LENGTH,
        )

    def call(self, request: PageRequest) -> Completion:
        """Issue the provider request. Raises ProviderError on failure."""
        return self._client.complete(
            system=self.get_system_prompt(request),
            messages=[{"role": "user", "content": f"Page text:\n\n{request.content}"}],
            model=request.model,
        )

    def generate(self, request: PageRequest) -> PageResult:
        """Call the provider and parse its reply.

        A failed call raises ProviderError. A reply that cannot be parsed
        comes back as a result with ``error`` set, so its token usage can
        still be accounted for.
        """
        start = time.time()
        completion = self.call(request)
        result = PageResult(completion=completion)
        try:
            result.questions = parse_questions(completion.text)
        except ProviderError as exc:
            result.error = exc.message
        result.metadata = {
            "question_count": len(result.questions),
            "generation_time_seconds": round(time.time() - start, 2),
            "model": completion.model,
        }
        return result
