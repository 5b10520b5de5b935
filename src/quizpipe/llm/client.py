"""Wrapper around the Anthropic Claude SDK."""

from __future__ import annotations

from dataclasses import dataclass

import httpx
from anthropic import Anthropic, APIConnectionError, APIError, APIStatusError

from quizpipe.config import Settings
from quizpipe.errors import ProviderError


@dataclass
class Completion:
    """Text and token usage of one provider call."""

    text: str
    model: str
    input_tokens: int
    output_tokens: int

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens


class ClaudeClient:
    """Thin wrapper providing error translation and token tracking.

    The SDK's own retries are switched off: each call must map to exactly
    one admission permit, and retrying is left to an explicit requeue.
    """

    def __init__(self, settings: Settings) -> None:
        self._client = Anthropic(
            api_key=settings.anthropic_api_key,
            max_retries=0,
            timeout=httpx.Timeout(settings.request_timeout_seconds, connect=10.0),
        )
        self._model = settings.model
        self._max_tokens = settings.max_tokens
        self._temperature = settings.temperature
        self._total_input_tokens = 0
        self._total_output_tokens = 0

    @property
    def default_model(self) -> str:
        return self._model

    def complete(
        self,
        system: str,
        messages: list[dict],
        *,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> Completion:
        """Send a message to Claude and return the text with its usage."""
        model = model or self._model
        try:
            response = self._client.messages.create(
                model=model,
                max_tokens=max_tokens or self._max_tokens,
                temperature=temperature if temperature is not None else self._temperature,
                system=system,
                messages=messages,
            )
        except APIStatusError as exc:
            raise ProviderError(
                f"Provider returned {exc.status_code}: {exc.message}",
                provider_status=exc.status_code,
            ) from exc
        except APIConnectionError as exc:
            raise ProviderError(f"Provider unreachable: {exc}") from exc
        except APIError as exc:
            raise ProviderError(f"Provider request failed: {exc}") from exc

        self._total_input_tokens += response.usage.input_tokens
        self._total_output_tokens += response.usage.output_tokens
        # Only text blocks carry a string ``text``
        text = "".join(
            block.text
            for block in response.content
            if isinstance(getattr(block, "text", None), str)
        )
        return Completion(
            text=text,
            model=model,
            input_tokens=response.usage.input_tokens,
            output_tokens=response.usage.output_tokens,
        )

    @property
    def usage_summary(self) -> dict:
        return {
            "total_input_tokens": self._total_input_tokens,
            "total_output_tokens": self._total_output_tokens,
        }
