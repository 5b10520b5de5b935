"""Estimated USD cost of a provider call from its token counts."""

from __future__ import annotations

# USD per million tokens
PRICING: dict[str, tuple[float, float]] = {
    "claude-sonnet-4-20250514": (3.0, 15.0),
    "claude-opus-4-20250514": (15.0, 75.0),
    "claude-3-5-haiku-20241022": (0.8, 4.0),
}
FALLBACK_PRICING = (3.0, 15.0)


def estimate_cost(model: str, tokens_in: int, tokens_out: int) -> float:
    """Return the estimated cost; unknown models are priced like Sonnet."""
    price_in, price_out = PRICING.get(model, FALLBACK_PRICING)
    return (tokens_in / 1_000_000) * price_in + (tokens_out / 1_000_000) * price_out
