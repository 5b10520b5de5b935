"""Review statuses and the transitions allowed between them."""

from __future__ import annotations

from enum import Enum


class ReviewStatus(str, Enum):
    PENDING_REVIEW = "pending_review"
    NEEDS_FIX = "needs_fix"
    APPROVED = "approved"
    REJECTED = "rejected"
    PUBLISHED = "published"


TRANSITIONS: dict[ReviewStatus, frozenset[ReviewStatus]] = {
    ReviewStatus.PENDING_REVIEW: frozenset(
        {ReviewStatus.APPROVED, ReviewStatus.NEEDS_FIX, ReviewStatus.REJECTED}
    ),
    ReviewStatus.NEEDS_FIX: frozenset(
        {ReviewStatus.PENDING_REVIEW, ReviewStatus.APPROVED, ReviewStatus.REJECTED}
    ),
    ReviewStatus.APPROVED: frozenset({ReviewStatus.PUBLISHED, ReviewStatus.REJECTED}),
    ReviewStatus.REJECTED: frozenset(),
    ReviewStatus.PUBLISHED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    try:
        return ReviewStatus(target) in TRANSITIONS[ReviewStatus(current)]
    except ValueError:
        return False


def sources_for(target: ReviewStatus) -> frozenset[str]:
    """Status values from which ``target`` can be reached."""
    return frozenset(
        source.value for source, targets in TRANSITIONS.items() if target in targets
    )
