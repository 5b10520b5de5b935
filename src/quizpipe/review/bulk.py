"""Bulk review actions: per-item outcomes, the folded result and its message."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from quizpipe.errors import ValidationError


class BulkAction(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    DELETE = "delete"
    NEEDS_FIX = "needs_fix"
    PUBLISH = "publish"

    @classmethod
    def parse(cls, value: str) -> BulkAction:
        try:
            return cls(value)
        except ValueError:
            allowed = ", ".join(action.value for action in cls)
            raise ValidationError(
                f"Unknown action: {value} (expected one of: {allowed})", field="action"
            ) from None


class OutcomeKind(str, Enum):
    UPDATED = "updated"
    DELETED = "deleted"
    PUBLISHED = "published"
    SKIPPED = "skipped"
    MISSING = "missing"
    FAILED = "failed"


@dataclass(frozen=True)
class ItemOutcome:
    question_id: str
    kind: OutcomeKind
    error: str | None = None


@dataclass
class BulkActionResult:
    """Counts folded from the item outcomes of one bulk action."""

    action: BulkAction
    updated: int = 0
    deleted: int = 0
    published: int = 0
    skipped: int = 0
    missing: int = 0
    failed: int = 0
    publish_error: str | None = None
    outcomes: list[ItemOutcome] = field(default_factory=list)

    def add(self, outcome: ItemOutcome) -> None:
        self.outcomes.append(outcome)
        attr = outcome.kind.value
        setattr(self, attr, getattr(self, attr) + 1)

    def as_dict(self) -> dict:
        data = {"action": self.action.value}
        if self.action in (BulkAction.APPROVE, BulkAction.NEEDS_FIX):
            data["updated"] = self.updated
        if self.action in (BulkAction.REJECT, BulkAction.DELETE):
            data["deleted"] = self.deleted
        if self.action in (BulkAction.APPROVE, BulkAction.PUBLISH):
            data["published"] = self.published
        data.update(skipped=self.skipped, missing=self.missing, failed=self.failed)
        if self.publish_error:
            data["publishError"] = self.publish_error
        data["items"] = [
            {"id": o.question_id, "outcome": o.kind.value, "error": o.error}
            for o in self.outcomes
        ]
        return data


def bulk_action_message(result: BulkActionResult) -> str:
    """Human-readable summary shown after a bulk action."""
    action = result.action
    if action is BulkAction.APPROVE:
        if result.published > 0:
            message = (
                f"{result.updated or result.published} question(s) approved "
                "and published to Question Bank"
            )
            if result.publish_error:
                message += f" (Note: {result.publish_error})"
            return message
        return f"{result.updated} question(s) approved"
    if action is BulkAction.REJECT:
        return f"{result.deleted} question(s) rejected and deleted"
    if action is BulkAction.DELETE:
        return f"{result.deleted} question(s) deleted"
    if action is BulkAction.NEEDS_FIX:
        return f"{result.updated} question(s) marked as needs fix"
    return f"{result.published} question(s) published to Question Bank"
