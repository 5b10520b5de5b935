"""Review operations over generated questions."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Literal

from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel
from sqlalchemy.exc import SQLAlchemyError

from quizpipe.errors import ConflictError, NotFoundError, QuizpipeError, ValidationError
from quizpipe.review.bulk import BulkAction, BulkActionResult, ItemOutcome, OutcomeKind
from quizpipe.review.publisher import QuestionBankPublisher
from quizpipe.review.state_machine import ReviewStatus, sources_for
from quizpipe.storage.models import Question
from quizpipe.storage.repository import QuestionStore

logger = logging.getLogger(__name__)

# A published question belongs to the bank and is never removed by a rejection
_REJECTABLE = sources_for(ReviewStatus.REJECTED)
_APPROVABLE = sources_for(ReviewStatus.APPROVED)
_FIXABLE = frozenset({ReviewStatus.PENDING_REVIEW.value})
_RESUBMITTABLE = frozenset({ReviewStatus.PENDING_REVIEW.value, ReviewStatus.NEEDS_FIX.value})


class QuestionEdits(BaseModel):
    """Reviewer corrections to a question's content."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    stem: str | None = None
    option_a: str | None = None
    option_b: str | None = None
    option_c: str | None = None
    option_d: str | None = None
    correct_option: Literal["a", "b", "c", "d"] | None = None
    explanation: str | None = None
    difficulty: Literal["easy", "medium", "hard"] | None = None


def _item(question_id: str, step: Callable[[str], OutcomeKind]) -> ItemOutcome:
    try:
        return ItemOutcome(question_id, step(question_id))
    except NotFoundError:
        return ItemOutcome(question_id, OutcomeKind.MISSING)
    except (QuizpipeError, SQLAlchemyError) as exc:
        logger.warning("Review step failed for question %s: %s", question_id, exc)
        return ItemOutcome(question_id, OutcomeKind.FAILED, str(exc))


class ReviewService:
    """Moves questions through review.

    Every item is handled in its own transaction and folded into a
    :class:`BulkActionResult`; a bad item never aborts its siblings.
    """

    def __init__(self, store: QuestionStore, publisher: QuestionBankPublisher) -> None:
        self._store = store
        self._publisher = publisher

    def execute(self, action: str | BulkAction, ids: Iterable[str]) -> BulkActionResult:
        if not isinstance(action, BulkAction):
            action = BulkAction.parse(action)
        unique = list(dict.fromkeys(ids or []))
        if not unique:
            raise ValidationError("No question ids provided", field="ids")
        handler = {
            BulkAction.APPROVE: self.approve,
            BulkAction.REJECT: self.reject,
            BulkAction.DELETE: self.delete,
            BulkAction.NEEDS_FIX: self.needs_fix,
            BulkAction.PUBLISH: self.publish,
        }[action]
        result = handler(unique)
        logger.info(
            "Bulk %s on %d question(s): %s",
            action.value,
            len(unique),
            {k.value: getattr(result, k.value) for k in OutcomeKind},
        )
        return result

    def approve(self, ids: list[str]) -> BulkActionResult:
        """Approve eligible questions, then publish the ones just approved."""
        result = BulkActionResult(BulkAction.APPROVE)
        approved: list[str] = []
        for question_id in ids:
            outcome = _item(question_id, self._approve_one)
            result.add(outcome)
            if outcome.kind is OutcomeKind.UPDATED:
                approved.append(question_id)

        errors: list[str] = []
        for question_id in approved:
            try:
                if self._publisher.publish_one(question_id):
                    result.published += 1
            except (QuizpipeError, SQLAlchemyError) as exc:
                logger.error("Publishing question %s failed: %s", question_id, exc)
                errors.append(str(exc))
        if errors:
            result.publish_error = (
                errors[0]
                if len(errors) == 1
                else f"{len(errors)} question(s) could not be published: {errors[0]}"
            )
        return result

    def reject(self, ids: list[str]) -> BulkActionResult:
        result = BulkActionResult(BulkAction.REJECT)
        for question_id in ids:
            result.add(_item(question_id, self._reject_one))
        return result

    def delete(self, ids: list[str]) -> BulkActionResult:
        result = BulkActionResult(BulkAction.DELETE)
        for question_id in ids:
            result.add(_item(question_id, self._delete_one))
        return result

    def needs_fix(self, ids: list[str]) -> BulkActionResult:
        result = BulkActionResult(BulkAction.NEEDS_FIX)
        for question_id in ids:
            result.add(_item(question_id, self._needs_fix_one))
        return result

    def publish(self, ids: list[str]) -> BulkActionResult:
        result = BulkActionResult(BulkAction.PUBLISH)
        for question_id in ids:
            result.add(_item(question_id, self._publish_one))
        return result

    def resubmit(self, question_id: str, edits: dict) -> Question:
        """Apply reviewer edits and send the question back to review."""
        try:
            changes = QuestionEdits.model_validate(edits)
        except PydanticValidationError as exc:
            error = exc.errors()[0]
            field = str(error["loc"][0]) if error["loc"] else None
            raise ValidationError(f"{field}: {error['msg']}", field=field) from exc

        question = self._store.get_question(question_id)
        if question.status not in _RESUBMITTABLE:
            raise ConflictError(
                f"Question {question_id} is {question.status} and cannot be edited"
            )
        updated = self._store.edit_question(
            question_id,
            changes.model_dump(exclude_none=True),
            status=ReviewStatus.PENDING_REVIEW.value,
        )
        logger.info("Question %s resubmitted for review", question_id)
        return updated

    # -- single items -----------------------------------------------------

    def _approve_one(self, question_id: str) -> OutcomeKind:
        changed = self._store.change_status(
            question_id, ReviewStatus.APPROVED.value, _APPROVABLE
        )
        return OutcomeKind.UPDATED if changed else OutcomeKind.SKIPPED

    def _needs_fix_one(self, question_id: str) -> OutcomeKind:
        changed = self._store.change_status(
            question_id, ReviewStatus.NEEDS_FIX.value, _FIXABLE
        )
        return OutcomeKind.UPDATED if changed else OutcomeKind.SKIPPED

    def _reject_one(self, question_id: str) -> OutcomeKind:
        deleted = self._store.delete_question(question_id, allowed_from=_REJECTABLE)
        return OutcomeKind.DELETED if deleted else OutcomeKind.SKIPPED

    def _delete_one(self, question_id: str) -> OutcomeKind:
        self._store.delete_question(question_id)
        return OutcomeKind.DELETED

    def _publish_one(self, question_id: str) -> OutcomeKind:
        published = self._publisher.publish_one(question_id)
        return OutcomeKind.PUBLISHED if published else OutcomeKind.SKIPPED
