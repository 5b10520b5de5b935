"""Copy approved questions into the question bank."""

from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

from quizpipe.errors import NotFoundError
from quizpipe.review.state_machine import ReviewStatus
from quizpipe.storage.database import get_session, retry_on_lock
from quizpipe.storage.models import (
    Chapter,
    Page,
    Question,
    QuestionBankEntry,
    Subject,
    SubjectCounter,
)

logger = logging.getLogger(__name__)

DEFAULT_SHORT_CODE = "XX"


class QuestionBankPublisher:
    """Publishes one question per transaction.

    Each entry gets the next sequence number of its subject; the counter
    bump, the bank entry and the status change commit together.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path

    @retry_on_lock
    def publish_one(self, question_id: str) -> bool:
        """Publish an approved question. Returns False if it is not approved."""
        with get_session(self._db_path) as session:
            question = session.get(Question, question_id)
            if question is None:
                raise NotFoundError(f"Question {question_id} not found")
            if question.status != ReviewStatus.APPROVED.value:
                return False

            page = session.get(Page, question.page_id)
            if page is None:
                raise NotFoundError(f"Page {question.page_id} not found")
            chapter = session.get(Chapter, page.chapter_id)
            if chapter is None:
                raise NotFoundError(f"Chapter {page.chapter_id} not found")
            subject = session.get(Subject, chapter.subject_id)
            if subject is None:
                raise NotFoundError(f"Subject {chapter.subject_id} not found")

            counter = session.get(SubjectCounter, subject.id)
            if counter is None:
                counter = SubjectCounter(subject_id=subject.id, next_val=1)
            seq_no = counter.next_val
            counter.next_val += 1

            entry = QuestionBankEntry(
                source_question_id=question.id,
                subject_id=subject.id,
                chapter_id=chapter.id,
                page_id=page.id,
                seq_no=seq_no,
                subj_short_code=subject.code or DEFAULT_SHORT_CODE,
                stem=question.stem,
                option_a=question.option_a,
                option_b=question.option_b,
                option_c=question.option_c,
                option_d=question.option_d,
                correct_option=question.correct_option,
                explanation=question.explanation,
                difficulty=question.difficulty,
            )
            question.status = ReviewStatus.PUBLISHED.value
            question.updated_at = datetime.now()
            session.add(counter)
            session.add(entry)
            session.add(question)
            session.commit()
            logger.info(
                "Published question %s as %s-%d",
                question_id,
                entry.subj_short_code,
                seq_no,
            )
            return True
