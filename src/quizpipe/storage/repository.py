"""Page, chapter and question persistence used by the pipeline and review service."""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime
from pathlib import Path

from sqlalchemy import func
from sqlmodel import select

from quizpipe.errors import NotFoundError
from quizpipe.storage.database import get_session, retry_on_lock
from quizpipe.storage.models import Chapter, GenerationAttempt, Page, Question

_UNSET = object()

EDITABLE_FIELDS = (
    "stem",
    "option_a",
    "option_b",
    "option_c",
    "option_d",
    "correct_option",
    "explanation",
    "difficulty",
)


class QuestionStore:
    """Short, self-contained transactions over pages and questions.

    Every method opens its own session so worker threads never share one.
    """

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path

    # -- pages and chapters ------------------------------------------------

    def get_page(self, page_id: str) -> Page:
        with get_session(self._db_path) as session:
            page = session.get(Page, page_id)
            if page is None:
                raise NotFoundError(f"Page {page_id} not found")
            return page

    def get_chapter(self, chapter_id: str) -> Chapter:
        with get_session(self._db_path) as session:
            chapter = session.get(Chapter, chapter_id)
            if chapter is None:
                raise NotFoundError(f"Chapter {chapter_id} not found")
            return chapter

    def list_chapter_pages(self, chapter_id: str) -> list[Page]:
        with get_session(self._db_path) as session:
            return list(
                session.exec(
                    select(Page)
                    .where(Page.chapter_id == chapter_id)
                    .order_by(Page.page_number)
                ).all()
            )

    @retry_on_lock
    def set_page_status(
        self,
        page_id: str,
        status: str,
        *,
        prompt: object = _UNSET,
        generated: bool = False,
    ) -> None:
        with get_session(self._db_path) as session:
            page = session.get(Page, page_id)
            if page is None:
                raise NotFoundError(f"Page {page_id} not found")
            page.status = status
            if prompt is not _UNSET:
                page.last_prompt = prompt
            now = datetime.now()
            if generated:
                page.last_generated_at = now
            page.updated_at = now
            session.add(page)
            session.commit()

    # -- questions ----------------------------------------------------------

    @retry_on_lock
    def delete_questions_for_page(self, page_id: str) -> int:
        with get_session(self._db_path) as session:
            rows = session.exec(select(Question).where(Question.page_id == page_id)).all()
            for question in rows:
                session.delete(question)
            session.commit()
            return len(rows)

    @retry_on_lock
    def add_questions(self, page_id: str, job_id: str, questions: Iterable) -> int:
        """Persist generated questions for a page, continuing its line numbering."""
        with get_session(self._db_path) as session:
            max_index = session.exec(
                select(func.max(Question.line_index)).where(Question.page_id == page_id)
            ).one()
            base = -1 if max_index is None else max_index
            count = 0
            for offset, q in enumerate(questions, start=1):
                session.add(
                    Question(
                        page_id=page_id,
                        job_id=job_id,
                        stem=q.stem,
                        option_a=q.options.a,
                        option_b=q.options.b,
                        option_c=q.options.c,
                        option_d=q.options.d,
                        correct_option=q.correct_option,
                        explanation=q.explanation,
                        difficulty=q.difficulty,
                        line_index=base + offset,
                    )
                )
                count += 1
            session.commit()
            return count

    def list_page_questions(self, page_id: str) -> list[Question]:
        with get_session(self._db_path) as session:
            return list(
                session.exec(
                    select(Question)
                    .where(Question.page_id == page_id)
                    .order_by(Question.line_index)
                ).all()
            )

    def get_question(self, question_id: str) -> Question:
        with get_session(self._db_path) as session:
            question = session.get(Question, question_id)
            if question is None:
                raise NotFoundError(f"Question {question_id} not found")
            return question

    @retry_on_lock
    def change_status(
        self, question_id: str, target: str, allowed_from: Iterable[str]
    ) -> bool:
        """Move one question to ``target`` if its current status allows it.

        Returns False (and changes nothing) when the status is not in
        ``allowed_from``. Raises NotFoundError if the question is gone.
        """
        with get_session(self._db_path) as session:
            question = session.get(Question, question_id)
            if question is None:
                raise NotFoundError(f"Question {question_id} not found")
            if question.status not in set(allowed_from):
                return False
            question.status = target
            question.updated_at = datetime.now()
            session.add(question)
            session.commit()
            return True

    @retry_on_lock
    def delete_question(
        self, question_id: str, allowed_from: Iterable[str] | None = None
    ) -> bool:
        with get_session(self._db_path) as session:
            question = session.get(Question, question_id)
            if question is None:
                raise NotFoundError(f"Question {question_id} not found")
            if allowed_from is not None and question.status not in set(allowed_from):
                return False
            session.delete(question)
            session.commit()
            return True

    @retry_on_lock
    def edit_question(self, question_id: str, edits: dict, *, status: str | None = None) -> Question:
        with get_session(self._db_path) as session:
            question = session.get(Question, question_id)
            if question is None:
                raise NotFoundError(f"Question {question_id} not found")
            for key, value in edits.items():
                if key in EDITABLE_FIELDS and value is not None:
                    setattr(question, key, value)
            if status is not None:
                question.status = status
            question.updated_at = datetime.now()
            session.add(question)
            session.commit()
            session.refresh(question)
            return question

    # -- generation attempts --------------------------------------------------

    @retry_on_lock
    def record_attempt(self, **fields: object) -> GenerationAttempt:
        """Store a provider call, numbering attempts per page."""
        with get_session(self._db_path) as session:
            last = session.exec(
                select(func.max(GenerationAttempt.attempt_no)).where(
                    GenerationAttempt.page_id == fields["page_id"]
                )
            ).one()
            attempt = GenerationAttempt(attempt_no=(last or 0) + 1, **fields)
            session.add(attempt)
            session.commit()
            session.refresh(attempt)
            return attempt

    def count_failed_attempts(self, page_id: str) -> int:
        with get_session(self._db_path) as session:
            return session.exec(
                select(func.count())
                .select_from(GenerationAttempt)
                .where(GenerationAttempt.page_id == page_id)
                .where(GenerationAttempt.is_success == False)  # noqa: E712
            ).one()

    def list_attempts(self, page_id: str) -> list[GenerationAttempt]:
        with get_session(self._db_path) as session:
            return list(
                session.exec(
                    select(GenerationAttempt)
                    .where(GenerationAttempt.page_id == page_id)
                    .order_by(GenerationAttempt.attempt_no)
                ).all()
            )
