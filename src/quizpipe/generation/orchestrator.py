"""Requeue and regenerate operations for pages and chapters."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sqlalchemy.exc import SQLAlchemyError

from quizpipe.errors import NotFoundError, QuizpipeError
from quizpipe.generation.queue import JobQueue, JobStatus, PageStatus
from quizpipe.storage.repository import QuestionStore

logger = logging.getLogger(__name__)


@dataclass
class ChapterRegeneration:
    """Outcome of a chapter fan-out: job ids and error messages keyed by page."""

    chapter_id: str
    jobs: dict[str, str] = field(default_factory=dict)
    failures: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "chapterId": self.chapter_id,
            "queued": len(self.jobs),
            "jobs": self.jobs,
            "failures": self.failures,
        }


class RegenerationOrchestrator:
    def __init__(self, queue: JobQueue, store: QuestionStore) -> None:
        self._queue = queue
        self._store = store

    def requeue_page(self, page_id: str) -> str:
        """Make sure the page has exactly one live job and return its id.

        A queued job is moved to the back with a fresh timestamp, an
        in-flight one is left alone, and otherwise a new job is created with
        the page's last prompt.
        """
        page = self._store.get_page(page_id)
        with self._queue.page_guard(page_id):
            job, created = self._queue.ensure_job(page_id, page.last_prompt)
            if created:
                self._store.set_page_status(page_id, PageStatus.QUEUED.value)
            elif job.status is JobStatus.IN_FLIGHT:
                logger.info("Page %s already generating (job %s)", page_id, job.id)
            else:
                logger.info("Refreshed queued job %s for page %s", job.id, page_id)
            return job.id

    def regenerate_page(self, page_id: str, prompt: str | None = None) -> str:
        """Throw away the page's questions and start over with a new job.

        Runs entirely under the page guard so an in-flight worker can
        neither persist stale questions afterwards nor interleave with the
        delete.
        """
        page = self._store.get_page(page_id)
        effective_prompt = prompt if prompt is not None else page.last_prompt
        with self._queue.page_guard(page_id):
            job = self._queue.active_job_for(page_id)
            if job is not None:
                self._queue.cancel(job.id)
            removed = self._store.delete_questions_for_page(page_id)
            job_id = self._queue.enqueue(page_id, effective_prompt)
            self._store.set_page_status(
                page_id, PageStatus.QUEUED.value, prompt=effective_prompt
            )
        logger.info(
            "Regenerating page %s: removed %d question(s), job %s",
            page_id,
            removed,
            job_id,
        )
        return job_id

    def regenerate_chapter(
        self, chapter_id: str, prompt: str | None = None
    ) -> ChapterRegeneration:
        """Regenerate every page of a chapter; one page failing never stops the rest."""
        self._store.get_chapter(chapter_id)
        pages = self._store.list_chapter_pages(chapter_id)
        if not pages:
            raise NotFoundError(f"Chapter {chapter_id} has no pages")

        outcome = ChapterRegeneration(chapter_id=chapter_id)
        for page in pages:
            try:
                outcome.jobs[page.id] = self.regenerate_page(page.id, prompt)
            except (QuizpipeError, SQLAlchemyError) as exc:
                logger.warning("Could not regenerate page %s: %s", page.id, exc)
                outcome.failures[page.id] = str(exc)
        logger.info(
            "Chapter %s: %d page(s) queued, %d failed",
            chapter_id,
            len(outcome.jobs),
            len(outcome.failures),
        )
        return outcome
