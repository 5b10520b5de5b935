"""Generation job queue.

Jobs live in an arena keyed by id; the backlog is a FIFO of queued job ids
and a second index maps each page to its single non-terminal job. One
condition variable guards all three. ``page_guard`` hands out a per-page
lock that callers hold around every check-then-act on a page; it is always
taken before the queue's own lock, never after.
"""

from __future__ import annotations

import logging
import threading
import uuid
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Iterator

from sqlmodel import select

from quizpipe.errors import InvariantError, ValidationError
from quizpipe.storage.database import get_session, retry_on_lock
from quizpipe.storage.models import GenerationJobRecord

logger = logging.getLogger(__name__)


class JobStatus(str, Enum):
    QUEUED = "queued"
    IN_FLIGHT = "in_flight"
    CANCELLED = "cancelled"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def terminal(self) -> bool:
        return self in (JobStatus.CANCELLED, JobStatus.COMPLETED, JobStatus.FAILED)


class PageStatus(str, Enum):
    PENDING = "pending"
    QUEUED = "queued"
    GENERATING = "generating"
    DONE = "done"
    FAILED = "failed"


@dataclass
class GenerationJob:
    """One queued request to generate questions for a page."""

    id: str
    page_id: str
    prompt: str | None = None
    created_at: datetime = field(default_factory=datetime.now)
    status: JobStatus = JobStatus.QUEUED
    error: str | None = None
    cancel_token: threading.Event = field(
        default_factory=threading.Event, repr=False, compare=False
    )

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.is_set()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pageId": self.page_id,
            "prompt": self.prompt,
            "createdAt": self.created_at.isoformat(),
            "status": self.status.value,
            "error": self.error,
        }


class JobJournal:
    """Persistence hook for queue state changes. The base class keeps nothing."""

    def record(self, job: GenerationJob) -> None:
        pass

    def load_pending(self) -> list[GenerationJob]:
        return []


class DatabaseJobJournal(JobJournal):
    """Mirror every job into the ``generationjobrecord`` table."""

    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path

    @retry_on_lock
    def record(self, job: GenerationJob) -> None:
        with get_session(self._db_path) as session:
            row = session.get(GenerationJobRecord, job.id)
            if row is None:
                row = GenerationJobRecord(
                    id=job.id,
                    page_id=job.page_id,
                    prompt=job.prompt,
                    status=job.status.value,
                    created_at=job.created_at,
                )
            row.status = job.status.value
            row.error = job.error
            row.created_at = job.created_at
            row.updated_at = datetime.now()
            session.add(row)
            session.commit()

    def load_pending(self) -> list[GenerationJob]:
        with get_session(self._db_path) as session:
            rows = session.exec(
                select(GenerationJobRecord)
                .where(
                    GenerationJobRecord.status.in_(
                        [JobStatus.QUEUED.value, JobStatus.IN_FLIGHT.value]
                    )
                )
                .order_by(GenerationJobRecord.created_at)
            ).all()
            return [
                GenerationJob(
                    id=row.id,
                    page_id=row.page_id,
                    prompt=row.prompt,
                    created_at=row.created_at,
                    status=JobStatus(row.status),
                    error=row.error,
                )
                for row in rows
            ]


class JobQueue:
    """Concurrency-safe FIFO of generation jobs, one live job per page."""

    def __init__(self, journal: JobJournal | None = None, *, history_limit: int = 1000) -> None:
        self._cond = threading.Condition()
        self._journal = journal or JobJournal()
        self._history_limit = history_limit
        self._jobs: dict[str, GenerationJob] = {}
        self._backlog: deque[str] = deque()
        self._active: dict[str, str] = {}
        self._finished: deque[str] = deque()
        self._totals = {status: 0 for status in JobStatus if status.terminal}
        self._page_locks: dict[str, threading.Lock] = {}
        self._page_locks_guard = threading.Lock()

    @contextmanager
    def page_guard(self, page_id: str) -> Iterator[None]:
        """Exclusive section for one page's job and question mutations."""
        with self._page_locks_guard:
            lock = self._page_locks.setdefault(page_id, threading.Lock())
        with lock:
            yield

    def enqueue(self, page_id: str, prompt: str | None = None) -> str:
        with self._cond:
            existing = self._active.get(page_id)
            if existing is not None:
                raise InvariantError(
                    f"Page {page_id} already has non-terminal job {existing}"
                )
            job = self._add(page_id, prompt)
        logger.info("Queued job %s for page %s", job.id, page_id)
        return job.id

    def ensure_job(self, page_id: str, prompt: str | None = None) -> tuple[GenerationJob, bool]:
        """Return the page's live job, creating one if there is none.

        A queued job is refreshed and an in-flight one is returned as is.
        The lookup and the action happen under one lock hold, so a worker
        dequeuing concurrently cannot slip in between. The flag is True
        when a new job was created.
        """
        with self._cond:
            existing = self._active.get(page_id)
            if existing is None:
                job = self._add(page_id, prompt)
                created = True
            else:
                job = self._jobs[existing]
                if job.status is JobStatus.QUEUED:
                    self._refresh(job)
                created = False
        if created:
            logger.info("Queued job %s for page %s", job.id, page_id)
        return job, created

    def _add(self, page_id: str, prompt: str | None) -> GenerationJob:
        # Caller holds self._cond
        job = GenerationJob(id=str(uuid.uuid4()), page_id=page_id, prompt=prompt)
        self._jobs[job.id] = job
        self._backlog.append(job.id)
        self._active[page_id] = job.id
        self._journal.record(job)
        self._cond.notify()
        return job

    def refresh(self, job_id: str) -> bool:
        """Move a queued job to the back of the backlog with a new timestamp."""
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None or job.status is not JobStatus.QUEUED:
                return False
            self._refresh(job)
            return True

    def _refresh(self, job: GenerationJob) -> None:
        self._backlog.remove(job.id)
        self._backlog.append(job.id)
        job.created_at = datetime.now()
        self._journal.record(job)

    def cancel(self, job_id: str) -> bool:
        """Cancel a queued or in-flight job.

        An in-flight job keeps running until its provider call returns; the
        worker then sees the cancellation token and discards the result.
        """
        with self._cond:
            job = self._jobs.get(job_id)
            if job is None or job.status.terminal:
                return False
            was_queued = job.status is JobStatus.QUEUED
            job.status = JobStatus.CANCELLED
            job.cancel_token.set()
            if was_queued:
                self._backlog.remove(job_id)
            self._retire(job)
        logger.info("Cancelled job %s for page %s", job_id, job.page_id)
        return True

    def dequeue(self, timeout: float | None = None) -> GenerationJob | None:
        """Take the oldest queued job and mark it in flight."""
        with self._cond:
            if not self._cond.wait_for(lambda: self._backlog, timeout=timeout):
                return None
            job = self._jobs[self._backlog.popleft()]
            job.status = JobStatus.IN_FLIGHT
            self._journal.record(job)
            return job

    def release(self, job: GenerationJob, error: str | None = None) -> None:
        """Put an in-flight job back at the front of the backlog."""
        with self._cond:
            if job.status is not JobStatus.IN_FLIGHT:
                return
            job.status = JobStatus.QUEUED
            job.error = error
            self._backlog.appendleft(job.id)
            self._journal.record(job)
            self._cond.notify()

    def complete(self, job: GenerationJob) -> None:
        with self._cond:
            if job.status is not JobStatus.IN_FLIGHT:
                return
            job.status = JobStatus.COMPLETED
            job.error = None
            self._retire(job)

    def fail(self, job: GenerationJob, error: str) -> None:
        with self._cond:
            if job.status is not JobStatus.IN_FLIGHT:
                return
            job.status = JobStatus.FAILED
            job.error = error
            self._retire(job)

    def _retire(self, job: GenerationJob) -> None:
        if self._active.get(job.page_id) == job.id:
            del self._active[job.page_id]
        self._totals[job.status] += 1
        self._journal.record(job)
        self._finished.append(job.id)
        while len(self._finished) > self._history_limit:
            self._jobs.pop(self._finished.popleft(), None)

    def restore(self) -> int:
        """Reload unfinished jobs from the journal; in-flight ones are queued again."""
        pending = self._journal.load_pending()
        with self._cond:
            for job in pending:
                if job.page_id in self._active:
                    raise InvariantError(
                        f"Journal holds two non-terminal jobs for page {job.page_id}"
                    )
                job.status = JobStatus.QUEUED
                self._jobs[job.id] = job
                self._backlog.append(job.id)
                self._active[job.page_id] = job.id
                self._journal.record(job)
            self._cond.notify_all()
        if pending:
            logger.info("Restored %d unfinished job(s) from the journal", len(pending))
        return len(pending)

    def active_job_for(self, page_id: str) -> GenerationJob | None:
        with self._cond:
            job_id = self._active.get(page_id)
            return self._jobs[job_id] if job_id else None

    def get(self, job_id: str) -> GenerationJob | None:
        with self._cond:
            return self._jobs.get(job_id)

    def pending(self) -> list[GenerationJob]:
        """Non-terminal jobs, backlog order first, then in-flight ones."""
        with self._cond:
            queued = [self._jobs[job_id] for job_id in self._backlog]
            in_flight = [
                self._jobs[job_id]
                for job_id in self._active.values()
                if self._jobs[job_id].status is JobStatus.IN_FLIGHT
            ]
            return queued + in_flight

    def wake_all(self) -> None:
        with self._cond:
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._backlog)

    def stats(self) -> dict:
        with self._cond:
            return {
                "queued": len(self._backlog),
                "inFlight": len(self._active) - len(self._backlog),
                "completed": self._totals[JobStatus.COMPLETED],
                "failed": self._totals[JobStatus.FAILED],
                "cancelled": self._totals[JobStatus.CANCELLED],
            }


def create_queue(provider: str, db_path: Path) -> JobQueue:
    """Build the queue implementation selected by the ``queueProvider`` setting."""
    if provider == "memory":
        return JobQueue()
    if provider == "database":
        queue = JobQueue(DatabaseJobJournal(db_path))
        queue.restore()
        return queue
    raise ValidationError(f"Unknown queue provider: {provider}", field="queueProvider")
