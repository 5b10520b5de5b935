"""Tests for the worker pool."""

from __future__ import annotations

from pathlib import Path

import anthropic
import httpx
import pytest

from quizpipe.generation.admission import AdmissionController
from quizpipe.generation.generator import PageGenerator
from quizpipe.generation.queue import JobQueue, JobStatus
from quizpipe.generation.worker import WorkerPool
from quizpipe.llm.client import ClaudeClient
from quizpipe.storage.repository import QuestionStore
from tests.conftest import make_mock_response, questions_json, seed_chapter, wait_for


@pytest.fixture
def queue() -> JobQueue:
    return JobQueue()


@pytest.fixture
def admission() -> AdmissionController:
    return AdmissionController(60, 1.0, 2000, poll_interval=0.01)


@pytest.fixture
def generator(mock_claude_client: ClaudeClient) -> PageGenerator:
    return PageGenerator(
        mock_claude_client,
        escalation_model="claude-opus-4-20250514",
        escalate_after_failures=2,
    )


@pytest.fixture
def pool(queue, admission, generator, store) -> WorkerPool:
    pool = WorkerPool(
        queue,
        admission,
        generator,
        store,
        concurrency=2,
        acquire_timeout=0,
        poll_interval=0.02,
    )
    yield pool
    pool.stop(wait=True, timeout=5)


def _take(queue: JobQueue, page_id: str):
    queue.enqueue(page_id)
    return queue.dequeue(timeout=0)


def test_process_persists_questions(
    pool: WorkerPool,
    queue: JobQueue,
    admission: AdmissionController,
    store: QuestionStore,
    mock_claude_client: ClaudeClient,
    db_path: Path,
) -> None:
    _, (page_id, *_) = seed_chapter(db_path, pages=1)
    mock_claude_client._client.messages.create.return_value = make_mock_response(
        questions_json(3), input_tokens=1000, output_tokens=500
    )
    job = _take(queue, page_id)

    pool.process(job)

    assert job.status is JobStatus.COMPLETED
    questions = store.list_page_questions(page_id)
    assert len(questions) == 3
    assert {q.job_id for q in questions} == {job.id}
    page = store.get_page(page_id)
    assert page.status == "done"
    assert page.last_generated_at is not None
    (attempt,) = store.list_attempts(page_id)
    assert attempt.is_success
    assert (attempt.tokens_in, attempt.tokens_out) == (1000, 500)
    assert attempt.estimated_cost_usd == pytest.approx(0.003 + 0.0075)
    assert admission.stats()["tokensInWindow"] == 1500


def test_unparseable_response_fails_job(
    pool: WorkerPool,
    queue: JobQueue,
    store: QuestionStore,
    mock_claude_client: ClaudeClient,
    db_path: Path,
) -> None:
    _, (page_id, *_) = seed_chapter(db_path, pages=1)
    mock_claude_client._client.messages.create.return_value = make_mock_response(
        "Sorry, I cannot help with that."
    )
    job = _take(queue, page_id)

    pool.process(job)

    assert job.status is JobStatus.FAILED
    assert store.get_page(page_id).status == "failed"
    assert store.list_page_questions(page_id) == []
    (attempt,) = store.list_attempts(page_id)
    assert not attempt.is_success
    assert attempt.tokens_in == 100


def test_provider_error_fails_job_without_retry(
    pool: WorkerPool,
    queue: JobQueue,
    store: QuestionStore,
    mock_claude_client: ClaudeClient,
    db_path: Path,
) -> None:
    _, (page_id, *_) = seed_chapter(db_path, pages=1)
    mock_claude_client._client.messages.create.side_effect = anthropic.APIConnectionError(
        request=httpx.Request("POST", "https://api.anthropic.com/v1/messages")
    )
    job = _take(queue, page_id)

    pool.process(job)

    assert job.status is JobStatus.FAILED
    assert "unreachable" in job.error
    assert mock_claude_client._client.messages.create.call_count == 1
    assert len(queue) == 0
    assert store.count_failed_attempts(page_id) == 1


def test_rate_limit_timeout_returns_job_to_queue(
    queue: JobQueue,
    generator: PageGenerator,
    store: QuestionStore,
    mock_claude_client: ClaudeClient,
    db_path: Path,
) -> None:
    _, (page_id, *_) = seed_chapter(db_path, pages=1)
    admission = AdmissionController(1, 1.0, 2000)
    admission.acquire(timeout=0)
    pool = WorkerPool(queue, admission, generator, store, concurrency=1, acquire_timeout=0)
    job = _take(queue, page_id)

    pool.process(job)

    assert job.status is JobStatus.QUEUED
    assert "No admission permit" in job.error
    assert len(queue) == 1
    assert store.get_page(page_id).status == "queued"
    mock_claude_client._client.messages.create.assert_not_called()
    assert store.list_attempts(page_id) == []


def test_cancelled_job_result_is_discarded(
    pool: WorkerPool,
    queue: JobQueue,
    store: QuestionStore,
    mock_claude_client: ClaudeClient,
    db_path: Path,
) -> None:
    _, (page_id, *_) = seed_chapter(db_path, pages=1)
    job = _take(queue, page_id)

    def cancel_during_call(**kwargs):
        queue.cancel(job.id)
        return make_mock_response(questions_json(2))

    mock_claude_client._client.messages.create.side_effect = cancel_during_call

    pool.process(job)

    assert job.status is JobStatus.CANCELLED
    assert store.list_page_questions(page_id) == []
    (attempt,) = store.list_attempts(page_id)
    assert attempt.error_message == "Result discarded: job cancelled"


def test_job_cancelled_while_waiting_for_permit_makes_no_call(
    pool: WorkerPool,
    queue: JobQueue,
    admission: AdmissionController,
    store: QuestionStore,
    mock_claude_client: ClaudeClient,
    db_path: Path,
    monkeypatch,
) -> None:
    _, (page_id, *_) = seed_chapter(db_path, pages=1)
    job = _take(queue, page_id)
    acquire = admission.acquire

    def cancel_then_acquire(*args, **kwargs):
        queue.cancel(job.id)
        return acquire(*args, **kwargs)

    monkeypatch.setattr(admission, "acquire", cancel_then_acquire)

    pool.process(job)

    assert job.status is JobStatus.CANCELLED
    mock_claude_client._client.messages.create.assert_not_called()
    assert admission.stats()["inWindow"] == 0
    assert len(queue) == 0
    assert store.list_attempts(page_id) == []


def test_permit_granted_to_cancelled_job_is_revoked(
    pool: WorkerPool,
    queue: JobQueue,
    admission: AdmissionController,
    store: QuestionStore,
    mock_claude_client: ClaudeClient,
    db_path: Path,
    monkeypatch,
) -> None:
    _, (page_id, *_) = seed_chapter(db_path, pages=1)
    job = _take(queue, page_id)
    acquire = admission.acquire

    def acquire_then_cancel(*args, **kwargs):
        permit = acquire(*args, **kwargs)
        queue.cancel(job.id)
        return permit

    monkeypatch.setattr(admission, "acquire", acquire_then_cancel)

    pool.process(job)

    mock_claude_client._client.messages.create.assert_not_called()
    assert admission.stats()["inWindow"] == 0
    assert store.list_attempts(page_id) == []


def test_crashed_job_marks_page_failed(
    pool: WorkerPool,
    queue: JobQueue,
    store: QuestionStore,
    mock_claude_client: ClaudeClient,
    db_path: Path,
    monkeypatch,
) -> None:
    _, (page_id, *_) = seed_chapter(db_path, pages=1)
    mock_claude_client._client.messages.create.return_value = make_mock_response(
        questions_json(2)
    )

    def broken_insert(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "add_questions", broken_insert)
    pool.start()
    job_id = queue.enqueue(page_id)

    assert wait_for(lambda: store.get_page(page_id).status == "failed")
    job = queue.get(job_id)
    assert job.status is JobStatus.FAILED
    assert job.error == "Internal error: disk full"
    assert queue.active_job_for(page_id) is None
    assert pool.stats()["running"] == 2


def test_repeated_failures_escalate_model(
    pool: WorkerPool,
    queue: JobQueue,
    store: QuestionStore,
    mock_claude_client: ClaudeClient,
    db_path: Path,
) -> None:
    _, (page_id, *_) = seed_chapter(db_path, pages=1)
    for _ in range(2):
        store.record_attempt(
            page_id=page_id, job_id="old", model="claude-sonnet-4-20250514", is_success=False
        )
    mock_claude_client._client.messages.create.return_value = make_mock_response(
        questions_json(1)
    )

    pool.process(_take(queue, page_id))

    kwargs = mock_claude_client._client.messages.create.call_args.kwargs
    assert kwargs["model"] == "claude-opus-4-20250514"
    assert store.list_attempts(page_id)[-1].model == "claude-opus-4-20250514"


def test_running_pool_drains_queue(
    pool: WorkerPool,
    queue: JobQueue,
    store: QuestionStore,
    mock_claude_client: ClaudeClient,
    db_path: Path,
) -> None:
    _, page_ids = seed_chapter(db_path, pages=4)
    mock_claude_client._client.messages.create.return_value = make_mock_response(
        questions_json(2)
    )
    pool.start()

    for page_id in page_ids:
        queue.enqueue(page_id)

    assert wait_for(lambda: queue.stats()["completed"] == 4)
    for page_id in page_ids:
        assert store.get_page(page_id).status == "done"
        assert len(store.list_page_questions(page_id)) == 2


def test_resize_scales_down_and_up(pool: WorkerPool) -> None:
    pool.start()
    assert pool.stats()["running"] == 2

    pool.resize(1)
    assert wait_for(lambda: pool.stats()["running"] == 1)

    pool.resize(3)
    assert pool.stats()["running"] == 3


def test_resize_rejects_zero(pool: WorkerPool) -> None:
    with pytest.raises(ValueError):
        pool.resize(0)
