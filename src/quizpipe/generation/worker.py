"""Worker pool draining the generation queue through the admission controller."""

from __future__ import annotations

import itertools
import logging
import threading

from quizpipe.errors import NotFoundError, ProviderError, RateLimitTimeoutError
from quizpipe.generation.admission import AdmissionController
from quizpipe.generation.generator import PageGenerator, PageRequest
from quizpipe.generation.queue import GenerationJob, JobQueue, PageStatus
from quizpipe.llm.client import Completion
from quizpipe.llm.cost import estimate_cost
from quizpipe.storage.repository import QuestionStore

logger = logging.getLogger(__name__)


class WorkerPool:
    """Runs ``concurrency`` executor threads.

    Each executor takes a job, waits for an admission permit, makes one
    provider call and, holding the page guard, either persists the
    questions or discards them because the job was cancelled meanwhile.
    Shrinking the pool never interrupts a job: surplus executors exit after
    finishing the one they hold.
    """

    def __init__(
        self,
        queue: JobQueue,
        admission: AdmissionController,
        generator: PageGenerator,
        store: QuestionStore,
        *,
        concurrency: int,
        acquire_timeout: float = 30.0,
        poll_interval: float = 0.5,
        prompt_version: str = "v1",
    ) -> None:
        if concurrency < 1:
            raise ValueError("concurrency must be positive")
        self._queue = queue
        self._admission = admission
        self._generator = generator
        self._store = store
        self._acquire_timeout = acquire_timeout
        self._poll_interval = poll_interval
        self._prompt_version = prompt_version

        self._lock = threading.Lock()
        self._target = concurrency
        self._running = 0
        self._busy = 0
        self._processed = 0
        self._threads: dict[int, threading.Thread] = {}
        self._ids = itertools.count(1)
        self._stop = threading.Event()
        self._started = False

    # -- lifecycle ----------------------------------------------------------

    def start(self) -> None:
        with self._lock:
            if self._started:
                return
            self._started = True
            self._stop.clear()
            while self._running < self._target:
                self._spawn()
        logger.info("Worker pool started with %d executor(s)", self._target)

    def stop(self, wait: bool = True, timeout: float | None = None) -> None:
        with self._lock:
            self._started = False
            self._stop.set()
            threads = list(self._threads.values())
        self._queue.wake_all()
        if wait:
            for thread in threads:
                thread.join(timeout)
        logger.info("Worker pool stopped")

    def resize(self, concurrency: int) -> None:
        """Grow by spawning executors; shrink by letting surplus ones retire."""
        if concurrency < 1:
            raise ValueError("concurrency must be positive")
        with self._lock:
            previous, self._target = self._target, concurrency
            if self._started:
                while self._running < self._target:
                    self._spawn()
        if previous != concurrency:
            logger.info("Worker pool resized from %d to %d", previous, concurrency)

    def _spawn(self) -> None:
        # Caller holds self._lock
        n = next(self._ids)
        thread = threading.Thread(
            target=self._run, args=(n,), name=f"quizpipe-worker-{n}", daemon=True
        )
        self._threads[n] = thread
        self._running += 1
        thread.start()

    def _should_retire(self) -> bool:
        with self._lock:
            if self._running > self._target:
                self._running -= 1
                return True
            return False

    def _run(self, n: int) -> None:
        retired = False
        try:
            while not self._stop.is_set():
                if self._should_retire():
                    retired = True
                    logger.debug("Executor %d retiring", n)
                    return
                job = self._queue.dequeue(timeout=self._poll_interval)
                if job is None:
                    continue
                with self._lock:
                    self._busy += 1
                try:
                    self.process(job)
                except Exception as exc:  # noqa: BLE001
                    logger.exception("Job %s crashed", job.id)
                    self._crashed(job, f"Internal error: {exc}")
                finally:
                    with self._lock:
                        self._busy -= 1
                        self._processed += 1
        finally:
            with self._lock:
                self._threads.pop(n, None)
                if not retired:
                    self._running -= 1

    # -- one job ------------------------------------------------------------

    def process(self, job: GenerationJob) -> None:
        """Run a dequeued job to completion, failure, requeue or discard."""
        page_id = job.page_id
        try:
            page = self._store.get_page(page_id)
        except NotFoundError as exc:
            self._queue.fail(job, exc.message)
            return

        with self._queue.page_guard(page_id):
            if job.cancelled:
                return
            self._store.set_page_status(page_id, PageStatus.GENERATING.value)

        model = self._generator.choose_model(self._store.count_failed_attempts(page_id))
        try:
            permit = self._admission.acquire(
                self._acquire_timeout,
                model=model,
                cancel=(self._stop, job.cancel_token),
            )
        except RateLimitTimeoutError as exc:
            with self._queue.page_guard(page_id):
                if job.cancelled:
                    logger.info("Job %s cancelled while waiting for a permit", job.id)
                    return
                self._queue.release(job, error=exc.message)
                self._store.set_page_status(page_id, PageStatus.QUEUED.value)
            logger.warning("Job %s returned to queue: %s", job.id, exc.message)
            return
        if job.cancelled:
            self._admission.revoke(permit)
            logger.info("Job %s cancelled before its provider call", job.id)
            return

        request = PageRequest(
            page_id=page_id, content=page.content, custom_prompt=job.prompt, model=model
        )
        try:
            result = self._generator.generate(request)
        except ProviderError as exc:
            logger.error("Generation failed for page %s: %s", page_id, exc.message)
            self._record_attempt(job, model, None, error=exc.message)
            self._fail(job, exc.message)
            return

        completion = result.completion
        self._admission.record(permit, completion.total_tokens)
        if result.error:
            logger.error("Unusable response for page %s: %s", page_id, result.error)
            self._record_attempt(job, model, completion, error=result.error)
            self._fail(job, result.error)
            return

        with self._queue.page_guard(page_id):
            if job.cancelled:
                logger.info("Discarding result of cancelled job %s", job.id)
                discarded = True
            else:
                discarded = False
                self._store.add_questions(page_id, job.id, result.questions)
                self._store.set_page_status(page_id, PageStatus.DONE.value, generated=True)
                self._queue.complete(job)
        self._record_attempt(
            job,
            model,
            completion,
            error="Result discarded: job cancelled" if discarded else None,
            success=True,
        )
        if not discarded:
            logger.info(
                "Job %s stored %d question(s) for page %s",
                job.id,
                len(result.questions),
                page_id,
            )

    def _fail(self, job: GenerationJob, error: str) -> None:
        with self._queue.page_guard(job.page_id):
            if job.cancelled:
                return
            self._queue.fail(job, error)
            self._store.set_page_status(job.page_id, PageStatus.FAILED.value)

    def _crashed(self, job: GenerationJob, error: str) -> None:
        try:
            self._fail(job, error)
        except Exception:  # noqa: BLE001
            logger.exception("Could not mark page %s failed", job.page_id)
            self._queue.fail(job, error)

    def _record_attempt(
        self,
        job: GenerationJob,
        model: str,
        completion: Completion | None,
        *,
        error: str | None = None,
        success: bool = False,
    ) -> None:
        tokens_in = completion.input_tokens if completion else 0
        tokens_out = completion.output_tokens if completion else 0
        self._store.record_attempt(
            page_id=job.page_id,
            job_id=job.id,
            model=model,
            is_success=success,
            error_message=error,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            estimated_cost_usd=estimate_cost(model, tokens_in, tokens_out),
            prompt_version=self._prompt_version,
        )

    def stats(self) -> dict:
        with self._lock:
            return {
                "target": self._target,
                "running": self._running,
                "busy": self._busy,
                "processed": self._processed,
            }
