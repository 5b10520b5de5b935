"""Wiring of the generation pipeline and review service for one process."""

from __future__ import annotations

import logging

from quizpipe.config import Settings
from quizpipe.generation.admission import AdmissionController
from quizpipe.generation.generator import PageGenerator
from quizpipe.generation.orchestrator import RegenerationOrchestrator
from quizpipe.generation.queue import create_queue
from quizpipe.generation.worker import WorkerPool
from quizpipe.llm.client import ClaudeClient
from quizpipe.review.publisher import QuestionBankPublisher
from quizpipe.review.service import ReviewService
from quizpipe.settings import AppSettings, SettingsStore
from quizpipe.storage.repository import QuestionStore

logger = logging.getLogger(__name__)


class Pipeline:
    """Owns every long-lived component.

    Settings are seeded (or loaded) first; the admission controller, the
    queue provider and the worker pool are built from that snapshot, and
    later settings patches are pushed into the controller and the pool.
    A new ``queueProvider`` only takes effect on the next start.
    """

    def __init__(self, settings: Settings, *, client: ClaudeClient | None = None) -> None:
        self.settings = settings
        db_path = settings.db_path

        self.settings_store = SettingsStore(db_path, defaults=settings)
        app_settings = self.settings_store.seed()

        self.store = QuestionStore(db_path)
        self.admission = AdmissionController.from_settings(app_settings, settings)
        self.queue = create_queue(app_settings.queue_provider, db_path)
        self.queue_provider = app_settings.queue_provider
        self.client = client or ClaudeClient(settings)
        self.generator = PageGenerator(
            self.client,
            escalation_model=settings.escalation_model,
            escalate_after_failures=settings.escalate_after_failures,
        )
        self.workers = WorkerPool(
            self.queue,
            self.admission,
            self.generator,
            self.store,
            concurrency=app_settings.worker_concurrency,
            acquire_timeout=settings.acquire_timeout_seconds,
            poll_interval=settings.worker_poll_seconds,
            prompt_version=settings.prompt_version,
        )
        self.orchestrator = RegenerationOrchestrator(self.queue, self.store)
        self.review = ReviewService(self.store, QuestionBankPublisher(db_path))

        self.settings_store.subscribe(self._apply_settings)

    def _apply_settings(self, app_settings: AppSettings) -> None:
        self.admission.reconfigure(
            app_settings.rpm_cap,
            app_settings.rate_limit_safety_factor,
            app_settings.token_estimate_initial,
        )
        self.workers.resize(app_settings.worker_concurrency)
        if app_settings.queue_provider != self.queue_provider:
            logger.warning(
                "Queue provider changed to %s; restart to apply",
                app_settings.queue_provider,
            )

    def start(self) -> None:
        self.workers.start()
        logger.info(
            "Pipeline started (queue=%s, effective rpm=%d)",
            self.queue_provider,
            self.admission.capacity,
        )

    def stop(self) -> None:
        self.admission.close()
        self.workers.stop(wait=True, timeout=self.settings.request_timeout_seconds)
        logger.info("Pipeline stopped; usage %s", self.client.usage_summary)

    def status(self) -> dict:
        return {
            "queueProvider": self.queue_provider,
            "queue": self.queue.stats(),
            "admission": self.admission.stats(),
            "workers": self.workers.stats(),
            "usage": self.client.usage_summary,
        }
