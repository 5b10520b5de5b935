"""SQLModel database models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import UniqueConstraint
from sqlmodel import Field, SQLModel


def _new_id() -> str:
    return str(uuid.uuid4())


class AppSettingsRecord(SQLModel, table=True):
    """The single global configuration row (id is always 1)."""

    __tablename__ = "appsettings"

    id: int = Field(default=1, primary_key=True)
    rpm_cap: int
    worker_concurrency: int
    queue_provider: str
    rate_limit_safety_factor: float
    token_estimate_initial: int
    api_bearer_token_hash: str | None = None
    updated_at: datetime = Field(default_factory=datetime.now)


class Subject(SQLModel, table=True):
    id: str = Field(default_factory=_new_id, primary_key=True)
    name: str
    code: str | None = None  # short code used in question-bank labels


class Chapter(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("subject_id", "ordinal"),)

    id: str = Field(default_factory=_new_id, primary_key=True)
    subject_id: str = Field(foreign_key="subject.id", index=True)
    name: str
    ordinal: int


class Page(SQLModel, table=True):
    """A textbook page with its extracted text and generation status."""

    id: str = Field(default_factory=_new_id, primary_key=True)
    chapter_id: str = Field(foreign_key="chapter.id", index=True)
    page_number: int
    content: str = ""
    status: str = "pending"  # pending | queued | generating | done | failed
    last_prompt: str | None = None
    last_generated_at: datetime | None = None
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class Question(SQLModel, table=True):
    """A generated multiple-choice question under review."""

    id: str = Field(default_factory=_new_id, primary_key=True)
    page_id: str = Field(foreign_key="page.id", index=True)
    job_id: str | None = Field(default=None, index=True)
    stem: str
    option_a: str
    option_b: str
    option_c: str
    option_d: str
    correct_option: str  # a | b | c | d
    explanation: str = ""
    difficulty: str = "medium"  # easy | medium | hard
    line_index: int = 0
    status: str = "pending_review"
    created_at: datetime = Field(default_factory=datetime.now)
    updated_at: datetime = Field(default_factory=datetime.now)


class GenerationAttempt(SQLModel, table=True):
    """One provider call made for a page."""

    id: int | None = Field(default=None, primary_key=True)
    page_id: str = Field(index=True)
    job_id: str
    attempt_no: int
    model: str
    is_success: bool
    error_message: str | None = None
    tokens_in: int = 0
    tokens_out: int = 0
    estimated_cost_usd: float = 0.0
    prompt_version: str = "v1"
    created_at: datetime = Field(default_factory=datetime.now)


class GenerationJobRecord(SQLModel, table=True):
    """Durable mirror of a queue entry (database queue provider only)."""

    id: str = Field(primary_key=True)
    page_id: str = Field(index=True)
    prompt: str | None = None
    status: str
    error: str | None = None
    created_at: datetime
    updated_at: datetime = Field(default_factory=datetime.now)


class SubjectCounter(SQLModel, table=True):
    subject_id: str = Field(primary_key=True)
    next_val: int = 1


class QuestionBankEntry(SQLModel, table=True):
    """A published copy of a reviewed question."""

    id: str = Field(default_factory=_new_id, primary_key=True)
    source_question_id: str | None = Field(default=None, index=True)
    subject_id: str = Field(index=True)
    chapter_id: str
    page_id: str
    seq_no: int
    subj_short_code: str
    stem: str
    option_a: str
    option_b: str
    option_c: str
    option_d: str
    correct_option: str
    explanation: str = ""
    difficulty: str = "medium"
    added_at: datetime = Field(default_factory=datetime.now)
