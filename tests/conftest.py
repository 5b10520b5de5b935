"""Shared test fixtures."""

from __future__ import annotations

import json
import time
from pathlib import Path
from unittest.mock import MagicMock

import pytest

from quizpipe.config import Settings
from quizpipe.llm.client import ClaudeClient
from quizpipe.storage.database import _engines, get_session
from quizpipe.storage.models import Chapter, Page, Question, Subject
from quizpipe.storage.repository import QuestionStore


@pytest.fixture(autouse=True)
def _dispose_engines():
    """Each test gets its own database file; drop cached engines afterwards."""
    yield
    for engine in _engines.values():
        engine.dispose()
    _engines.clear()


@pytest.fixture
def tmp_data_dir(tmp_path: Path) -> Path:
    """Create a temporary data directory."""
    data_dir = tmp_path / "data"
    data_dir.mkdir()
    return data_dir


@pytest.fixture
def settings(tmp_data_dir: Path) -> Settings:
    """Create test settings with temporary paths and short timeouts."""
    return Settings(
        anthropic_api_key="test-key-not-real",
        model="claude-sonnet-4-20250514",
        escalation_model="claude-opus-4-20250514",
        max_tokens=1024,
        temperature=0.7,
        db_path=tmp_data_dir / "test.db",
        acquire_timeout_seconds=0.2,
        worker_poll_seconds=0.05,
        default_rpm_cap=60,
        default_worker_concurrency=2,
    )


@pytest.fixture
def db_path(settings: Settings) -> Path:
    return settings.db_path


@pytest.fixture
def store(db_path: Path) -> QuestionStore:
    return QuestionStore(db_path)


@pytest.fixture
def mock_claude_client(settings: Settings) -> ClaudeClient:
    """Create a ClaudeClient with a mocked Anthropic SDK."""
    client = ClaudeClient(settings)
    # Replace the internal Anthropic client with a mock
    mock_anthropic = MagicMock()
    client._client = mock_anthropic
    return client


def make_mock_response(text: str, input_tokens: int = 100, output_tokens: int = 200):
    """Helper to create a mock Anthropic API response."""
    mock_response = MagicMock()
    mock_response.content = [MagicMock(text=text)]
    mock_response.usage.input_tokens = input_tokens
    mock_response.usage.output_tokens = output_tokens
    return mock_response


def questions_json(count: int = 2, prefix: str = "Q") -> str:
    """A well-formed generation payload with ``count`` questions."""
    return json.dumps(
        {
            "questions": [
                {
                    "stem": f"{prefix}{i}: What is {i} + {i}?",
                    "options": {"a": str(i), "b": str(2 * i), "c": "0", "d": "-1"},
                    "correct_option": "b",
                    "explanation": f"{i} + {i} = {2 * i}",
                    "difficulty": "easy",
                }
                for i in range(1, count + 1)
            ]
        }
    )


def seed_chapter(
    db_path: Path, pages: int = 3, code: str | None = "PHY"
) -> tuple[str, list[str]]:
    """Insert a subject, a chapter and ``pages`` pages. Returns (chapter_id, page_ids)."""
    with get_session(db_path) as session:
        subject = Subject(name="Physics", code=code)
        session.add(subject)
        session.flush()
        chapter = Chapter(subject_id=subject.id, name="Motion", ordinal=1)
        session.add(chapter)
        session.flush()
        page_ids = []
        for number in range(1, pages + 1):
            page = Page(
                chapter_id=chapter.id,
                page_number=number,
                content=f"Page {number}: velocity is the rate of change of position.",
            )
            session.add(page)
            session.flush()
            page_ids.append(page.id)
        chapter_id = chapter.id
        session.commit()
    return chapter_id, page_ids


def add_question(db_path: Path, page_id: str, status: str = "pending_review") -> str:
    """Insert one question directly and return its id."""
    with get_session(db_path) as session:
        question = Question(
            page_id=page_id,
            stem="What is velocity?",
            option_a="Speed with direction",
            option_b="Mass",
            option_c="Force",
            option_d="Energy",
            correct_option="a",
            explanation="Velocity is a vector.",
            status=status,
        )
        session.add(question)
        session.commit()
        return question.id


def wait_for(predicate, timeout: float = 5.0) -> bool:
    """Poll ``predicate`` until it holds or ``timeout`` seconds pass."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return False
