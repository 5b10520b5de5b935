"""SQLite database initialization and session management."""

from __future__ import annotations

import sqlite3
from pathlib import Path

from sqlalchemy.exc import OperationalError
from sqlmodel import Session, SQLModel, create_engine
from tenacity import retry, retry_if_exception, stop_after_attempt, wait_exponential

# Import models so SQLModel registers them
from quizpipe.storage import models as _models  # noqa: F401

_engines: dict[str, object] = {}


def _migrate_if_needed(db_path: Path) -> None:
    """Add any missing columns to existing tables (lightweight migration).

    Databases created before regeneration prompts and question provenance
    were tracked lack page.last_prompt, page.last_generated_at and
    question.job_id.
    """
    if not db_path.exists():
        return

    conn = sqlite3.connect(str(db_path))
    try:
        migrations = [
            ("page", "last_prompt", "TEXT"),
            ("page", "last_generated_at", "TIMESTAMP"),
            ("question", "job_id", "TEXT"),
        ]

        for table, col, col_type in migrations:
            cursor = conn.execute(f"PRAGMA table_info({table})")
            existing_cols = {row[1] for row in cursor.fetchall()}
            # Table not created yet; create_all will build it with every column
            if not existing_cols:
                continue
            if col not in existing_cols:
                conn.execute(f"ALTER TABLE {table} ADD COLUMN {col} {col_type}")

        conn.commit()
    finally:
        conn.close()


def get_engine(db_path: Path):
    """Get or create a SQLAlchemy engine for the given database path."""
    key = str(db_path)
    if key not in _engines:
        db_path.parent.mkdir(parents=True, exist_ok=True)
        _migrate_if_needed(db_path)
        # Worker threads share the engine, each with its own session
        engine = create_engine(
            f"sqlite:///{db_path}",
            echo=False,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        SQLModel.metadata.create_all(engine)
        _engines[key] = engine
    return _engines[key]


def get_session(db_path: Path) -> Session:
    """Create a new database session."""
    engine = get_engine(db_path)
    return Session(engine)


def _is_locked(exc: BaseException) -> bool:
    """Return True for SQLite write-lock contention, which clears on its own."""
    return isinstance(exc, OperationalError) and "locked" in str(exc).lower()


# Applied to write paths that several worker threads may hit at once
retry_on_lock = retry(
    retry=retry_if_exception(_is_locked),
    stop=stop_after_attempt(5),
    wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
    reraise=True,
)
