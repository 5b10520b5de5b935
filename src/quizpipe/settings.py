"""Process-wide generation settings backed by the single ``appsettings`` row.

Readers hold an immutable :class:`AppSettings` snapshot. A patch validates
the new values, writes the row, swaps the snapshot in one assignment and
then hands the new snapshot to every subscriber (the admission controller
and the worker pool), so nobody ever observes a half-applied update.
"""

from __future__ import annotations

import hashlib
import logging
import math
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from quizpipe.config import Settings
from quizpipe.errors import NotFoundError, ValidationError
from quizpipe.storage.database import get_session, retry_on_lock
from quizpipe.storage.models import AppSettingsRecord

logger = logging.getLogger(__name__)

SETTINGS_ROW_ID = 1
QUEUE_PROVIDERS = ("memory", "database")
REDACTED = "[redacted]"

PATCHABLE_FIELDS = (
    "rpm_cap",
    "worker_concurrency",
    "queue_provider",
    "rate_limit_safety_factor",
    "token_estimate_initial",
)
READ_ONLY_FIELDS = ("id", "api_bearer_token_hash", "updated_at")


class AppSettings(BaseModel):
    """Immutable snapshot of the global generation settings."""

    model_config = ConfigDict(
        frozen=True,
        alias_generator=to_camel,
        populate_by_name=True,
    )

    rpm_cap: int = Field(gt=0)
    worker_concurrency: int = Field(gt=0)
    queue_provider: str
    rate_limit_safety_factor: float = Field(gt=0, le=1)
    token_estimate_initial: int = Field(gt=0)
    api_bearer_token_hash: str | None = None
    updated_at: datetime = Field(default_factory=datetime.now)

    @field_validator("rpm_cap", "worker_concurrency", "token_estimate_initial", mode="before")
    @classmethod
    def _reject_bool(cls, value: object) -> object:
        if isinstance(value, bool):
            raise ValueError("must be a positive integer")
        return value

    @field_validator("queue_provider")
    @classmethod
    def _known_provider(cls, value: str) -> str:
        if value not in QUEUE_PROVIDERS:
            raise ValueError(f"must be one of: {', '.join(QUEUE_PROVIDERS)}")
        return value

    @property
    def effective_rpm(self) -> int:
        """Permits per minute actually granted: never above ``rpm_cap``."""
        return max(1, math.floor(self.rpm_cap * self.rate_limit_safety_factor))

    def public_dict(self) -> dict:
        """Camel-cased JSON view with the token digest redacted."""
        data = self.model_dump(by_alias=True, mode="json")
        if data.get("apiBearerTokenHash"):
            data["apiBearerTokenHash"] = REDACTED
        data["effectiveRpm"] = self.effective_rpm
        return data

    @classmethod
    def from_record(cls, record: AppSettingsRecord) -> AppSettings:
        return cls(
            rpm_cap=record.rpm_cap,
            worker_concurrency=record.worker_concurrency,
            queue_provider=record.queue_provider,
            rate_limit_safety_factor=record.rate_limit_safety_factor,
            token_estimate_initial=record.token_estimate_initial,
            api_bearer_token_hash=record.api_bearer_token_hash,
            updated_at=record.updated_at,
        )


SettingsListener = Callable[[AppSettings], None]

# camelCase and snake_case both resolve to the snake_case field name
_FIELD_NAMES = {
    **{name: name for name in AppSettings.model_fields},
    **{to_camel(name): name for name in AppSettings.model_fields},
    "id": "id",
}


def _normalize(fields: dict) -> dict:
    normalized: dict = {}
    for key, value in fields.items():
        name = _FIELD_NAMES.get(key)
        if name is None:
            raise ValidationError(f"Unknown settings field: {key}", field=key)
        if name in READ_ONLY_FIELDS:
            raise ValidationError(f"Settings field is read-only: {key}", field=key)
        normalized[name] = value
    return normalized


class SettingsStore:
    """Seed-or-load, read and patch the global settings row."""

    def __init__(self, db_path: Path, defaults: Settings | None = None) -> None:
        self._db_path = db_path
        self._defaults = defaults
        self._snapshot: AppSettings | None = None
        self._write_lock = threading.Lock()
        self._listeners: list[SettingsListener] = []

    def seed(self) -> AppSettings:
        """Create the settings row from configured defaults, or load it."""
        with self._write_lock:
            with get_session(self._db_path) as session:
                record = session.get(AppSettingsRecord, SETTINGS_ROW_ID)
                if record is None:
                    defaults = self._defaults or Settings()
                    seeded = AppSettings(
                        rpm_cap=defaults.default_rpm_cap,
                        worker_concurrency=defaults.default_worker_concurrency,
                        queue_provider=defaults.default_queue_provider,
                        rate_limit_safety_factor=defaults.default_rate_limit_safety_factor,
                        token_estimate_initial=defaults.default_token_estimate_initial,
                    )
                    record = AppSettingsRecord(
                        id=SETTINGS_ROW_ID,
                        **seeded.model_dump(exclude={"api_bearer_token_hash"}),
                    )
                    session.add(record)
                    session.commit()
                    session.refresh(record)
                    logger.info("Seeded settings row (id=%d)", SETTINGS_ROW_ID)
                self._snapshot = AppSettings.from_record(record)
            return self._snapshot

    def get(self) -> AppSettings:
        """Return the current snapshot.

        Raises NotFoundError when the row was never seeded, which is a
        deployment error rather than a runtime path.
        """
        snapshot = self._snapshot
        if snapshot is not None:
            return snapshot
        with get_session(self._db_path) as session:
            record = session.get(AppSettingsRecord, SETTINGS_ROW_ID)
            if record is None:
                raise NotFoundError("Settings not initialized")
            self._snapshot = AppSettings.from_record(record)
        return self._snapshot

    def subscribe(self, listener: SettingsListener) -> None:
        self._listeners.append(listener)

    def patch(self, fields: dict) -> AppSettings:
        """Validate and apply a partial update, then publish the new snapshot."""
        if not isinstance(fields, dict) or not fields:
            raise ValidationError("No settings fields provided")
        changes = _normalize(fields)

        with self._write_lock:
            current = self.get()
            candidate = {
                **current.model_dump(),
                **changes,
                "updated_at": datetime.now(),
            }
            try:
                updated = AppSettings.model_validate(candidate)
            except PydanticValidationError as exc:
                error = exc.errors()[0]
                loc = str(error["loc"][0]) if error["loc"] else None
                field = to_camel(_FIELD_NAMES.get(loc, loc)) if loc else None
                raise ValidationError(f"{field}: {error['msg']}", field=field) from exc

            self._write(updated)
            self._snapshot = updated
            logger.info(
                "Settings updated: %s (effective rpm %d)",
                ", ".join(sorted(changes)),
                updated.effective_rpm,
            )
            for listener in self._listeners:
                listener(updated)
        return updated

    def set_api_token(self, token: str) -> AppSettings:
        """Store the SHA-256 digest of an API bearer token."""
        if not token:
            raise ValidationError("Token must not be empty", field="apiBearerToken")
        digest = hashlib.sha256(token.encode()).hexdigest()
        with self._write_lock:
            updated = self.get().model_copy(
                update={"api_bearer_token_hash": digest, "updated_at": datetime.now()}
            )
            self._write(updated)
            self._snapshot = updated
        return updated

    @retry_on_lock
    def _write(self, snapshot: AppSettings) -> None:
        with get_session(self._db_path) as session:
            record = session.get(AppSettingsRecord, SETTINGS_ROW_ID)
            if record is None:
                raise NotFoundError("Settings not initialized")
            for key, value in snapshot.model_dump().items():
                setattr(record, key, value)
            session.add(record)
            session.commit()
