"""Tests for the settings store."""

from __future__ import annotations

import hashlib
from unittest.mock import MagicMock

import pytest

from quizpipe.config import Settings
from quizpipe.errors import NotFoundError, ValidationError
from quizpipe.settings import REDACTED, AppSettings, SettingsStore


@pytest.fixture
def settings_store(settings: Settings) -> SettingsStore:
    store = SettingsStore(settings.db_path, defaults=settings)
    store.seed()
    return store


def test_get_before_seed_raises(settings: Settings) -> None:
    with pytest.raises(NotFoundError, match="Settings not initialized"):
        SettingsStore(settings.db_path).get()


def test_seed_uses_configured_defaults(settings: Settings) -> None:
    snapshot = SettingsStore(settings.db_path, defaults=settings).seed()

    assert snapshot.rpm_cap == 60
    assert snapshot.worker_concurrency == 2
    assert snapshot.queue_provider == "memory"
    assert snapshot.rate_limit_safety_factor == 0.8
    assert snapshot.token_estimate_initial == 2000


def test_seed_is_idempotent(settings_store: SettingsStore, settings: Settings) -> None:
    settings_store.patch({"rpmCap": 30})

    reloaded = SettingsStore(settings.db_path, defaults=settings).seed()

    assert reloaded.rpm_cap == 30


def test_patch_accepts_camel_and_snake_case(settings_store: SettingsStore) -> None:
    updated = settings_store.patch({"rpmCap": 120, "worker_concurrency": 4})

    assert updated.rpm_cap == 120
    assert updated.worker_concurrency == 4
    assert settings_store.get() is updated


def test_patch_persists(settings_store: SettingsStore, settings: Settings) -> None:
    settings_store.patch({"rateLimitSafetyFactor": 0.5})

    fresh = SettingsStore(settings.db_path)
    assert fresh.get().rate_limit_safety_factor == 0.5


@pytest.mark.parametrize(
    ("fields", "field"),
    [
        ({"rpmCap": 0}, "rpmCap"),
        ({"workerConcurrency": -1}, "workerConcurrency"),
        ({"rateLimitSafetyFactor": 1.5}, "rateLimitSafetyFactor"),
        ({"rateLimitSafetyFactor": 0}, "rateLimitSafetyFactor"),
        ({"tokenEstimateInitial": True}, "tokenEstimateInitial"),
        ({"queueProvider": "kafka"}, "queueProvider"),
    ],
)
def test_patch_rejects_invalid_values(
    settings_store: SettingsStore, fields: dict, field: str
) -> None:
    before = settings_store.get()

    with pytest.raises(ValidationError) as excinfo:
        settings_store.patch(fields)

    assert excinfo.value.field == field
    assert settings_store.get() == before


def test_patch_rejects_unknown_and_read_only_fields(settings_store: SettingsStore) -> None:
    with pytest.raises(ValidationError) as excinfo:
        settings_store.patch({"maxWorkers": 3})
    assert excinfo.value.field == "maxWorkers"

    with pytest.raises(ValidationError) as excinfo:
        settings_store.patch({"apiBearerTokenHash": "abc"})
    assert excinfo.value.field == "apiBearerTokenHash"


def test_empty_patch_rejected(settings_store: SettingsStore) -> None:
    with pytest.raises(ValidationError):
        settings_store.patch({})


def test_subscribers_receive_new_snapshot(settings_store: SettingsStore) -> None:
    listener = MagicMock()
    settings_store.subscribe(listener)

    updated = settings_store.patch({"rpmCap": 90})

    listener.assert_called_once_with(updated)


def test_failed_patch_does_not_notify(settings_store: SettingsStore) -> None:
    listener = MagicMock()
    settings_store.subscribe(listener)

    with pytest.raises(ValidationError):
        settings_store.patch({"rpmCap": -5})

    listener.assert_not_called()


def test_effective_rpm_never_exceeds_cap() -> None:
    base = dict(worker_concurrency=1, queue_provider="memory", token_estimate_initial=1)

    assert AppSettings(rpm_cap=60, rate_limit_safety_factor=0.8, **base).effective_rpm == 48
    assert AppSettings(rpm_cap=60, rate_limit_safety_factor=1.0, **base).effective_rpm == 60
    assert AppSettings(rpm_cap=1, rate_limit_safety_factor=0.1, **base).effective_rpm == 1


def test_api_token_digest_is_redacted(settings_store: SettingsStore) -> None:
    settings_store.set_api_token("s3cret")

    snapshot = settings_store.get()
    assert snapshot.api_bearer_token_hash == hashlib.sha256(b"s3cret").hexdigest()

    public = snapshot.public_dict()
    assert public["apiBearerTokenHash"] == REDACTED
    assert "s3cret" not in str(public)
    assert public["effectiveRpm"] == 48
    assert public["rpmCap"] == 60
