# tests/test_settings.py
from __future__ import annotations

import pytest
from pydantic import ValidationError

from tracas_guard.core.settings import DEFAULT_FINGERPRINT_SECRET, Settings


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("SECRET_KEY", "JWT_SECRET", "TRACAS_ENV"):
        monkeypatch.delenv(name, raising=False)


def test_secret_key_is_required() -> None:
    with pytest.raises(ValidationError):
        Settings(_env_file=None)


def test_secret_key_from_environment(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("SECRET_KEY", "from-the-environment")

    assert Settings(_env_file=None).secret_key == "from-the-environment"


def test_production_rejects_the_default_fingerprint_secret() -> None:
    with pytest.raises(ValidationError, match="JWT_SECRET"):
        Settings(_env_file=None, environment="production", secret_key="s3cret")


def test_production_with_a_fingerprint_secret() -> None:
    settings = Settings(
        _env_file=None,
        environment="production",
        secret_key="s3cret",
        fingerprint_secret="deployment-fingerprint-secret",
    )

    assert settings.is_production


def test_local_keeps_the_development_fingerprint_secret() -> None:
    settings = Settings(_env_file=None, secret_key="s3cret")

    assert settings.fingerprint_secret == DEFAULT_FINGERPRINT_SECRET
