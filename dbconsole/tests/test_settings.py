"""Tests for settings validation and production startup checks."""

import pytest
from pydantic import ValidationError

from dbconsole.config import Settings, get_settings
from dbconsole.core.startup_checks import (
    ProductionConfigError,
    run_startup_validations,
    validate_production_settings,
)
from dbconsole.tests.conftest import TEST_COOKIE_KEY, make_settings


class TestSettingsValidation:
    def test_defaults_are_valid(self):
        settings = Settings(_env_file=None)
        assert settings.pagination_hard_cap == 1000
        assert settings.session_idle_timeout_seconds == 900
        assert settings.cookie_samesite == "strict"

    def test_backend_url_requires_database_placeholder(self):
        with pytest.raises(ValidationError, match="database"):
            make_settings(backend_url="postgresql+asyncpg://db:5432/postgres")

    def test_short_cookie_key_rejected(self):
        with pytest.raises(ValidationError, match="COOKIE_KEY"):
            make_settings(cookie_key="c2hvcnQ")

    def test_empty_cookie_key_means_generated(self):
        settings = make_settings(cookie_key="")
        assert settings.cookie_key is None
        assert len(settings.cookie_key_bytes) == 32
        assert settings.cookie_key_bytes == settings.cookie_key_bytes

    def test_explicit_cookie_key_decoded(self):
        assert make_settings().cookie_key_bytes == b"k" * 32

    def test_samesite_none_requires_secure(self):
        with pytest.raises(ValidationError, match="COOKIE_SECURE"):
            make_settings(cookie_samesite="none", cookie_secure=False)
        settings = make_settings(cookie_samesite="none", cookie_secure=True)
        assert settings.cookie_samesite_header == "None"

    def test_absolute_timeout_must_cover_idle(self):
        with pytest.raises(ValidationError, match="ABSOLUTE"):
            make_settings(session_idle_timeout_seconds=600, session_absolute_timeout_seconds=300)

    def test_count_cap_must_cover_hard_cap(self):
        with pytest.raises(ValidationError, match="COUNT_CAP"):
            make_settings(pagination_hard_cap=1000, pagination_count_cap=10)

    def test_non_positive_limits_rejected(self):
        with pytest.raises(ValidationError):
            make_settings(pagination_hard_cap=0)

    def test_environment_read_from_env(self, monkeypatch):
        monkeypatch.setenv("PAGINATION_HARD_CAP", "250")
        monkeypatch.setenv("LOG_LEVEL", "debug")
        get_settings.cache_clear()
        try:
            settings = get_settings()
            assert settings.pagination_hard_cap == 250
            assert settings.log_level == "DEBUG"
        finally:
            get_settings.cache_clear()


@pytest.mark.security
class TestProductionChecks:
    def test_production_requires_key_and_secure_cookies(self):
        settings = make_settings(environment="production", cookie_key=None, cookie_secure=False)
        errors = validate_production_settings(settings)
        assert any("COOKIE_KEY" in e for e in errors)
        assert any("COOKIE_SECURE" in e for e in errors)
        with pytest.raises(ProductionConfigError):
            run_startup_validations(settings)

    def test_production_rejects_credentials_in_backend_url(self):
        settings = make_settings(
            environment="production",
            cookie_secure=True,
            backend_url="postgresql+asyncpg://admin:pw@db:5432/{database}",
        )
        assert any("BACKEND_URL" in e for e in validate_production_settings(settings))

    def test_production_requires_postgresql(self):
        settings = make_settings(environment="production", cookie_secure=True)
        assert validate_production_settings(settings) == ["BACKEND_URL must point at PostgreSQL"]

    def test_valid_production_settings_pass(self):
        settings = make_settings(
            environment="production",
            cookie_key=TEST_COOKIE_KEY,
            cookie_secure=True,
            backend_url="postgresql+asyncpg://db:5432/{database}",
        )
        assert validate_production_settings(settings) == []
        run_startup_validations(settings)

    def test_test_environment_tolerates_generated_key(self):
        run_startup_validations(make_settings(cookie_key=None))
