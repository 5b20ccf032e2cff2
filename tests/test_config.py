"""
Tests for settings validation.
"""
import pytest
from pydantic import ValidationError

from bookstack.adapters.base import ProviderKind
from bookstack.core.config import DEFAULT_PROVIDER_ORDER
from tests.conftest import make_settings


class TestProviderOrder:
    def test_default(self):
        assert make_settings().ENRICHMENT_PROVIDER_ORDER == DEFAULT_PROVIDER_ORDER

    def test_comma_separated(self):
        settings = make_settings(ENRICHMENT_PROVIDER_ORDER=" Google_Books , open_library ")
        assert settings.ENRICHMENT_PROVIDER_ORDER == [ProviderKind.GOOGLE_BOOKS, ProviderKind.OPEN_LIBRARY]

    def test_json_array(self):
        settings = make_settings(ENRICHMENT_PROVIDER_ORDER='["claude", "openai"]')
        assert settings.ENRICHMENT_PROVIDER_ORDER == [ProviderKind.CLAUDE, ProviderKind.OPENAI]

    def test_from_environment(self, monkeypatch):
        monkeypatch.setenv("ENRICHMENT_PROVIDER_ORDER", "gemini,open_library")
        settings = make_settings()
        assert settings.ENRICHMENT_PROVIDER_ORDER == [ProviderKind.GEMINI, ProviderKind.OPEN_LIBRARY]

    @pytest.mark.parametrize("value", ["open_library,worldcat", "claude,claude", "[not json"])
    def test_rejected(self, value):
        with pytest.raises(ValidationError):
            make_settings(ENRICHMENT_PROVIDER_ORDER=value)


def test_database_url_is_converted_to_asyncpg():
    settings = make_settings(DATABASE_URL="postgres://u:p@db.internal:5432/books")
    assert settings.DATABASE_URL == "postgresql+asyncpg://u:p@db.internal:5432/books"


@pytest.mark.parametrize("overrides", [
    {"REPOSITORY_BACKEND": "mongo"},
    {"JOB_RUNNER": "celery"},
    {"BATCH_CHUNK_SIZE": 0},
    {"ENRICHMENT_MAX_ATTEMPTS": 0},
])
def test_invalid_choices(overrides):
    with pytest.raises(ValidationError):
        make_settings(**overrides)


def test_production_rejects_unsafe_settings():
    with pytest.raises(ValidationError) as exc_info:
        make_settings(
            ENVIRONMENT="production",
            DEBUG=True,
            REPOSITORY_BACKEND="memory",
            DATABASE_URL="postgresql://u:p@localhost/books",
        )

    message = str(exc_info.value)
    assert "DEBUG=True is forbidden" in message
    assert "REPOSITORY_BACKEND=memory" in message
    assert "Localhost DATABASE_URL" in message


def test_production_accepts_safe_settings():
    settings = make_settings(
        ENVIRONMENT="production",
        REPOSITORY_BACKEND="sqlalchemy",
        DATABASE_URL="postgresql://u:p@db.internal/books",
    )
    assert settings.ENVIRONMENT == "production"


def test_provider_enabled():
    settings = make_settings(GEMINI_API_KEY="g", CLAUDE_ENABLED=False, ANTHROPIC_API_KEY="a", OPENAI_API_KEY="")

    assert settings.provider_enabled(ProviderKind.OPEN_LIBRARY)
    assert settings.provider_enabled(ProviderKind.GEMINI)
    assert not settings.provider_enabled(ProviderKind.CLAUDE)
    assert not settings.provider_enabled(ProviderKind.OPENAI)


def test_max_upload_bytes():
    assert make_settings(MAX_UPLOAD_FILE_MB=2).max_upload_bytes == 2 * 1024 * 1024
