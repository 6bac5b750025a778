"""Tests for environment-driven settings."""

import pytest

from citedoc.core.config import DEFAULT_DATABASE_URL, Settings, get_settings
from citedoc.core.errors import ConfigurationError


def test_get_settings_reads_environment(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("DATABASE_URL", "postgresql://u:p@db:5432/x")
    monkeypatch.setenv("RETRIEVAL_TOP_K", "5")
    monkeypatch.setenv("EMBED_BATCH_PAUSE", "0")
    monkeypatch.setenv("JSON_LOGS", "true")

    settings = get_settings()

    assert settings.openai_api_key == "sk-test"
    assert settings.database_url == "postgresql://u:p@db:5432/x"
    assert settings.retrieval_top_k == 5
    assert settings.embed_batch_pause == 0.0
    assert settings.json_logs is True


def test_defaults(monkeypatch):
    for name in ("DATABASE_URL", "EMBED_MODEL", "EMBED_DIMENSIONS", "CHAT_MODEL", "RETRIEVAL_TOP_K"):
        monkeypatch.delenv(name, raising=False)

    settings = get_settings()

    assert settings.database_url == DEFAULT_DATABASE_URL
    assert settings.embed_dimensions == 1536
    assert settings.embed_batch_size == 10
    assert settings.chat_model == "gpt-4o-mini"
    assert settings.chat_temperature == 0.1
    assert settings.retrieval_top_k == 10


def test_dimensions_follow_embedding_model(monkeypatch):
    monkeypatch.setenv("EMBED_MODEL", "text-embedding-3-large")
    monkeypatch.delenv("EMBED_DIMENSIONS", raising=False)

    assert get_settings().embed_dimensions == 3072


def test_validate_lists_issues():
    settings = Settings(openai_api_key="", retrieval_top_k=0)

    issues = settings.validate()

    assert "OPENAI_API_KEY not set" in issues
    assert "RETRIEVAL_TOP_K must be a positive integer" in issues


def test_require_credentials():
    with pytest.raises(ConfigurationError) as exc_info:
        Settings(openai_api_key="").require_credentials()

    assert exc_info.value.user_message == "Server not configured."
    Settings(openai_api_key="sk-test").require_credentials()
