import pytest
from pydantic import ValidationError

from aichat.settings import Settings


def _settings(monkeypatch, **env) -> Settings:
    for name in ("GENKIT_API_KEY", "GEMINI_API_KEY", "APP_ENV", "ENABLE_API_DOCS", "LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    for name, value in env.items():
        monkeypatch.setenv(name, value)
    return Settings(_env_file=None)


def test_defaults(monkeypatch):
    s = _settings(monkeypatch)
    assert s.genkit_model == "gemini-2.5-flash"
    assert s.genkit_default_temperature == 0.7
    assert s.genkit_default_max_tokens == 2000
    assert s.session_timeout_seconds == 1800
    assert s.session_cleanup_interval_seconds == 300
    assert s.message_sequence_max_retries == 3
    assert not s.genkit_configured


def test_gemini_api_key_is_accepted_as_fallback(monkeypatch):
    s = _settings(monkeypatch, GEMINI_API_KEY="AIza-fallback")
    assert s.genkit_api_key == "AIza-fallback"
    assert s.genkit_configured

    s = _settings(monkeypatch, GENKIT_API_KEY="AIza-primary", GEMINI_API_KEY="AIza-fallback")
    assert s.genkit_api_key == "AIza-primary"


def test_api_docs_follow_environment(monkeypatch):
    assert _settings(monkeypatch).enable_api_docs
    assert not _settings(monkeypatch, APP_ENV="production").enable_api_docs
    assert _settings(monkeypatch, APP_ENV="production", ENABLE_API_DOCS="true").enable_api_docs


def test_log_level_is_normalised(monkeypatch):
    assert _settings(monkeypatch, LOG_LEVEL="debug").log_level == "DEBUG"
    with pytest.raises(ValidationError):
        _settings(monkeypatch, LOG_LEVEL="chatty")
