import pytest

from imagestudio.config import Settings


def test_defaults(monkeypatch):
    for name in ("IMAGESTUDIO__DEFAULT_ENGINE", "IMAGESTUDIO__MAX_RETRIES"):
        monkeypatch.delenv(name, raising=False)
    settings = Settings(_env_file=None)
    assert settings.default_engine == "openrouter"
    assert settings.max_retries == 2
    assert settings.variation_max_retries == 1
    assert settings.request_timeout == 60.0
    assert set(settings.engines) >= {"openrouter", "gemini"}


def test_env_api_key_merges_with_default_engine(monkeypatch):
    monkeypatch.setenv("IMAGESTUDIO__ENGINES__OPENROUTER__API_KEY", "sk-or-123")
    settings = Settings(_env_file=None)
    engine = settings.engine("openrouter")
    assert engine.api_key == "sk-or-123"
    assert engine.has_api_key
    assert str(engine.base_url).startswith("https://openrouter.ai/api/v1")
    assert engine.model_prefix == "google/"


def test_env_declares_new_engine(monkeypatch):
    monkeypatch.setenv("IMAGESTUDIO__ENGINES__LOCAL__BASE_URL", "http://localhost:8080/v1")
    monkeypatch.setenv("IMAGESTUDIO__ENGINES__LOCAL__API_KEY", "local")
    settings = Settings(_env_file=None)
    assert str(settings.engine("local").base_url).startswith("http://localhost:8080")
    assert "openrouter" in settings.engines


def test_placeholder_key_is_not_a_key():
    settings = Settings(
        _env_file=None, engines={"gemini": {"api_key": "YOUR_API_KEY"}}
    )
    assert not settings.engine("gemini").has_api_key


def test_thinking_reserve_floor():
    assert Settings(_env_file=None, thinking_reserve=10).thinking_reserve == 1024
    assert Settings(_env_file=None, thinking_reserve=4096).thinking_reserve == 4096


def test_unknown_engine():
    with pytest.raises(KeyError):
        Settings(_env_file=None).engine("nope")
