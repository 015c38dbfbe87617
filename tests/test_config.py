import pytest

from extraction_worker.core import config


def test_get_settings_reads_environment(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgres://example")
    monkeypatch.setenv("GOOGLE_API_KEY", "abc")
    monkeypatch.setenv("SERPAPI_API_KEY", "serp")
    monkeypatch.setenv("WORKER_PORT", "9100")
    monkeypatch.setenv("STEP_TIMEOUT_SECONDS", "12.5")
    monkeypatch.setenv("BATCH_SIZE", "5")
    monkeypatch.setenv("DEFAULT_PHONE_REGION", " id ")
    monkeypatch.setenv("ENRICH_USE_JS_RENDERER", "yes")

    settings = config.get_settings()

    assert settings.database_url == "postgres://example"
    assert settings.google_api_key == "abc"
    assert settings.serpapi_api_key == "serp"
    assert settings.worker_port == 9100
    assert settings.step_timeout_seconds == 12.5
    assert settings.batch_size == 5
    assert settings.default_phone_region == "ID"
    assert settings.enrich_use_js_renderer is True


def test_get_settings_defaults(monkeypatch):
    for name in ("WORKER_PORT", "BATCH_SIZE", "BATCH_DELAY_SECONDS", "AI_MODEL", "RATE_LIMIT_PER_MINUTE"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("DATABASE_URL", "postgres://example")

    settings = config.get_settings()

    assert settings.worker_port == 9000
    assert settings.batch_size == 2
    assert settings.batch_delay_seconds == 180.0
    assert settings.rate_limit_per_minute == 60
    assert settings.ai_model == "gpt-4o-mini"


def test_get_settings_is_cached(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgres://first")
    first = config.get_settings()
    monkeypatch.setenv("DATABASE_URL", "postgres://second")
    assert config.get_settings() is first


def test_malformed_numbers_raise_config_error(monkeypatch):
    monkeypatch.setenv("WORKER_PORT", "ninety")
    with pytest.raises(config.ConfigError):
        config.get_settings()


def test_settings_are_frozen(monkeypatch):
    monkeypatch.setenv("DATABASE_URL", "postgres://example")
    settings = config.get_settings()
    with pytest.raises(Exception):
        settings.worker_port = 1
