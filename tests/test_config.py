"""
Tests for configuration defaults and environment lookups.
"""

from theia import config


def test_config_has_required_settings():
    required_settings = [
        "DATABASE_FILE",
        "ACCESS_LOG_PATH",
        "EVENT_QUEUE_MAX_SIZE",
        "AGGREGATE_RETENTION_DAYS",
        "FINGERPRINT_RETENTION_DAYS",
        "RETENTION_INTERVAL_HOURS",
        "DB_CONNECTION_TIMEOUT",
        "DB_MAX_RETRIES",
    ]

    for setting in required_settings:
        assert hasattr(config, setting), f"Missing required config: {setting}"


def test_pipeline_and_retention_values_are_sane():
    assert config.EVENT_QUEUE_MAX_SIZE > 0
    assert config.RETENTION_INTERVAL_HOURS == 12
    assert config.AGGREGATE_RETENTION_DAYS > 0
    assert config.FINGERPRINT_RETENTION_DAYS > 0
    assert config.DB_MAX_RETRIES >= 1


def test_default_host_fallback(monkeypatch):
    monkeypatch.delenv("THEIA_DEFAULT_HOST", raising=False)
    assert config.get_default_host() == "default"

    monkeypatch.setenv("THEIA_DEFAULT_HOST", "")
    assert config.get_default_host() == "default"


def test_default_host_from_environment(monkeypatch):
    monkeypatch.setenv("THEIA_DEFAULT_HOST", "www.example.org")
    assert config.get_default_host() == "www.example.org"
