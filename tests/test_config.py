"""Tests for settings loading from config.ini and BMQ_* variables."""

import pytest

from birthday_mail_queue.config import build_processor, load_settings
from birthday_mail_queue.models import ConfigurationError
from birthday_mail_queue.notifier import LoggingNotifier, WebhookNotifier


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    import os

    for key in list(os.environ):
        if key.startswith("BMQ_"):
            monkeypatch.delenv(key, raising=False)


def test_defaults_without_file_or_env(tmp_path):
    settings = load_settings(tmp_path / "missing.ini")

    assert settings["db_path"] == "birthday_queue.db"
    assert (settings["http_host"], settings["http_port"]) == ("127.0.0.1", 8000)
    assert settings["api_token"] is None
    assert settings["smtp_port"] == 587
    assert settings["start_active"] is True
    assert settings["log_level"] == "INFO"
    assert settings["queue"]["max_per_minute"] == 10
    assert settings["queue"]["max_per_hour"] == 100
    assert settings["queue"]["retry_delays"] == ()
    assert settings["queue"]["count_failed_attempts"] is False


def test_ini_values_take_precedence_over_env(tmp_path, monkeypatch):
    config_file = tmp_path / "config.ini"
    config_file.write_text(
        """
[storage]
db_path = /var/lib/bmq/queue.db

[server]
port = 9100
api_token =  secret

[smtp]
host = smtp.example.com
port = 465
sender = birthdays@example.com

[queue]
start_active = no
max_per_minute = 4
retry_delays = 60, 300
count_failed_attempts = yes

[logging]
level = debug
"""
    )
    monkeypatch.setenv("BMQ_MAX_PER_MINUTE", "99")
    monkeypatch.setenv("BMQ_MAX_PER_HOUR", "20")

    settings = load_settings(config_file)

    assert settings["db_path"] == "/var/lib/bmq/queue.db"
    assert settings["http_port"] == 9100
    assert settings["api_token"] == "secret"
    assert (settings["smtp_host"], settings["smtp_port"]) == ("smtp.example.com", 465)
    assert settings["start_active"] is False
    assert settings["log_level"] == "DEBUG"
    assert settings["queue"]["max_per_minute"] == 4
    assert settings["queue"]["max_per_hour"] == 20
    assert settings["queue"]["retry_delays"] == (60, 300)
    assert settings["queue"]["count_failed_attempts"] is True


def test_config_path_from_environment(tmp_path, monkeypatch):
    config_file = tmp_path / "other.ini"
    config_file.write_text("[queue]\nbatch_size = 2\n")
    monkeypatch.setenv("BMQ_CONFIG", str(config_file))

    assert load_settings()["queue"]["batch_size"] == 2


def test_invalid_number_raises_configuration_error(tmp_path, monkeypatch):
    monkeypatch.setenv("BMQ_BATCH_SIZE", "five")
    with pytest.raises(ConfigurationError):
        load_settings(tmp_path / "missing.ini")


def test_invalid_retry_delays_raise(tmp_path, monkeypatch):
    monkeypatch.setenv("BMQ_RETRY_DELAYS", "60,soon")
    with pytest.raises(ConfigurationError):
        load_settings(tmp_path / "missing.ini")


def test_blank_token_is_treated_as_unset(tmp_path, monkeypatch):
    monkeypatch.setenv("BMQ_API_TOKEN", "   ")
    assert load_settings(tmp_path / "missing.ini")["api_token"] is None


def test_build_processor_wires_components(tmp_path, monkeypatch):
    monkeypatch.setenv("BMQ_DB_PATH", str(tmp_path / "q.db"))
    monkeypatch.setenv("BMQ_SMTP_HOST", "smtp.example.com")
    monkeypatch.setenv("BMQ_SMTP_SENDER", "birthdays@example.com")
    monkeypatch.setenv("BMQ_MAX_PER_HOUR", "40")

    processor = build_processor(load_settings(tmp_path / "missing.ini"))

    assert processor.store.db_path == str(tmp_path / "q.db")
    assert processor.transport.configured
    assert processor.transport.start_tls is True
    assert isinstance(processor.notifier, LoggingNotifier)
    assert processor.config.max_per_hour == 40
    assert processor.rate_limiter.max_per_hour == 40


def test_build_processor_uses_webhook_when_configured(tmp_path, monkeypatch):
    monkeypatch.setenv("BMQ_WEBHOOK_URL", "https://hooks.example.com/bmq")
    monkeypatch.setenv("BMQ_WEBHOOK_TOKEN", "tok")

    processor = build_processor(load_settings(tmp_path / "missing.ini"))

    assert isinstance(processor.notifier, WebhookNotifier)
    assert processor.notifier.token == "tok"
