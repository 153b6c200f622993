# Copyright 2025 Softwell S.r.l. - SPDX-License-Identifier: Apache-2.0
"""Settings loader and processor wiring.

Settings come from an INI file (default: ``config.ini``) with environment
variables as fallbacks. All environment variables are prefixed with ``BMQ_``.

Config file sections/keys (environment fallback in brackets):
  [storage] db_path                                   (BMQ_DB_PATH)
  [server]  host, port, api_token                     (BMQ_HOST, BMQ_PORT, BMQ_API_TOKEN)
  [smtp]    host, port, user, password, sender, use_tls
            (BMQ_SMTP_HOST, BMQ_SMTP_PORT, BMQ_SMTP_USER, BMQ_SMTP_PASSWORD,
             BMQ_SMTP_SENDER, BMQ_SMTP_USE_TLS)
  [queue]   start_active, max_per_minute, max_per_hour, processing_interval,
            cleanup_interval, batch_size, message_delay, max_retries,
            retry_delays (comma-separated seconds), count_failed_attempts
            (BMQ_START_ACTIVE, BMQ_MAX_PER_MINUTE, ...)
  [notify]  webhook_url, webhook_token                (BMQ_WEBHOOK_URL, BMQ_WEBHOOK_TOKEN)
  [logging] level                                     (BMQ_LOG_LEVEL)
"""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Any, Dict, Optional

from .core import EmailQueueProcessor
from .models import ConfigurationError, QueueConfig
from .notifier import LoggingNotifier, WebhookNotifier
from .persistence import QueueStore
from .prometheus import QueueMetrics
from .transport import SMTPTransport

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _parse_bool(value: Optional[str], default: Optional[bool]) -> Optional[bool]:
    if value is None:
        return default
    normalized = str(value).strip().lower()
    if normalized in _TRUE:
        return True
    if normalized in _FALSE:
        return False
    return default


def _parse_delays(value: Optional[str]) -> tuple[int, ...]:
    if not value:
        return ()
    try:
        return tuple(int(part) for part in value.replace(" ", "").split(",") if part)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid retry_delays value: {value!r}") from exc


def load_settings(config_path: str | os.PathLike | None = None) -> Dict[str, Any]:
    """Load configuration from an INI file with ``BMQ_*`` environment fallbacks."""
    path = Path(config_path or os.getenv("BMQ_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, env: str, default: Optional[str] = None) -> Optional[str]:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return os.getenv(env, default)

    def get_number(section: str, option: str, env: str, cast, default):
        value = get(section, option, env)
        if value is None or value == "":
            return default
        try:
            return cast(value)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid value for [{section}] {option}: {value!r}") from exc

    defaults = QueueConfig()
    settings: Dict[str, Any] = {
        "db_path": get("storage", "db_path", "BMQ_DB_PATH", "birthday_queue.db"),
        "http_host": get("server", "host", "BMQ_HOST", "127.0.0.1"),
        "http_port": get_number("server", "port", "BMQ_PORT", int, 8000),
        "api_token": get("server", "api_token", "BMQ_API_TOKEN"),
        "smtp_host": get("smtp", "host", "BMQ_SMTP_HOST"),
        "smtp_port": get_number("smtp", "port", "BMQ_SMTP_PORT", int, 587),
        "smtp_user": get("smtp", "user", "BMQ_SMTP_USER"),
        "smtp_password": get("smtp", "password", "BMQ_SMTP_PASSWORD"),
        "smtp_sender": get("smtp", "sender", "BMQ_SMTP_SENDER"),
        "smtp_use_tls": _parse_bool(get("smtp", "use_tls", "BMQ_SMTP_USE_TLS"), None),
        "start_active": _parse_bool(get("queue", "start_active", "BMQ_START_ACTIVE"), True),
        "webhook_url": get("notify", "webhook_url", "BMQ_WEBHOOK_URL"),
        "webhook_token": get("notify", "webhook_token", "BMQ_WEBHOOK_TOKEN"),
        "log_level": (get("logging", "level", "BMQ_LOG_LEVEL", "INFO") or "INFO").upper(),
        "queue": {
            "max_per_minute": get_number("queue", "max_per_minute", "BMQ_MAX_PER_MINUTE", int, defaults.max_per_minute),
            "max_per_hour": get_number("queue", "max_per_hour", "BMQ_MAX_PER_HOUR", int, defaults.max_per_hour),
            "processing_interval": get_number(
                "queue", "processing_interval", "BMQ_PROCESSING_INTERVAL", float, defaults.processing_interval
            ),
            "cleanup_interval": get_number(
                "queue", "cleanup_interval", "BMQ_CLEANUP_INTERVAL", float, defaults.cleanup_interval
            ),
            "batch_size": get_number("queue", "batch_size", "BMQ_BATCH_SIZE", int, defaults.batch_size),
            "message_delay": get_number("queue", "message_delay", "BMQ_MESSAGE_DELAY", float, defaults.message_delay),
            "max_retries": get_number("queue", "max_retries", "BMQ_MAX_RETRIES", int, defaults.max_retries),
            "retry_delays": _parse_delays(get("queue", "retry_delays", "BMQ_RETRY_DELAYS")),
            "count_failed_attempts": _parse_bool(
                get("queue", "count_failed_attempts", "BMQ_COUNT_FAILED_ATTEMPTS"), False
            ),
        },
    }

    db_path = settings["db_path"]
    if isinstance(db_path, str):
        settings["db_path"] = os.path.expanduser(db_path)
    token = settings.get("api_token")
    if isinstance(token, str):
        token = token.strip() or None
    settings["api_token"] = token
    return settings


def build_processor(settings: Dict[str, Any], *, metrics: QueueMetrics | None = None) -> EmailQueueProcessor:
    """Wire store, transport and notifier described by ``settings``."""
    store = QueueStore(settings["db_path"])
    transport = SMTPTransport(
        settings.get("smtp_host"),
        settings.get("smtp_port") or 587,
        settings.get("smtp_user"),
        settings.get("smtp_password"),
        settings.get("smtp_sender"),
        use_tls=settings.get("smtp_use_tls"),
    )
    if settings.get("webhook_url"):
        notifier = WebhookNotifier(settings["webhook_url"], token=settings.get("webhook_token"))
    else:
        notifier = LoggingNotifier()
    config = QueueConfig().merged(settings.get("queue") or {})
    return EmailQueueProcessor(store, transport, notifier=notifier, config=config, metrics=metrics)
