"""Settings loader for the notification queue service."""

from __future__ import annotations

import configparser
import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .core import NotificationQueue
from .models import QueueName
from .transport import SMTPTransport


def load_settings(
    config_path: Optional[str] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Dict[str, Any]:
    """
    Load configuration from an INI file (default: config.ini) with environment variables as fallbacks.

    Environment variables (all prefixed with NQ_):
      NQ_CONFIG - Path to config.ini file (default: config.ini)
      NQ_DB_PATH - Database path (default: /data/notify_queue.db)
      NQ_HOST / NQ_PORT - Server address (default: 0.0.0.0:8000)
      NQ_API_TOKEN - API authentication token
      NQ_WORKERS_PRIMARY / NQ_WORKERS_DIGEST / NQ_WORKERS_RETRY - Workers per queue
      NQ_POLL_INTERVAL - Idle poll interval in seconds
      NQ_TRANSPORT_TIMEOUT - Per-attempt delivery timeout in seconds
      NQ_START_PAUSED - Start with dispatch paused
      NQ_RETRY_BASE_DELAY_MS / NQ_RETRY_BATCH_BASE_DELAY_MS / NQ_MAX_ATTEMPTS
      NQ_BATCH_CHUNK_SIZE / NQ_BATCH_INTER_CHUNK_DELAY_MS
      NQ_RETENTION_SECONDS - Retention of terminal jobs (default: 7 days)
      NQ_TEST_MODE - Disable polling; workers only run when woken
      NQ_REPORT_URL / NQ_REPORT_TOKEN / NQ_REPORT_USER / NQ_REPORT_PASSWORD
      NQ_SMTP_HOST / NQ_SMTP_PORT / NQ_SMTP_USER / NQ_SMTP_PASSWORD / NQ_SMTP_USE_TLS / NQ_SMTP_SENDER
      NQ_LOG_DELIVERY_ACTIVITY - Log delivery activity at INFO level

    Config file sections/keys:
      [storage] db_path
      [server] host, port, api_token
      [workers] primary, digest, retry, poll_interval_seconds, transport_timeout_seconds, start_paused
      [retry] base_delay_ms, batch_base_delay_ms, max_attempts
      [batch] chunk_size, inter_chunk_delay_ms
      [delivery] retention_seconds, test_mode
      [reporting] report_url, report_token, report_user, report_password
      [smtp] host, port, user, password, use_tls, sender
      [logging] delivery_activity
    """
    env = os.environ if environ is None else environ
    path = Path(config_path or env.get("NQ_CONFIG", "config.ini"))
    parser = configparser.ConfigParser()
    parser.read(path)

    def get(section: str, option: str, fallback: str | None = None) -> str | None:
        if parser.has_option(section, option):
            return parser.get(section, option)
        return fallback

    def get_int(section: str, option: str, fallback: str | None = None, default: int | None = None) -> int | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        return int(value)

    def get_bool(section: str, option: str, fallback: str | None = None, default: bool | None = None) -> bool | None:
        value = get(section, option, fallback)
        if value is None:
            return default
        normalized = str(value).strip().lower()
        if normalized in {"1", "true", "yes", "on"}:
            return True
        if normalized in {"0", "false", "no", "off"}:
            return False
        return default

    def get_float(section: str, option: str, fallback: str | None = None, default: float | None = None) -> float | None:
        value = get(section, option, fallback)
        if value is None or str(value).strip() == "":
            return default
        return float(value)

    settings: Dict[str, Any] = {
        "db_path": get("storage", "db_path", env.get("NQ_DB_PATH", "/data/notify_queue.db")),
        "http_host": get("server", "host", env.get("NQ_HOST", "0.0.0.0")),
        "http_port": get_int("server", "port", env.get("NQ_PORT"), default=8000),
        "api_token": get("server", "api_token", env.get("NQ_API_TOKEN")),
        "workers_primary": get_int("workers", "primary", env.get("NQ_WORKERS_PRIMARY"), default=4),
        "workers_digest": get_int("workers", "digest", env.get("NQ_WORKERS_DIGEST"), default=1),
        "workers_retry": get_int("workers", "retry", env.get("NQ_WORKERS_RETRY"), default=1),
        "poll_interval": get_float("workers", "poll_interval_seconds", env.get("NQ_POLL_INTERVAL"), default=1.0),
        "transport_timeout": get_float(
            "workers", "transport_timeout_seconds", env.get("NQ_TRANSPORT_TIMEOUT"), default=30.0
        ),
        "start_paused": get_bool("workers", "start_paused", env.get("NQ_START_PAUSED"), default=False),
        "base_delay_ms": get_int("retry", "base_delay_ms", env.get("NQ_RETRY_BASE_DELAY_MS"), default=2000),
        "batch_base_delay_ms": get_int(
            "retry", "batch_base_delay_ms", env.get("NQ_RETRY_BATCH_BASE_DELAY_MS"), default=10000
        ),
        "max_attempts": get_int("retry", "max_attempts", env.get("NQ_MAX_ATTEMPTS"), default=3),
        "chunk_size": get_int("batch", "chunk_size", env.get("NQ_BATCH_CHUNK_SIZE"), default=10),
        "inter_chunk_delay_ms": get_int(
            "batch", "inter_chunk_delay_ms", env.get("NQ_BATCH_INTER_CHUNK_DELAY_MS"), default=5000
        ),
        "retention_seconds": get_int(
            "delivery", "retention_seconds", env.get("NQ_RETENTION_SECONDS"), default=7 * 24 * 3600
        ),
        "test_mode": get_bool("delivery", "test_mode", env.get("NQ_TEST_MODE"), default=False),
        "report_url": get("reporting", "report_url", env.get("NQ_REPORT_URL")),
        "report_token": get("reporting", "report_token", env.get("NQ_REPORT_TOKEN")),
        "report_user": get("reporting", "report_user", env.get("NQ_REPORT_USER")),
        "report_password": get("reporting", "report_password", env.get("NQ_REPORT_PASSWORD")),
        "smtp_host": get("smtp", "host", env.get("NQ_SMTP_HOST")),
        "smtp_port": get_int("smtp", "port", env.get("NQ_SMTP_PORT"), default=25),
        "smtp_user": get("smtp", "user", env.get("NQ_SMTP_USER")),
        "smtp_password": get("smtp", "password", env.get("NQ_SMTP_PASSWORD")),
        "smtp_use_tls": get_bool("smtp", "use_tls", env.get("NQ_SMTP_USE_TLS")),
        "smtp_sender": get("smtp", "sender", env.get("NQ_SMTP_SENDER", "noreply@localhost")),
        "log_delivery_activity": get_bool(
            "logging", "delivery_activity", env.get("NQ_LOG_DELIVERY_ACTIVITY"), default=False
        ),
    }

    db_path = settings["db_path"]
    if isinstance(db_path, str):
        settings["db_path"] = os.path.expanduser(db_path)
    token = settings.get("api_token")
    if isinstance(token, str):
        token = token.strip() or None
    settings["api_token"] = token
    return settings


def build_queue(settings: Dict[str, Any], **overrides: Any) -> NotificationQueue:
    """Construct a :class:`NotificationQueue` from :func:`load_settings` output.

    Without an SMTP host the queue keeps the in-memory recording transport.
    """
    transport = None
    if settings.get("smtp_host"):
        transport = SMTPTransport(
            host=settings["smtp_host"],
            port=int(settings.get("smtp_port") or 25),
            user=settings.get("smtp_user"),
            password=settings.get("smtp_password"),
            use_tls=settings.get("smtp_use_tls"),
            sender=settings.get("smtp_sender") or "noreply@localhost",
        )
    kwargs: Dict[str, Any] = dict(
        db_path=settings["db_path"],
        transport=transport,
        concurrency={
            QueueName.PRIMARY: int(settings.get("workers_primary") or 4),
            QueueName.DIGEST: int(settings.get("workers_digest") or 1),
            QueueName.RETRY: int(settings.get("workers_retry") or 1),
        },
        poll_interval=float(settings.get("poll_interval") or 1.0),
        transport_timeout=float(settings.get("transport_timeout") or 30.0),
        base_delay_ms=int(settings.get("base_delay_ms") or 2000),
        batch_base_delay_ms=int(settings.get("batch_base_delay_ms") or 10000),
        max_attempts=int(settings.get("max_attempts") or 3),
        chunk_size=int(settings.get("chunk_size") or 10),
        inter_chunk_delay_ms=int(settings.get("inter_chunk_delay_ms") or 5000),
        retention_seconds=settings.get("retention_seconds"),
        report_url=settings.get("report_url"),
        report_token=settings.get("report_token"),
        report_user=settings.get("report_user"),
        report_password=settings.get("report_password"),
        start_paused=bool(settings.get("start_paused")),
        test_mode=bool(settings.get("test_mode")),
        log_delivery_activity=bool(settings.get("log_delivery_activity")),
    )
    kwargs.update(overrides)
    return NotificationQueue(**kwargs)
