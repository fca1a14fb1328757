"""Tests for settings loading from config.ini and NQ_* environment variables."""

from notify_queue.config_loader import build_queue, load_settings
from notify_queue.models import QueueName
from notify_queue.transport import RecordingTransport, SMTPTransport


def test_defaults_without_config(tmp_path):
    settings = load_settings(str(tmp_path / "missing.ini"), environ={})

    assert settings["db_path"] == "/data/notify_queue.db"
    assert settings["http_port"] == 8000
    assert settings["api_token"] is None
    assert settings["workers_primary"] == 4
    assert settings["base_delay_ms"] == 2000
    assert settings["batch_base_delay_ms"] == 10000
    assert settings["max_attempts"] == 3
    assert settings["chunk_size"] == 10
    assert settings["inter_chunk_delay_ms"] == 5000
    assert settings["retention_seconds"] == 7 * 24 * 3600
    assert settings["start_paused"] is False
    assert settings["smtp_host"] is None


def test_config_file_takes_precedence_over_environment(tmp_path):
    config_file = tmp_path / "config.ini"
    config_file.write_text(
        """
[storage]
db_path = /tmp/from-file.db

[server]
port = 9000
api_token = file-token

[workers]
primary = 8
start_paused = yes

[retry]
base_delay_ms = 500
"""
    )
    env = {"NQ_DB_PATH": "/tmp/from-env.db", "NQ_PORT": "7000", "NQ_MAX_ATTEMPTS": "5"}
    settings = load_settings(str(config_file), environ=env)

    assert settings["db_path"] == "/tmp/from-file.db"
    assert settings["http_port"] == 9000
    assert settings["api_token"] == "file-token"
    assert settings["workers_primary"] == 8
    assert settings["start_paused"] is True
    assert settings["base_delay_ms"] == 500
    assert settings["max_attempts"] == 5


def test_environment_fallbacks(tmp_path):
    env = {
        "NQ_CONFIG": str(tmp_path / "absent.ini"),
        "NQ_API_TOKEN": "   ",
        "NQ_TEST_MODE": "true",
        "NQ_POLL_INTERVAL": "0.5",
        "NQ_SMTP_HOST": "smtp.example.com",
        "NQ_SMTP_PORT": "465",
        "NQ_REPORT_URL": "https://monitor.example.com/reports",
    }
    settings = load_settings(environ=env)

    assert settings["api_token"] is None
    assert settings["test_mode"] is True
    assert settings["poll_interval"] == 0.5
    assert settings["smtp_host"] == "smtp.example.com"
    assert settings["smtp_port"] == 465
    assert settings["report_url"] == "https://monitor.example.com/reports"


def test_build_queue_without_smtp_uses_recording_transport(tmp_path):
    settings = load_settings(str(tmp_path / "missing.ini"), environ={"NQ_DB_PATH": str(tmp_path / "q.db")})
    queue = build_queue(settings)

    assert isinstance(queue.transport, RecordingTransport)
    assert queue.store.db_path == str(tmp_path / "q.db")
    assert queue.workers.concurrency[QueueName.PRIMARY] == 4
    assert queue.retry_coordinator.base_delay_ms == 2000


def test_build_queue_with_smtp_and_overrides(tmp_path):
    env = {
        "NQ_DB_PATH": str(tmp_path / "q.db"),
        "NQ_SMTP_HOST": "smtp.example.com",
        "NQ_SMTP_PORT": "465",
        "NQ_WORKERS_DIGEST": "2",
        "NQ_BATCH_CHUNK_SIZE": "25",
    }
    settings = load_settings(str(tmp_path / "missing.ini"), environ=env)
    queue = build_queue(settings, test_mode=True)

    assert isinstance(queue.transport, SMTPTransport)
    assert queue.transport.use_tls is True
    assert queue.workers.concurrency[QueueName.DIGEST] == 2
    assert queue.splitter.chunk_size == 25
    assert queue._test_mode is True
