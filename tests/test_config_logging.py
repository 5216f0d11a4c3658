"""Tests for settings and structured logging."""

import json
import logging
import sys

from capture_upload.core.config import Settings
from capture_upload.core.logging import JsonLogFormatter, session_id_context

MB = 1024 * 1024


def test_settings_defaults():
    settings = Settings()

    assert settings.SERVICE_NAME == "capture-upload"
    assert settings.max_screenshot_bytes == 100 * MB
    assert settings.multipart_threshold_bytes == 5 * MB
    assert settings.multipart_chunk_size_bytes == 5 * MB
    assert settings.RETRY_MAX_ATTEMPTS == 3
    assert "image/png" in settings.allowed_screenshot_mime_types


def test_settings_from_environment(monkeypatch):
    monkeypatch.setenv("MAX_VIDEO_MB", "250")
    monkeypatch.setenv("ALLOWED_VIDEO_MIME_TYPES", "video/mp4, video/webm")
    monkeypatch.setenv("STORAGE_BACKEND", "memory")

    settings = Settings()

    assert settings.max_video_bytes == 250 * MB
    assert settings.allowed_video_mime_types == ["video/mp4", "video/webm"]
    assert settings.STORAGE_BACKEND == "memory"


def make_record(message: str, **extra) -> logging.LogRecord:
    record = logging.LogRecord("capture_upload.test", logging.WARNING, __file__, 10, message, (), None)
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_extra_fields():
    output = JsonLogFormatter().format(make_record("Part upload failed", part_number=2, attempt=1))

    entry = json.loads(output)
    assert entry["message"] == "Part upload failed"
    assert entry["severity"] == "WARNING"
    assert entry["part_number"] == 2
    assert entry["attempt"] == 1
    assert "\n" not in output


def test_json_formatter_adds_session_id_from_context():
    token = session_id_context.set("session-9")
    try:
        entry = json.loads(JsonLogFormatter().format(make_record("Upload completed")))
    finally:
        session_id_context.reset(token)

    assert entry["session_id"] == "session-9"


def test_json_formatter_embeds_exception():
    try:
        raise RuntimeError("broker down")
    except RuntimeError:
        record = logging.LogRecord(
            "capture_upload.test", logging.ERROR, __file__, 10, "failed", (), sys.exc_info()
        )

    entry = json.loads(JsonLogFormatter().format(record))

    assert entry["exception_type"] == "RuntimeError"
    assert entry["exception_message"] == "broker down"
