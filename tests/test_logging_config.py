from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List

from driveupload.logging_config import JSONFormatter, UploadLogger, setup_logging


def _reset_logging() -> None:
    """Reset logging state to the default configuration."""
    root = logging.getLogger()
    for handler in list(root.handlers):
        handler.close()
        root.removeHandler(handler)
    root.setLevel(logging.WARNING)


def test_setup_logging_writes_json_file(tmp_path: Path) -> None:
    """Ensure logging setup adds JSON console output and a file handler."""
    log_path = tmp_path / "upload.log"
    root = logging.getLogger()
    try:
        setup_logging(verbose=True, json_format=True, log_file=str(log_path))
        handlers = list(root.handlers)
        assert len(handlers) == 2
        assert all(isinstance(h.formatter, JSONFormatter) for h in handlers)
        assert root.level == logging.DEBUG

        logging.getLogger("driveupload.test").info("hello %s", "world")
        for handler in handlers:
            handler.flush()

        line = log_path.read_text(encoding="utf-8").strip().splitlines()[-1]
        payload = json.loads(line)
        assert payload["message"] == "hello world"
        assert payload["level"] == "INFO"
        assert payload["logger"] == "driveupload.test"
    finally:
        _reset_logging()


def test_setup_logging_quiets_noisy_libraries() -> None:
    try:
        setup_logging()
        assert logging.getLogger("botocore").level == logging.WARNING
        assert logging.getLogger("urllib3").level == logging.WARNING
        assert logging.getLogger().level == logging.INFO
    finally:
        _reset_logging()


def test_json_formatter_puts_extra_fields_under_extra() -> None:
    record = logging.LogRecord("driveupload.x", logging.INFO, __file__, 1, "msg", (), None)
    record.remote = "docs/a.bin"
    payload = json.loads(JSONFormatter().format(record))
    assert payload["extra"] == {"remote": "docs/a.bin"}


def test_json_formatter_excludes_fields() -> None:
    record = logging.LogRecord("driveupload.x", logging.INFO, __file__, 1, "msg", (), None)
    record.cookie = "secret"
    payload = json.loads(JSONFormatter(exclude_fields=["cookie"]).format(record))
    assert "extra" not in payload


def test_upload_logger_attaches_context(captured_records: List[logging.LogRecord]) -> None:
    log = UploadLogger("driveupload.dispatcher", remote="docs/a.bin", size=10)
    log.bind(mode="fast_upload")
    log.info("negotiating %s", "now")

    record = captured_records[-1]
    assert record.getMessage() == "negotiating now"
    assert record.remote == "docs/a.bin"
    assert record.size == 10
    assert record.mode == "fast_upload"
    assert log.context == {"remote": "docs/a.bin", "size": 10, "mode": "fast_upload"}
