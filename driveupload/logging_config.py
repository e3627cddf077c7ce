"""Logging setup for upload processes.

Records can be rendered as one JSON object per line for log shippers, and
``UploadLogger`` stamps each record with the upload it belongs to so that
interleaved uploads can be told apart.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, MutableMapping, Optional, Tuple

__all__ = ["setup_logging", "JSONFormatter", "UploadLogger"]

QUIET_LOGGERS = ("urllib3", "requests", "botocore", "boto3", "s3transfer")
PLAIN_FORMAT = "%(asctime)s %(levelname)-7s %(name)s | %(message)s"

_STANDARD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None))
) | {"message", "asctime"}


class JSONFormatter(logging.Formatter):
    """Render a record as a single JSON line.

    Fields passed through ``extra=`` end up under ``"extra"``:

        {"timestamp": "2025-01-15T10:30:00.123Z", "level": "INFO",
         "logger": "driveupload.dispatcher", "message": "Uploaded via transfer",
         "extra": {"remote": "docs/a.bin", "size": 1024}}
    """

    def __init__(self, exclude_fields: Optional[Iterable[str]] = None):
        super().__init__()
        self.exclude_fields = frozenset(exclude_fields or ())

    def _extra(self, record: logging.LogRecord) -> Dict[str, Any]:
        skip = _STANDARD_ATTRS | self.exclude_fields
        return {key: value for key, value in vars(record).items() if key not in skip}

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, tz=timezone.utc)
        payload: Dict[str, Any] = {
            "timestamp": stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        extra = self._extra(record)
        if extra:
            payload["extra"] = extra
        return json.dumps(payload, default=str)


class UploadLogger(logging.LoggerAdapter):
    """Adapter that merges per-upload context into every record.

    Example:
        log = UploadLogger(__name__, remote="docs/a.bin", size=1024, mode="default")
        log.bind(size=2048)
        log.info("negotiating")  # record.remote, record.size, record.mode are set
    """

    def __init__(self, name: str, **context: Any):
        super().__init__(logging.getLogger(name), dict(context))

    @property
    def context(self) -> Dict[str, Any]:
        return dict(self.extra)

    def bind(self, **fields: Any) -> None:
        self.extra.update(fields)

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> Tuple[Any, MutableMapping[str, Any]]:
        # Explicit extra= wins over bound context
        kwargs["extra"] = {**self.extra, **(kwargs.get("extra") or {})}
        return msg, kwargs


def _handler(handler: logging.Handler, level: int, formatter: logging.Formatter) -> logging.Handler:
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def setup_logging(
    verbose: bool = False,
    json_format: bool = False,
    log_file: Optional[str] = None,
) -> None:
    """Replace the root handlers with stderr (and optionally file) output.

    Args:
        verbose: Log at DEBUG instead of INFO
        json_format: Emit JSON lines instead of plain text
        log_file: Also append records to this file
    """
    level = logging.DEBUG if verbose else logging.INFO
    formatter = JSONFormatter() if json_format else logging.Formatter(PLAIN_FORMAT)

    handlers: List[logging.Handler] = [_handler(logging.StreamHandler(sys.stderr), level, formatter)]
    if log_file:
        handlers.append(_handler(logging.FileHandler(log_file, encoding="utf-8"), level, formatter))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.setLevel(level)
    for handler in handlers:
        root.addHandler(handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
