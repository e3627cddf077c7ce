"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import logging
from typing import List

import pytest

from driveupload.resilience import RetryPolicy


class FakeClock:
    """Manually advanced clock for TTL and pacing tests."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fast_policy() -> RetryPolicy:
    """Retry policy without backoff delays, capped at a few attempts."""
    return RetryPolicy(
        max_elapsed=5.0,
        initial_interval=0.0,
        max_interval=0.0,
        jitter=0.0,
        max_attempts=4,
    )


@pytest.fixture
def aws_credentials(monkeypatch: pytest.MonkeyPatch) -> None:
    """Mock AWS credentials for moto."""
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", "us-east-1")


@pytest.fixture
def captured_records() -> List[logging.LogRecord]:
    """Collect records emitted under the ``driveupload`` logger."""
    records: List[logging.LogRecord] = []

    class _Collector(logging.Handler):
        def emit(self, record: logging.LogRecord) -> None:
            records.append(record)

    handler = _Collector(level=logging.DEBUG)
    logger = logging.getLogger("driveupload")
    previous = logger.level
    logger.addHandler(handler)
    logger.setLevel(logging.DEBUG)
    yield records
    logger.removeHandler(handler)
    logger.setLevel(previous)
