"""Retry with exponential backoff and named recovery strategies.

Implementation: uses tenacity internally. A ``RetryPolicy`` describes the
backoff (elapsed-time ceiling, intervals, jitter) and which failures are worth
retrying. Recovery strategies attached to a policy get a chance to turn a
specific failure into a result before the retry loop sees it.
"""

from __future__ import annotations

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Generic, Optional, Tuple, TypeVar

import requests
import tenacity
from tenacity.wait import wait_base

from driveupload import constants as c
from driveupload.context import CancelToken
from driveupload.errors import UploadError

logger = logging.getLogger(__name__)

__all__ = ["RecoveryStrategy", "RetryPolicy", "is_retryable", "retry_call"]

T = TypeVar("T")
Predicate = Callable[[BaseException], bool]


def is_retryable(exc: BaseException) -> bool:
    """Default retry classification.

    Engine errors carry their own ``retryable`` flag. Raw network errors that
    escaped wrapping are treated as transient; anything else is permanent.
    """
    if isinstance(exc, UploadError):
        return exc.retryable
    if isinstance(exc, (requests.ConnectionError, requests.Timeout)):
        return True
    return isinstance(exc, (ConnectionError, TimeoutError))


class RecoveryStrategy(ABC, Generic[T]):
    """A named, testable way to salvage one kind of failure.

    ``matches`` selects the failures the strategy understands. ``recover``
    returns a substitute result, or None when it could not recover, in which
    case the original failure goes on to the retry decision.
    """

    name: str = "recovery"

    @abstractmethod
    def matches(self, exc: BaseException) -> bool:
        ...

    @abstractmethod
    def recover(self, exc: BaseException) -> Optional[T]:
        ...


@dataclass(frozen=True)
class RetryPolicy:
    """Exponential backoff bounded by total elapsed time."""

    max_elapsed: float = c.DEFAULT_RETRY_MAX_ELAPSED
    initial_interval: float = c.DEFAULT_RETRY_INITIAL_INTERVAL
    max_interval: float = c.DEFAULT_RETRY_MAX_INTERVAL
    multiplier: float = c.DEFAULT_RETRY_MULTIPLIER
    jitter: float = c.DEFAULT_RETRY_JITTER  # fraction of initial_interval
    max_attempts: Optional[int] = None
    retry_if: Predicate = is_retryable
    recovery: Tuple[RecoveryStrategy[Any], ...] = field(default_factory=tuple)

    def should_retry(self, exc: BaseException) -> bool:
        return bool(self.retry_if(exc))

    def with_recovery(self, *strategies: RecoveryStrategy[Any]) -> "RetryPolicy":
        """Copy of this policy with extra recovery strategies attached."""
        return replace(self, recovery=self.recovery + tuple(strategies))

    def build_wait(self) -> wait_base:
        wait_strategy: wait_base = tenacity.wait_exponential(
            multiplier=self.initial_interval,
            max=self.max_interval,
            exp_base=self.multiplier,
        )
        if self.jitter > 0 and self.initial_interval > 0:
            wait_strategy = wait_strategy + tenacity.wait_random(
                0, self.initial_interval * self.jitter
            )
        return wait_strategy

    def build_stop(self) -> Any:
        stop = tenacity.stop_after_delay(self.max_elapsed)
        if self.max_attempts is not None:
            stop = stop | tenacity.stop_after_attempt(self.max_attempts)
        return stop

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_elapsed": self.max_elapsed,
            "initial_interval": self.initial_interval,
            "max_interval": self.max_interval,
            "multiplier": self.multiplier,
            "jitter": self.jitter,
            "max_attempts": self.max_attempts,
            "recovery": [strategy.name for strategy in self.recovery],
        }


def retry_call(
    operation: Callable[[], T],
    policy: RetryPolicy,
    *,
    operation_name: str = "operation",
    cancel: Optional[CancelToken] = None,
) -> T:
    """Run ``operation`` under ``policy``.

    Args:
        operation: Zero-argument callable to execute
        policy: Backoff, stop and recovery configuration
        operation_name: Name used in log messages
        cancel: Optional token; a cancelled upload is never retried and
            cancelling interrupts a backoff sleep

    Returns:
        The operation's result, or a recovery strategy's substitute result

    Raises:
        The last failure once the policy gives up.
    """

    def attempt() -> T:
        if cancel is not None:
            cancel.raise_if_cancelled()
        try:
            return operation()
        except Exception as exc:
            for strategy in policy.recovery:
                if not strategy.matches(exc):
                    continue
                recovered = strategy.recover(exc)
                if recovered is not None:
                    logger.info("%s recovered by %s after: %s", operation_name, strategy.name, exc)
                    return recovered
            raise

    def should_retry(exc: BaseException) -> bool:
        if cancel is not None and cancel.cancelled:
            return False
        return policy.should_retry(exc)

    def before_sleep_handler(retry_state: tenacity.RetryCallState) -> None:
        exception = retry_state.outcome.exception() if retry_state.outcome else None
        logger.warning(
            "%s attempt %d failed: %s. Retrying in %.1fs...",
            operation_name,
            retry_state.attempt_number,
            exception,
            retry_state.next_action.sleep if retry_state.next_action else 0,
        )

    retrying = tenacity.Retrying(
        stop=policy.build_stop(),
        wait=policy.build_wait(),
        retry=tenacity.retry_if_exception(should_retry),
        before_sleep=before_sleep_handler,
        sleep=cancel.sleep if cancel is not None else time.sleep,
        reraise=True,
    )
    return retrying(attempt)
