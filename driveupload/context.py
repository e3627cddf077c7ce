"""Cooperative cancellation for uploads."""

from __future__ import annotations

import threading
from typing import Optional

from driveupload.errors import OperationCancelled

__all__ = ["CancelToken"]


class CancelToken:
    """A cancellation flag shared by every step of one upload.

    Network calls check it before starting, multipart uploads check it
    between parts, and retry backoff sleeps wait on it so a cancel cuts a
    sleep short.
    """

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self._reason = reason
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise OperationCancelled(self._reason or "cancelled")

    def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first.

        Raises:
            OperationCancelled: if the token fires during the sleep
        """
        if self._event.wait(seconds):
            raise OperationCancelled(self._reason or "cancelled")
