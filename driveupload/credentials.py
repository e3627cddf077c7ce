"""Short-lived object-storage credentials.

The broker owns the current credential and refreshes it on demand. Concurrent
refreshes coalesce into one token request, and botocore sees the credential
as expiring at its refresh deadline so it always refreshes early.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, Mapping, Optional

from botocore.credentials import CredentialProvider, RefreshableCredentials

from driveupload import constants as c
from driveupload.errors import APIError, ProtocolError

logger = logging.getLogger(__name__)

__all__ = ["BrokerCredentialProvider", "CredentialBroker", "ObjectStorageCredential"]

REFRESH_MARGIN = timedelta(seconds=c.CREDENTIAL_REFRESH_MARGIN)

# Stand-in deadline for credentials that report no expiry
FAR_FUTURE = datetime(9999, 1, 1, tzinfo=timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_expiration(value: Any) -> Optional[datetime]:
    if not value:
        return None
    text = str(value).strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ProtocolError(f"invalid credential expiration {value!r}") from exc
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    if parsed.year <= 1:
        return None
    return parsed


@dataclass(frozen=True)
class ObjectStorageCredential:
    """Temporary object-storage credential. Immutable; the broker replaces it whole."""

    access_key_id: str
    access_key_secret: str
    security_token: str
    expiration: Optional[datetime] = None

    @classmethod
    def from_response(cls, payload: Mapping[str, Any]) -> "ObjectStorageCredential":
        status = str(payload.get("StatusCode", ""))
        if status != "200":
            raise APIError(
                f"object-storage token request failed with status {status or 'missing'}",
                details={"status_code": status},
            )
        try:
            return cls(
                access_key_id=str(payload["AccessKeyId"]),
                access_key_secret=str(payload["AccessKeySecret"]),
                security_token=str(payload["SecurityToken"]),
                expiration=_parse_expiration(payload.get("Expiration")),
            )
        except KeyError as exc:
            raise ProtocolError(f"object-storage token response is missing {exc}") from exc

    @property
    def refresh_at(self) -> datetime:
        """Deadline after which the credential must not be used."""
        if self.expiration is None:
            return FAR_FUTURE
        return self.expiration - REFRESH_MARGIN

    def needs_refresh(self, now: Optional[datetime] = None) -> bool:
        return (now or _utcnow()) >= self.refresh_at

    def time_to_refresh(self, now: Optional[datetime] = None) -> timedelta:
        return self.refresh_at - (now or _utcnow())

    def to_botocore_metadata(self) -> Dict[str, str]:
        return {
            "access_key": self.access_key_id,
            "secret_key": self.access_key_secret,
            "token": self.security_token,
            "expiry_time": self.refresh_at.isoformat(),
        }

    def __repr__(self) -> str:
        return (
            f"ObjectStorageCredential(access_key_id={self.access_key_id!r}, "
            f"expiration={self.expiration!r})"
        )


class CredentialBroker:
    """Fetches and caches object-storage credentials with single-flight refresh.

    Example:
        broker = CredentialBroker(client.get_oss_token)
        credential = broker.current()  # fetches once, then reuses until refresh_at
    """

    def __init__(
        self,
        fetch_token: Callable[[], Mapping[str, Any]],
        *,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self._fetch_token = fetch_token
        self._clock = clock
        self._lock = threading.Lock()
        self._current: Optional[ObjectStorageCredential] = None
        self._inflight: Optional["Future[ObjectStorageCredential]"] = None

    def fetch(self) -> ObjectStorageCredential:
        """Request a fresh credential.

        Callers arriving while a request is in flight wait for that request
        instead of starting another.
        """
        with self._lock:
            pending = self._inflight
            if pending is None:
                self._inflight = flight = Future()
        if pending is not None:
            return pending.result()

        try:
            credential = ObjectStorageCredential.from_response(self._fetch_token())
        except BaseException as exc:
            with self._lock:
                self._inflight = None
            flight.set_exception(exc)
            raise
        with self._lock:
            self._current = credential
            self._inflight = None
        flight.set_result(credential)
        logger.debug("Fetched object-storage credential, refresh at %s", credential.refresh_at)
        return credential

    def current(self) -> ObjectStorageCredential:
        """Current credential, refreshed first if its deadline has passed."""
        with self._lock:
            credential = self._current
        if credential is None or credential.needs_refresh(self._clock()):
            return self.fetch()
        return credential

    def botocore_metadata(self) -> Dict[str, str]:
        return self.fetch().to_botocore_metadata()

    def refreshable_credentials(self) -> RefreshableCredentials:
        return RefreshableCredentials.create_from_metadata(
            metadata=self.current().to_botocore_metadata(),
            refresh_using=self.botocore_metadata,
            method=BrokerCredentialProvider.METHOD,
        )


class BrokerCredentialProvider(CredentialProvider):
    """botocore credential provider backed by a ``CredentialBroker``."""

    METHOD = "drive-credential-broker"
    CANONICAL_NAME = "DriveCredentialBroker"

    def __init__(self, broker: CredentialBroker) -> None:
        super().__init__()
        self._broker = broker

    def load(self) -> RefreshableCredentials:
        return self._broker.refreshable_credentials()
