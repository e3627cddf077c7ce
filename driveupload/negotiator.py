"""Quick-upload negotiation.

The client offers the content hash; the server answers that it already holds
the bytes (status 2), that they must be uploaded (status 1), or asks for the
hash of a byte range to prove possession (status 7). A status-7 answer is met
by resubmitting with ``sign_key``/``sign_val`` and the loop continues.

Each round is retried with exponential backoff under an elapsed-time ceiling.
A round whose encrypted answer cannot be decoded may still have succeeded on
the server, so ``DirectoryListingRecovery`` looks for the object in the target
directory before the round is retried.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Protocol, Set, Tuple

from driveupload import constants as c
from driveupload.context import CancelToken
from driveupload.errors import OperationCancelled, PayloadDecodeError, ProtocolError, UploadError
from driveupload.hashing import Content, parse_range
from driveupload.models import FileEntry, UploadBasicInfo, UploadInitInfo
from driveupload.resilience import RecoveryStrategy, RetryPolicy, retry_call
from driveupload.signing import build_init_form, make_target

logger = logging.getLogger(__name__)

__all__ = [
    "DirectoryListingRecovery",
    "NegotiationError",
    "NegotiationOutcome",
    "NegotiationResult",
    "QuickUploadNegotiator",
    "QuickUploadSession",
    "SignedChallenge",
]


class InitUploadClient(Protocol):
    def init_upload(self, form: Dict[str, str]) -> UploadInitInfo: ...


class DirectoryLister(Protocol):
    def list_directory(self, dir_id: str, *, refresh: bool = False) -> List[FileEntry]: ...


class NegotiationOutcome(Enum):
    EXISTS = "exists"
    MUST_UPLOAD = "must_upload"


@dataclass(frozen=True)
class SignedChallenge:
    """A range-proof request: hash bytes ``start..end`` (inclusive) under ``sign_key``."""

    start: int
    end: int
    sign_key: str

    @classmethod
    def from_init(cls, info: UploadInitInfo) -> "SignedChallenge":
        if not info.sign_key or not info.sign_check:
            raise ProtocolError("status 7 without sign_key or sign_check")
        start, end = parse_range(info.sign_check)
        return cls(start=start, end=end, sign_key=info.sign_key)


@dataclass
class QuickUploadSession:
    """State of one negotiation. Discarded once it concludes."""

    user_id: str
    target: str
    file_id: str
    sign_key: str = ""
    sign_val: str = ""
    status: int = 0
    rounds: int = 0
    answered: Set[Tuple[int, int, str]] = field(default_factory=set)
    last_info: Optional[UploadInitInfo] = None

    def answer(self, challenge: SignedChallenge, digest: str) -> None:
        key = (challenge.start, challenge.end, challenge.sign_key)
        if key in self.answered:
            raise ProtocolError(
                "server repeated an already answered range challenge",
                details={"range": f"{challenge.start}-{challenge.end}", "sign_key": challenge.sign_key},
            )
        self.answered.add(key)
        self.sign_key = challenge.sign_key
        self.sign_val = digest


@dataclass(frozen=True)
class NegotiationResult:
    outcome: NegotiationOutcome
    info: UploadInitInfo
    session: QuickUploadSession

    @property
    def exists(self) -> bool:
        return self.outcome is NegotiationOutcome.EXISTS


class NegotiationError(UploadError):
    """Negotiation failed; carries whatever the server told us before it did."""

    def __init__(
        self,
        message: str,
        *,
        partial: Optional[UploadInitInfo] = None,
        cause: Optional[BaseException] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, cause=cause, **kwargs)
        self.partial = partial
        self.retryable = isinstance(cause, UploadError) and cause.retryable


class DirectoryListingRecovery(RecoveryStrategy[UploadInitInfo]):
    """Recover an undecodable negotiation answer by finding the object in its directory."""

    name = "directory-listing"

    def __init__(self, lister: DirectoryLister, dir_id: str, sha1: str, size: int) -> None:
        self._lister = lister
        self._dir_id = dir_id
        self._sha1 = sha1
        self._size = size

    def matches(self, exc: BaseException) -> bool:
        return isinstance(exc, PayloadDecodeError)

    def recover(self, exc: BaseException) -> Optional[UploadInitInfo]:
        try:
            entries = self._lister.list_directory(self._dir_id, refresh=True)
        except UploadError as list_exc:
            logger.warning("Listing %s during recovery failed: %s", self._dir_id, list_exc)
            return None
        for entry in entries:
            if entry.matches_content(self._sha1, self._size):
                logger.info(
                    "Found %s (%s) in directory %s after decode failure",
                    entry.name,
                    entry.pick_code,
                    self._dir_id,
                )
                return UploadInitInfo.existing(entry.pick_code, entry.id)
        return None


class QuickUploadNegotiator:
    """Runs the hash-offer / range-challenge exchange."""

    def __init__(
        self,
        client: InitUploadClient,
        lister: DirectoryLister,
        *,
        app_version: str = c.DEFAULT_APP_VERSION,
        retry_policy: Optional[RetryPolicy] = None,
        clock_ms: Callable[[], int] = lambda: int(time.time() * 1000),
    ) -> None:
        self._client = client
        self._lister = lister
        self._app_version = app_version
        self._retry_policy = retry_policy or RetryPolicy()
        self._clock_ms = clock_ms

    def negotiate(
        self,
        content: Content,
        *,
        identity: UploadBasicInfo,
        file_name: str,
        dir_id: str,
        cancel: Optional[CancelToken] = None,
    ) -> NegotiationResult:
        """Offer ``content`` by hash until the server decides.

        Raises:
            NegotiationError: the exchange failed; ``partial`` holds the last
                answer received, if any
        """
        session = QuickUploadSession(
            user_id=identity.user_id,
            target=make_target(dir_id),
            file_id=content.sha1_upper,
        )
        policy = self._retry_policy.with_recovery(
            DirectoryListingRecovery(self._lister, dir_id, content.sha1, content.size)
        )

        while True:
            session.rounds += 1
            try:
                info = retry_call(
                    lambda: self._round(session, identity, file_name, content.size, dir_id),
                    policy,
                    operation_name="quick upload negotiation",
                    cancel=cancel,
                )
            except OperationCancelled:
                raise
            except UploadError as exc:
                raise NegotiationError(
                    f"quick upload negotiation failed: {exc.message}",
                    partial=session.last_info,
                    cause=exc,
                    stage="negotiate",
                ) from exc
            session.status = info.status
            session.last_info = info
            logger.debug("Negotiation round %d answered status %d", session.rounds, info.status)

            if info.status == c.STATUS_EXISTS:
                return NegotiationResult(NegotiationOutcome.EXISTS, info, session)
            if info.status == c.STATUS_MUST_UPLOAD:
                return NegotiationResult(NegotiationOutcome.MUST_UPLOAD, info, session)
            if info.status == c.STATUS_SIGN_CHECK:
                try:
                    challenge = SignedChallenge.from_init(info)
                    session.answer(challenge, content.hash_range(challenge.start, challenge.end))
                except UploadError as exc:
                    raise NegotiationError(
                        f"range challenge failed: {exc.message}",
                        partial=info,
                        cause=exc,
                        stage="negotiate",
                    ) from exc
                logger.info(
                    "Answered range challenge %d-%d for %s",
                    challenge.start,
                    challenge.end,
                    file_name,
                )
                continue
            raise NegotiationError(
                f"unexpected negotiation status {info.status}",
                partial=info,
                cause=ProtocolError(f"unexpected status {info.status}"),
                stage="negotiate",
                details={"status": info.status, "status_msg": info.status_msg},
            )

    def init_for_transfer(
        self,
        *,
        identity: UploadBasicInfo,
        file_name: str,
        size: int,
        dir_id: str,
        cancel: Optional[CancelToken] = None,
    ) -> UploadInitInfo:
        """Ask for a transfer target without offering a hash."""
        session = QuickUploadSession(
            user_id=identity.user_id, target=make_target(dir_id), file_id=""
        )
        info = retry_call(
            lambda: self._round(session, identity, file_name, size, dir_id),
            self._retry_policy,
            operation_name="upload init",
            cancel=cancel,
        )
        if not info.has_transfer_target:
            raise ProtocolError(
                "upload init returned no transfer target",
                details={"status": info.status},
                stage="negotiate",
            )
        return info

    def _round(
        self,
        session: QuickUploadSession,
        identity: UploadBasicInfo,
        file_name: str,
        size: int,
        dir_id: str,
    ) -> UploadInitInfo:
        form = build_init_form(
            user_id=identity.user_id,
            user_key=identity.user_key,
            file_id=session.file_id,
            file_name=file_name,
            file_size=size,
            dir_id=dir_id,
            timestamp_ms=self._clock_ms(),
            app_version=self._app_version,
            sign_key=session.sign_key,
            sign_val=session.sign_val,
        )
        return self._client.init_upload(form)
