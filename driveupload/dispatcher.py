"""Upload strategy dispatcher.

Picks the path an upload takes and drives it to completion:

- inline: a form upload straight to the object store, no hash needed
- quick upload: offer the hash and skip the transfer if the drive has it
- transfer: single PUT or multipart upload to the negotiated target

Mode precedence (after the global size ceiling):

1. STREAM_ONLY: inline up to the streaming limit, otherwise fail.
2. FAST_UPLOAD: inline up to ``nohash_size``; above it negotiate, then inline
   up to the streaming limit or chunked beyond it.
3. HASH_ONLY: negotiate only; a miss fails and no bytes move.
4. DEFAULT: inline below ``nohash_size``; above it negotiate, then transfer.
   A hard negotiation failure still attempts a best-effort transfer.

Every path reserves its destination before any bytes move, and the caches
are only touched once the upload has succeeded.
"""

from __future__ import annotations

import contextlib
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import BinaryIO, Dict, FrozenSet, Iterator, List, Mapping, Optional, Set

import requests

from driveupload import constants as c
from driveupload.cache import DriveCaches, normalize_path
from driveupload.client import DriveClient
from driveupload.config import DriveConfig, UploadMode, UploadSettings
from driveupload.context import CancelToken
from driveupload.credentials import CredentialBroker
from driveupload.errors import (
    ConflictError,
    HashNotFoundError,
    ProtocolError,
    SizeLimitExceededError,
    UploadError,
)
from driveupload.filesystem import DriveFilesystem, ObjectHandle, Placeholder, SourceInfo, source_opener
from driveupload.hashing import Content, prepare_content
from driveupload.logging_config import UploadLogger
from driveupload.models import CallbackData, UploadBasicInfo, UploadInitInfo, parse_callback_result
from driveupload.negotiator import NegotiationError, QuickUploadNegotiator
from driveupload.objectstore import S3ObjectStore
from driveupload.resilience import RetryPolicy
from driveupload.transfer import ChunkedTransferEngine, TransferTarget, forwardable_headers

logger = logging.getLogger(__name__)

__all__ = [
    "ReservationRegistry",
    "UploadDispatcher",
    "UploadJob",
    "UploadRequest",
    "UploadState",
    "build_dispatcher",
]


class UploadState(Enum):
    UNHASHED = "unhashed"
    HASHED = "hashed"
    NEGOTIATING = "negotiating"
    TRANSFERRING = "transferring"
    DONE = "done"
    FAILED = "failed"


_TRANSITIONS: Dict[UploadState, FrozenSet[UploadState]] = {
    UploadState.UNHASHED: frozenset(
        {UploadState.HASHED, UploadState.TRANSFERRING, UploadState.FAILED}
    ),
    UploadState.HASHED: frozenset(
        {UploadState.NEGOTIATING, UploadState.TRANSFERRING, UploadState.FAILED}
    ),
    UploadState.NEGOTIATING: frozenset(
        {UploadState.TRANSFERRING, UploadState.DONE, UploadState.FAILED}
    ),
    UploadState.TRANSFERRING: frozenset({UploadState.DONE, UploadState.FAILED}),
    UploadState.DONE: frozenset(),
    UploadState.FAILED: frozenset(),
}

# Stage reported on errors raised while in a state
_STAGES = {
    UploadState.UNHASHED: "hash",
    UploadState.HASHED: "negotiate",
    UploadState.NEGOTIATING: "negotiate",
    UploadState.TRANSFERRING: "transfer",
    UploadState.DONE: "commit",
}


@dataclass(frozen=True)
class UploadRequest:
    """One upload as handed to the dispatcher.

    ``size`` is -1 when unknown; ``sha1`` is the caller's known hash, if any.
    """

    stream: BinaryIO
    source: SourceInfo
    remote: str
    header_options: Mapping[str, str] = field(default_factory=dict)

    @classmethod
    def build(
        cls,
        stream: BinaryIO,
        source: SourceInfo,
        remote: Optional[str] = None,
        header_options: Optional[Mapping[str, str]] = None,
    ) -> "UploadRequest":
        return cls(
            stream=stream,
            source=source,
            remote=normalize_path(remote or source.remote),
            header_options=MappingProxyType(dict(header_options or {})),
        )

    @property
    def size(self) -> int:
        return self.source.size

    @property
    def sha1(self) -> Optional[str]:
        return self.source.sha1()


@dataclass
class UploadJob:
    """Progress of one upload through the pipeline."""

    remote: str
    size: int
    mode: UploadMode
    state: UploadState = UploadState.UNHASHED
    history: List[UploadState] = field(default_factory=list)
    path: str = ""

    def advance(self, state: UploadState) -> None:
        if state not in _TRANSITIONS[self.state]:
            raise ProtocolError(
                f"illegal upload transition {self.state.value} -> {state.value}",
                remote=self.remote,
            )
        self.history.append(self.state)
        self.state = state

    @property
    def stage(self) -> str:
        if self.path == "inline" and self.state is UploadState.TRANSFERRING:
            return "inline"
        return _STAGES.get(self.state, self.state.value)


class ReservationRegistry:
    """Destinations currently being written by this process."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: Set[str] = set()

    @contextlib.contextmanager
    def reserve(self, remote: str) -> Iterator[str]:
        """Hold ``remote`` for the duration of the block.

        Raises:
            ConflictError: another upload already holds it
        """
        remote = normalize_path(remote)
        with self._lock:
            if remote in self._active:
                raise ConflictError(
                    "another upload to this destination is in progress",
                    remote=remote,
                    stage="reserve",
                    suggestion="Wait for the other upload to finish, or upload under a different name",
                )
            self._active.add(remote)
        try:
            yield remote
        finally:
            with self._lock:
                self._active.discard(remote)

    def __contains__(self, remote: object) -> bool:
        with self._lock:
            return isinstance(remote, str) and normalize_path(remote) in self._active


class UploadDispatcher:
    """Routes uploads to the inline, quick-upload or transfer path.

    Example:
        dispatcher = build_dispatcher(DriveConfig.from_yaml("drive.yaml"))
        with open("report.pdf", "rb") as fh:
            source = LocalFileSource(Path("report.pdf"), "docs/report.pdf")
            handle = dispatcher.upload(fh, source, "docs/report.pdf")
        print(handle.pick_code)
    """

    def __init__(
        self,
        settings: UploadSettings,
        client: DriveClient,
        fs: DriveFilesystem,
        negotiator: QuickUploadNegotiator,
        engine: ChunkedTransferEngine,
        *,
        spill_dir: Optional[str] = None,
    ) -> None:
        self.settings = settings
        self.client = client
        self.fs = fs
        self.negotiator = negotiator
        self.engine = engine
        self.spill_dir = spill_dir
        self.reservations = ReservationRegistry()
        self._identity: Optional[UploadBasicInfo] = None
        self._identity_lock = threading.Lock()

    @property
    def caches(self) -> DriveCaches:
        return self.fs.caches

    def upload(
        self,
        stream: BinaryIO,
        source: SourceInfo,
        remote: Optional[str] = None,
        header_options: Optional[Mapping[str, str]] = None,
        cancel: Optional[CancelToken] = None,
    ) -> ObjectHandle:
        """Upload ``stream`` to ``remote``.

        Args:
            stream: Source bytes, positioned at byte 0
            source: Size, known hash and modification time of the source
            remote: Destination path; defaults to ``source.remote``
            header_options: cache-control, content-disposition,
                content-encoding and content-type to store with the object
            cancel: Cancellation token

        Returns:
            Handle of the stored object with its metadata filled in

        Raises:
            UploadError: with ``stage`` and ``remote`` set
        """
        request = UploadRequest.build(stream, source, remote, header_options)
        return self.submit(request, cancel)

    def submit(self, request: UploadRequest, cancel: Optional[CancelToken] = None) -> ObjectHandle:
        """Run a prepared request through the pipeline."""
        cancel = cancel or CancelToken()
        remote = request.remote
        job = UploadJob(remote=remote, size=request.size, mode=self.settings.mode)
        log = UploadLogger(__name__, remote=remote, size=job.size, mode=job.mode.value)

        with self.reservations.reserve(remote):
            try:
                cancel.raise_if_cancelled()
                self._check_ceiling(job.size, c.MAX_UPLOAD_SIZE, remote)
                try:
                    placeholder = self.fs.reserve_placeholder(
                        remote, request.source.mod_time, job.size
                    )
                except UploadError as exc:
                    raise exc.with_context(stage="reserve")
                handle = self._dispatch(
                    job,
                    placeholder,
                    request.stream,
                    request.source,
                    request.header_options,
                    cancel,
                    log,
                )
            except UploadError as exc:
                stage = job.stage
                job.advance(UploadState.FAILED)
                log.warning("Upload failed during %s: %s", stage, exc.message)
                raise exc.with_context(stage=stage, remote=remote)
            except BaseException:
                job.advance(UploadState.FAILED)
                raise

            job.advance(UploadState.DONE)
            try:
                self.fs.commit_upload(handle)
            except UploadError as exc:
                raise exc.with_context(stage="commit", remote=remote)
        log.info("Uploaded via %s (pick code %s)", job.path, handle.pick_code)
        return handle

    def _dispatch(
        self,
        job: UploadJob,
        placeholder: Placeholder,
        stream: BinaryIO,
        source: SourceInfo,
        header_options: Optional[Mapping[str, str]],
        cancel: CancelToken,
        log: UploadLogger,
    ) -> ObjectHandle:
        settings = self.settings
        mode = settings.mode
        content: Optional[Content] = None
        try:
            if job.size < 0:
                # Unknown size: buffer first so every decision below sees a real size
                content = self._hash(job, stream, source, cancel)
                job.size = content.size
                placeholder.handle.size = content.size
                log.bind(size=content.size)
                self._check_ceiling(job.size, c.MAX_UPLOAD_SIZE, job.remote)

            if mode is UploadMode.STREAM_ONLY:
                self._check_ceiling(job.size, settings.stream_upload_limit, job.remote)
                return self._inline(job, placeholder, content, stream, header_options, cancel)
            if mode is UploadMode.FAST_UPLOAD and job.size <= settings.nohash_size:
                return self._inline(job, placeholder, content, stream, header_options, cancel)
            if mode is UploadMode.DEFAULT and job.size < settings.nohash_size:
                return self._inline(job, placeholder, content, stream, header_options, cancel)

            if content is None:
                content = self._hash(job, stream, source, cancel)
            return self._negotiate_and_transfer(
                job, placeholder, content, stream, header_options, cancel, log
            )
        finally:
            if content is not None:
                content.close()

    def _negotiate_and_transfer(
        self,
        job: UploadJob,
        placeholder: Placeholder,
        content: Content,
        stream: BinaryIO,
        header_options: Optional[Mapping[str, str]],
        cancel: CancelToken,
        log: UploadLogger,
    ) -> ObjectHandle:
        identity = self._get_identity(cancel)
        job.advance(UploadState.NEGOTIATING)
        job.path = "quick-upload"
        try:
            result = self.negotiator.negotiate(
                content,
                identity=identity,
                file_name=placeholder.leaf,
                dir_id=placeholder.dir_id,
                cancel=cancel,
            )
        except NegotiationError as exc:
            if self.settings.mode is not UploadMode.DEFAULT or cancel.cancelled:
                raise
            log.warning("Negotiation failed, attempting a best-effort transfer: %s", exc.message)
            info = exc.partial
            if info is None or not info.has_transfer_target:
                info = self.negotiator.init_for_transfer(
                    identity=identity,
                    file_name=placeholder.leaf,
                    size=content.size,
                    dir_id=placeholder.dir_id,
                    cancel=cancel,
                )
            return self._transfer(job, placeholder, content, stream, info, header_options, cancel)

        if result.exists:
            log.info("Quick upload hit after %d round(s)", result.session.rounds)
            return self._adopt_existing(placeholder.handle, result.info, content)

        mode = self.settings.mode
        if mode is UploadMode.HASH_ONLY:
            raise HashNotFoundError(
                "drive holds no object with this hash",
                details={"sha1": content.sha1, "size": content.size},
                suggestion="Use a mode that is allowed to transfer bytes",
            )
        if mode is UploadMode.FAST_UPLOAD and job.size <= self.settings.stream_upload_limit:
            return self._inline(job, placeholder, content, stream, header_options, cancel)
        return self._transfer(job, placeholder, content, stream, result.info, header_options, cancel)

    def _hash(
        self,
        job: UploadJob,
        stream: BinaryIO,
        source: SourceInfo,
        cancel: CancelToken,
    ) -> Content:
        cancel.raise_if_cancelled()
        content = prepare_content(
            stream,
            size=job.size,
            memory_threshold=self.settings.hash_memory_threshold,
            known_sha1=source.sha1(),
            opener=source_opener(source),
            no_buffer=self.settings.no_buffer,
            spill_dir=self.spill_dir,
            cancel=cancel,
        )
        job.advance(UploadState.HASHED)
        return content

    def _inline(
        self,
        job: UploadJob,
        placeholder: Placeholder,
        content: Optional[Content],
        stream: Optional[BinaryIO],
        header_options: Optional[Mapping[str, str]],
        cancel: CancelToken,
    ) -> ObjectHandle:
        job.advance(UploadState.TRANSFERRING)
        job.path = "inline"
        identity = self._get_identity(cancel)
        init = self.client.sample_init_upload(
            user_id=identity.user_id,
            file_name=placeholder.leaf,
            file_size=job.size,
            dir_id=placeholder.dir_id,
            cancel=cancel,
        )
        cancel.raise_if_cancelled()
        with _opened(content, stream) as body:
            data = self.client.sample_upload(
                init,
                body,
                file_name=placeholder.leaf,
                file_size=job.size,
                headers=forwardable_headers(header_options),
                cancel=cancel,
            )
        return self._finish(placeholder.handle, data, job.size)

    def _transfer(
        self,
        job: UploadJob,
        placeholder: Placeholder,
        content: Content,
        stream: BinaryIO,
        info: UploadInitInfo,
        header_options: Optional[Mapping[str, str]],
        cancel: CancelToken,
    ) -> ObjectHandle:
        job.advance(UploadState.TRANSFERRING)
        job.path = "transfer"
        target = TransferTarget.from_init(info)
        with _opened(content, stream) as body:
            raw = self.engine.transfer(
                target,
                body,
                content.size,
                headers=header_options,
                cancel=cancel,
                reopen=content.open,
            )
        return self._finish(placeholder.handle, parse_callback_result(raw), content.size)

    def _adopt_existing(
        self, handle: ObjectHandle, info: UploadInitInfo, content: Content
    ) -> ObjectHandle:
        handle.sha1 = content.sha1
        handle.size = content.size
        handle.pick_code = info.pick_code
        handle.file_id = info.file_id
        if info.pick_code:
            try:
                handle.set_metadata(self.fs.get_file(info.pick_code))
                return handle
            except UploadError as exc:
                # Content is already stored; only the looked-up metadata is missing
                logger.warning(
                    "Metadata lookup for %s (pick code %s) failed, keeping negotiated fields: %s",
                    handle.remote,
                    info.pick_code,
                    exc,
                )
        handle.has_metadata = bool(info.file_id)
        return handle

    def _finish(self, handle: ObjectHandle, data: CallbackData, size: int) -> ObjectHandle:
        if data.file_size and size >= 0 and data.file_size != size:
            raise ProtocolError(
                f"upload callback reported {data.file_size} bytes, sent {size}",
                details={"pick_code": data.pick_code},
            )
        handle.set_metadata_from_callback(data)
        return handle

    def _get_identity(self, cancel: CancelToken) -> UploadBasicInfo:
        with self._identity_lock:
            if self._identity is None:
                self._identity = self.client.get_upload_basic_info(cancel)
            return self._identity

    @staticmethod
    def _check_ceiling(size: int, limit: int, remote: str) -> None:
        if size > limit:
            raise SizeLimitExceededError(size, limit, remote=remote, stage="dispatch")


@contextlib.contextmanager
def _opened(content: Optional[Content], stream: Optional[BinaryIO]) -> Iterator[BinaryIO]:
    """Stream to send: the caller's own stream, or a fresh read of ``content``.

    Handles opened here are closed here; the caller's stream is left alone.
    """
    if content is None:
        if stream is None:
            raise ProtocolError("nothing to upload: no stream and no buffered content")
        yield stream
        return
    body = content.open()
    try:
        yield body
    finally:
        if body is not stream:
            body.close()


def build_dispatcher(
    config: DriveConfig,
    *,
    session: Optional[requests.Session] = None,
    spill_dir: Optional[str] = None,
) -> UploadDispatcher:
    """Wire a dispatcher from configuration."""
    upload = config.upload
    policy = RetryPolicy(max_elapsed=upload.retry_max_elapsed)
    client = DriveClient(config.client, session=session, retry_policy=policy)
    caches = DriveCaches(config.cache)
    fs = DriveFilesystem(
        client, caches, root_id=config.client.root_dir_id, list_chunk=upload.list_chunk
    )
    negotiator = QuickUploadNegotiator(
        client, fs, app_version=config.client.app_version, retry_policy=policy
    )
    broker = CredentialBroker(client.get_oss_token)
    engine = ChunkedTransferEngine(
        lambda: S3ObjectStore.from_broker(
            broker,
            endpoint_url=config.client.oss_endpoint,
            region=config.client.oss_region,
            max_pool_connections=max(10, upload.upload_concurrency),
        ),
        upload_cutoff=upload.upload_cutoff,
        chunk_size=upload.chunk_size,
        max_parts=upload.max_upload_parts,
        concurrency=upload.upload_concurrency,
        retry_policy=policy,
        pacer=client.pacers.upload,
    )
    logger.debug("Built dispatcher in %s mode", upload.mode.value)
    return UploadDispatcher(upload, client, fs, negotiator, engine, spill_dir=spill_dir)
