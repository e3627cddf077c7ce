"""Chunked transfer to the object store.

Objects below the upload cutoff go up in a single PUT. Larger objects use a
multipart upload: parts are read from the stream in order and uploaded on a
bounded thread pool, at most ``concurrency`` part buffers in memory at a time.
Each part is retried on its own. Completion lists parts in part-number order
whatever order they finished in, and any failure or cancellation aborts the
multipart upload before the error propagates.
"""

from __future__ import annotations

import io
import logging
import math
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import BinaryIO, Callable, Dict, List, Mapping, Optional, Tuple

from driveupload import constants as c
from driveupload.context import CancelToken
from driveupload.errors import (
    PartAlreadyExistsError,
    ProtocolError,
    SizeLimitExceededError,
    SourceNotReopenableError,
    TransientError,
    UploadError,
)
from driveupload.models import UploadInitInfo
from driveupload.objectstore import HEADER_PARAMS, ObjectStore
from driveupload.rate_limiter import Pacer
from driveupload.resilience import RetryPolicy, retry_call

logger = logging.getLogger(__name__)

# Seconds between cancellation checks while every part slot is busy
SLOT_WAIT = 0.5

__all__ = [
    "ChunkedTransferEngine",
    "TransferPart",
    "TransferTarget",
    "calculate_chunk_size",
    "forwardable_headers",
]


@dataclass(frozen=True)
class TransferTarget:
    """Where the bytes go and how the store reports back to the drive."""

    bucket: str
    key: str
    callback: str
    callback_var: str = ""

    @classmethod
    def from_init(cls, info: UploadInitInfo) -> "TransferTarget":
        return cls(
            bucket=info.bucket,
            key=info.object_key,
            callback=info.encoded_callback,
            callback_var=info.encoded_callback_var,
        )


@dataclass
class TransferPart:
    number: int
    offset: int
    size: int
    etag: Optional[str] = None


def calculate_chunk_size(size: int, chunk_size: int, max_parts: int) -> int:
    """Grow ``chunk_size`` (in whole MiB) until ``size`` fits in ``max_parts`` parts."""
    if size < 0 or math.ceil(size / chunk_size) <= max_parts:
        return chunk_size
    needed = math.ceil(size / max_parts)
    return math.ceil(needed / c.MiB) * c.MiB


def forwardable_headers(options: Optional[Mapping[str, str]]) -> Dict[str, str]:
    """Pick the header options the store accepts, with canonical names."""
    canonical = {
        "cache-control": "Cache-Control",
        "content-disposition": "Content-Disposition",
        "content-encoding": "Content-Encoding",
        "content-type": "Content-Type",
    }
    return {
        canonical[name.lower()]: value
        for name, value in (options or {}).items()
        if name.lower() in HEADER_PARAMS and value
    }


def _read_full(stream: BinaryIO, amount: int) -> bytes:
    chunks: List[bytes] = []
    remaining = amount
    while remaining > 0:
        chunk = stream.read(remaining)
        if not chunk:
            break
        chunks.append(chunk)
        remaining -= len(chunk)
    return b"".join(chunks)


def _can_seek(stream: BinaryIO) -> bool:
    seekable = getattr(stream, "seekable", None)
    return bool(seekable and seekable())


class _PutBody(io.RawIOBase):
    """Exactly ``size`` bytes of ``stream``, read from its current position.

    Seeks stay inside that window when the stream itself can seek, so botocore
    can measure and rewind the body. Running dry early raises ProtocolError
    and sets ``short_read``.
    """

    def __init__(self, stream: BinaryIO, size: int) -> None:
        super().__init__()
        self._stream = stream
        self._size = size
        self._start = stream.tell() if _can_seek(stream) else 0
        self._pos = 0
        self.short_read = False

    def readable(self) -> bool:
        return True

    def seekable(self) -> bool:
        return _can_seek(self._stream)

    def tell(self) -> int:
        return self._pos

    def seek(self, offset: int, whence: int = io.SEEK_SET) -> int:
        if not self.seekable():
            raise io.UnsupportedOperation("seek")
        base = {io.SEEK_SET: 0, io.SEEK_CUR: self._pos, io.SEEK_END: self._size}[whence]
        self._pos = min(max(base + offset, 0), self._size)
        self._stream.seek(self._start + self._pos)
        return self._pos

    def readinto(self, buffer) -> int:
        remaining = self._size - self._pos
        if remaining <= 0:
            return 0
        chunk = self._stream.read(min(len(buffer), remaining))
        if not chunk:
            self.short_read = True
            raise ProtocolError(f"short read: expected {self._size} bytes, got {self._pos}")
        buffer[: len(chunk)] = chunk
        self._pos += len(chunk)
        return len(chunk)


class ChunkedTransferEngine:
    """Uploads a stream to the object store and returns the callback body."""

    def __init__(
        self,
        store_factory: Callable[[], ObjectStore],
        *,
        upload_cutoff: int = c.DEFAULT_UPLOAD_CUTOFF,
        chunk_size: int = c.DEFAULT_CHUNK_SIZE,
        max_parts: int = c.DEFAULT_MAX_UPLOAD_PARTS,
        concurrency: int = c.DEFAULT_UPLOAD_CONCURRENCY,
        retry_policy: Optional[RetryPolicy] = None,
        pacer: Optional[Pacer] = None,
    ) -> None:
        self._store_factory = store_factory
        self._store: Optional[ObjectStore] = None
        self._store_lock = threading.Lock()
        self.upload_cutoff = upload_cutoff
        self.chunk_size = chunk_size
        self.max_parts = max_parts
        self.concurrency = max(1, concurrency)
        self.retry_policy = retry_policy or RetryPolicy()
        self.pacer = pacer or Pacer(c.DEFAULT_UPLOAD_MIN_SLEEP, burst=self.concurrency, name="upload")

    @property
    def store(self) -> ObjectStore:
        with self._store_lock:
            if self._store is None:
                self._store = self._store_factory()
            return self._store

    def transfer(
        self,
        target: TransferTarget,
        stream: BinaryIO,
        size: int,
        *,
        headers: Optional[Mapping[str, str]] = None,
        cancel: Optional[CancelToken] = None,
        reopen: Optional[Callable[[], BinaryIO]] = None,
    ) -> bytes:
        """Upload ``stream`` to ``target``.

        Args:
            target: Bucket, key and callback descriptor from negotiation
            stream: Source positioned at byte 0
            size: Object size, or -1 if unknown
            headers: Header options to forward (cache-control etc.)
            cancel: Cancellation token
            reopen: Fresh copy of the source for a retried single PUT when
                ``stream`` cannot seek back

        Returns:
            The raw callback body returned by the store
        """
        cancel = cancel or CancelToken()
        headers = forwardable_headers(headers)
        if 0 <= size < self.upload_cutoff:
            return self._single_put(target, stream, size, headers, cancel, reopen)
        return self._multipart(target, stream, size, headers, cancel)

    def _single_put(
        self,
        target: TransferTarget,
        stream: BinaryIO,
        size: int,
        headers: Dict[str, str],
        cancel: CancelToken,
        reopen: Optional[Callable[[], BinaryIO]],
    ) -> bytes:
        logger.debug("Single PUT of %d bytes to %s/%s", size, target.bucket, target.key)
        start = stream.tell() if _can_seek(stream) else None
        attempts = 0

        def source() -> Tuple[BinaryIO, bool]:
            # Later attempts rewind or reopen; the first one uses the stream as given
            if attempts == 1:
                return stream, False
            if start is not None:
                stream.seek(start)
                return stream, False
            if reopen is not None:
                return reopen(), True
            raise SourceNotReopenableError(
                "cannot retry PutObject: source stream is neither seekable nor reopenable"
            )

        def attempt() -> bytes:
            nonlocal attempts
            attempts += 1
            handle, owned = source()
            body = _PutBody(handle, size)
            self.pacer.acquire()
            try:
                return self.store.put_object(
                    target.bucket,
                    target.key,
                    body,
                    content_length=size,
                    headers=headers,
                    callback=target.callback,
                    callback_var=target.callback_var,
                )
            except UploadError as exc:
                if body.short_read and not isinstance(exc, ProtocolError):
                    raise ProtocolError(
                        f"short read: expected {size} bytes, got {body.tell()}"
                    ) from exc
                raise
            finally:
                if owned:
                    handle.close()

        return retry_call(attempt, self.retry_policy, operation_name="PutObject", cancel=cancel)

    def _multipart(
        self,
        target: TransferTarget,
        stream: BinaryIO,
        size: int,
        headers: Dict[str, str],
        cancel: CancelToken,
    ) -> bytes:
        store = self.store
        chunk_size = calculate_chunk_size(size, self.chunk_size, self.max_parts)
        upload_id = retry_call(
            lambda: store.create_multipart_upload(target.bucket, target.key, headers=headers),
            self.retry_policy,
            operation_name="CreateMultipartUpload",
            cancel=cancel,
        )
        logger.info(
            "Multipart upload %s started for %s/%s (size=%d, chunk=%d, concurrency=%d)",
            upload_id,
            target.bucket,
            target.key,
            size,
            chunk_size,
            self.concurrency,
        )

        try:
            parts = self._upload_parts(store, target, upload_id, stream, chunk_size, cancel)
            cancel.raise_if_cancelled()
            completion = [{"PartNumber": p.number, "ETag": p.etag} for p in parts]
            return retry_call(
                lambda: store.complete_multipart_upload(
                    target.bucket,
                    target.key,
                    upload_id,
                    completion,
                    callback=target.callback,
                    callback_var=target.callback_var,
                ),
                self.retry_policy,
                operation_name="CompleteMultipartUpload",
                cancel=cancel,
            )
        except BaseException as exc:
            logger.warning("Aborting multipart upload %s: %s", upload_id, exc)
            try:
                store.abort_multipart_upload(target.bucket, target.key, upload_id)
            except Exception as abort_exc:
                logger.error("Failed to abort multipart upload %s: %s", upload_id, abort_exc)
            raise

    def _upload_parts(
        self,
        store: ObjectStore,
        target: TransferTarget,
        upload_id: str,
        stream: BinaryIO,
        chunk_size: int,
        cancel: CancelToken,
    ) -> List[TransferPart]:
        slots = threading.BoundedSemaphore(self.concurrency)
        failed = threading.Event()
        pending: List[Tuple[TransferPart, "Future[str]"]] = []

        def on_done(future: "Future[str]") -> None:
            slots.release()
            if future.exception() is not None:
                failed.set()

        with ThreadPoolExecutor(
            max_workers=self.concurrency, thread_name_prefix="driveupload-part"
        ) as pool:
            offset = 0
            number = 0
            while not failed.is_set():
                cancel.raise_if_cancelled()
                while not slots.acquire(timeout=SLOT_WAIT):
                    cancel.raise_if_cancelled()
                data = _read_full(stream, chunk_size)
                if not data and number > 0:
                    slots.release()
                    break
                number += 1
                if number > self.max_parts:
                    slots.release()
                    raise SizeLimitExceededError(
                        offset + len(data), self.max_parts * chunk_size, stage="transfer"
                    )
                part = TransferPart(number=number, offset=offset, size=len(data))
                offset += len(data)
                future = pool.submit(self._upload_part, store, target, upload_id, part, data, cancel)
                future.add_done_callback(on_done)
                pending.append((part, future))
                if len(data) < chunk_size:
                    break

        for part, future in pending:
            part.etag = future.result()
        return sorted((part for part, _ in pending), key=lambda p: p.number)

    def _upload_part(
        self,
        store: ObjectStore,
        target: TransferTarget,
        upload_id: str,
        part: TransferPart,
        data: bytes,
        cancel: CancelToken,
    ) -> str:
        def attempt() -> str:
            self.pacer.acquire()
            try:
                return store.upload_part(target.bucket, target.key, upload_id, part.number, data)
            except PartAlreadyExistsError:
                etag = store.list_parts(target.bucket, target.key, upload_id).get(part.number)
                if etag is None:
                    raise TransientError(
                        f"part {part.number} reported as existing but not listed"
                    )
                logger.debug("Part %d already uploaded, reusing ETag", part.number)
                return etag

        etag = retry_call(
            attempt,
            self.retry_policy,
            operation_name=f"UploadPart {part.number}",
            cancel=cancel,
        )
        logger.debug("Uploaded part %d (%d bytes)", part.number, part.size)
        return etag
