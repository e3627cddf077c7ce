"""Content hashing and buffering.

Quick upload needs the SHA-1 of the whole object before anything is sent,
and may then ask for the SHA-1 of an arbitrary byte range. The stream must
still be readable from byte 0 afterwards for a real transfer. The
``Content`` implementations here make that possible:

- ``MemoryContent``: small objects are held in memory.
- ``SpooledFileContent``: large objects are copied to a private temp file
  that is deleted on close.
- ``ReopenedContent``: no-copy mode; the source is reopened for every read.
- ``PassthroughContent``: the hash is already known, so the stream is left
  untouched and ranges are served by reopening or seeking the source.

``prepare_content`` picks the right one.
"""

from __future__ import annotations

import hashlib
import io
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from typing import BinaryIO, Callable, List, Optional, Tuple

from driveupload import constants as c
from driveupload.context import CancelToken
from driveupload.errors import ProtocolError, ResourceError, SourceNotReopenableError

logger = logging.getLogger(__name__)

__all__ = [
    "Content",
    "MemoryContent",
    "SpooledFileContent",
    "ReopenedContent",
    "PassthroughContent",
    "Opener",
    "parse_range",
    "sha1_stream",
    "prepare_content",
]

# Opens the source again; end is inclusive, None means "to the end".
Opener = Callable[[int, Optional[int]], BinaryIO]


def parse_range(value: str) -> Tuple[int, int]:
    """Parse an inclusive ``"start-end"`` byte range.

    Raises:
        ProtocolError: if the range is malformed
    """
    try:
        start_text, end_text = value.strip().split("-", 1)
        start, end = int(start_text), int(end_text)
    except ValueError as exc:
        raise ProtocolError(f"invalid sign_check range {value!r}") from exc
    if start < 0 or end < start:
        raise ProtocolError(f"invalid sign_check range {value!r}")
    return start, end


def sha1_stream(
    stream: BinaryIO,
    sink: Optional[BinaryIO] = None,
    *,
    limit: Optional[int] = None,
    chunk_size: int = c.HASH_READ_SIZE,
    cancel: Optional[CancelToken] = None,
) -> Tuple[str, int]:
    """Hash a stream, optionally copying it to ``sink`` on the way.

    Args:
        stream: Source to read until EOF (or ``limit`` bytes)
        sink: Optional writable the bytes are teed into
        limit: Stop after this many bytes
        chunk_size: Read size
        cancel: Checked before every read

    Returns:
        (lower-case hex SHA-1, number of bytes read)
    """
    digest = hashlib.sha1()
    total = 0
    while limit is None or total < limit:
        if cancel is not None:
            cancel.raise_if_cancelled()
        want = chunk_size if limit is None else min(chunk_size, limit - total)
        chunk = stream.read(want)
        if not chunk:
            break
        digest.update(chunk)
        if sink is not None:
            sink.write(chunk)
        total += len(chunk)
    return digest.hexdigest(), total


def _check_range(start: int, end: int, size: int) -> None:
    if size >= 0 and end >= size:
        raise ProtocolError(
            f"sign_check range {start}-{end} outside object of size {size}",
            details={"start": start, "end": end, "size": size},
        )


def _hash_exact(stream: BinaryIO, length: int, what: str) -> str:
    digest, read = sha1_stream(stream, limit=length)
    if read != length:
        raise ProtocolError(f"short read hashing {what}: wanted {length} bytes, got {read}")
    return digest.upper()


class Content(ABC):
    """Hashed content that can still be streamed for transfer."""

    sha1: str
    size: int

    @property
    def sha1_upper(self) -> str:
        return self.sha1.upper()

    @abstractmethod
    def open(self) -> BinaryIO:
        """Return a stream positioned at byte 0."""

    @abstractmethod
    def hash_range(self, start: int, end: int) -> str:
        """Upper-case SHA-1 of the inclusive byte range ``start..end``."""

    def close(self) -> None:
        """Release any buffer held for this content."""

    def __enter__(self) -> "Content":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


class MemoryContent(Content):
    """Content buffered in memory."""

    def __init__(self, data: bytes, sha1: Optional[str] = None) -> None:
        self._data = data
        self.size = len(data)
        self.sha1 = sha1 or hashlib.sha1(data).hexdigest()

    def open(self) -> BinaryIO:
        return io.BytesIO(self._data)

    def hash_range(self, start: int, end: int) -> str:
        _check_range(start, end, self.size)
        return hashlib.sha1(self._data[start : end + 1]).hexdigest().upper()


class SpooledFileContent(Content):
    """Content spilled to a private temporary file.

    The file is removed by ``close``; every handle handed out by ``open`` is
    closed first.
    """

    def __init__(self, path: str, size: int, sha1: str) -> None:
        self.path = path
        self.size = size
        self.sha1 = sha1
        self._handles: List[BinaryIO] = []
        self._closed = False

    def open(self) -> BinaryIO:
        if self._closed:
            raise ResourceError(f"temporary buffer {self.path} already released")
        handle = open(self.path, "rb")
        self._handles.append(handle)
        return handle

    def hash_range(self, start: int, end: int) -> str:
        _check_range(start, end, self.size)
        with open(self.path, "rb") as handle:
            handle.seek(start)
            return _hash_exact(handle, end - start + 1, self.path)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for handle in self._handles:
            handle.close()
        self._handles.clear()
        try:
            os.remove(self.path)
            logger.debug("Removed temporary buffer %s", self.path)
        except FileNotFoundError:
            pass


class ReopenedContent(Content):
    """No-copy content: every read reopens the source."""

    def __init__(self, opener: Opener, size: int, sha1: str) -> None:
        self._opener = opener
        self.size = size
        self.sha1 = sha1

    def open(self) -> BinaryIO:
        return self._opener(0, None)

    def hash_range(self, start: int, end: int) -> str:
        _check_range(start, end, self.size)
        with self._opener(start, end) as handle:
            return _hash_exact(handle, end - start + 1, "reopened source")


class PassthroughContent(Content):
    """Content whose hash is already known.

    The original stream is handed to the transfer unread. Range challenges
    reopen the source, or seek the stream and restore its position.
    """

    def __init__(
        self,
        stream: BinaryIO,
        size: int,
        sha1: str,
        opener: Optional[Opener] = None,
    ) -> None:
        self._stream = stream
        self._opener = opener
        self._stream_taken = False
        self.size = size
        self.sha1 = sha1.lower()

    def open(self) -> BinaryIO:
        if not self._stream_taken:
            self._stream_taken = True
            return self._stream
        if self._opener is None:
            raise SourceNotReopenableError("source stream was already consumed and cannot be reopened")
        return self._opener(0, None)

    def hash_range(self, start: int, end: int) -> str:
        _check_range(start, end, self.size)
        length = end - start + 1
        if self._opener is not None:
            with self._opener(start, end) as handle:
                return _hash_exact(handle, length, "reopened source")
        if not self._stream_taken and _seekable(self._stream):
            position = self._stream.tell()
            try:
                self._stream.seek(start)
                return _hash_exact(self._stream, length, "source stream")
            finally:
                self._stream.seek(position)
        raise SourceNotReopenableError(
            "cannot answer a range challenge: source is neither reopenable nor seekable"
        )


def _read_up_to(stream: BinaryIO, amount: int, cancel: Optional[CancelToken] = None) -> bytes:
    buffer = io.BytesIO()
    sha1_stream(stream, buffer, limit=amount, cancel=cancel)
    return buffer.getvalue()


def _seekable(stream: BinaryIO) -> bool:
    seekable = getattr(stream, "seekable", None)
    return bool(seekable and seekable())


def _size_mismatch(declared: int, actual: int) -> ProtocolError:
    if actual > declared:
        message = f"stream is longer than its declared {declared} bytes"
    else:
        message = f"short read: declared {declared} bytes, got {actual}"
    return ProtocolError(message, details={"declared": declared, "read": actual})


def _spill(
    stream: BinaryIO,
    prefix: bytes,
    spill_dir: Optional[str],
    *,
    size: int = -1,
    cancel: Optional[CancelToken] = None,
) -> SpooledFileContent:
    try:
        handle = tempfile.NamedTemporaryFile(
            prefix=c.TEMP_FILE_PREFIX, dir=spill_dir, delete=False
        )
    except OSError as exc:
        raise ResourceError("failed to create temporary buffer", cause=exc) from exc

    path = handle.name
    try:
        digest = hashlib.sha1(prefix)
        handle.write(prefix)
        total = len(prefix)
        while True:
            if cancel is not None:
                cancel.raise_if_cancelled()
            chunk = stream.read(c.HASH_READ_SIZE)
            if not chunk:
                break
            digest.update(chunk)
            try:
                handle.write(chunk)
            except OSError as exc:
                raise ResourceError(
                    "failed to write temporary buffer", details={"path": path}, cause=exc
                ) from exc
            total += len(chunk)
            if 0 <= size < total:
                raise _size_mismatch(size, total)
        if size >= 0 and total != size:
            raise _size_mismatch(size, total)
        handle.close()
    except BaseException:
        handle.close()
        os.remove(path)
        raise

    logger.debug("Spilled %d bytes to %s", total, path)
    return SpooledFileContent(path, total, digest.hexdigest())


def prepare_content(
    stream: BinaryIO,
    *,
    size: int,
    memory_threshold: int = c.DEFAULT_HASH_MEMORY_THRESHOLD,
    known_sha1: Optional[str] = None,
    opener: Optional[Opener] = None,
    no_buffer: bool = False,
    spill_dir: Optional[str] = None,
    cancel: Optional[CancelToken] = None,
) -> Content:
    """Hash ``stream`` and return content that can be re-read for transfer.

    A declared size must match the stream exactly, in both directions.

    Args:
        stream: Source bytes
        size: Declared size, or -1 when unknown
        memory_threshold: Objects up to this size are buffered in memory
        known_sha1: Hash supplied by the source, if any
        opener: Reopens the source; required for no-copy mode
        no_buffer: Hash by streaming and reopen the source instead of copying
        spill_dir: Directory for the temporary buffer
        cancel: Checked before every chunk read

    Raises:
        SourceNotReopenableError: no-copy mode without an opener
        ResourceError: the temporary buffer could not be created or written
        ProtocolError: the stream is shorter or longer than ``size``
        OperationCancelled: ``cancel`` fired while reading
    """
    if no_buffer:
        if opener is None:
            raise SourceNotReopenableError("no-copy mode requires a reopenable source")
        if known_sha1 and size >= 0:
            return ReopenedContent(opener, size, known_sha1.lower())
        sha1, read = sha1_stream(stream, cancel=cancel)
        if size >= 0 and read != size:
            raise _size_mismatch(size, read)
        return ReopenedContent(opener, read, sha1)

    if known_sha1 and size >= 0:
        return PassthroughContent(stream, size, known_sha1, opener)

    if 0 <= size <= memory_threshold:
        # One byte past the declared size tells a longer stream apart
        data = _read_up_to(stream, size + 1, cancel)
        if len(data) != size:
            raise _size_mismatch(size, len(data))
        return MemoryContent(data)

    # Unknown size: read one byte past the threshold to find out which side it is on.
    head = _read_up_to(stream, memory_threshold + 1, cancel) if size < 0 else b""
    if size < 0 and len(head) <= memory_threshold:
        return MemoryContent(head)
    return _spill(stream, head, spill_dir, size=size, cancel=cancel)
