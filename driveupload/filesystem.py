"""Remote filesystem seam used by the dispatcher.

``RemoteFilesystem`` is what the upload engine consumes: placeholder
reservation, directory listing and metadata lookup. ``DriveFilesystem``
implements it over ``DriveClient`` with every lookup going through the
``DriveCaches``.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import BinaryIO, Callable, List, Optional, Protocol, Tuple

from driveupload import constants as c
from driveupload.cache import DriveCaches, PathEntry, normalize_path
from driveupload.client import DriveClient
from driveupload.context import CancelToken
from driveupload.errors import DirectoryNotFoundError
from driveupload.models import CallbackData, FileEntry

logger = logging.getLogger(__name__)

__all__ = [
    "DriveFilesystem",
    "LocalFileSource",
    "ObjectHandle",
    "Placeholder",
    "RemoteFilesystem",
    "SourceInfo",
    "source_opener",
    "split_remote",
]


def split_remote(remote: str) -> Tuple[str, str]:
    """Split ``a/b/c.txt`` into (``a/b``, ``c.txt``)."""
    normalized = normalize_path(remote)
    if "/" not in normalized:
        return "", normalized
    parent, leaf = normalized.rsplit("/", 1)
    return parent, leaf


class SourceInfo(Protocol):
    """What the dispatcher needs to know about the bytes being uploaded.

    Sources that can be reopened also provide ``open(start, end)`` (end
    inclusive, None for "to the end"); no-copy mode requires it.
    """

    @property
    def remote(self) -> str: ...

    @property
    def size(self) -> int: ...

    @property
    def mod_time(self) -> datetime: ...

    def sha1(self) -> Optional[str]: ...


@dataclass
class LocalFileSource:
    """A local file as an upload source."""

    path: Path
    remote: str
    known_sha1: Optional[str] = None

    @property
    def size(self) -> int:
        return self.path.stat().st_size

    @property
    def mod_time(self) -> datetime:
        return datetime.fromtimestamp(self.path.stat().st_mtime, tz=timezone.utc)

    def sha1(self) -> Optional[str]:
        return self.known_sha1

    def open(self, start: int = 0, end: Optional[int] = None) -> BinaryIO:
        handle = open(self.path, "rb")
        if start:
            handle.seek(start)
        if end is None:
            return handle
        return _RangeReader(handle, end - start + 1)


class _RangeReader:
    """Read at most ``length`` bytes from ``handle``."""

    def __init__(self, handle: BinaryIO, length: int) -> None:
        self._handle = handle
        self._remaining = length

    def read(self, amount: int = -1) -> bytes:
        if self._remaining <= 0:
            return b""
        if amount is None or amount < 0 or amount > self._remaining:
            amount = self._remaining
        data = self._handle.read(amount)
        self._remaining -= len(data)
        return data

    def close(self) -> None:
        self._handle.close()

    def __enter__(self) -> "_RangeReader":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()


@dataclass
class ObjectHandle:
    """The remote object an upload produces."""

    remote: str
    dir_id: str
    size: int = -1
    mod_time: Optional[datetime] = None
    sha1: str = ""
    pick_code: str = ""
    file_id: str = ""
    has_metadata: bool = field(default=False, compare=False)

    def set_metadata(self, entry: FileEntry) -> None:
        self.file_id = entry.id or self.file_id
        self.pick_code = entry.pick_code or self.pick_code
        self.sha1 = (entry.sha1 or self.sha1).lower()
        if entry.size or self.size < 0:
            self.size = entry.size
        self.has_metadata = True

    def set_metadata_from_callback(self, data: CallbackData) -> None:
        self.file_id = data.file_id or self.file_id
        self.pick_code = data.pick_code
        self.sha1 = (data.sha1 or self.sha1).lower()
        if data.file_size or self.size < 0:
            self.size = data.file_size
        self.has_metadata = True

    def to_entry(self) -> FileEntry:
        return FileEntry(
            id=self.file_id,
            name=split_remote(self.remote)[1],
            parent_id=self.dir_id,
            size=max(self.size, 0),
            sha1=self.sha1,
            pick_code=self.pick_code,
            is_dir=False,
            mod_time=int(self.mod_time.timestamp()) if self.mod_time else 0,
        )


@dataclass(frozen=True)
class Placeholder:
    """A reserved, not-yet-written destination."""

    handle: ObjectHandle
    leaf: str
    dir_id: str


class RemoteFilesystem(Protocol):
    def reserve_placeholder(self, remote: str, mod_time: Optional[datetime], size: int) -> Placeholder: ...

    def list_directory(self, dir_id: str, *, refresh: bool = False) -> List[FileEntry]: ...

    def get_file(self, pick_code: str) -> FileEntry: ...

    def commit_upload(self, handle: ObjectHandle) -> None: ...


class DriveFilesystem:
    """``RemoteFilesystem`` over the drive API with cached lookups.

    Example:
        fs = DriveFilesystem(client, DriveCaches(config.cache))
        dir_id = fs.resolve_dir("backups/2025")
        entries = fs.list_directory(dir_id)
    """

    def __init__(
        self,
        client: DriveClient,
        caches: Optional[DriveCaches] = None,
        *,
        root_id: str = c.ROOT_DIR_ID,
        list_chunk: int = c.DEFAULT_LIST_CHUNK,
    ) -> None:
        self.client = client
        self.caches = caches or DriveCaches()
        self.root_id = root_id
        self.list_chunk = list_chunk
        self._resolve_lock = threading.Lock()

    def list_directory(
        self,
        dir_id: str,
        *,
        refresh: bool = False,
        cancel: Optional[CancelToken] = None,
    ) -> List[FileEntry]:
        if not refresh:
            cached = self.caches.listing.get(dir_id)
            if cached is not None:
                return list(cached)
        entries = self.client.list_files(dir_id, limit=self.list_chunk, cancel=cancel)
        return list(self.caches.record_listing(dir_id, entries))

    def resolve_dir(self, path: str, cancel: Optional[CancelToken] = None) -> str:
        """Directory id for ``path``.

        Raises:
            DirectoryNotFoundError: a component is missing or not a directory
        """
        path = normalize_path(path)
        if not path:
            return self.root_id
        cached = self.caches.path.get(path)
        if cached is not None and cached.is_dir:
            return cached.id

        with self._resolve_lock:
            current_id = self.root_id
            walked: List[str] = []
            for part in path.split("/"):
                walked.append(part)
                prefix = "/".join(walked)
                known = self.caches.path.get(prefix)
                if known is not None and known.is_dir:
                    current_id = known.id
                    continue
                match = next(
                    (e for e in self.list_directory(current_id, cancel=cancel) if e.name == part),
                    None,
                )
                if match is None or not match.is_dir:
                    raise DirectoryNotFoundError(
                        f"directory not found: {prefix}",
                        remote=path,
                        details={"missing": prefix},
                    )
                self.caches.path.put(prefix, PathEntry(match.id, True))
                current_id = match.id
        return current_id

    def reserve_placeholder(
        self, remote: str, mod_time: Optional[datetime], size: int
    ) -> Placeholder:
        parent, leaf = split_remote(remote)
        dir_id = self.resolve_dir(parent)
        handle = ObjectHandle(remote=normalize_path(remote), dir_id=dir_id, size=size, mod_time=mod_time)
        return Placeholder(handle=handle, leaf=leaf, dir_id=dir_id)

    def get_file(self, pick_code: str) -> FileEntry:
        entry, url = self.client.get_download_url(pick_code)
        self.caches.download_url.put(pick_code, url)
        if entry.id:
            self.caches.metadata.put(entry.id, entry)
        return entry

    def get_metadata(self, file_id: str) -> Optional[FileEntry]:
        cached = self.caches.metadata.get(file_id)
        if cached is not None:
            return cached
        entry = self.client.get_info(file_id)
        self.caches.identity.put(file_id, entry is not None)
        if entry is not None:
            self.caches.metadata.put(file_id, entry)
        return entry

    def exists(self, file_id: str) -> bool:
        """Whether a claimed id still exists remotely."""
        cached = self.caches.identity.get(file_id)
        if cached is not None:
            return cached
        return self.get_metadata(file_id) is not None

    def get_download_url(self, pick_code: str) -> str:
        cached = self.caches.download_url.get(pick_code)
        if cached is not None:
            return cached.url
        _, url = self.client.get_download_url(pick_code)
        self.caches.download_url.put(pick_code, url)
        return url.url

    def commit_upload(self, handle: ObjectHandle) -> None:
        """Invalidate what the write made stale, then cache the new object."""
        self.caches.invalidate_after_write(
            handle.remote, handle.dir_id, file_id=handle.file_id, pick_code=handle.pick_code
        )
        if handle.file_id:
            self.caches.record_object(handle.remote, handle.to_entry())

    def invalidate_path(self, remote: str) -> None:
        """Hook for deletes, renames and moves done outside the upload engine."""
        parent, _ = split_remote(remote)
        parent_entry = self.caches.path.snapshot().get(parent)
        parent_id = self.root_id if not parent else (parent_entry.id if parent_entry else None)
        self.caches.invalidate_path(remote, parent_id)


def source_opener(source: object) -> Optional[Callable[[int, Optional[int]], BinaryIO]]:
    """The source's ``open(start, end)`` if it has one."""
    opener = getattr(source, "open", None)
    return opener if callable(opener) else None


