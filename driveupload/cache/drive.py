"""The five caches behind the remote filesystem.

===============  ===============  =====================
cache            key              value
===============  ===============  =====================
path             resolved path    PathEntry
listing          directory id     tuple of FileEntry
download_url     pick code        DownloadURL
metadata         file id          FileEntry
identity         claimed id       bool (exists)
===============  ===============  =====================

Caches are advisory: any write that changes remote state must invalidate the
affected entries before it returns.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional, Tuple

from driveupload.cache.tree import Node, NodeTable
from driveupload.cache.ttl import TTLCache
from driveupload.config import CacheSettings
from driveupload.models import DownloadURL, FileEntry

logger = logging.getLogger(__name__)

__all__ = ["DriveCaches", "PathEntry", "normalize_path"]


def normalize_path(path: str) -> str:
    return "/".join(part for part in path.split("/") if part)


@dataclass(frozen=True)
class PathEntry:
    id: str
    is_dir: bool


class DriveCaches:
    """Owns the five caches and the cached directory hierarchy."""

    def __init__(
        self,
        settings: Optional[CacheSettings] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        wall_clock: Callable[[], float] = time.time,
    ) -> None:
        settings = settings or CacheSettings()
        self._wall_clock = wall_clock
        self.path: TTLCache[PathEntry] = TTLCache("path", settings.path_ttl, clock=clock)
        self.listing: TTLCache[Tuple[FileEntry, ...]] = TTLCache(
            "listing", settings.listing_ttl, clock=clock
        )
        self.download_url: TTLCache[DownloadURL] = TTLCache(
            "download_url",
            settings.download_url_ttl,
            clock=clock,
            is_valid=lambda url: not url.expired(self._wall_clock()),
        )
        self.metadata: TTLCache[FileEntry] = TTLCache("metadata", settings.metadata_ttl, clock=clock)
        self.identity: TTLCache[bool] = TTLCache("identity", settings.identity_ttl, clock=clock)
        self.nodes = NodeTable()

    def all(self) -> Tuple[TTLCache, ...]:
        return (self.path, self.listing, self.download_url, self.metadata, self.identity)

    def record_listing(self, dir_id: str, entries: Iterable[FileEntry]) -> Tuple[FileEntry, ...]:
        """Cache a complete directory listing and the hierarchy it reveals."""
        snapshot = tuple(entries)
        self.listing.put(dir_id, snapshot)
        self.nodes.replace_children(
            dir_id,
            (Node(id=e.id, name=e.name, parent_id=dir_id, is_dir=e.is_dir) for e in snapshot),
        )
        return snapshot

    def record_object(self, remote: str, entry: FileEntry) -> None:
        """Cache a freshly written or fetched object's metadata."""
        remote = normalize_path(remote)
        if entry.id:
            self.metadata.put(entry.id, entry)
            self.identity.put(entry.id, True)
            self.path.put(remote, PathEntry(entry.id, entry.is_dir))
            if entry.parent_id:
                self.nodes.add(
                    Node(
                        id=entry.id,
                        name=entry.name or remote.rsplit("/", 1)[-1],
                        parent_id=entry.parent_id,
                        is_dir=entry.is_dir,
                    )
                )

    def invalidate_after_write(
        self,
        remote: str,
        dir_id: str,
        *,
        file_id: Optional[str] = None,
        pick_code: Optional[str] = None,
    ) -> None:
        """Drop everything a write to ``remote`` in ``dir_id`` may have made stale."""
        remote = normalize_path(remote)
        self.path.invalidate(remote)
        self.path.invalidate_prefix(remote + "/")
        self.listing.invalidate(dir_id)
        if file_id:
            self.metadata.invalidate(file_id)
            self.identity.invalidate(file_id)
            self.listing.invalidate(file_id)
        if pick_code:
            self.download_url.invalidate(pick_code)
        logger.debug("Invalidated caches for %s (dir %s)", remote, dir_id)

    def invalidate_path(self, remote: str, parent_dir_id: Optional[str] = None) -> None:
        """Invalidate a path removed or renamed by the outer layer, with its subtree."""
        remote = normalize_path(remote)
        entry = self.path.snapshot().get(remote)
        self.path.invalidate(remote)
        self.path.invalidate_prefix(remote + "/")
        if parent_dir_id:
            self.listing.invalidate(parent_dir_id)
        if entry is None:
            return
        node = self.nodes.get(entry.id)
        if node is not None:
            self.listing.invalidate(node.parent_id)
        for removed_id in self.nodes.remove_subtree(entry.id) or [entry.id]:
            self.listing.invalidate(removed_id)
            self.metadata.invalidate(removed_id)
            self.identity.invalidate(removed_id)

    def clear(self) -> None:
        for cache in self.all():
            cache.clear()
        self.nodes = NodeTable()

    def stats(self) -> Dict[str, Dict[str, int]]:
        """Per-cache ``{"entries", "hits", "misses"}`` snapshot."""
        return {cache.name: cache.stats().to_dict() for cache in self.all()}
