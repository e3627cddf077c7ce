"""TTL caches for paths, listings, download URLs, metadata and identity."""

from driveupload.cache.drive import DriveCaches, PathEntry, normalize_path
from driveupload.cache.tree import Node, NodeTable
from driveupload.cache.ttl import CacheEntry, CacheStats, TTLCache

__all__ = [
    "CacheEntry",
    "CacheStats",
    "DriveCaches",
    "Node",
    "NodeTable",
    "PathEntry",
    "TTLCache",
    "normalize_path",
]
