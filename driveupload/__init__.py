"""Upload and deduplication engine for a cloud drive.

Uploads pick the cheapest correct path: a quick upload when the drive can
prove it already holds the bytes, a form upload for small objects, or a
chunked transfer to the drive's S3-compatible object store.

Usage:
    from driveupload import DriveConfig, LocalFileSource, build_dispatcher

    dispatcher = build_dispatcher(DriveConfig.from_yaml("drive.yaml"))
    source = LocalFileSource(Path("backup.tar"), "backups/backup.tar")
    with open(source.path, "rb") as fh:
        handle = dispatcher.upload(fh, source)
"""

from driveupload.cache import DriveCaches, TTLCache
from driveupload.config import CacheSettings, ClientSettings, DriveConfig, UploadMode, UploadSettings
from driveupload.context import CancelToken
from driveupload.dispatcher import UploadDispatcher, UploadRequest, UploadState, build_dispatcher
from driveupload.errors import UploadError
from driveupload.filesystem import DriveFilesystem, LocalFileSource, ObjectHandle

__version__ = "1.0.0"

__all__ = [
    "CacheSettings",
    "CancelToken",
    "ClientSettings",
    "DriveCaches",
    "DriveConfig",
    "DriveFilesystem",
    "LocalFileSource",
    "ObjectHandle",
    "TTLCache",
    "UploadDispatcher",
    "UploadError",
    "UploadMode",
    "UploadRequest",
    "UploadSettings",
    "UploadState",
    "build_dispatcher",
]
