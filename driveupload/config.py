"""Configuration for the upload engine.

Settings are pydantic models grouped by concern, so ranges and types are
checked as soon as a model is built. A ``DriveConfig`` can come from a dict,
a YAML file (with ${VAR} expansion), or ``DRIVE_UPLOAD_`` environment
variables read through pydantic-settings.

Example YAML:
    upload:
      mode: default
      chunk_size: 20M
      upload_concurrency: 4
    client:
      cookie: ${DRIVE_COOKIE}
    cache:
      metadata_ttl: 120

Example environment:
    DRIVE_UPLOAD_UPLOAD__MODE=fast_upload
    DRIVE_UPLOAD_CLIENT__COOKIE="UID=...; CID=...; SEID=..."
    DRIVE_UPLOAD_CACHE__LISTING_TTL=60
"""

from __future__ import annotations

import logging
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from driveupload import constants as c
from driveupload.env import expand_settings, load_env_file
from driveupload.errors import ConfigurationError

logger = logging.getLogger(__name__)

ENV_PREFIX = "DRIVE_UPLOAD_"

__all__ = [
    "UploadMode",
    "UploadSettings",
    "ClientSettings",
    "CacheSettings",
    "DriveConfig",
    "DriveEnvSettings",
    "parse_size",
]

_SIZE_SUFFIXES = {
    "": 1,
    "b": 1,
    "k": c.KiB,
    "kb": c.KiB,
    "kib": c.KiB,
    "m": c.MiB,
    "mb": c.MiB,
    "mib": c.MiB,
    "g": c.GiB,
    "gb": c.GiB,
    "gib": c.GiB,
}


class UploadMode(str, Enum):
    """Strategy used by the dispatcher."""

    DEFAULT = "default"
    FAST_UPLOAD = "fast_upload"
    HASH_ONLY = "hash_only"
    STREAM_ONLY = "stream_only"


def parse_size(value: Union[int, str]) -> int:
    """Parse a byte size such as ``10485760``, ``"10M"`` or ``"5GiB"``."""
    if isinstance(value, bool):
        raise ConfigurationError(f"Invalid size: {value!r}")
    if isinstance(value, int):
        return value
    text = str(value).strip().lower()
    digits = text.rstrip("abcdefghijklmnopqrstuvwxyz ")
    suffix = text[len(digits):].strip()
    if suffix not in _SIZE_SUFFIXES:
        raise ConfigurationError(f"Invalid size suffix in {value!r}")
    try:
        number = float(digits)
    except ValueError as exc:
        raise ConfigurationError(f"Invalid size: {value!r}") from exc
    return int(number * _SIZE_SUFFIXES[suffix])


def config_error(exc: ValidationError, source: str = "configuration") -> ConfigurationError:
    """Turn a pydantic ValidationError into a ConfigurationError.

    The first failing field becomes ``field``; every failure is listed in
    the message as ``section.key: reason``.
    """
    errors = exc.errors()
    problems = [
        f"{'.'.join(str(part) for part in err['loc']) or '<root>'}: {err['msg']}"
        for err in errors
    ]
    loc = errors[0]["loc"] if errors else ()
    field = str(loc[-1]) if loc else None
    return ConfigurationError(
        f"Invalid {source}: " + "; ".join(problems),
        field=field,
        cause=exc,
    )


class _Settings(BaseModel):
    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]):
        """Validate ``data``, raising ConfigurationError on any problem."""
        try:
            return cls.model_validate(dict(data))
        except ValidationError as exc:
            raise config_error(exc) from exc


class UploadSettings(_Settings):
    """Upload strategy and transfer tuning.

    Size fields accept plain byte counts or strings such as ``"20M"``.
    """

    mode: UploadMode = UploadMode.DEFAULT
    hash_memory_threshold: int = Field(default=c.DEFAULT_HASH_MEMORY_THRESHOLD, ge=0)
    nohash_size: int = Field(default=c.DEFAULT_NOHASH_SIZE, ge=0)
    stream_upload_limit: int = Field(default=c.STREAM_UPLOAD_LIMIT, ge=0, le=c.STREAM_UPLOAD_LIMIT)
    upload_cutoff: int = Field(default=c.DEFAULT_UPLOAD_CUTOFF, ge=0, le=c.MAX_UPLOAD_CUTOFF)
    chunk_size: int = Field(default=c.DEFAULT_CHUNK_SIZE, ge=c.MIN_CHUNK_SIZE, le=c.MAX_CHUNK_SIZE)
    max_upload_parts: int = Field(default=c.DEFAULT_MAX_UPLOAD_PARTS, ge=1)
    upload_concurrency: int = Field(default=c.DEFAULT_UPLOAD_CONCURRENCY, ge=1, le=c.MAX_CONCURRENCY)
    no_buffer: bool = False
    list_chunk: int = Field(default=c.DEFAULT_LIST_CHUNK, ge=1)
    retry_max_elapsed: float = Field(default=c.DEFAULT_RETRY_MAX_ELAPSED, gt=0)

    @field_validator("mode", mode="before")
    @classmethod
    def normalize_mode(cls, value: Any) -> Any:
        if isinstance(value, str) and not isinstance(value, UploadMode):
            return value.strip().lower().replace("-", "_")
        return value

    @field_validator(
        "hash_memory_threshold",
        "nohash_size",
        "stream_upload_limit",
        "upload_cutoff",
        "chunk_size",
        mode="before",
    )
    @classmethod
    def parse_sizes(cls, value: Any) -> Any:
        if isinstance(value, str):
            try:
                return parse_size(value)
            except ConfigurationError as exc:
                raise ValueError(exc.message) from exc
        return value


class ClientSettings(_Settings):
    """Credentials, endpoints and pacing for the drive API client."""

    model_config = ConfigDict(coerce_numbers_to_str=True)

    cookie: str = ""
    access_token: str = ""
    user_agent: str = c.DEFAULT_USER_AGENT
    app_version: str = c.DEFAULT_APP_VERSION
    oss_endpoint: str = c.DEFAULT_OSS_ENDPOINT
    oss_region: str = c.DEFAULT_OSS_REGION
    api_base_url: str = c.API_BASE_URL
    api_min_sleep: float = Field(default=c.DEFAULT_API_MIN_SLEEP, ge=0)
    download_min_sleep: float = Field(default=c.DEFAULT_DOWNLOAD_MIN_SLEEP, ge=0)
    upload_min_sleep: float = Field(default=c.DEFAULT_UPLOAD_MIN_SLEEP, ge=0)
    timeout: float = Field(default=c.DEFAULT_HTTP_TIMEOUT, gt=0)
    root_dir_id: str = c.ROOT_DIR_ID

    @model_validator(mode="after")
    def warn_anonymous(self) -> "ClientSettings":
        if not self.cookie and not self.access_token:
            logger.warning("Neither cookie nor access_token configured; API calls will be anonymous")
        return self

    def redacted(self) -> Dict[str, Any]:
        """Settings as a dict with secrets masked, safe to log."""
        data = self.model_dump()
        for secret in ("cookie", "access_token"):
            if data[secret]:
                data[secret] = "***"
        return data


class CacheSettings(_Settings):
    """Time-to-live per cache, in seconds."""

    path_ttl: float = Field(default=c.DEFAULT_CACHE_TTL, gt=0)
    listing_ttl: float = Field(default=c.DEFAULT_CACHE_TTL, gt=0)
    download_url_ttl: float = Field(default=c.DEFAULT_CACHE_TTL, gt=0)
    metadata_ttl: float = Field(default=c.DEFAULT_CACHE_TTL, gt=0)
    identity_ttl: float = Field(default=c.DEFAULT_CACHE_TTL, gt=0)


class DriveConfig(_Settings):
    """Complete engine configuration."""

    upload: UploadSettings = Field(default_factory=UploadSettings)
    client: ClientSettings = Field(default_factory=ClientSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)

    @field_validator("upload", "client", "cache", mode="before")
    @classmethod
    def empty_section(cls, value: Any) -> Any:
        # "upload:" with nothing under it loads as None
        return {} if value is None else value

    @classmethod
    def from_yaml(
        cls,
        path: Union[str, Path],
        *,
        strict_env: bool = False,
        env_file: Optional[Union[str, Path]] = None,
    ) -> "DriveConfig":
        """Load configuration from a YAML file, expanding ${VAR} references.

        Args:
            path: YAML file with ``upload``, ``client`` and ``cache`` sections
            strict_env: Fail on references to unset variables
            env_file: .env file loaded before expansion
        """
        path = Path(path)
        if env_file is not None:
            load_env_file(env_file)
        try:
            raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except FileNotFoundError as exc:
            raise ConfigurationError(f"Config file not found: {path}") from exc
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Config file {path} must contain a mapping")
        try:
            expanded = expand_settings(raw, strict=strict_env)
        except KeyError as exc:
            raise ConfigurationError(str(exc)) from exc
        logger.debug("Loaded configuration from %s", path)
        return cls.from_dict(expanded)

    @classmethod
    def from_env(cls, *, env_file: Optional[Union[str, Path]] = ".env") -> "DriveConfig":
        """Build configuration from ``DRIVE_UPLOAD_<SECTION>__<KEY>`` variables."""
        try:
            settings = DriveEnvSettings(_env_file=env_file)
        except ValidationError as exc:
            raise config_error(exc, "environment configuration") from exc
        return cls(upload=settings.upload, client=settings.client, cache=settings.cache)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "upload": self.upload.model_dump(mode="json"),
            "client": self.client.redacted(),
            "cache": self.cache.model_dump(),
        }


class DriveEnvSettings(BaseSettings):
    """Environment-based settings using pydantic-settings.

    Reads ``DRIVE_UPLOAD_`` variables, with ``__`` separating the section
    from the key, and a .env file when present.

    Example:
        DRIVE_UPLOAD_UPLOAD__CHUNK_SIZE=20M -> settings.upload.chunk_size == 20971520
    """

    upload: UploadSettings = Field(default_factory=UploadSettings)
    client: ClientSettings = Field(default_factory=ClientSettings)
    cache: CacheSettings = Field(default_factory=CacheSettings)

    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_nested_delimiter="__",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )
