"""Tests for configuration loading and validation."""

from __future__ import annotations

import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from driveupload import constants as c
from driveupload.config import (
    CacheSettings,
    ClientSettings,
    ENV_PREFIX,
    DriveConfig,
    DriveEnvSettings,
    UploadMode,
    UploadSettings,
    parse_size,
)
from driveupload.errors import ConfigurationError


class TestParseSize:
    """Tests for human-readable size parsing."""

    @pytest.mark.parametrize(
        "value,expected",
        [
            (4096, 4096),
            ("4096", 4096),
            ("10M", 10 * c.MiB),
            ("10 MiB", 10 * c.MiB),
            ("5GiB", 5 * c.GiB),
            ("1.5k", 1536),
        ],
    )
    def test_valid_sizes(self, value: object, expected: int) -> None:
        assert parse_size(value) == expected  # type: ignore[arg-type]

    def test_rejects_unknown_suffix(self) -> None:
        with pytest.raises(ConfigurationError, match="suffix"):
            parse_size("10Q")

    def test_rejects_bool(self) -> None:
        with pytest.raises(ConfigurationError):
            parse_size(True)


class TestUploadSettings:
    """Tests for UploadSettings parsing and validation."""

    def test_defaults(self) -> None:
        settings = UploadSettings()
        assert settings.mode is UploadMode.DEFAULT
        assert settings.hash_memory_threshold == 10 * c.MiB
        assert settings.nohash_size == 100 * c.MiB
        assert settings.stream_upload_limit == 5 * c.GiB
        assert settings.upload_cutoff == 50 * c.MiB

    def test_from_dict_coerces_types(self) -> None:
        settings = UploadSettings.from_dict(
            {
                "mode": "Hash-Only",
                "chunk_size": "20M",
                "upload_concurrency": "4",
                "no_buffer": "yes",
                "retry_max_elapsed": "30",
            }
        )
        assert settings.mode is UploadMode.HASH_ONLY
        assert settings.chunk_size == 20 * c.MiB
        assert settings.upload_concurrency == 4
        assert settings.no_buffer is True
        assert settings.retry_max_elapsed == 30.0

    def test_unknown_mode(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            UploadSettings.from_dict({"mode": "turbo"})
        assert exc_info.value.details["field"] == "mode"

    def test_bad_size_suffix(self) -> None:
        with pytest.raises(ConfigurationError, match="suffix"):
            UploadSettings.from_dict({"chunk_size": "10Q"})

    def test_unknown_key_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="chunksize"):
            UploadSettings.from_dict({"chunksize": 1})

    @pytest.mark.parametrize(
        "overrides,field",
        [
            ({"chunk_size": 1024}, "chunk_size"),
            ({"upload_cutoff": 6 * c.GiB}, "upload_cutoff"),
            ({"upload_concurrency": 0}, "upload_concurrency"),
            ({"upload_concurrency": 33}, "upload_concurrency"),
            ({"nohash_size": -1}, "nohash_size"),
            ({"stream_upload_limit": 6 * c.GiB}, "stream_upload_limit"),
            ({"max_upload_parts": 0}, "max_upload_parts"),
        ],
    )
    def test_out_of_range_rejected(self, overrides: dict, field: str) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            UploadSettings.from_dict(overrides)
        assert exc_info.value.details["field"] == field

    def test_assignment_is_validated(self) -> None:
        settings = UploadSettings()
        with pytest.raises(ValidationError):
            settings.upload_concurrency = 64


class TestClientSettings:
    def test_redacted_masks_secrets(self) -> None:
        settings = ClientSettings(cookie="UID=1; CID=2", access_token="tok")
        redacted = settings.redacted()
        assert redacted["cookie"] == "***"
        assert redacted["access_token"] == "***"
        assert redacted["user_agent"] == settings.user_agent

    def test_non_positive_timeout_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="timeout") as exc_info:
            ClientSettings.from_dict({"cookie": "x", "timeout": 0})
        assert exc_info.value.details["field"] == "timeout"

    def test_numbers_coerced(self) -> None:
        settings = ClientSettings.from_dict({"api_min_sleep": "0.5", "cookie": "c", "root_dir_id": 0})
        assert settings.api_min_sleep == 0.5
        assert settings.cookie == "c"
        assert settings.root_dir_id == "0"

    def test_anonymous_client_warns(self, captured_records) -> None:
        ClientSettings()
        assert any("anonymous" in record.getMessage() for record in captured_records)


class TestCacheSettings:
    def test_non_positive_ttl_rejected(self) -> None:
        with pytest.raises(ConfigurationError, match="listing_ttl"):
            CacheSettings.from_dict({"listing_ttl": 0})


class TestDriveConfig:
    """Tests for loading a complete configuration."""

    def test_from_dict_validates(self) -> None:
        with pytest.raises(ConfigurationError) as exc_info:
            DriveConfig.from_dict({"upload": {"chunk_size": 10}})
        assert exc_info.value.details["field"] == "chunk_size"
        assert "upload.chunk_size" in exc_info.value.message

    def test_unknown_section(self) -> None:
        with pytest.raises(ConfigurationError, match="download"):
            DriveConfig.from_dict({"download": {}})

    def test_empty_section(self) -> None:
        assert DriveConfig.from_dict({"upload": None}).upload == UploadSettings()

    def test_from_yaml_expands_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("TEST_DRIVE_COOKIE", "UID=42")
        config_file = tmp_path / "drive.yaml"
        config_file.write_text(
            "upload:\n"
            "  mode: fast_upload\n"
            "  nohash_size: 4K\n"
            "client:\n"
            "  cookie: ${TEST_DRIVE_COOKIE}\n"
            "cache:\n"
            "  metadata_ttl: 60\n",
            encoding="utf-8",
        )
        config = DriveConfig.from_yaml(config_file)
        assert config.upload.mode is UploadMode.FAST_UPLOAD
        assert config.upload.nohash_size == 4096
        assert config.client.cookie == "UID=42"
        assert config.cache.metadata_ttl == 60.0

    def test_from_yaml_reads_env_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("TEST_DRIVE_TOKEN", raising=False)
        env_file = tmp_path / ".env"
        env_file.write_text("TEST_DRIVE_TOKEN=from-dotenv\n", encoding="utf-8")
        config_file = tmp_path / "drive.yaml"
        config_file.write_text("client:\n  access_token: ${TEST_DRIVE_TOKEN}\n", encoding="utf-8")
        try:
            config = DriveConfig.from_yaml(config_file, strict_env=True, env_file=env_file)
            assert config.client.access_token == "from-dotenv"
        finally:
            os.environ.pop("TEST_DRIVE_TOKEN", None)

    def test_from_yaml_missing_file(self, tmp_path: Path) -> None:
        with pytest.raises(ConfigurationError, match="not found"):
            DriveConfig.from_yaml(tmp_path / "missing.yaml")

    def test_from_yaml_requires_mapping(self, tmp_path: Path) -> None:
        config_file = tmp_path / "list.yaml"
        config_file.write_text("- a\n- b\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="mapping"):
            DriveConfig.from_yaml(config_file)

    def test_from_yaml_strict_env(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("TEST_DRIVE_MISSING", raising=False)
        config_file = tmp_path / "drive.yaml"
        config_file.write_text("client:\n  cookie: ${TEST_DRIVE_MISSING}\n", encoding="utf-8")
        with pytest.raises(ConfigurationError, match="TEST_DRIVE_MISSING"):
            DriveConfig.from_yaml(config_file, strict_env=True)

    def test_to_dict_is_safe_to_log(self) -> None:
        config = DriveConfig.from_dict({"client": {"cookie": "secret"}})
        data = config.to_dict()
        assert data["upload"]["mode"] == "default"
        assert data["client"]["cookie"] == "***"
        assert data["cache"]["identity_ttl"] == c.DEFAULT_CACHE_TTL


class TestEnvironmentSettings:
    """Tests for DRIVE_UPLOAD_ environment variables via pydantic-settings."""

    def test_from_env(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DRIVE_UPLOAD_UPLOAD__MODE", "stream_only")
        monkeypatch.setenv("DRIVE_UPLOAD_UPLOAD__CHUNK_SIZE", "20M")
        monkeypatch.setenv("DRIVE_UPLOAD_CLIENT__COOKIE", "UID=1")
        monkeypatch.setenv("DRIVE_UPLOAD_CACHE__PATH_TTL", "30")
        config = DriveConfig.from_env(env_file=None)
        assert config.upload.mode is UploadMode.STREAM_ONLY
        assert config.upload.chunk_size == 20 * c.MiB
        assert config.upload.upload_cutoff == c.DEFAULT_UPLOAD_CUTOFF
        assert config.client.cookie == "UID=1"
        assert config.cache.path_ttl == 30.0

    def test_env_file(self, tmp_path: Path) -> None:
        env_file = tmp_path / ".env"
        env_file.write_text("DRIVE_UPLOAD_UPLOAD__UPLOAD_CONCURRENCY=3\n", encoding="utf-8")
        config = DriveConfig.from_env(env_file=env_file)
        assert config.upload.upload_concurrency == 3

    def test_invalid_value(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DRIVE_UPLOAD_UPLOAD__UPLOAD_CONCURRENCY", "99")
        with pytest.raises(ConfigurationError, match="environment") as exc_info:
            DriveConfig.from_env(env_file=None)
        assert exc_info.value.details["field"] == "upload_concurrency"

    def test_settings_model(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("DRIVE_UPLOAD_CLIENT__ACCESS_TOKEN", "tok")
        settings = DriveEnvSettings(_env_file=None)
        assert settings.client.access_token == "tok"
        assert settings.model_config["env_prefix"] == ENV_PREFIX
