# src/finder_api/config/settings.py
import json
import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing_extensions import Self

STORAGE_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")
MiB = 1024 * 1024


class StorageBackendSettings(BaseModel):
    """One extra storage backend, keyed by its StorageKey in `Settings.storages`."""

    driver: Literal["local", "s3"] = Field(default="local", description="Backend implementation")
    root: Optional[str] = Field(default=None, description="Root directory (local driver)")
    bucket: Optional[str] = Field(default=None, description="Bucket name (s3 driver)")
    prefix: str = Field(default="", description="Key prefix inside the bucket (s3 driver)")

    @model_validator(mode="after")
    def check_driver_options(self) -> Self:
        if self.driver == "local" and not self.root:
            raise ValueError("local storages need a root directory")
        if self.driver == "s3" and not self.bucket:
            raise ValueError("s3 storages need a bucket")
        return self


class Settings(BaseSettings):
    """
    Single source of truth for all application settings.

    Configuration precedence:
    1. Explicit keyword arguments (CLI options, JSON config file)
    2. Environment variables
    3. .env file (if exists)
    4. Default values in this class

    Usage:
        from finder_api.config.settings import get_settings
        settings = get_settings()
        limit = settings.max_upload_size
    """

    app_name: str = Field(default="finder-api", description="Application name")

    # Server
    host: str = Field(default="127.0.0.1", description="Interface to bind")
    port: int = Field(default=8080, ge=0, le=65535, description="Port to bind")
    api_path: str = Field(default="/api", description="Path of the command endpoint")

    # Storages
    local_storage: Optional[str] = Field(
        default="./storage",
        description="Root of the built-in `local` storage; empty disables it",
    )
    storages: Dict[str, StorageBackendSettings] = Field(
        default_factory=dict,
        description="Additional storages keyed by storage key",
    )

    # S3 connection, shared by every s3 storage
    aws_region: str = Field(
        default="us-east-1",
        validation_alias=AliasChoices("aws_region", "AWS_DEFAULT_REGION"),
    )
    aws_endpoint_url: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("aws_endpoint_url", "AWS_ENDPOINT_URL"),
    )
    aws_access_key_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("aws_access_key_id", "AWS_ACCESS_KEY_ID"),
    )
    aws_secret_access_key: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("aws_secret_access_key", "AWS_SECRET_ACCESS_KEY"),
    )

    # Limits
    max_upload_size: int = Field(default=100 * MiB, gt=0, description="Per-file upload ceiling in bytes")
    max_extract_size: int = Field(default=1024 * MiB, gt=0, description="Decompressed bytes per unarchive")
    max_extract_entries: int = Field(default=10_000, gt=0, description="Entries per unarchive")
    stream_idle_timeout: float = Field(default=30.0, gt=0, description="Seconds a transfer may stall")
    chunk_size: int = Field(default=64 * 1024, gt=0, description="Read size for streamed files")

    # Public links: alias -> qualified base path, e.g. {"media": "local://public"}
    public_links: Dict[str, str] = Field(default_factory=dict)

    # CORS
    cors_allowed_origins: List[str] = Field(default_factory=lambda: ["*"])
    cors_allowed_methods: List[str] = Field(
        default_factory=lambda: ["GET", "POST", "PUT", "DELETE", "OPTIONS"]
    )
    cors_allowed_headers: List[str] = Field(
        default_factory=lambda: ["Origin", "X-Requested-With", "Content-Type", "Accept", "Authorization"]
    )
    cors_max_age: int = Field(default=3600, ge=0)

    # Logging
    log_level: str = Field(default="INFO", description="Logging level")

    @field_validator("api_path")
    def normalize_api_path(cls, v: str) -> str:
        path = v.strip("/")
        if not path:
            raise ValueError("api_path must not be the site root")
        return "/" + path

    @field_validator("log_level")
    def validate_log_level(cls, v: str) -> str:
        level = v.upper()
        if not isinstance(logging.getLevelName(level), int):
            raise ValueError(f"Invalid log_level: {v}")
        return level

    @field_validator("storages")
    def validate_storage_keys(cls, v: Dict[str, StorageBackendSettings]) -> Dict[str, StorageBackendSettings]:
        for key in v:
            if not STORAGE_KEY_PATTERN.match(key):
                raise ValueError(f"Invalid storage key: {key!r}")
        return v

    @model_validator(mode="after")
    def check_storages_and_links(self) -> Self:
        keys = self.storage_keys
        if not keys:
            raise ValueError("No storage configured: set local_storage or storages")
        for alias, target in self.public_links.items():
            if not STORAGE_KEY_PATTERN.match(alias):
                raise ValueError(f"Invalid public link alias: {alias!r}")
            storage, sep, _ = target.partition("://")
            if not sep or storage not in keys:
                raise ValueError(f"Public link {alias!r} must target a configured storage, got {target!r}")
        return self

    @property
    def storage_keys(self) -> List[str]:
        keys = ["local"] if self.local_storage else []
        return keys + [key for key in self.storages if key not in keys]

    @classmethod
    def from_config_file(cls, path: Optional[str] = None, **overrides: Any) -> "Settings":
        """Build settings from an optional JSON file; keyword overrides win over its values."""
        data: Dict[str, Any] = {}
        if path:
            data = json.loads(Path(path).read_text(encoding="utf-8"))
            if not isinstance(data, dict):
                raise ValueError(f"Config file {path} must contain a JSON object")
        data.update({key: value for key, value in overrides.items() if value is not None})
        return cls(**data)

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    This ensures we only create one Settings instance per process.
    """
    return Settings()
