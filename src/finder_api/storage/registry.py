"""
The process-wide StorageKey -> adapter mapping.

Built once from settings at startup and never mutated afterwards, so request
handlers can share it without locking.
"""

import logging
from collections.abc import Mapping
from types import MappingProxyType
from typing import Dict, Iterator, Optional

import boto3

from finder_api.config.settings import Settings, StorageBackendSettings
from finder_api.errors import UnknownStorage
from finder_api.storage.base import StorageAdapter
from finder_api.storage.local import LocalStorage
from finder_api.storage.paths import PathResolver
from finder_api.storage.s3 import S3Storage

logger = logging.getLogger(__name__)

LOCAL_STORAGE_KEY = "local"


class StorageRegistry(Mapping):
    """Read-only mapping of storage keys to adapters, in configuration order."""

    def __init__(self, storages: Dict[str, StorageAdapter]):
        if not storages:
            raise ValueError("At least one storage must be configured")
        self._storages = MappingProxyType(dict(storages))
        self.resolver = PathResolver(self._storages.keys())

    def __getitem__(self, key: str) -> StorageAdapter:
        return self._storages[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._storages)

    def __len__(self) -> int:
        return len(self._storages)

    @property
    def default_key(self) -> str:
        return next(iter(self._storages))

    def get_storage(self, key: Optional[str]) -> StorageAdapter:
        """
        Look up an adapter; an empty key selects the first configured storage.

        Raises:
            UnknownStorage: key is not configured
        """
        key = key or self.default_key
        try:
            return self._storages[key]
        except KeyError:
            raise UnknownStorage(f"Unknown storage: {key!r}") from None


def _build_adapter(key: str, backend: StorageBackendSettings, settings: Settings) -> StorageAdapter:
    if backend.driver == "s3":
        s3_client = boto3.client(
            "s3",
            region_name=settings.aws_region,
            endpoint_url=settings.aws_endpoint_url,
            aws_access_key_id=settings.aws_access_key_id,
            aws_secret_access_key=settings.aws_secret_access_key,
        )
        return S3Storage(
            key, backend.bucket, prefix=backend.prefix, s3_client=s3_client, chunk_size=settings.chunk_size
        )
    return LocalStorage(key, backend.root, chunk_size=settings.chunk_size)


def build_registry(settings: Settings) -> StorageRegistry:
    """Create every configured adapter; the local storage root is created if missing."""
    storages: Dict[str, StorageAdapter] = {}
    if settings.local_storage:
        storages[LOCAL_STORAGE_KEY] = LocalStorage(
            LOCAL_STORAGE_KEY, settings.local_storage, chunk_size=settings.chunk_size
        )
    for key, backend in settings.storages.items():
        storages[key] = _build_adapter(key, backend, settings)

    for adapter in storages.values():
        if isinstance(adapter, LocalStorage):
            adapter.root.mkdir(parents=True, exist_ok=True)
        logger.info(f"Registered storage {adapter!r}")
    return StorageRegistry(storages)
