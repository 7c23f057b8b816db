"""Storage fixtures for tests."""
from pathlib import Path

import pytest

from finder_api.storage.local import LocalStorage
from finder_api.storage.paths import PathResolver, ResolvedPath
from finder_api.storage.s3 import S3Storage
from tests.consts import TEST_BUCKET_NAME, TEST_FILE_CONTENT, TEST_S3_STORAGE_KEY


async def stream_of(*chunks: bytes):
    for chunk in chunks:
        yield chunk


async def read_all(storage, path: ResolvedPath) -> bytes:
    return b"".join([chunk async for chunk in await storage.read_stream(path)])


@pytest.fixture
def storage_root(tmp_path: Path) -> Path:
    """Storage root holding `a.txt` (10 bytes) and an empty `sub/` folder."""
    root = tmp_path / "storage"
    root.mkdir()
    (root / "a.txt").write_bytes(TEST_FILE_CONTENT)
    (root / "sub").mkdir()
    return root


@pytest.fixture
def local_storage(storage_root: Path) -> LocalStorage:
    return LocalStorage("local", str(storage_root), chunk_size=4)


@pytest.fixture
def resolver() -> PathResolver:
    return PathResolver(["local", TEST_S3_STORAGE_KEY])


@pytest.fixture
def s3_storage(mocked_aws) -> S3Storage:
    return S3Storage(TEST_S3_STORAGE_KEY, TEST_BUCKET_NAME, prefix="files", s3_client=mocked_aws)
