import pytest

from finder_api.errors import Conflict, DirectoryNotEmpty, IsADirectory, NotADirectory, NotFound
from finder_api.storage import s3 as s3_module
from finder_api.storage.base import StorageAdapter
from finder_api.storage.paths import ResolvedPath
from finder_api.storage.s3 import S3Storage
from tests.consts import TEST_BUCKET_NAME, TEST_FILE_CONTENT, TEST_S3_STORAGE_KEY
from tests.fixtures.storage_fixtures import read_all, stream_of


def p(key: str = "") -> ResolvedPath:
    return ResolvedPath(TEST_S3_STORAGE_KEY, key)


def test_s3_storage_satisfies_protocol(s3_storage: S3Storage):
    assert isinstance(s3_storage, StorageAdapter)


async def test_write_list_and_read(s3_storage: S3Storage, mocked_aws):
    await s3_storage.write_stream(p("a.txt"), stream_of(TEST_FILE_CONTENT))
    await s3_storage.mkdir(p("sub"))

    entries = {entry.name: entry for entry in await s3_storage.list(p())}
    assert set(entries) == {"a.txt", "sub"}
    assert entries["a.txt"].size == 10
    assert entries["sub"].is_directory

    assert await read_all(s3_storage, p("a.txt")) == TEST_FILE_CONTENT

    # Objects live below the configured prefix
    head = mocked_aws.head_object(Bucket=TEST_BUCKET_NAME, Key="files/a.txt")
    assert head["ContentType"] == "text/plain"


async def test_missing_paths(s3_storage: S3Storage):
    with pytest.raises(NotFound):
        await s3_storage.stat(p("nope.txt"))
    with pytest.raises(NotFound):
        await s3_storage.list(p("nope"))
    with pytest.raises(NotFound):
        await s3_storage.read_stream(p("nope.txt"))
    assert await s3_storage.exists(p("nope.txt")) is False


async def test_implied_directories(s3_storage: S3Storage):
    await s3_storage.write_stream(p("deep/er/file.bin"), stream_of(b"x"))

    assert (await s3_storage.stat(p("deep"))).is_directory
    assert [entry.name for entry in await s3_storage.list(p("deep"))] == ["er"]
    with pytest.raises(IsADirectory):
        await s3_storage.read_stream(p("deep"))
    with pytest.raises(NotADirectory):
        await s3_storage.list(p("deep/er/file.bin"))


async def test_mkdir_is_idempotent(s3_storage: S3Storage):
    await s3_storage.mkdir(p("x"))
    await s3_storage.mkdir(p("x"))

    assert [entry.name for entry in await s3_storage.list(p())] == ["x"]
    assert await s3_storage.list(p("x")) == []


async def test_write_conflict(s3_storage: S3Storage):
    await s3_storage.write_stream(p("a.txt"), stream_of(b"one"))
    with pytest.raises(Conflict):
        await s3_storage.write_stream(p("a.txt"), stream_of(b"two"))

    await s3_storage.write_stream(p("a.txt"), stream_of(b"two"), overwrite=True)
    assert await read_all(s3_storage, p("a.txt")) == b"two"


async def test_multipart_write(s3_storage: S3Storage, monkeypatch):
    monkeypatch.setattr(s3_module, "MULTIPART_CHUNK_SIZE", 5 * 1024 * 1024)
    chunk = b"a" * (1024 * 1024)

    written = await s3_storage.write_stream(p("big.bin"), stream_of(*[chunk] * 6))

    assert written == 6 * 1024 * 1024
    assert (await s3_storage.stat(p("big.bin"))).size == written


async def test_failed_multipart_write_is_aborted(s3_storage: S3Storage, mocked_aws, monkeypatch):
    monkeypatch.setattr(s3_module, "MULTIPART_CHUNK_SIZE", 5 * 1024 * 1024)

    async def failing_stream():
        yield b"a" * (5 * 1024 * 1024)
        raise RuntimeError("client went away")

    with pytest.raises(RuntimeError):
        await s3_storage.write_stream(p("big.bin"), failing_stream())

    assert await s3_storage.exists(p("big.bin")) is False
    uploads = mocked_aws.list_multipart_uploads(Bucket=TEST_BUCKET_NAME)
    assert uploads.get("Uploads", []) == []


async def test_delete(s3_storage: S3Storage):
    await s3_storage.write_stream(p("dir/a.txt"), stream_of(b"a"))
    await s3_storage.write_stream(p("dir/b/c.txt"), stream_of(b"c"))

    with pytest.raises(DirectoryNotEmpty):
        await s3_storage.delete(p("dir"))
    await s3_storage.delete(p("dir"), recursive=True)

    assert await s3_storage.exists(p("dir")) is False
    with pytest.raises(NotFound):
        await s3_storage.delete(p("dir"))


async def test_copy_move_rename(s3_storage: S3Storage):
    await s3_storage.write_stream(p("dir/a.txt"), stream_of(b"a"))
    await s3_storage.write_stream(p("dir/b/c.txt"), stream_of(b"c"))

    await s3_storage.copy(p("dir"), p("copy"))
    await s3_storage.move(p("dir"), p("moved"))
    await s3_storage.rename(p("moved/a.txt"), p("moved/renamed.txt"))

    assert await read_all(s3_storage, p("copy/b/c.txt")) == b"c"
    assert await read_all(s3_storage, p("moved/renamed.txt")) == b"a"
    assert await s3_storage.exists(p("dir")) is False
    with pytest.raises(Conflict):
        await s3_storage.copy(p("copy"), p("moved"))


async def test_check(s3_storage: S3Storage, mocked_aws):
    assert await s3_storage.check() is True
    assert await S3Storage("other", "missing-bucket", s3_client=mocked_aws).check() is False
