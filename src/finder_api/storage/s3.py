"""
S3-compatible object storage backend.

Directories are either `key/` marker objects or prefixes implied by the
objects below them. boto3 is blocking, so every client call runs in a worker
thread.
"""

import asyncio
import contextlib
import logging
from typing import Any, AsyncIterable, Dict, Iterator, List, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

try:
    from mypy_boto3_s3 import S3Client
except ImportError:
    ...

from finder_api.errors import (
    BadRequest,
    Conflict,
    DirectoryNotEmpty,
    IOFailure,
    IsADirectory,
    NotADirectory,
    NotFound,
)
from finder_api.storage.base import DEFAULT_CHUNK_SIZE, ByteStream, DirectoryEntry, guess_mime_type
from finder_api.storage.paths import ResolvedPath

logger = logging.getLogger(__name__)

# Parts of a multipart upload must be at least 5 MiB, except the last one.
MULTIPART_CHUNK_SIZE = 8 * 1024 * 1024
DELETE_BATCH_SIZE = 1000
NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


@contextlib.contextmanager
def _translate_client_errors(path: ResolvedPath) -> Iterator[None]:
    try:
        yield
    except ClientError as e:
        code = e.response.get("Error", {}).get("Code", "")
        if code in NOT_FOUND_CODES:
            raise NotFound(f"Path not found: {path}") from e
        logger.error(f"S3 error on {path}: {e}")
        raise IOFailure(f"S3 error on {path}: {code or e}") from e
    except BotoCoreError as e:
        logger.error(f"S3 client error on {path}: {e}")
        raise IOFailure(f"S3 client error on {path}: {e}") from e


class S3Storage:
    """Stores files as objects below an optional key prefix of one bucket."""

    def __init__(
        self,
        name: str,
        bucket_name: str,
        prefix: str = "",
        s3_client: Optional["S3Client"] = None,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        self.name = name
        self.bucket_name = bucket_name
        prefix = prefix.strip("/")
        self.prefix = f"{prefix}/" if prefix else ""
        self.s3_client = s3_client or boto3.client("s3")
        self.chunk_size = chunk_size

    def __repr__(self) -> str:
        return f"S3Storage(name={self.name!r}, bucket={self.bucket_name!r}, prefix={self.prefix!r})"

    async def _call(self, method: str, **kwargs) -> Dict[str, Any]:
        return await asyncio.to_thread(getattr(self.s3_client, method), **kwargs)

    def _check_storage(self, path: ResolvedPath) -> None:
        if path.storage != self.name:
            raise BadRequest(f"{path} does not belong to storage {self.name!r}")

    def _object_key(self, path: ResolvedPath) -> str:
        self._check_storage(path)
        return f"{self.prefix}{path.key}"

    def _dir_prefix(self, path: ResolvedPath) -> str:
        self._check_storage(path)
        return f"{self.prefix}{path.key}/" if path.key else self.prefix

    async def _head(self, path: ResolvedPath) -> Optional[Dict[str, Any]]:
        if path.is_root:
            return None
        try:
            with _translate_client_errors(path):
                return await self._call("head_object", Bucket=self.bucket_name, Key=self._object_key(path))
        except NotFound:
            return None

    async def _dir_exists(self, path: ResolvedPath) -> bool:
        if path.is_root:
            return True
        with _translate_client_errors(path):
            response = await self._call(
                "list_objects_v2", Bucket=self.bucket_name, Prefix=self._dir_prefix(path), MaxKeys=1
            )
        return response.get("KeyCount", 0) > 0

    async def _list_objects(self, prefix: str, delimiter: Optional[str] = None) -> List[Dict[str, Any]]:
        kwargs = {"Bucket": self.bucket_name, "Prefix": prefix}
        if delimiter:
            kwargs["Delimiter"] = delimiter
        paginator = self.s3_client.get_paginator("list_objects_v2")
        return await asyncio.to_thread(lambda: list(paginator.paginate(**kwargs)))

    async def _object_keys(self, path: ResolvedPath) -> List[str]:
        with _translate_client_errors(path):
            pages = await self._list_objects(self._dir_prefix(path))
        return [obj["Key"] for page in pages for obj in page.get("Contents", [])]

    async def _delete_keys(self, path: ResolvedPath, keys: List[str]) -> None:
        for start in range(0, len(keys), DELETE_BATCH_SIZE):
            batch = keys[start:start + DELETE_BATCH_SIZE]
            with _translate_client_errors(path):
                await self._call(
                    "delete_objects",
                    Bucket=self.bucket_name,
                    Delete={"Objects": [{"Key": key} for key in batch], "Quiet": True},
                )

    async def check(self) -> bool:
        try:
            await self._call("head_bucket", Bucket=self.bucket_name)
            return True
        except (ClientError, BotoCoreError) as e:
            logger.warning(f"Bucket {self.bucket_name} is not reachable: {e}")
            return False

    async def list(self, path: ResolvedPath) -> List[DirectoryEntry]:
        if await self._head(path) is not None:
            raise NotADirectory(f"Not a directory: {path}")
        if not await self._dir_exists(path):
            raise NotFound(f"Path not found: {path}")

        prefix = self._dir_prefix(path)
        with _translate_client_errors(path):
            pages = await self._list_objects(prefix, delimiter="/")

        entries = []
        for page in pages:
            for common_prefix in page.get("CommonPrefixes", []):
                name = common_prefix["Prefix"][len(prefix):].rstrip("/")
                entries.append(DirectoryEntry.for_directory(self._child(path, name)))
            for obj in page.get("Contents", []):
                if obj["Key"] == prefix:
                    continue
                name = obj["Key"][len(prefix):]
                entries.append(
                    DirectoryEntry.for_file(
                        self._child(path, name), obj["Size"], obj["LastModified"].timestamp()
                    )
                )
        return sorted(entries, key=lambda entry: entry.name)

    def _child(self, path: ResolvedPath, name: str) -> ResolvedPath:
        return ResolvedPath(self.name, f"{path.key}/{name}" if path.key else name)

    async def stat(self, path: ResolvedPath) -> DirectoryEntry:
        head = await self._head(path)
        if head is not None:
            return DirectoryEntry.for_file(path, head["ContentLength"], head["LastModified"].timestamp())
        if await self._dir_exists(path):
            return DirectoryEntry.for_directory(path)
        raise NotFound(f"Path not found: {path}")

    async def exists(self, path: ResolvedPath) -> bool:
        return await self._head(path) is not None or await self._dir_exists(path)

    async def read_stream(self, path: ResolvedPath) -> ByteStream:
        if await self._head(path) is None:
            if await self._dir_exists(path):
                raise IsADirectory(f"Is a directory: {path}")
            raise NotFound(f"Path not found: {path}")
        return self._iter_object(path)

    async def _iter_object(self, path: ResolvedPath) -> ByteStream:
        with _translate_client_errors(path):
            response = await self._call("get_object", Bucket=self.bucket_name, Key=self._object_key(path))
            body = response["Body"]
            try:
                while True:
                    chunk = await asyncio.to_thread(body.read, self.chunk_size)
                    if not chunk:
                        break
                    yield chunk
            finally:
                body.close()

    async def write_stream(
        self, path: ResolvedPath, stream: AsyncIterable[bytes], overwrite: bool = False
    ) -> int:
        if path.is_root or await self._dir_exists(path):
            raise IsADirectory(f"Is a directory: {path}")
        if not overwrite and await self._head(path) is not None:
            raise Conflict(f"Path already exists: {path}")

        key = self._object_key(path)
        content_type = guess_mime_type(path.name)
        buffer = bytearray()
        parts: List[Dict[str, Any]] = []
        upload_id = None
        written = 0

        async def flush_part() -> None:
            part_number = len(parts) + 1
            response = await self._call(
                "upload_part",
                Bucket=self.bucket_name,
                Key=key,
                UploadId=upload_id,
                PartNumber=part_number,
                Body=bytes(buffer),
            )
            parts.append({"ETag": response["ETag"], "PartNumber": part_number})
            buffer.clear()

        with _translate_client_errors(path):
            try:
                async for chunk in stream:
                    buffer.extend(chunk)
                    written += len(chunk)
                    if len(buffer) >= MULTIPART_CHUNK_SIZE:
                        if upload_id is None:
                            response = await self._call(
                                "create_multipart_upload",
                                Bucket=self.bucket_name,
                                Key=key,
                                ContentType=content_type,
                            )
                            upload_id = response["UploadId"]
                        await flush_part()

                if not overwrite and await self._head(path) is not None:
                    raise Conflict(f"Path already exists: {path}")

                if upload_id is None:
                    await self._call(
                        "put_object",
                        Bucket=self.bucket_name,
                        Key=key,
                        Body=bytes(buffer),
                        ContentType=content_type,
                    )
                else:
                    if buffer:
                        await flush_part()
                    await self._call(
                        "complete_multipart_upload",
                        Bucket=self.bucket_name,
                        Key=key,
                        UploadId=upload_id,
                        MultipartUpload={"Parts": parts},
                    )
            except BaseException:
                # An aborted multipart upload leaves no object behind.
                if upload_id is not None:
                    await self._call(
                        "abort_multipart_upload", Bucket=self.bucket_name, Key=key, UploadId=upload_id
                    )
                raise
        logger.info(f"Wrote {written} bytes to {path}")
        return written

    async def mkdir(self, path: ResolvedPath) -> None:
        if path.is_root:
            return
        if await self._head(path) is not None:
            raise Conflict(f"A file already exists at {path}")
        if await self._dir_exists(path):
            return
        with _translate_client_errors(path):
            await self._call("put_object", Bucket=self.bucket_name, Key=self._dir_prefix(path), Body=b"")
        logger.info(f"Created directory {path}")

    async def delete(self, path: ResolvedPath, recursive: bool = False) -> None:
        if path.is_root:
            raise BadRequest("Cannot delete the storage root")
        if await self._head(path) is not None:
            with _translate_client_errors(path):
                await self._call("delete_object", Bucket=self.bucket_name, Key=self._object_key(path))
            logger.info(f"Deleted {path}")
            return

        marker = self._dir_prefix(path)
        keys = await self._object_keys(path)
        if not keys:
            raise NotFound(f"Path not found: {path}")
        if not recursive and any(key != marker for key in keys):
            raise DirectoryNotEmpty(f"Directory is not empty: {path}")
        await self._delete_keys(path, keys)
        logger.info(f"Deleted {path} ({len(keys)} objects)")

    async def rename(self, src: ResolvedPath, dst: ResolvedPath) -> None:
        if src.parent != dst.parent:
            raise BadRequest("Rename must stay within the same directory")
        await self.move(src, dst)

    async def _copy_object(self, path: ResolvedPath, src_key: str, dst_key: str) -> None:
        with _translate_client_errors(path):
            await asyncio.to_thread(
                self.s3_client.copy,
                {"Bucket": self.bucket_name, "Key": src_key},
                self.bucket_name,
                dst_key,
            )

    async def _copy(self, src: ResolvedPath, dst: ResolvedPath) -> List[str]:
        """Copy src to dst and return the source keys that were copied."""
        if src.is_root or dst.is_root:
            raise BadRequest("The storage root cannot be moved or replaced")
        is_file = await self._head(src) is not None
        if not is_file and not await self._dir_exists(src):
            raise NotFound(f"Path not found: {src}")
        if await self.exists(dst):
            raise Conflict(f"Path already exists: {dst}")

        if is_file:
            src_key = self._object_key(src)
            await self._copy_object(src, src_key, self._object_key(dst))
            return [src_key]

        if dst.is_within(src):
            raise BadRequest(f"Cannot place {src} inside itself")
        src_prefix, dst_prefix = self._dir_prefix(src), self._dir_prefix(dst)
        keys = await self._object_keys(src)
        created: List[str] = []
        try:
            for key in keys:
                target = dst_prefix + key[len(src_prefix):]
                await self._copy_object(src, key, target)
                created.append(target)
        except BaseException:
            await self._delete_keys(dst, created)
            raise
        return keys

    async def move(self, src: ResolvedPath, dst: ResolvedPath) -> None:
        keys = await self._copy(src, dst)
        await self._delete_keys(src, keys)
        logger.info(f"Moved {src} to {dst}")

    async def copy(self, src: ResolvedPath, dst: ResolvedPath) -> None:
        await self._copy(src, dst)
        logger.info(f"Copied {src} to {dst}")
