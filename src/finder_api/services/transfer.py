"""
Upload / download pipeline and cross-storage transfers.

Everything here streams: bytes are pulled from one async iterator and pushed
into `write_stream` chunk by chunk, so memory stays bounded by the chunk
size whatever the file size.
"""

import asyncio
import itertools
import logging
import posixpath
from dataclasses import dataclass, field
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Tuple

from finder_api.errors import (
    BadRequest,
    Conflict,
    FinderError,
    IOFailure,
    IsADirectory,
    NotADirectory,
    SizeLimitExceeded,
)
from finder_api.storage.base import DirectoryEntry, StorageAdapter
from finder_api.storage.paths import PathResolver, ResolvedPath

logger = logging.getLogger(__name__)


async def with_idle_timeout(stream: AsyncIterable[bytes], timeout: float) -> AsyncIterator[bytes]:
    """
    Re-yield `stream`, failing with `IOFailure` when no chunk arrives for `timeout` seconds.
    """
    iterator = stream.__aiter__()
    try:
        while True:
            try:
                chunk = await asyncio.wait_for(iterator.__anext__(), timeout)
            except StopAsyncIteration:
                return
            except asyncio.TimeoutError:
                raise IOFailure(f"Transfer stalled for more than {timeout:g}s") from None
            yield chunk
    finally:
        aclose = getattr(iterator, "aclose", None)
        if aclose is not None:
            await aclose()


@dataclass
class UploadPart:
    """One file of a multipart request: its declared name and its body."""

    filename: str
    stream: AsyncIterable[bytes]


@dataclass
class UploadSession:
    """Byte accounting for a single uploaded file."""

    destination: ResolvedPath
    limit: int
    bytes_written: int = 0

    async def count(self, stream: AsyncIterable[bytes]) -> AsyncIterator[bytes]:
        async for chunk in stream:
            self.bytes_written += len(chunk)
            if self.bytes_written > self.limit:
                raise SizeLimitExceeded(
                    f"{self.destination.name} exceeds the {self.limit} byte upload limit"
                )
            yield chunk


@dataclass
class UploadReport:
    uploaded: List[DirectoryEntry] = field(default_factory=list)
    failed: List[Dict[str, Any]] = field(default_factory=list)
    errors: List[FinderError] = field(default_factory=list, repr=False)

    def raise_if_nothing_uploaded(self) -> None:
        """A request whose every file failed fails as a whole, with the first error."""
        if self.errors and not self.uploaded:
            error = self.errors[0]
            error.data = {"uploaded": [], "failed": list(self.failed)}
            raise error


async def unique_name(storage: StorageAdapter, target: ResolvedPath, is_directory: bool = False) -> ResolvedPath:
    """
    Return `target` if it is free, else the first free `name (n).ext` next to it.

    Directory names have no extension: `v1.2` becomes `v1.2 (1)`.
    """
    if not await storage.exists(target):
        return target
    if is_directory:
        stem, ext = target.name, ""
    else:
        stem, ext = posixpath.splitext(target.name)
    parent = target.parent
    for n in itertools.count(1):
        name = f"{stem} ({n}){ext}"
        candidate = ResolvedPath(target.storage, f"{parent.key}/{name}" if parent.key else name)
        if not await storage.exists(candidate):
            return candidate


async def require_directory(storage: StorageAdapter, directory: ResolvedPath) -> None:
    entry = await storage.stat(directory)
    if not entry.is_directory:
        raise NotADirectory(f"Not a directory: {directory}")


async def save_upload(
    storage: StorageAdapter,
    resolver: PathResolver,
    directory: ResolvedPath,
    part: UploadPart,
    max_size: int,
    idle_timeout: float,
    overwrite: bool = False,
) -> DirectoryEntry:
    """
    Stream one uploaded file into `directory`.

    Raises:
        BadRequest: the part has no usable filename
        PathTraversal: the filename escapes `directory`
        SizeLimitExceeded: the body grew past `max_size`; nothing is left behind
    """
    if not part.filename:
        raise BadRequest("Uploaded file has no name")
    target = resolver.resolve_within(directory, part.filename)
    if target == directory:
        raise BadRequest(f"Invalid file name: {part.filename!r}")
    if not overwrite:
        target = await unique_name(storage, target)

    session = UploadSession(destination=target, limit=max_size)
    stream = session.count(with_idle_timeout(part.stream, idle_timeout))
    await storage.write_stream(target, stream, overwrite=overwrite)
    logger.info(f"Uploaded {session.bytes_written} bytes to {target}")
    return await storage.stat(target)


async def upload_parts(
    storage: StorageAdapter,
    resolver: PathResolver,
    directory: ResolvedPath,
    parts: List[UploadPart],
    max_size: int,
    idle_timeout: float,
    overwrite: bool = False,
) -> UploadReport:
    """Upload every part independently; one failing file does not stop the others."""
    await require_directory(storage, directory)
    report = UploadReport()
    for part in parts:
        try:
            entry = await save_upload(
                storage, resolver, directory, part, max_size, idle_timeout, overwrite=overwrite
            )
        except FinderError as e:
            logger.warning(f"Upload of {part.filename!r} into {directory} failed: {e}")
            report.failed.append({"name": part.filename, "error": e.code, "message": e.message})
            report.errors.append(e)
        else:
            report.uploaded.append(entry)
    return report


async def open_download(
    storage: StorageAdapter, path: ResolvedPath, idle_timeout: float
) -> Tuple[DirectoryEntry, AsyncIterator[bytes]]:
    """Metadata plus a guarded byte stream for `path`."""
    entry = await storage.stat(path)
    if entry.is_directory:
        raise IsADirectory(f"Is a directory: {path}")
    stream = await storage.read_stream(path)
    return entry, with_idle_timeout(stream, idle_timeout)


async def _copy_tree(
    src_storage: StorageAdapter, entry: DirectoryEntry, dst_storage: StorageAdapter, dst: ResolvedPath
) -> None:
    if not entry.is_directory:
        await dst_storage.write_stream(dst, await src_storage.read_stream(entry.path), overwrite=False)
        return
    await dst_storage.mkdir(dst)
    if entry.is_link:
        logger.warning(f"Not following symlinked directory {entry.path}")
        return
    for child in await src_storage.list(entry.path):
        child_dst = ResolvedPath(dst.storage, f"{dst.key}/{child.name}" if dst.key else child.name)
        await _copy_tree(src_storage, child, dst_storage, child_dst)


async def transfer(
    src_storage: StorageAdapter,
    src: ResolvedPath,
    dst_storage: StorageAdapter,
    dst: ResolvedPath,
    remove_source: bool = False,
) -> None:
    """
    Copy or move `src` to `dst` across two storages as a read-then-write.

    A failure part way through removes whatever was created at `dst`.
    """
    entry = await src_storage.stat(src)
    if await dst_storage.exists(dst):
        raise Conflict(f"Path already exists: {dst}")
    try:
        await _copy_tree(src_storage, entry, dst_storage, dst)
    except BaseException:
        try:
            if await dst_storage.exists(dst):
                await dst_storage.delete(dst, recursive=True)
        except FinderError as cleanup_error:
            logger.error(f"Could not roll back partial transfer to {dst}: {cleanup_error}")
        raise
    if remove_source:
        await src_storage.delete(src, recursive=True)
    logger.info(f"{'Moved' if remove_source else 'Copied'} {src} to {dst}")
