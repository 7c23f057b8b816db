"""
Archive engine: streaming zip creation and guarded extraction.

Both directions go through storage adapter primitives only, so they work the
same on every backend.
"""

import asyncio
import logging
import re
import tempfile
import time
import zipfile
import zlib
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Dict, List, Tuple

from finder_api.errors import (
    BadRequest,
    Conflict,
    FinderError,
    IsADirectory,
    NotADirectory,
    SizeLimitExceeded,
)
from finder_api.storage.base import DEFAULT_CHUNK_SIZE, DirectoryEntry, StorageAdapter, walk
from finder_api.storage.paths import PathResolver, ResolvedPath

logger = logging.getLogger(__name__)

# Archives up to this size are unpacked from memory, bigger ones spill to disk.
SPOOL_MAX_SIZE = 16 * 1024 * 1024
_DRIVE_PREFIX = re.compile(r"^[A-Za-z]:")
_S_IFMT = 0o170000
_S_IFLNK = 0o120000


class _StreamSink:
    """Write-only file object; zipfile treats it as unseekable and streams into it."""

    def __init__(self):
        self._chunks: List[bytes] = []

    def write(self, data) -> int:
        self._chunks.append(bytes(data))
        return len(data)

    def flush(self) -> None:
        pass

    def drain(self) -> bytes:
        data = b"".join(self._chunks)
        self._chunks.clear()
        return data


def _zip_time(timestamp: float) -> Tuple[int, int, int, int, int, int]:
    date_time = time.localtime(timestamp)[:6]
    # The zip format cannot represent anything before 1980.
    return date_time if date_time[0] >= 1980 else (1980, 1, 1, 0, 0, 0)


async def _members(
    storage: StorageAdapter, sources: List[ResolvedPath]
) -> AsyncIterator[Tuple[str, DirectoryEntry]]:
    seen = set()
    for source in sources:
        entry = await storage.stat(source)
        base = entry.name
        if base in seen:
            logger.warning(f"Skipping {source}: an entry named {base!r} is already archived")
            continue
        seen.add(base)
        yield base, entry
        if entry.is_directory:
            async for child in walk(storage, source):
                yield f"{base}/{child.path.relative_to(source)}", child


async def iter_zip(storage: StorageAdapter, sources: List[ResolvedPath]) -> AsyncIterator[bytes]:
    """
    Produce a zip archive of `sources` as a byte stream.

    Entries are compressed one after another while their source streams are
    read; only the compressed bytes of the current chunk are held in memory.
    """
    sink = _StreamSink()
    with zipfile.ZipFile(sink, mode="w", compression=zipfile.ZIP_DEFLATED, allowZip64=True) as zf:
        async for arcname, entry in _members(storage, sources):
            if entry.is_directory:
                info = zipfile.ZipInfo(f"{arcname}/", date_time=_zip_time(entry.last_modified))
                info.external_attr = (0o40755 << 16) | 0x10
                zf.writestr(info, b"")
            else:
                info = zipfile.ZipInfo(arcname, date_time=_zip_time(entry.last_modified))
                info.compress_type = zipfile.ZIP_DEFLATED
                info.external_attr = 0o644 << 16
                # Lets zipfile decide on zip64 headers before the size is known for sure
                info.file_size = entry.size
                with zf.open(info, mode="w") as dest:
                    async for chunk in await storage.read_stream(entry.path):
                        dest.write(chunk)
                        data = sink.drain()
                        if data:
                            yield data
            data = sink.drain()
            if data:
                yield data
    data = sink.drain()
    if data:
        yield data


async def create_archive(
    storage: StorageAdapter, sources: List[ResolvedPath], destination: ResolvedPath
) -> DirectoryEntry:
    """
    Zip `sources` into `destination`, all in the same storage.

    Raises:
        BadRequest: no sources, or a source from another storage
        NotFound: a source does not exist
        Conflict: destination already exists
    """
    if not sources:
        raise BadRequest("Nothing to archive")
    for source in sources:
        if source.storage != destination.storage:
            raise BadRequest(f"{source} is not in storage {destination.storage!r}")
        if source.is_root:
            raise BadRequest("The storage root cannot be archived")
        await storage.stat(source)
    if await storage.exists(destination):
        raise Conflict(f"Archive already exists: {destination}")

    written = await storage.write_stream(destination, iter_zip(storage, sources), overwrite=False)
    logger.info(f"Archived {len(sources)} item(s) into {destination} ({written} bytes)")
    return await storage.stat(destination)


@dataclass
class ExtractionLimits:
    max_bytes: int
    max_entries: int
    chunk_size: int = DEFAULT_CHUNK_SIZE


@dataclass
class ExtractionResult:
    destination: ResolvedPath
    extracted: List[str] = field(default_factory=list)
    skipped: List[Dict[str, str]] = field(default_factory=list)

    def skip(self, name: str, reason: str) -> None:
        logger.warning(f"Skipping archive entry {name!r}: {reason}")
        self.skipped.append({"name": name, "reason": reason})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "destination": self.destination.qualified,
            "extracted": list(self.extracted),
            "skipped": list(self.skipped),
        }


def _unsafe_reason(info: zipfile.ZipInfo) -> str:
    name = info.filename
    if name.startswith(("/", "\\")) or _DRIVE_PREFIX.match(name):
        return "absolute path"
    if (info.external_attr >> 16) & _S_IFMT == _S_IFLNK:
        return "symbolic link"
    return ""


async def extract_archive(
    storage: StorageAdapter,
    resolver: PathResolver,
    archive: ResolvedPath,
    destination: ResolvedPath,
    limits: ExtractionLimits,
) -> ExtractionResult:
    """
    Unpack `archive` into `destination`.

    Unsafe entries (zip-slip, absolute names, symlinks) and entries whose
    target already exists are skipped and reported; the rest are extracted.

    Raises:
        BadRequest: archive is not a readable zip file
        SizeLimitExceeded: the byte or entry ceiling was crossed. Entries
            written so far stay in place and are listed in the error's `data`.
    """
    stream = await storage.read_stream(archive)
    with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE) as spool:
        async for chunk in stream:
            await asyncio.to_thread(spool.write, chunk)
        spool.seek(0)
        try:
            zf = zipfile.ZipFile(spool)
        except zipfile.BadZipFile as e:
            raise BadRequest(f"{archive.name} is not a valid zip archive") from e

        with zf:
            await storage.mkdir(destination)
            result = ExtractionResult(destination)
            total_bytes = 0

            async def entry_stream(info: zipfile.ZipInfo) -> AsyncIterator[bytes]:
                nonlocal total_bytes
                with zf.open(info) as src:
                    while True:
                        chunk = await asyncio.to_thread(src.read, limits.chunk_size)
                        if not chunk:
                            break
                        total_bytes += len(chunk)
                        if total_bytes > limits.max_bytes:
                            raise SizeLimitExceeded(
                                f"Archive expands past the {limits.max_bytes} byte extraction limit"
                            )
                        yield chunk

            for index, info in enumerate(zf.infolist(), start=1):
                name = info.filename
                if index > limits.max_entries:
                    raise SizeLimitExceeded(
                        f"Archive holds more than {limits.max_entries} entries", data=result.to_dict()
                    )
                reason = _unsafe_reason(info)
                if reason:
                    result.skip(name, reason)
                    continue
                try:
                    target = resolver.resolve_within(destination, name)
                except FinderError:
                    result.skip(name, "escapes destination")
                    continue
                if target == destination:
                    result.skip(name, "empty name")
                    continue

                try:
                    if info.is_dir():
                        await storage.mkdir(target)
                    else:
                        await storage.write_stream(target, entry_stream(info), overwrite=False)
                except SizeLimitExceeded as e:
                    e.data = result.to_dict()
                    raise
                except (Conflict, NotADirectory, IsADirectory) as e:
                    result.skip(name, e.message)
                    continue
                except (zipfile.BadZipFile, zlib.error, EOFError) as e:
                    result.skip(name, f"corrupt entry: {e}")
                    continue
                except (NotImplementedError, RuntimeError) as e:
                    # Encrypted entries and unknown compression methods
                    result.skip(name, f"unsupported entry: {e}")
                    continue
                result.extracted.append(name)

    logger.info(
        f"Extracted {len(result.extracted)} entries from {archive} into {destination}, "
        f"skipped {len(result.skipped)}"
    )
    return result
