"""Local filesystem storage backend."""

import asyncio
import contextlib
import logging
import os
import shutil
import stat
from pathlib import Path
from typing import AsyncIterable, Iterator, List, Optional
from uuid import uuid4

import aiofiles
import aiofiles.os

from finder_api.errors import (
    BadRequest,
    Conflict,
    DirectoryNotEmpty,
    IOFailure,
    IsADirectory,
    NotADirectory,
    NotFound,
    PathTraversal,
)
from finder_api.storage.base import DEFAULT_CHUNK_SIZE, ByteStream, DirectoryEntry
from finder_api.storage.paths import ResolvedPath

logger = logging.getLogger(__name__)

# In-flight writes live next to their destination under this prefix and are
# never listed.
TEMP_PREFIX = ".~finder-"


@contextlib.contextmanager
def _translate_os_errors(path: ResolvedPath) -> Iterator[None]:
    try:
        yield
    except FileNotFoundError as e:
        raise NotFound(f"Path not found: {path}") from e
    except NotADirectoryError as e:
        raise NotADirectory(f"Not a directory: {path}") from e
    except IsADirectoryError as e:
        raise IsADirectory(f"Is a directory: {path}") from e
    except FileExistsError as e:
        raise Conflict(f"Path already exists: {path}") from e
    except OSError as e:
        logger.error(f"I/O error on {path}: {e}")
        raise IOFailure(f"I/O error on {path}: {e.strerror or e}") from e


class LocalStorage:
    """Stores files below a root directory on the local disk."""

    def __init__(self, name: str, root: str, chunk_size: int = DEFAULT_CHUNK_SIZE):
        self.name = name
        self.root = Path(root).expanduser().resolve()
        self.chunk_size = chunk_size

    def __repr__(self) -> str:
        return f"LocalStorage(name={self.name!r}, root={str(self.root)!r})"

    def _contains(self, fs_path: Path) -> bool:
        real = Path(os.path.realpath(fs_path))
        return real == self.root or self.root in real.parents

    def _fs_path(self, path: ResolvedPath) -> Path:
        if path.storage != self.name:
            raise BadRequest(f"{path} does not belong to storage {self.name!r}")
        fs_path = self.root.joinpath(*path.parts)
        # Symlinks below the root may point anywhere; follow them before trusting the path.
        if not self._contains(fs_path):
            raise PathTraversal(f"Path escapes storage root: {path}")
        return fs_path

    @staticmethod
    def _entry(path: ResolvedPath, st: os.stat_result, is_link: bool = False) -> DirectoryEntry:
        if stat.S_ISDIR(st.st_mode):
            return DirectoryEntry.for_directory(path, st.st_mtime, is_link=is_link)
        return DirectoryEntry.for_file(path, st.st_size, st.st_mtime, is_link=is_link)

    async def _try_stat(self, fs_path: Path) -> Optional[os.stat_result]:
        try:
            return await aiofiles.os.stat(fs_path)
        except FileNotFoundError:
            return None

    async def _stat(self, path: ResolvedPath, fs_path: Path) -> os.stat_result:
        with _translate_os_errors(path):
            return await aiofiles.os.stat(fs_path)

    async def check(self) -> bool:
        return await aiofiles.os.path.isdir(self.root)

    async def list(self, path: ResolvedPath) -> List[DirectoryEntry]:
        fs_path = self._fs_path(path)
        st = await self._stat(path, fs_path)
        if not stat.S_ISDIR(st.st_mode):
            raise NotADirectory(f"Not a directory: {path}")

        entries = []
        with _translate_os_errors(path):
            names = await aiofiles.os.listdir(fs_path)
        for name in sorted(names):
            if name.startswith(TEMP_PREFIX):
                continue
            child_fs = fs_path / name
            if not self._contains(child_fs):
                continue
            # Entries may vanish between listdir and stat
            child_st = await self._try_stat(child_fs)
            if child_st is None:
                continue
            child = ResolvedPath(self.name, f"{path.key}/{name}" if path.key else name)
            is_link = await aiofiles.os.path.islink(child_fs)
            entries.append(self._entry(child, child_st, is_link=is_link))
        return entries

    async def stat(self, path: ResolvedPath) -> DirectoryEntry:
        fs_path = self._fs_path(path)
        return self._entry(path, await self._stat(path, fs_path))

    async def exists(self, path: ResolvedPath) -> bool:
        return await self._try_stat(self._fs_path(path)) is not None

    async def read_stream(self, path: ResolvedPath) -> ByteStream:
        fs_path = self._fs_path(path)
        st = await self._stat(path, fs_path)
        if stat.S_ISDIR(st.st_mode):
            raise IsADirectory(f"Is a directory: {path}")
        return self._iter_file(path, fs_path)

    async def _iter_file(self, path: ResolvedPath, fs_path: Path) -> ByteStream:
        with _translate_os_errors(path):
            async with aiofiles.open(fs_path, "rb") as f:
                while True:
                    chunk = await f.read(self.chunk_size)
                    if not chunk:
                        break
                    yield chunk

    async def write_stream(
        self, path: ResolvedPath, stream: AsyncIterable[bytes], overwrite: bool = False
    ) -> int:
        fs_path = self._fs_path(path)
        if path.is_root:
            raise IsADirectory("Cannot write over the storage root")
        existing = await self._try_stat(fs_path)
        if existing is not None:
            if stat.S_ISDIR(existing.st_mode):
                raise IsADirectory(f"Is a directory: {path}")
            if not overwrite:
                raise Conflict(f"Path already exists: {path}")

        with _translate_os_errors(path.parent):
            await aiofiles.os.makedirs(fs_path.parent, exist_ok=True)

        temp_path = fs_path.parent / f"{TEMP_PREFIX}{uuid4().hex}.part"
        written = 0
        with _translate_os_errors(path):
            try:
                async with aiofiles.open(temp_path, "wb") as f:
                    async for chunk in stream:
                        await f.write(chunk)
                        written += len(chunk)
                if not overwrite and await aiofiles.os.path.exists(fs_path):
                    raise Conflict(f"Path already exists: {path}")
                await aiofiles.os.replace(temp_path, fs_path)
            except BaseException:
                # Includes cancellation: nothing partial may stay behind.
                with contextlib.suppress(FileNotFoundError):
                    await aiofiles.os.remove(temp_path)
                raise
        logger.info(f"Wrote {written} bytes to {path}")
        return written

    async def mkdir(self, path: ResolvedPath) -> None:
        fs_path = self._fs_path(path)
        existing = await self._try_stat(fs_path)
        if existing is not None:
            if stat.S_ISDIR(existing.st_mode):
                return
            raise Conflict(f"A file already exists at {path}")
        with _translate_os_errors(path):
            await aiofiles.os.makedirs(fs_path, exist_ok=True)
        logger.info(f"Created directory {path}")

    async def delete(self, path: ResolvedPath, recursive: bool = False) -> None:
        if path.is_root:
            raise BadRequest("Cannot delete the storage root")
        fs_path = self._fs_path(path)
        st = await self._stat(path, fs_path)
        with _translate_os_errors(path):
            if stat.S_ISDIR(st.st_mode):
                if recursive:
                    await asyncio.to_thread(shutil.rmtree, fs_path)
                elif await aiofiles.os.listdir(fs_path):
                    raise DirectoryNotEmpty(f"Directory is not empty: {path}")
                else:
                    await aiofiles.os.rmdir(fs_path)
            else:
                await aiofiles.os.remove(fs_path)
        logger.info(f"Deleted {path}")

    async def rename(self, src: ResolvedPath, dst: ResolvedPath) -> None:
        if src.parent != dst.parent:
            raise BadRequest("Rename must stay within the same directory")
        await self.move(src, dst)

    async def _prepare_transfer(self, src: ResolvedPath, dst: ResolvedPath) -> os.stat_result:
        if src.is_root or dst.is_root:
            raise BadRequest("The storage root cannot be moved or replaced")
        st = await self._stat(src, self._fs_path(src))
        if await self.exists(dst):
            raise Conflict(f"Path already exists: {dst}")
        if stat.S_ISDIR(st.st_mode) and dst.is_within(src):
            raise BadRequest(f"Cannot place {src} inside itself")
        with _translate_os_errors(dst.parent):
            await aiofiles.os.makedirs(self._fs_path(dst.parent), exist_ok=True)
        return st

    async def move(self, src: ResolvedPath, dst: ResolvedPath) -> None:
        await self._prepare_transfer(src, dst)
        with _translate_os_errors(src):
            await aiofiles.os.rename(self._fs_path(src), self._fs_path(dst))
        logger.info(f"Moved {src} to {dst}")

    async def copy(self, src: ResolvedPath, dst: ResolvedPath) -> None:
        st = await self._prepare_transfer(src, dst)
        if not stat.S_ISDIR(st.st_mode):
            await self.write_stream(dst, await self.read_stream(src), overwrite=False)
        else:
            dst_fs = self._fs_path(dst)
            try:
                with _translate_os_errors(dst):
                    await asyncio.to_thread(
                        shutil.copytree,
                        self._fs_path(src),
                        dst_fs,
                        symlinks=True,
                        ignore=shutil.ignore_patterns(f"{TEMP_PREFIX}*"),
                    )
            except BaseException:
                await asyncio.to_thread(shutil.rmtree, dst_fs, True)
                raise
        logger.info(f"Copied {src} to {dst}")
