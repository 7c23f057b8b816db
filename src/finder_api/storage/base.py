"""
Storage adapter protocol and the data it speaks.

Backends implement `StorageAdapter` structurally: there is no shared base
class, each variant carries the full operation set on its own.
"""

import mimetypes
import posixpath
from dataclasses import dataclass
from typing import AsyncIterable, AsyncIterator, List, Optional, Protocol, runtime_checkable

from finder_api.storage.paths import ResolvedPath

DEFAULT_CHUNK_SIZE = 64 * 1024

ByteStream = AsyncIterator[bytes]


def guess_mime_type(name: str) -> str:
    """Best-effort MIME type derived from the file extension."""
    mime_type, _ = mimetypes.guess_type(name, strict=False)
    return mime_type or "application/octet-stream"


@dataclass(frozen=True)
class DirectoryEntry:
    """One file or directory as seen by a listing or stat call."""

    path: ResolvedPath
    is_directory: bool
    size: int
    last_modified: int
    mime_type: Optional[str] = None
    is_link: bool = False

    @property
    def name(self) -> str:
        return self.path.name

    @property
    def extension(self) -> Optional[str]:
        if self.is_directory:
            return None
        _, ext = posixpath.splitext(self.name)
        return ext[1:] or None

    @classmethod
    def for_file(
        cls, path: ResolvedPath, size: int, last_modified: float, is_link: bool = False
    ) -> "DirectoryEntry":
        return cls(
            path=path,
            is_directory=False,
            size=size,
            last_modified=int(last_modified),
            mime_type=guess_mime_type(path.name),
            is_link=is_link,
        )

    @classmethod
    def for_directory(
        cls, path: ResolvedPath, last_modified: float = 0, is_link: bool = False
    ) -> "DirectoryEntry":
        return cls(path=path, is_directory=True, size=0, last_modified=int(last_modified), is_link=is_link)


async def walk(storage: "StorageAdapter", path: ResolvedPath) -> AsyncIterator[DirectoryEntry]:
    """
    Yield every entry below `path`, depth first, parents before their children.

    Symlinked directories are yielded but not entered.
    """
    for entry in await storage.list(path):
        yield entry
        if entry.is_directory and not entry.is_link:
            async for child in walk(storage, entry.path):
                yield child


@runtime_checkable
class StorageAdapter(Protocol):
    """
    Filesystem-like primitives over one backend.

    Every path argument is a `ResolvedPath` produced by the path resolver for
    this adapter's storage key.
    """

    name: str

    async def list(self, path: ResolvedPath) -> List[DirectoryEntry]:
        """
        List the direct children of a directory.

        Raises:
            NotFound: path does not exist
            NotADirectory: path is a file
        """
        ...

    async def stat(self, path: ResolvedPath) -> DirectoryEntry:
        """
        Raises:
            NotFound: path does not exist
        """
        ...

    async def exists(self, path: ResolvedPath) -> bool:
        ...

    async def read_stream(self, path: ResolvedPath) -> ByteStream:
        """
        Validate `path` and return a lazy, single-pass iterator over its bytes.

        Raises:
            NotFound: path does not exist
            IsADirectory: path is a directory
        """
        ...

    async def write_stream(
        self, path: ResolvedPath, stream: AsyncIterable[bytes], overwrite: bool = False
    ) -> int:
        """
        Consume `stream` into `path` and return the number of bytes written.

        The write is all-or-nothing: a failed or cancelled write never leaves a
        truncated file under `path`.

        Raises:
            Conflict: path exists and overwrite is false (stream left unconsumed)
            IsADirectory: a directory occupies path
        """
        ...

    async def mkdir(self, path: ResolvedPath) -> None:
        """
        Create a directory and any missing parents. Succeeds if it already exists.

        Raises:
            Conflict: a file occupies path
        """
        ...

    async def delete(self, path: ResolvedPath, recursive: bool = False) -> None:
        """
        Raises:
            NotFound: path does not exist
            DirectoryNotEmpty: non-recursive delete of a non-empty directory
        """
        ...

    async def rename(self, src: ResolvedPath, dst: ResolvedPath) -> None:
        """
        Rename within the same directory.

        Raises:
            BadRequest: src and dst have different parents
            NotFound: src does not exist
            Conflict: dst exists
        """
        ...

    async def move(self, src: ResolvedPath, dst: ResolvedPath) -> None:
        """
        Raises:
            NotFound: src does not exist
            Conflict: dst exists
            BadRequest: a directory would be moved into itself
        """
        ...

    async def copy(self, src: ResolvedPath, dst: ResolvedPath) -> None:
        """
        Copy a file or, recursively, a directory.

        Raises:
            NotFound: src does not exist
            Conflict: dst exists
        """
        ...

    async def check(self) -> bool:
        """Whether the backend root is reachable."""
        ...
