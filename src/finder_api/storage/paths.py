"""
Path resolution: the only way untrusted input becomes a storage path.

Raw paths are normalized segment by segment *before* they are attached to a
storage root, so `..` can never climb above it.
"""

import re
from dataclasses import dataclass
from typing import Collection, List, Optional, Tuple

from finder_api.errors import BadRequest, PathTraversal, UnknownStorage

SCHEME_SEPARATOR = "://"
_QUALIFIED_PATH = re.compile(r"^(?P<storage>[A-Za-z0-9_.-]+)://(?P<path>.*)$", re.DOTALL)


@dataclass(frozen=True)
class ResolvedPath:
    """A validated path inside one storage. `key` is "" for the storage root."""

    storage: str
    key: str = ""

    @property
    def parts(self) -> List[str]:
        return self.key.split("/") if self.key else []

    @property
    def name(self) -> str:
        return self.key.rsplit("/", 1)[-1] if self.key else ""

    @property
    def is_root(self) -> bool:
        return not self.key

    @property
    def parent(self) -> "ResolvedPath":
        if not self.key:
            return self
        head = self.key.rsplit("/", 1)[0] if "/" in self.key else ""
        return ResolvedPath(self.storage, head)

    @property
    def qualified(self) -> str:
        """Wire form: `<storage>://<key>`."""
        return f"{self.storage}{SCHEME_SEPARATOR}{self.key}"

    def is_within(self, other: "ResolvedPath") -> bool:
        """True if self is `other` or lies below it."""
        if self.storage != other.storage:
            return False
        if other.is_root or self.key == other.key:
            return True
        return self.key.startswith(other.key + "/")

    def relative_to(self, other: "ResolvedPath") -> str:
        if not self.is_within(other):
            raise ValueError(f"{self.qualified} is not within {other.qualified}")
        if other.is_root:
            return self.key
        return self.key[len(other.key) + 1:]

    def __str__(self) -> str:
        return self.qualified


def split_qualified(raw: str) -> Tuple[Optional[str], str]:
    """Split `local://a/b` into ("local", "a/b"); unqualified paths give (None, raw)."""
    match = _QUALIFIED_PATH.match(raw)
    if match is None:
        return None, raw
    return match.group("storage"), match.group("path")


def _normalize(raw: str, base_parts: List[str]) -> List[str]:
    if "\x00" in raw:
        raise BadRequest("Path contains a NUL byte")
    parts = list(base_parts)
    floor = len(base_parts)
    for segment in raw.replace("\\", "/").split("/"):
        if segment in ("", "."):
            continue
        if segment == "..":
            if len(parts) <= floor:
                raise PathTraversal(f"Path escapes its root: {raw!r}")
            parts.pop()
            continue
        parts.append(segment)
    return parts


def validate_name(name: str) -> str:
    """A single path segment: no separators, not `.` or `..`."""
    if not name or not name.strip():
        raise BadRequest("Name must not be empty")
    if "/" in name or "\\" in name or "\x00" in name or name in (".", ".."):
        raise BadRequest(f"Invalid name: {name!r}")
    return name


class PathResolver:
    """Maps (storage key, raw path) to a `ResolvedPath`. Performs no I/O."""

    def __init__(self, storage_keys: Collection[str]):
        self._storage_keys = frozenset(storage_keys)

    def _check_storage(self, storage_key: str) -> None:
        if storage_key not in self._storage_keys:
            raise UnknownStorage(f"Unknown storage: {storage_key!r}")

    def resolve(self, storage_key: str, raw_path: Optional[str]) -> ResolvedPath:
        """
        Resolve `raw_path` inside `storage_key`.

        `raw_path` may carry a `<storage>://` prefix, which must name the same
        storage.

        Raises:
            UnknownStorage: storage_key is not configured
            PathTraversal: the path climbs above the storage root
            BadRequest: the path belongs to another storage or contains NUL
        """
        self._check_storage(storage_key)
        prefix, path = split_qualified(raw_path or "")
        if prefix is not None and prefix != storage_key:
            raise BadRequest(f"Path {raw_path!r} does not belong to storage {storage_key!r}")
        return ResolvedPath(storage_key, "/".join(_normalize(path, [])))

    def resolve_qualified(self, raw_path: Optional[str], default_storage: str) -> ResolvedPath:
        """Resolve a path whose `<storage>://` prefix, if any, selects the storage."""
        prefix, _ = split_qualified(raw_path or "")
        return self.resolve(prefix or default_storage, raw_path)

    def resolve_within(self, base: ResolvedPath, relative: str) -> ResolvedPath:
        """
        Resolve `relative` below `base`.

        Raises:
            PathTraversal: the result would leave `base`
        """
        self._check_storage(base.storage)
        return ResolvedPath(base.storage, "/".join(_normalize(relative, base.parts)))

    def child(self, base: ResolvedPath, name: str) -> ResolvedPath:
        """The direct child `name` of `base`; `name` must be a single segment."""
        validate_name(name)
        return self.resolve_within(base, name)
