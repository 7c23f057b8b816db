"""
Public links: aliases that expose a storage sub-tree without the command protocol.
"""

import logging
from typing import Dict, Optional
from urllib.parse import quote

from finder_api.errors import NotFound
from finder_api.storage.base import DirectoryEntry
from finder_api.storage.paths import PathResolver, ResolvedPath

logger = logging.getLogger(__name__)

PUBLIC_PREFIX = "/public"


class PublicLinks:
    """Maps `alias -> base path` and back, e.g. `{"media": "local://public"}`."""

    def __init__(self, links: Dict[str, str], resolver: PathResolver, prefix: str = PUBLIC_PREFIX):
        self._resolver = resolver
        self._prefix = prefix.rstrip("/")
        self._bases: Dict[str, ResolvedPath] = {
            alias: resolver.resolve_qualified(target, "") for alias, target in links.items()
        }

    def __len__(self) -> int:
        return len(self._bases)

    def resolve(self, alias: str, relative: str) -> ResolvedPath:
        """
        Path of `relative` below the base of `alias`.

        Raises:
            NotFound: alias is not configured
            PathTraversal: relative climbs above the alias base
        """
        base = self._bases.get(alias)
        if base is None:
            raise NotFound(f"Unknown public link: {alias!r}")
        return self._resolver.resolve_within(base, relative)

    def url_for(self, entry: DirectoryEntry) -> Optional[str]:
        """Public URL of a file below a linked base, or None."""
        if entry.is_directory:
            return None
        for alias, base in self._bases.items():
            if entry.path.is_within(base) and entry.path != base:
                relative = entry.path.relative_to(base)
                return f"{self._prefix}/{quote(alias)}/{quote(relative)}"
        return None
