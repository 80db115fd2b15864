"""TTL cache for registry metadata.

Two layers: an in-process mapping of parsed ``PackageMetadata`` and the
store's ``metadata/`` directory holding raw packuments. Entries are never
mutated once cached; a refresh replaces them.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Dict, Generic, Optional, TypeVar

from store.content_store import ContentStore
from .types import PackageMetadata

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class CacheEntry(Generic[T]):
    """A single cache entry with TTL."""

    value: T
    expires_at: float
    created_at: float = field(default_factory=time.time)

    def is_expired(self) -> bool:
        """Check if this entry has expired."""
        return time.time() > self.expires_at


class MetadataCache:
    """Memory and disk TTL cache for package metadata.

    With ``offline`` set, disk entries are served regardless of age.
    """

    def __init__(
        self,
        store: Optional[ContentStore] = None,
        ttl: int = 300,
        offline: bool = False,
        max_entries: int = 10000,
    ):
        self._store = store
        self._ttl = ttl
        self._offline = offline
        self._max_entries = max_entries
        self._cache: Dict[str, CacheEntry[PackageMetadata]] = {}

    def get(self, name: str) -> Optional[PackageMetadata]:
        """Return fresh metadata for ``name`` or None."""
        entry = self._cache.get(name)
        if entry is not None:
            if not entry.is_expired() or self._offline:
                return entry.value
            del self._cache[name]

        if self._store is None:
            return None
        cached = self._store.read_metadata(name)
        if cached is None:
            return None
        packument, age = cached
        if age > self._ttl and not self._offline:
            logger.debug("Disk metadata for %s is stale (%.0fs old)", name, age)
            return None
        metadata = PackageMetadata.from_packument(name, packument)
        self._remember(name, metadata, max(self._ttl - age, 0.0))
        return metadata

    def set(self, name: str, metadata: PackageMetadata, persist: bool = True) -> None:
        """Cache ``metadata`` in memory and, when ``persist``, on disk."""
        self._remember(name, metadata, float(self._ttl))
        if persist and self._store is not None:
            self._store.write_metadata(name, metadata.to_packument())

    def _remember(self, name: str, metadata: PackageMetadata, ttl: float) -> None:
        self._cache[name] = CacheEntry(value=metadata, expires_at=time.time() + ttl)
        if len(self._cache) > self._max_entries:
            self._evict_oldest(self._max_entries // 10)

    def _evict_oldest(self, count: int) -> None:
        """Evict the oldest entries."""
        sorted_keys = sorted(self._cache.keys(), key=lambda k: self._cache[k].created_at)
        for key in sorted_keys[:count]:
            del self._cache[key]
