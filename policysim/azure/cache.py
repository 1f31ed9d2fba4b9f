"""Per-run caches for remote objects.

One ``RunCache`` is created per evaluation run and passed explicitly to the
components that fetch remote state. Entries are write-once: the first value
stored for a key is kept, so a race where two workers load the same key
concurrently is harmless.
"""

import logging
import threading
from collections import defaultdict
from typing import Any, Callable, Dict, Hashable, Optional, Tuple


logger = logging.getLogger(__name__)


_MISSING = object()


class RunCache:
    """Thread-safe, namespaced, write-once cache."""

    # Namespaces used by the azure collaborators
    DEFINITIONS = "definitions"
    INITIATIVES = "initiatives"
    RESOURCES = "resources"
    SUPPLEMENTARY = "supplementary"
    API_VERSIONS = "api_versions"
    MANAGEMENT_GROUPS = "management_groups"

    def __init__(self):
        self._lock = threading.RLock()
        self._entries: Dict[str, Dict[Hashable, Any]] = defaultdict(dict)
        self._hits: Dict[str, int] = defaultdict(int)
        self._misses: Dict[str, int] = defaultdict(int)

    def get(self, namespace: str, key: Hashable, default: Any = None) -> Any:
        with self._lock:
            value = self._entries[namespace].get(key, _MISSING)
            if value is _MISSING:
                self._misses[namespace] += 1
                return default
            self._hits[namespace] += 1
            return value

    def put(self, namespace: str, key: Hashable, value: Any) -> Any:
        """Store a value unless the key is already populated; return the stored value."""
        with self._lock:
            existing = self._entries[namespace].get(key, _MISSING)
            if existing is not _MISSING:
                return existing
            self._entries[namespace][key] = value
            return value

    def contains(self, namespace: str, key: Hashable) -> bool:
        with self._lock:
            return key in self._entries[namespace]

    def get_or_load(self, namespace: str, key: Hashable, loader: Callable[[], Any]) -> Any:
        """Return the cached value or load, store and return it.

        The loader runs outside the lock so slow fetches for different keys
        do not serialize. Exceptions from the loader propagate and nothing is
        stored.
        """
        with self._lock:
            value = self._entries[namespace].get(key, _MISSING)
            if value is not _MISSING:
                self._hits[namespace] += 1
                return value
            self._misses[namespace] += 1

        loaded = loader()
        return self.put(namespace, key, loaded)

    def size(self, namespace: Optional[str] = None) -> int:
        with self._lock:
            if namespace is not None:
                return len(self._entries.get(namespace, {}))
            return sum(len(entries) for entries in self._entries.values())

    def get_stats(self) -> Dict[str, Dict[str, int]]:
        """Get per-namespace size, hit and miss counts."""
        with self._lock:
            namespaces = set(self._entries) | set(self._hits) | set(self._misses)
            return {
                namespace: {
                    "entries": len(self._entries.get(namespace, {})),
                    "hits": self._hits.get(namespace, 0),
                    "misses": self._misses.get(namespace, 0),
                }
                for namespace in sorted(namespaces)
            }


def cache_key(*parts: str) -> Tuple[str, ...]:
    """Build a case-insensitive composite key from ID-like strings."""
    return tuple((part or "").lower() for part in parts)
