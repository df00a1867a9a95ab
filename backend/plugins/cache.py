"""Step response cache.

Raw (decoded) response bodies keyed by instance, target, step and the
resolved request. Entries expire purely by age; there is no size bound
because the key space is bounded by configuration, not by traffic.
"""

import hashlib
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional


def build_cache_key(owner: str, step_id: str, url: str, body: str) -> str:
    """Key that changes whenever the resolved URL or body changes.

    Args:
        owner: Instance id plus target suffix (e.g. "wx1.0")
        step_id: Chain step id
        url: Resolved request URL
        body: Resolved request body
    """
    digest = hashlib.sha1(f"{url}|{body}".encode("utf-8")).hexdigest()[:16]
    return f"{owner}_{step_id}_{digest}"


@dataclass
class CacheEntry:
    raw: str
    stored_at: float
    instance_id: str = ""


class StepCache:
    """TTL cache of raw step responses."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}

    def get(self, key: str, cache_minutes: int) -> Optional[str]:
        """Return a live entry, or None on miss, expiry or caching disabled."""
        if cache_minutes == 0:
            return None
        entry = self._entries.get(key)
        if entry is None:
            return None
        if cache_minutes > 0 and self._clock() - entry.stored_at >= cache_minutes * 60:
            self._entries.pop(key, None)
            return None
        return entry.raw

    def put(self, key: str, raw: str, instance_id: str = "") -> None:
        self._entries[key] = CacheEntry(raw=raw, stored_at=self._clock(), instance_id=instance_id)

    def clear(self, instance_id: Optional[str] = None) -> int:
        """Drop everything, or only the entries stored for ``instance_id``."""
        if not instance_id:
            count = len(self._entries)
            self._entries.clear()
            return count
        stale = [k for k, entry in self._entries.items() if entry.instance_id == instance_id]
        for k in stale:
            del self._entries[k]
        return len(stale)

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return key in self._entries
