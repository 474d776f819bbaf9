# pricewatch/storage/result_cache.py

"""Short-TTL in-memory cache of scraper search results."""

import logging
import threading
import time
from dataclasses import dataclass

from pricewatch.config.settings import Settings
from pricewatch.models.product import ProductCandidate

logger = logging.getLogger("pricewatch.cache")


def normalise_keyword(keyword: str) -> str:
    """Lower-case and collapse whitespace so near-identical queries match."""
    return " ".join(keyword.lower().split())


@dataclass
class CacheEntry:
    """Cached candidates for one normalised keyword."""

    keyword: str
    results: list[ProductCandidate]
    timestamp: float


class ResultCache:
    """Per-scraper keyword cache absorbing bursts of repeated searches.

    Each scraper instance owns one cache; nothing is shared between
    scrapers.  Entries are copied in and out so ranking-stage writes on
    returned candidates never leak back into the cache.
    """

    def __init__(self, ttl: float | None = None) -> None:
        self._ttl: float = (
            Settings.RESULT_CACHE_TTL if ttl is None else ttl
        )
        self._entries: dict[str, CacheEntry] = {}
        self._lock = threading.Lock()

    def get(self, keyword: str) -> list[ProductCandidate] | None:
        """Return cached candidates for *keyword*, or ``None`` on miss."""
        key = normalise_keyword(keyword)
        now = time.monotonic()
        with self._lock:
            self._evict_expired(now)
            entry = self._entries.get(key)
            if entry is None:
                return None
            results = [c.copy() for c in entry.results]
        logger.debug(
            "Cache hit for '%s' (%d results)", key, len(results)
        )
        return results

    def store(
        self,
        keyword: str,
        results: list[ProductCandidate],
    ) -> None:
        """Cache *results* under the normalised *keyword*."""
        key = normalise_keyword(keyword)
        entry = CacheEntry(
            keyword=key,
            results=[c.copy() for c in results],
            timestamp=time.monotonic(),
        )
        with self._lock:
            self._entries[key] = entry
        logger.debug("Cached %d results for '%s'", len(results), key)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _evict_expired(self, now: float) -> None:
        """Remove entries older than the TTL.  Caller holds the lock."""
        expired = [
            key
            for key, entry in self._entries.items()
            if now - entry.timestamp >= self._ttl
        ]
        for key in expired:
            del self._entries[key]
        if expired:
            logger.debug("Evicted %d expired cache entries", len(expired))
