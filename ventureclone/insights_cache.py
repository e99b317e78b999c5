"""In-memory TTL cache for technology insights, keyed by technology set."""
from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Sequence

from ventureclone.config import get_settings
from ventureclone.schemas import TechnologyInsights

log = logging.getLogger(__name__)

COMMON_TECH_PATTERNS: tuple[tuple[str, ...], ...] = (
    ("React", "Node.js", "PostgreSQL"),
    ("Next.js", "Vercel", "Supabase"),
    ("Vue.js", "Express", "MongoDB"),
    ("Angular", "NestJS", "MySQL"),
    ("Svelte", "Firebase", "Firestore"),
)


@dataclass
class CachedInsights:
    insights: TechnologyInsights
    timestamp: float
    source: str


def cache_key(technologies: Sequence[str]) -> str:
    """Order- and case-insensitive key: ``["React", " node.js"]`` -> ``node.js|react``."""
    return "|".join(sorted(t.lower().strip() for t in technologies))


class InsightsCache:
    """Entries expire lazily on read; ``clear_expired`` sweeps the rest."""

    def __init__(self, ttl: float | None = None, clock: Callable[[], float] = time.time):
        self.ttl = ttl if ttl is not None else get_settings().insights_cache_ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._entries: dict[str, CachedInsights] = {}
        self._hits = 0
        self._misses = 0
        self._evictions = 0

    def __len__(self) -> int:
        return len(self._entries)

    def _expired(self, entry: CachedInsights, now: float) -> bool:
        return now - entry.timestamp > self.ttl

    def get(self, technologies: Sequence[str]) -> TechnologyInsights | None:
        key = cache_key(technologies)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                self._misses += 1
                log.debug("Insights cache miss: %s", key[:50])
                return None
            now = self._clock()
            if self._expired(entry, now):
                del self._entries[key]
                self._evictions += 1
                self._misses += 1
                log.debug("Insights cache entry expired after %ds: %s",
                          int(now - entry.timestamp), key[:50])
                return None
            self._hits += 1
            return entry.insights

    def set(self, technologies: Sequence[str], insights: TechnologyInsights, source: str) -> None:
        with self._lock:
            self._entries[cache_key(technologies)] = CachedInsights(insights, self._clock(), source)

    def has(self, technologies: Sequence[str]) -> bool:
        """True when a live entry exists. Does not touch the statistics."""
        with self._lock:
            entry = self._entries.get(cache_key(technologies))
            return entry is not None and not self._expired(entry, self._clock())

    def entry_age(self, technologies: Sequence[str]) -> float | None:
        with self._lock:
            entry = self._entries.get(cache_key(technologies))
            return None if entry is None else self._clock() - entry.timestamp

    def clear(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
        log.info("Cleared %d insights cache entries", count)

    def clear_expired(self) -> int:
        now = self._clock()
        with self._lock:
            stale = [k for k, e in self._entries.items() if self._expired(e, now)]
            for key in stale:
                del self._entries[key]
            self._evictions += len(stale)
        if stale:
            log.info("Cleared %d expired insights cache entries", len(stale))
        return len(stale)

    def stats(self) -> dict[str, float | int]:
        with self._lock:
            total = self._hits + self._misses
            return {
                "hits": self._hits,
                "misses": self._misses,
                "evictions": self._evictions,
                "size": len(self._entries),
                "hitRate": round(self._hits / total, 2) if total else 0,
            }

    def reset_stats(self) -> None:
        with self._lock:
            self._hits = self._misses = self._evictions = 0

    def warm(self, generate: Callable[[list[str]], TechnologyInsights],
             patterns: Sequence[Sequence[str]] = COMMON_TECH_PATTERNS) -> int:
        """Pre-populate *patterns* that are not cached yet. Returns how many were added.

        A failing pattern is logged and skipped.
        """
        start = time.monotonic()
        warmed = 0
        for pattern in patterns:
            techs = list(pattern)
            if self.has(techs):
                continue
            try:
                insights = generate(techs)
            except Exception:
                log.exception("Failed to warm insights cache for %s", ", ".join(techs))
                continue
            self.set(techs, insights, "cache-warming")
            warmed += 1
        log.info("Insights cache warming added %d entries in %.0fms",
                 warmed, (time.monotonic() - start) * 1000)
        return warmed


insights_cache = InsightsCache()
