"""Response Cache, in-memory TTL cache for generation payloads.

Lookup is two-stage:
  1. Exact: SHA-256 of (scope, normalized prompt)
  2. Fuzzy: keyword overlap between the prompt and the head of each
     cached payload in the same scope

The fuzzy stage compares prompt words against generated *output*, not
against the earlier prompt, so two unrelated prompts can match when the
output happens to mention the same words. Callers that need strict
behavior can pass `fuzzy=False`.
"""

from __future__ import annotations

import hashlib
import logging
import re
import time
from collections.abc import Callable
from dataclasses import dataclass

from codeforge.core.metrics import CACHE_LOOKUPS

logger = logging.getLogger(__name__)

DEFAULT_CAPACITY = 200
DEFAULT_TTL_SECONDS = 3600.0
FUZZY_THRESHOLD = 0.70  # Strictly greater than this fraction of keywords must match
FUZZY_WINDOW = 200  # Leading payload characters searched by the fuzzy matcher
MIN_KEYWORD_LENGTH = 4

_WHITESPACE = re.compile(r"\s+")


def normalize_prompt(prompt: str) -> str:
    """Lowercase, trim and collapse internal whitespace."""
    return _WHITESPACE.sub(" ", prompt.strip().lower())


def cache_key(prompt: str, scope: str) -> str:
    return hashlib.sha256(f"{scope}:{normalize_prompt(prompt)}".encode("utf-8")).hexdigest()


def extract_keywords(prompt: str) -> list[str]:
    return [w for w in prompt.lower().split() if len(w) >= MIN_KEYWORD_LENGTH]


@dataclass
class CacheEntry:
    key: str
    scope: str
    payload: str
    created_at: float
    hit_count: int = 0
    provider_used: str = ""


class ResponseCache:
    """Bounded TTL cache with oldest-first eviction.

    All methods are synchronous: under a single event loop there is no
    suspension point inside them, so concurrent requests never observe a
    half-applied update. Last write wins for a shared key.
    """

    def __init__(
        self,
        capacity: int = DEFAULT_CAPACITY,
        ttl_seconds: float = DEFAULT_TTL_SECONDS,
        fuzzy_threshold: float = FUZZY_THRESHOLD,
        fuzzy_window: int = FUZZY_WINDOW,
        clock: Callable[[], float] = time.time,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self.ttl_seconds = ttl_seconds
        self.fuzzy_threshold = fuzzy_threshold
        self.fuzzy_window = fuzzy_window
        self._clock = clock
        self._entries: dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def _is_live(self, entry: CacheEntry, now: float) -> bool:
        return now - entry.created_at < self.ttl_seconds

    def lookup(self, prompt: str, scope: str, fuzzy: bool = True) -> CacheEntry | None:
        """Return the matching live entry (exact first, then fuzzy) or None."""
        now = self._clock()
        key = cache_key(prompt, scope)

        entry = self._entries.get(key)
        if entry is not None:
            if self._is_live(entry, now):
                entry.hit_count += 1
                CACHE_LOOKUPS.labels(result="exact").inc()
                logger.debug("Cache HIT (%d hits)", entry.hit_count)
                return entry
            # Expired entries are dropped lazily
            del self._entries[key]

        if fuzzy:
            similar = self._find_similar(prompt, scope, now)
            if similar is not None:
                similar.hit_count += 1
                CACHE_LOOKUPS.labels(result="fuzzy").inc()
                logger.debug("Cache SIMILAR HIT (%d hits)", similar.hit_count)
                return similar

        CACHE_LOOKUPS.labels(result="miss").inc()
        logger.debug("Cache MISS")
        return None

    def get(self, prompt: str, scope: str, fuzzy: bool = True) -> str | None:
        entry = self.lookup(prompt, scope, fuzzy=fuzzy)
        return entry.payload if entry else None

    def _find_similar(self, prompt: str, scope: str, now: float) -> CacheEntry | None:
        keywords = extract_keywords(prompt)
        if not keywords:
            return None

        for entry in self._entries.values():
            if entry.scope != scope or not self._is_live(entry, now):
                continue
            head = entry.payload[: self.fuzzy_window].lower()
            matches = sum(1 for w in keywords if w in head)
            if matches / len(keywords) > self.fuzzy_threshold:
                return entry
        return None

    def set(self, prompt: str, scope: str, payload: str, provider_used: str = "") -> CacheEntry:
        """Store a payload, evicting the oldest entry when full."""
        key = cache_key(prompt, scope)

        if key not in self._entries and len(self._entries) >= self.capacity:
            oldest_key = min(self._entries.items(), key=lambda kv: kv[1].created_at)[0]
            self._entries.pop(oldest_key, None)
            logger.debug("Cache full (%d), evicted oldest entry", self.capacity)

        entry = CacheEntry(
            key=key,
            scope=scope,
            payload=payload,
            created_at=self._clock(),
            provider_used=provider_used,
        )
        self._entries[key] = entry
        return entry

    def clear(self) -> int:
        """Drop every entry. Returns count of cleared entries."""
        count = len(self._entries)
        self._entries.clear()
        logger.info("Cache cleared (%d entries)", count)
        return count

    def stats(self) -> dict:
        now = self._clock()
        entries = list(self._entries.values())
        return {
            "size": len(entries),
            "capacity": self.capacity,
            "totalHits": sum(e.hit_count for e in entries),
            "avgAge": round(sum(now - e.created_at for e in entries) / len(entries), 1) if entries else 0,
        }
