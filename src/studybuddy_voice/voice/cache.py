"""
Bounded, TTL-based cache of synthesized premium audio.

Keys combine the model, the voice and a normalized prefix of the sanitized
text. Eviction is FIFO by insertion order, not LRU. Entries that look like a
vendor error envelope instead of audio are never served.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Callable, Optional

from .sanitizer import sanitize

logger = logging.getLogger("studybuddy-voice.voice.cache")


@dataclass
class CacheEntry:
    audio: bytes
    created_at: float


@dataclass
class AudioCacheStats:
    """Statistics for the audio cache.

    Attributes:
        total_entries: Number of entries currently in cache.
        hit_count: Number of successful lookups.
        miss_count: Number of failed lookups.
        expired_count: Entries dropped because their TTL elapsed.
        evicted_count: Entries dropped to stay within capacity.
        corrupted_count: Entries or payloads rejected as non-audio.
        hit_rate: Ratio of hits to total lookups (0.0-1.0).
    """
    total_entries: int
    hit_count: int
    miss_count: int
    expired_count: int
    evicted_count: int
    corrupted_count: int
    hit_rate: float


def is_corrupted(audio: Optional[bytes]) -> bool:
    """True if ``audio`` is empty or looks like a JSON error envelope."""
    if not audio:
        return True
    head = audio[:512].lstrip()
    if head[:1] in (b"{", b"["):
        return True
    return b'"audio_data"' in head or b'"error"' in head


class AudioCache:
    """Process-lifetime audio cache.

    Usage:
        cache = AudioCache(max_entries=100, ttl_seconds=1800)
        key = cache.make_key(text, "henry", "simba-multilingual")
        audio = cache.get(key)
        if audio is None:
            audio = await synthesize(...)
            cache.put(key, audio)
    """

    def __init__(
        self,
        max_entries: int = 100,
        ttl_seconds: float = 1800.0,
        key_prefix_chars: int = 200,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be at least 1")
        self.max_entries = max_entries
        self.ttl_seconds = ttl_seconds
        self.key_prefix_chars = key_prefix_chars
        self._clock = clock
        self._entries: OrderedDict[str, CacheEntry] = OrderedDict()

        self._hit_count = 0
        self._miss_count = 0
        self._expired_count = 0
        self._evicted_count = 0
        self._corrupted_count = 0

    def make_key(self, text: str, voice_id: str, model: str) -> str:
        normalized = sanitize(text).lower()[: self.key_prefix_chars]
        return f"{model}:{voice_id}:{normalized}"

    @property
    def size(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Optional[bytes]:
        """Return cached audio for ``key``, or None on miss.

        Expired entries are swept before the lookup, and a corrupted entry is
        evicted and reported as a miss.
        """
        self._sweep_expired()

        entry = self._entries.get(key)
        if entry is None:
            self._miss_count += 1
            return None

        if is_corrupted(entry.audio):
            del self._entries[key]
            self._corrupted_count += 1
            self._miss_count += 1
            logger.warning("Evicted corrupted cache entry %s", key[:60])
            return None

        self._hit_count += 1
        logger.debug("Cache hit: %s", key[:60])
        return entry.audio

    def put(self, key: str, audio: bytes) -> bool:
        """Store audio under ``key``.

        Re-putting an existing key moves it to the newest position with a
        fresh timestamp.

        Returns:
            False if the payload was refused as corrupted.
        """
        if is_corrupted(audio):
            self._corrupted_count += 1
            logger.warning("Refused to cache non-audio payload for %s", key[:60])
            return False

        self._entries.pop(key, None)
        self._entries[key] = CacheEntry(audio=audio, created_at=self._clock())

        while len(self._entries) > self.max_entries:
            oldest, _ = self._entries.popitem(last=False)
            self._evicted_count += 1
            logger.debug("Evicted oldest cache entry %s", oldest[:60])
        return True

    def invalidate(self, key: str) -> bool:
        return self._entries.pop(key, None) is not None

    def clear(self) -> int:
        count = len(self._entries)
        self._entries.clear()
        return count

    def _sweep_expired(self) -> int:
        now = self._clock()
        expired = [
            key for key, entry in self._entries.items()
            if now - entry.created_at > self.ttl_seconds
        ]
        for key in expired:
            del self._entries[key]
        self._expired_count += len(expired)
        return len(expired)

    def get_stats(self) -> AudioCacheStats:
        total = self._hit_count + self._miss_count
        return AudioCacheStats(
            total_entries=len(self._entries),
            hit_count=self._hit_count,
            miss_count=self._miss_count,
            expired_count=self._expired_count,
            evicted_count=self._evicted_count,
            corrupted_count=self._corrupted_count,
            hit_rate=self._hit_count / total if total > 0 else 0.0,
        )
