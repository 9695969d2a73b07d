"""
Tests for the bounded TTL audio cache.
"""

import pytest

from studybuddy_voice.voice.cache import AudioCache, CacheEntry, is_corrupted

MP3 = b"ID3\x03\x00\x00\x00fake-mp3-frames"


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(clock):
    return AudioCache(max_entries=3, ttl_seconds=1800, key_prefix_chars=200, clock=clock)


class TestMakeKey:
    def test_key_format(self, cache):
        key = cache.make_key("Hello World", "henry", "simba-multilingual")
        assert key == "simba-multilingual:henry:hello world"

    def test_key_uses_sanitized_lowercase_text(self, cache):
        a = cache.make_key("**Hello**  World 🎉", "henry", "m")
        b = cache.make_key("hello world", "henry", "m")
        assert a == b

    def test_key_prefix_is_bounded(self, clock):
        cache = AudioCache(key_prefix_chars=10, clock=clock)
        key = cache.make_key("abcdefghijklmnopqrstuvwxyz", "v", "m")
        assert key == "m:v:abcdefghij"

    def test_voice_and_model_distinguish_keys(self, cache):
        assert cache.make_key("hi", "henry", "m") != cache.make_key("hi", "natasha", "m")
        assert cache.make_key("hi", "henry", "m1") != cache.make_key("hi", "henry", "m2")


class TestGetPut:
    def test_round_trip_within_ttl(self, cache, clock):
        assert cache.put("k", MP3) is True
        clock.advance(1799)
        assert cache.get("k") == MP3

    def test_miss_after_ttl(self, cache, clock):
        cache.put("k", MP3)
        clock.advance(1801)
        assert cache.get("k") is None
        assert cache.size == 0

    def test_get_sweeps_all_expired_entries(self, cache, clock):
        cache.put("old1", MP3)
        cache.put("old2", MP3)
        clock.advance(1000)
        cache.put("fresh", MP3)
        clock.advance(900)
        assert cache.get("fresh") == MP3
        assert cache.size == 1
        assert cache.get_stats().expired_count == 2

    def test_unknown_key_is_miss(self, cache):
        assert cache.get("nope") is None
        assert cache.get_stats().miss_count == 1

    def test_fifo_eviction(self, cache):
        for key in ("a", "b", "c", "d"):
            cache.put(key, MP3)
        assert cache.size == 3
        assert cache.get("a") is None
        assert cache.get("d") == MP3

    def test_eviction_is_not_lru(self, cache):
        for key in ("a", "b", "c"):
            cache.put(key, MP3)
        # Reading "a" does not protect it
        assert cache.get("a") == MP3
        cache.put("d", MP3)
        assert cache.get("a") is None
        assert cache.get("b") == MP3

    def test_reput_moves_to_newest(self, cache):
        for key in ("a", "b", "c"):
            cache.put(key, MP3)
        cache.put("a", MP3 + b"v2")
        cache.put("d", MP3)
        assert cache.get("a") == MP3 + b"v2"
        assert cache.get("b") is None

    def test_reput_refreshes_timestamp(self, cache, clock):
        cache.put("a", MP3)
        clock.advance(1500)
        cache.put("a", MP3)
        clock.advance(1500)
        assert cache.get("a") == MP3

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            AudioCache(max_entries=0)


class TestCorruption:
    @pytest.mark.parametrize("payload", [
        b"",
        b'{"error": "rate limited"}',
        b'  {"audio_data": "abc"}',
        b"[1, 2, 3]",
        b'xx "audio_data" yy',
    ])
    def test_is_corrupted(self, payload):
        assert is_corrupted(payload)

    def test_mp3_is_not_corrupted(self):
        assert not is_corrupted(MP3)
        assert not is_corrupted(b"\xff\xfb\x90\x00")

    def test_put_refuses_corrupted(self, cache):
        assert cache.put("k", b'{"audio_data": "..."}') is False
        assert cache.size == 0
        assert cache.get_stats().corrupted_count == 1

    def test_corrupted_entry_evicted_on_get(self, cache, clock):
        cache._entries["bad"] = CacheEntry(audio=b'{"error": "x"}', created_at=clock())
        assert cache.get("bad") is None
        assert cache.size == 0
        assert cache.get_stats().corrupted_count == 1


class TestMaintenance:
    def test_invalidate(self, cache):
        cache.put("k", MP3)
        assert cache.invalidate("k") is True
        assert cache.invalidate("k") is False
        assert cache.get("k") is None

    def test_clear(self, cache):
        cache.put("a", MP3)
        cache.put("b", MP3)
        assert cache.clear() == 2
        assert cache.size == 0

    def test_stats(self, cache):
        cache.put("a", MP3)
        cache.get("a")
        cache.get("missing")
        stats = cache.get_stats()
        assert stats.hit_count == 1
        assert stats.miss_count == 1
        assert stats.hit_rate == 0.5
        assert stats.total_entries == 1
