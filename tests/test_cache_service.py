import pytest

from waiver_wire.services.cache_service import TTLCache


@pytest.fixture
def cache(clock):
    return TTLCache(default_ttl=60.0, max_size=3, name="test", clock=clock)


def test_entry_visible_before_ttl_and_absent_after(cache, clock):
    cache.set("k", "v", ttl=0.1)

    clock.advance(0.05)
    assert cache.get("k") == "v"

    clock.advance(0.10)
    assert cache.get("k") is None
    assert not cache.has("k")


def test_expired_read_counts_as_miss_and_purges(cache, clock):
    cache.set("k", 1, ttl=1)
    clock.advance(2)

    assert cache.get("k") is None
    stats = cache.stats()
    assert stats['misses'] == 1
    assert stats['size'] == 0


def test_stale_read_ignores_expiry(cache, clock):
    cache.set("k", [1, 2], ttl=1)
    clock.advance(10)

    assert cache.get_stale("k") == [1, 2]
    assert cache.get_stale("missing") is None


def test_values_are_copied_in_and_out(cache):
    original = {'players': ['a']}
    cache.set("k", original)
    original['players'].append('b')

    first = cache.get("k")
    first['players'].append('c')

    assert cache.get("k") == {'players': ['a']}


def test_overflow_evicts_least_accessed_entry(cache, clock):
    cache.set("a", 1)
    clock.advance(1)
    cache.set("b", 2)
    clock.advance(1)
    cache.set("c", 3)
    cache.get("a")
    cache.get("c")

    cache.set("d", 4)

    assert cache.has("a")
    assert not cache.has("b")
    assert cache.has("c")
    assert cache.has("d")
    assert cache.evictions == 1


def test_access_ties_evict_oldest_entry(cache, clock):
    for key in ("a", "b", "c"):
        cache.set(key, key)
        clock.advance(1)

    cache.set("d", "d")

    assert not cache.has("a")
    assert cache.size() == 3


def test_overflow_sweeps_expired_before_evicting(cache, clock):
    cache.set("short", 1, ttl=1)
    cache.set("b", 2)
    cache.set("c", 3)
    clock.advance(5)

    cache.set("d", 4)

    assert cache.evictions == 0
    assert cache.size() == 3
    assert cache.get("b") == 2


def test_replacing_existing_key_does_not_evict(cache):
    cache.set("a", 1)
    cache.set("b", 2)
    cache.set("c", 3)

    cache.set("a", 10)

    assert cache.size() == 3
    assert cache.get("a") == 10


def test_delete_clear_and_stats(cache):
    cache.set("a", 1)
    cache.set("b", 2)
    cache.get("a")
    cache.get("zzz")

    assert cache.delete("a") is True
    assert cache.delete("a") is False

    stats = cache.stats()
    assert stats['hits'] == 1
    assert stats['misses'] == 1
    assert stats['hit_rate'] == 50.0
    assert stats['size'] == 1
    assert stats['newest_entry'] is not None

    cache.clear()
    assert cache.size() == 0
    assert cache.stats()['oldest_entry'] is None


def test_rejects_non_positive_max_size():
    with pytest.raises(ValueError):
        TTLCache(max_size=0)


def test_stale_read_survives_expired_get(cache, clock):
    cache.set("k", "old", ttl=1)
    clock.advance(5)

    assert cache.get("k") is None
    assert cache.get_stale("k") == "old"

    cache.delete("k")
    assert cache.get_stale("k") is None


def test_zero_ttl_entry_is_never_fresh(cache, clock):
    cache.set("k", "v", ttl=0)

    assert cache.get("k") is None
    assert not cache.has("k")
    assert cache.get_stale("k") == "v"


def test_entry_expires_exactly_at_ttl(cache, clock):
    cache.set("k", "v", ttl=10)

    clock.advance(10)

    assert cache.get("k") is None
