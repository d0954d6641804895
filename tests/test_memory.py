from packages.core.memory import ExpiringCache


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def test_value_expires_after_ttl():
    clock = FakeClock()
    cache = ExpiringCache(ttl=300.0, name="config", clock=clock)

    cache.set("user-1", {"useAI": True})
    clock.now += 299.0
    assert cache.get("user-1") == {"useAI": True}

    clock.now += 1.0
    assert cache.get("user-1") is None
    assert len(cache) == 0


def test_invalidate_removes_entry_early():
    cache = ExpiringCache(ttl=300.0)
    cache.set(("user-1", "5511"), [{"text": "hi"}])

    cache.invalidate(("user-1", "5511"))
    cache.invalidate(("user-1", "missing"))

    assert ("user-1", "5511") not in cache


def test_cleanup_expired_counts_removed_entries():
    clock = FakeClock()
    cache = ExpiringCache(ttl=10.0, clock=clock)
    cache.set("a", 1)
    clock.now += 5.0
    cache.set("b", 2)
    clock.now += 6.0

    assert cache.cleanup_expired() == 1
    assert cache.get("b") == 2


def test_falsy_values_are_cached():
    cache = ExpiringCache(ttl=10.0)
    cache.set("history", [])
    assert cache.get("history") == []


def test_unread_entries_are_swept_on_write():
    clock = FakeClock()
    cache = ExpiringCache(ttl=300.0, name="history", clock=clock)
    for ticket in range(50):
        cache.set(("user-1", f"55119{ticket:08d}"), [])

    clock.now += 301.0
    cache.set(("user-1", "5511999999999"), [])

    assert len(cache) == 1
