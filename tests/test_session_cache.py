from orgmigrate.services.session_cache import SessionCache


class Clock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_entries_expire_after_ttl():
    clock = Clock()
    cache = SessionCache(ttl_seconds=10, clock=clock)
    cache.set("org", "identity")

    clock.now = 10
    assert cache.get("org") == "identity"
    clock.now = 10.5
    assert cache.get("org") is None
    assert len(cache) == 0


def test_full_cache_evicts_oldest_half():
    clock = Clock()
    cache = SessionCache(ttl_seconds=100, max_size=4, clock=clock)
    for n in range(4):
        clock.now = n
        cache.set(f"k{n}", n)

    cache.set("k4", 4)

    assert cache.get("k0") is None
    assert cache.get("k1") is None
    assert [cache.get(k) for k in ("k2", "k3", "k4")] == [2, 3, 4]


def test_full_cache_drops_expired_entries_first():
    clock = Clock()
    cache = SessionCache(ttl_seconds=5, max_size=2, clock=clock)
    cache.set("old", 1)
    clock.now = 4
    cache.set("recent", 2)
    clock.now = 6

    cache.set("new", 3)

    assert len(cache) == 2
    assert cache.get("recent") == 2
    assert cache.get("new") == 3


def test_periodic_sweep():
    clock = Clock()
    cache = SessionCache(ttl_seconds=1, sweep_every=3, clock=clock)
    cache.set("a", 1)
    cache.set("b", 2)
    clock.now = 5

    cache.set("c", 3)

    assert len(cache) == 1


def test_delete_and_clear():
    cache = SessionCache()
    cache.set("a", 1)
    cache.set("b", 2)

    cache.delete("a")
    cache.delete("missing")
    assert cache.get("a") is None
    assert len(cache) == 1

    cache.clear()
    assert len(cache) == 0
    assert cache.sweep() == 0
