import pytest

from ssrrelay.conncache import ConnectionCache, RemoteContext
from ssrrelay.udpheader import MAX_UDP_CONN_NUM


class _Sock:
    def __init__(self):
        self.close_calls = 0

    def close(self):
        self.close_calls += 1


class _Clock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def _remote(clock=None, timeout=10.0):
    return RemoteContext(
        sock=_Sock(), src_addr=("127.0.0.1", 5000), timeout=timeout, clock=clock or _Clock()
    )


def test_default_capacity_matches_limit():
    assert ConnectionCache().capacity == MAX_UDP_CONN_NUM


def test_insert_and_lookup():
    cache = ConnectionCache()
    remote = _remote()
    cache.insert("a", remote)
    assert cache.lookup("a") is remote
    assert cache.lookup("b") is None
    assert len(cache) == 1


def test_eviction_frees_least_recently_used():
    cache = ConnectionCache(capacity=2)
    a, b, c = _remote(), _remote(), _remote()
    cache.insert("a", a)
    cache.insert("b", b)
    assert cache.lookup("a") is a
    cache.insert("c", c)
    assert "b" not in cache
    assert b.closed and b.sock.close_calls == 1
    assert not a.closed and not c.closed


def test_replacing_key_frees_old_entry():
    cache = ConnectionCache()
    old, new = _remote(), _remote()
    cache.insert("k", old)
    cache.insert("k", new)
    assert old.closed
    assert cache.lookup("k") is new


def test_remove_closes_entry():
    cache = ConnectionCache()
    remote = _remote()
    cache.insert("k", remote)
    assert cache.remove("k") is True
    assert remote.closed
    assert cache.remove("k") is False


def test_expire_uses_idle_timeout():
    clock = _Clock(100.0)
    cache = ConnectionCache()
    idle, busy = _remote(clock), _remote(clock)
    cache.insert("idle", idle)
    cache.insert("busy", busy)
    clock.now = 105.0
    busy.touch()
    clock.now = 111.0
    assert cache.expire() == ["idle"]
    assert idle.closed and not busy.closed
    assert cache.expire(now=200.0) == ["busy"]
    assert len(cache) == 0


def test_touch_moves_deadline():
    clock = _Clock(0.0)
    remote = _remote(clock, timeout=30.0)
    first = remote.deadline
    clock.now = 12.0
    remote.touch()
    assert remote.deadline == first + 12.0


def test_close_is_idempotent():
    remote = _remote()
    remote.close()
    remote.close()
    assert remote.sock.close_calls == 1


def test_clear_frees_all_with_callback():
    freed = []
    cache = ConnectionCache(on_free=freed.append)
    remotes = [_remote() for _ in range(3)]
    for index, remote in enumerate(remotes):
        cache.insert(index, remote)
    cache.clear()
    assert freed == remotes
    assert len(cache) == 0


def test_invalid_capacity():
    with pytest.raises(ValueError):
        ConnectionCache(capacity=0)