import time
from types import SimpleNamespace

from edusite import cache as cache_mod
from edusite.cache import (
    ResponseCache,
    build_registry,
    cached_response,
    free_test_key,
    profile_key,
    raw_envelope,
    top_users_envelope,
)


def test_set_get_until_ttl_then_miss(monkeypatch):
    c = ResponseCache('courses', ttl_seconds=60, key_fn='courses')
    c.set('courses', [{"title": "IELTS"}])
    entry = c.get('courses')
    assert entry is not None and entry.payload == [{"title": "IELTS"}]

    now = time.time()
    monkeypatch.setattr(cache_mod.time, "time", lambda: now + 59)
    assert c.get('courses') is not None
    monkeypatch.setattr(cache_mod.time, "time", lambda: now + 61)
    assert c.get('courses') is None
    # expired entries are not removed by get
    assert c.get_stats()['size'] == 1


def test_set_overwrites_and_refreshes_timestamp(monkeypatch):
    c = ResponseCache('news', ttl_seconds=10, key_fn='news')
    now = time.time()
    monkeypatch.setattr(cache_mod.time, "time", lambda: now)
    c.set('news', 1)
    monkeypatch.setattr(cache_mod.time, "time", lambda: now + 8)
    c.set('news', 2)
    monkeypatch.setattr(cache_mod.time, "time", lambda: now + 15)
    entry = c.get('news')
    assert entry is not None and entry.payload == 2


def test_invalidate_reports_whether_key_existed():
    c = ResponseCache('teachers', ttl_seconds=1200, key_fn='teachers')
    c.set('teachers', ['a'])
    assert c.invalidate('teachers') is True
    assert c.get('teachers') is None
    assert c.invalidate('teachers') is False
    stats = c.get_stats()
    assert stats['invalidations'] == 1
    assert stats['misses'] == 1


def test_key_functions():
    reg = build_registry()
    assert reg.resources['banners'].key_for(None) == 'banners'
    assert reg.top_users.key_for(None) == 'topUsers'
    req = SimpleNamespace(path_params={"id": 7}, state=SimpleNamespace(user=SimpleNamespace(email="a@b.c")))
    assert reg.tests.key_for(req) == free_test_key(7) == 'test-7'
    assert reg.profiles.key_for(req) == profile_key("a@b.c") == 'profile:a@b.c'


def test_registry_ttls_and_independence():
    reg = build_registry(ttl_minutes=20, profile_ttl_minutes=5)
    assert reg.tests.ttl_seconds == 1200
    assert reg.profiles.ttl_seconds == 300
    reg.tests.set('test-1', {"id": 1})
    reg.top_users.set('topUsers', [])
    reg.tests.invalidate('test-1')
    assert reg.top_users.get('topUsers') is not None
    stats = reg.get_stats()
    assert set(stats) >= {'resources:courses', 'tests', 'top_users', 'profiles'}


class _BrokenStore(dict):
    def get(self, key, default=None):
        raise RuntimeError("store unavailable")

    def __setitem__(self, key, value):
        raise RuntimeError("store unavailable")

    def pop(self, key, default=None):
        raise RuntimeError("store unavailable")


def test_cache_errors_degrade_to_miss():
    c = ResponseCache('partners', ttl_seconds=60, key_fn='partners')
    c._entries = _BrokenStore()
    assert c.get('partners') is None
    c.set('partners', [2])  # must not raise
    assert c.invalidate('partners') is False
    assert cached_response(c, 'partners', lambda: [3]) == {"success": True, "data": [3], "cached": False}


def test_cached_response_computes_once():
    c = ResponseCache('students', ttl_seconds=60, key_fn='students')
    calls = []

    def compute():
        calls.append(1)
        return ["s1"]

    first = cached_response(c, 'students', compute)
    second = cached_response(c, 'students', compute)
    assert first == {"success": True, "data": ["s1"], "cached": False}
    assert second == {"success": True, "data": ["s1"], "cached": True}
    assert len(calls) == 1


def test_cached_response_envelopes_and_failed_compute():
    c = ResponseCache('top_users', ttl_seconds=60, key_fn='topUsers')
    assert cached_response(c, 'topUsers', lambda: [], envelope=top_users_envelope) == {"topUsers": []}
    assert cached_response(c, 'topUsers', lambda: [1], envelope=top_users_envelope) == {"topUsers": []}

    t = ResponseCache('tests', ttl_seconds=60, key_fn='x')

    def fail():
        raise ValueError("not found")

    try:
        cached_response(t, 'test-9', fail, envelope=raw_envelope)
        assert False, "should raise"
    except ValueError:
        pass
    assert t.get_stats()['size'] == 0
