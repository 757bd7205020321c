from unittest.mock import patch

from app.identifier_cache import IdentifierCache


def test_lookup_miss_returns_none():
    assert IdentifierCache().lookup("host1/cpu/0/cpu/idle/value/GAUGE") is None


def test_insert_then_lookup():
    cache = IdentifierCache()

    assert cache.insert("a/b/c", 3) is True

    assert cache.lookup("a/b/c") == 3
    assert "a/b/c" in cache
    assert len(cache) == 1


def test_entries_are_never_replaced():
    cache = IdentifierCache()
    cache.insert("a/b/c", 3)

    assert cache.insert("a/b/c", 4) is False
    assert cache.lookup("a/b/c") == 3


def test_allocation_failure_is_not_fatal():
    cache = IdentifierCache()

    with patch.object(cache, "_entries", new=_ExhaustedDict()):
        assert cache.insert("a/b/c", 1) is False
        assert cache.lookup("a/b/c") is None


class _ExhaustedDict(dict):
    def __setitem__(self, key, value):
        raise MemoryError
