"""
Unit Tests for the Expiring Key-Value Store

Both backends run through the same cases.
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.pool import StaticPool

from unlock_ledger.expiring_store import InMemoryExpiringStore, SqlExpiringStore
from unlock_ledger.sql_storage import make_engine


class FakeClock:
    def __init__(self):
        self.now = datetime(2026, 10, 1, 9, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(params=["memory", "sql"])
def store(request, clock):
    if request.param == "memory":
        yield InMemoryExpiringStore(clock=clock)
        return
    engine = make_engine("sqlite://", poolclass=StaticPool)
    yield SqlExpiringStore(engine, clock=clock)
    engine.dispose()


class TestExpiringStore:
    """Tests for put, get, one-shot reads and expiry."""

    def test_put_and_get(self, store):
        """Test that a stored value is readable until it expires."""
        store.put("issue:abc", '{"transaction_id": "t1"}', timedelta(minutes=10))

        assert store.get("issue:abc") == '{"transaction_id": "t1"}'
        # get does not consume
        assert store.get("issue:abc") == '{"transaction_id": "t1"}'

    def test_missing_key(self, store):
        """Test that unknown keys read as None."""
        assert store.get("nope") is None
        assert store.get_and_clear("nope") is None

    def test_entry_expires(self, store, clock):
        """Test that entries vanish once their TTL has passed."""
        store.put("otp:1", "123456", timedelta(seconds=30))

        clock.advance(seconds=29)
        assert store.get("otp:1") == "123456"

        clock.advance(seconds=1)
        assert store.get("otp:1") is None

    def test_put_overwrites(self, store, clock):
        """Test that a second put replaces value and expiry."""
        store.put("k", "first", timedelta(seconds=10))
        clock.advance(seconds=5)
        store.put("k", "second", timedelta(seconds=10))

        clock.advance(seconds=8)
        assert store.get("k") == "second"

    def test_get_and_clear_is_one_shot(self, store):
        """Test that a consumed entry cannot be read twice."""
        store.put("otp:2", "654321", timedelta(minutes=5))

        assert store.get_and_clear("otp:2") == "654321"
        assert store.get_and_clear("otp:2") is None
        assert store.get("otp:2") is None

    def test_get_and_clear_expired(self, store, clock):
        """Test that an expired entry is removed but not returned."""
        store.put("otp:3", "000000", timedelta(seconds=1))
        clock.advance(seconds=2)

        assert store.get_and_clear("otp:3") is None
        assert store.purge_expired() == 0

    def test_purge_expired(self, store, clock):
        """Test that purging drops only expired entries."""
        store.put("short", "a", timedelta(seconds=5))
        store.put("long", "b", timedelta(hours=1))
        clock.advance(minutes=1)

        assert store.purge_expired() == 1
        assert store.get("long") == "b"
        assert store.purge_expired() == 0


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
