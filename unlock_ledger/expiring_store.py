"""Expiring key-value store.

Replaces process-local registries (one-time codes, idempotency keys) with a
capability that can be backed by the database so entries survive restarts
and are shared between instances. Expired entries are invisible to reads and
are dropped by ``purge_expired``.
"""

import threading
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional, Protocol

from sqlalchemy import delete, select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from .errors import StorageError
from .models import as_utc
from .sql_storage import ExpiringKeyRow, init_db

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ExpiringStore(Protocol):
    def put(self, key: str, value: str, ttl: timedelta) -> None: ...

    def get(self, key: str) -> Optional[str]: ...

    def get_and_clear(self, key: str) -> Optional[str]: ...

    def purge_expired(self) -> int: ...


class InMemoryExpiringStore:
    def __init__(self, clock: Clock = utc_now):
        self.clock = clock
        self._entries: dict[str, tuple[str, datetime]] = {}
        self._lock = threading.Lock()

    def put(self, key: str, value: str, ttl: timedelta) -> None:
        with self._lock:
            self._entries[key] = (value, self.clock() + ttl)

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(key)
            if entry is None or entry[1] <= self.clock():
                return None
            return entry[0]

    def get_and_clear(self, key: str) -> Optional[str]:
        with self._lock:
            entry = self._entries.pop(key, None)
        if entry is None or entry[1] <= self.clock():
            return None
        return entry[0]

    def purge_expired(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [k for k, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                del self._entries[key]
        return len(expired)


class SqlExpiringStore:
    def __init__(self, engine: Engine, clock: Clock = utc_now):
        self.clock = clock
        self.SessionLocal = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        init_db(engine)

    def put(self, key: str, value: str, ttl: timedelta) -> None:
        try:
            with self.SessionLocal() as session, session.begin():
                session.merge(ExpiringKeyRow(key=key, value=value, expires_at=self.clock() + ttl))
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to store key {key}: {exc}") from exc

    def get(self, key: str) -> Optional[str]:
        try:
            with self.SessionLocal() as session:
                row = session.get(ExpiringKeyRow, key)
                if row is None or as_utc(row.expires_at) <= self.clock():
                    return None
                return row.value
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to read key {key}: {exc}") from exc

    def get_and_clear(self, key: str) -> Optional[str]:
        try:
            with self.SessionLocal() as session, session.begin():
                row = session.get(ExpiringKeyRow, key)
                if row is None:
                    return None
                value, expires_at = row.value, as_utc(row.expires_at)
                # Only the caller whose delete removes the row gets the value.
                result = session.execute(delete(ExpiringKeyRow).where(ExpiringKeyRow.key == key))
                if result.rowcount != 1 or expires_at <= self.clock():
                    return None
                return value
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to consume key {key}: {exc}") from exc

    def purge_expired(self) -> int:
        try:
            with self.SessionLocal() as session, session.begin():
                expired = session.scalars(
                    select(ExpiringKeyRow.key).where(ExpiringKeyRow.expires_at <= self.clock())
                ).all()
                if expired:
                    session.execute(delete(ExpiringKeyRow).where(ExpiringKeyRow.key.in_(expired)))
                return len(expired)
        except SQLAlchemyError as exc:
            raise StorageError(f"Failed to purge expired keys: {exc}") from exc
