"""Key-value backends with atomic set-if-absent and expiry"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

import redis
from sqlalchemy import text
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker

from issue_relay.models import KeyValueEntry
from issue_relay.models.base import utcnow
from issue_relay.services.errors import KeyValueStoreUnavailable

logger = logging.getLogger(__name__)


class KeyValueStore:
    """Interface every backend implements.

    `set_if_absent` is the only primitive callers may use for check-and-set:
    it must be atomic across threads and processes.
    """

    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        raise NotImplementedError

    def get(self, key: str) -> Optional[str]:
        raise NotImplementedError

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        raise NotImplementedError

    def delete(self, key: str) -> bool:
        raise NotImplementedError

    def ping(self) -> bool:
        raise NotImplementedError


class SqlKeyValueStore(KeyValueStore):
    """Key-value store on the relay database (table `kv_entries`).

    Atomicity comes from the primary key: the INSERT of a live key fails with
    IntegrityError for every caller but the first.
    """

    def __init__(self, session_factory: sessionmaker, clock: Callable[[], datetime] = utcnow):
        self._session_factory = session_factory
        self._clock = clock

    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        now = self._clock()
        db = self._session_factory()
        try:
            # An expired row still holds the primary key; clear it first.
            db.query(KeyValueEntry).filter(
                KeyValueEntry.key == key,
                KeyValueEntry.expires_at.isnot(None),
                KeyValueEntry.expires_at <= now,
            ).delete(synchronize_session=False)
            db.add(
                KeyValueEntry(key=key, value=value, expires_at=now + timedelta(seconds=ttl_seconds))
            )
            db.commit()
            return True
        except IntegrityError:
            db.rollback()
            return False
        except OperationalError as e:
            db.rollback()
            raise KeyValueStoreUnavailable(str(e)) from e
        finally:
            db.close()

    def get(self, key: str) -> Optional[str]:
        db = self._session_factory()
        try:
            row = db.query(KeyValueEntry).filter(KeyValueEntry.key == key).first()
            if row is None:
                return None
            if row.expires_at is not None and row.expires_at <= self._clock():
                return None
            return row.value
        except OperationalError as e:
            raise KeyValueStoreUnavailable(str(e)) from e
        finally:
            db.close()

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = None
        if ttl_seconds is not None:
            expires_at = self._clock() + timedelta(seconds=ttl_seconds)
        db = self._session_factory()
        try:
            db.merge(KeyValueEntry(key=key, value=value, expires_at=expires_at))
            db.commit()
        except OperationalError as e:
            db.rollback()
            raise KeyValueStoreUnavailable(str(e)) from e
        finally:
            db.close()

    def delete(self, key: str) -> bool:
        db = self._session_factory()
        try:
            deleted = db.query(KeyValueEntry).filter(KeyValueEntry.key == key).delete(
                synchronize_session=False
            )
            db.commit()
            return deleted > 0
        except OperationalError as e:
            db.rollback()
            raise KeyValueStoreUnavailable(str(e)) from e
        finally:
            db.close()

    def ping(self) -> bool:
        db = self._session_factory()
        try:
            db.execute(text("SELECT 1"))
            return True
        except OperationalError:
            return False
        finally:
            db.close()

    def purge_expired(self) -> int:
        """Delete expired rows; returns how many were removed."""
        db = self._session_factory()
        try:
            deleted = db.query(KeyValueEntry).filter(
                KeyValueEntry.expires_at.isnot(None),
                KeyValueEntry.expires_at <= self._clock(),
            ).delete(synchronize_session=False)
            db.commit()
            return deleted
        finally:
            db.close()


class RedisKeyValueStore(KeyValueStore):
    """Key-value store on Redis; expiry is enforced by the server."""

    def __init__(self, client: redis.Redis, prefix: str = "relay:"):
        self._redis = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str, prefix: str = "relay:") -> "RedisKeyValueStore":
        return cls(redis.Redis.from_url(url, decode_responses=True), prefix=prefix)

    def _key(self, key: str) -> str:
        return f"{self._prefix}{key}"

    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        try:
            # SET NX EX: create-with-expiry in one round trip.
            return bool(self._redis.set(self._key(key), value, ex=ttl_seconds, nx=True))
        except redis.exceptions.RedisError as e:
            raise KeyValueStoreUnavailable(str(e)) from e

    def get(self, key: str) -> Optional[str]:
        try:
            return self._redis.get(self._key(key))
        except redis.exceptions.RedisError as e:
            raise KeyValueStoreUnavailable(str(e)) from e

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        try:
            self._redis.set(self._key(key), value, ex=ttl_seconds)
        except redis.exceptions.RedisError as e:
            raise KeyValueStoreUnavailable(str(e)) from e

    def delete(self, key: str) -> bool:
        try:
            return bool(self._redis.delete(self._key(key)))
        except redis.exceptions.RedisError as e:
            raise KeyValueStoreUnavailable(str(e)) from e

    def ping(self) -> bool:
        try:
            return bool(self._redis.ping())
        except redis.exceptions.RedisError:
            return False


class MemoryKeyValueStore(KeyValueStore):
    """Process-local store for single-process deployments and tests."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._data: Dict[str, Tuple[str, Optional[datetime]]] = {}
        self._lock = threading.Lock()

    def _live(self, key: str) -> Optional[str]:
        """Return the live value for key. Must be called with lock held."""
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= self._clock():
            del self._data[key]
            return None
        return value

    def set_if_absent(self, key: str, value: str, ttl_seconds: int) -> bool:
        with self._lock:
            if self._live(key) is not None:
                return False
            self._data[key] = (value, self._clock() + timedelta(seconds=ttl_seconds))
            return True

    def get(self, key: str) -> Optional[str]:
        with self._lock:
            return self._live(key)

    def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        expires_at = None
        if ttl_seconds is not None:
            expires_at = self._clock() + timedelta(seconds=ttl_seconds)
        with self._lock:
            self._data[key] = (value, expires_at)

    def delete(self, key: str) -> bool:
        with self._lock:
            return self._data.pop(key, None) is not None

    def ping(self) -> bool:
        return True


def build_kv_store(settings, session_factory: sessionmaker) -> KeyValueStore:
    """Construct the configured backend"""
    if settings.kv_backend == "redis":
        logger.info("Using Redis key-value store")
        return RedisKeyValueStore.from_url(settings.redis_url)
    if settings.kv_backend == "memory":
        logger.warning("Using in-memory key-value store; claims are not shared between processes")
        return MemoryKeyValueStore()
    return SqlKeyValueStore(session_factory)
