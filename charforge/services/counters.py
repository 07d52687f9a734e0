"""Counter stores tracking in-flight jobs per tenant.

Every store exposes the same small contract:

* ``increment_if_below(key, limit)`` checks the current count against
  ``limit`` and increments it in a single atomic step, returning whether the
  increment happened.
* ``decrement(key)`` lowers the count by one, never below zero, and returns
  the new value.
* ``count_for(key)`` reads the current value.
* ``ping()`` raises :class:`StoreUnavailable` when the backing medium cannot
  be reached.

Backend failures are always reported as :class:`StoreUnavailable` so callers
can tell an infrastructure problem apart from "limit reached".

The in-memory store only bounds concurrency inside one process. Deployments
running several web or worker processes should use the database or Redis
store so the limit is enforced cluster-wide.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, Optional

from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

LOGGER = logging.getLogger(__name__)


class StoreUnavailable(RuntimeError):
    """Raised when the counter store cannot be read or updated."""


class CounterStore:
    """Interface shared by all counter backends."""

    name = "abstract"

    def increment_if_below(self, key: str, limit: int) -> bool:
        raise NotImplementedError(f"{type(self).__name__} must implement increment_if_below")

    def decrement(self, key: str) -> int:
        raise NotImplementedError(f"{type(self).__name__} must implement decrement")

    def count_for(self, key: str) -> int:
        raise NotImplementedError(f"{type(self).__name__} must implement count_for")

    def ping(self) -> None:
        """Succeeds silently when the store is reachable."""


class MemoryCounterStore(CounterStore):
    name = "memory"

    def __init__(self) -> None:
        self._counts: Dict[str, int] = {}
        self._lock = threading.Lock()

    def increment_if_below(self, key: str, limit: int) -> bool:
        with self._lock:
            current = self._counts.get(key, 0)
            if current >= limit:
                return False
            self._counts[key] = current + 1
            return True

    def decrement(self, key: str) -> int:
        with self._lock:
            current = max(self._counts.get(key, 0) - 1, 0)
            self._counts[key] = current
            return current

    def count_for(self, key: str) -> int:
        with self._lock:
            return self._counts.get(key, 0)

    def reset(self) -> None:
        with self._lock:
            self._counts.clear()


class DatabaseCounterStore(CounterStore):
    """Counter rows in the ``job_counters`` table.

    The admission check is a conditional ``UPDATE`` so the database performs
    the comparison and the increment as one statement; two racing requests can
    never both see the last free slot.
    """

    name = "database"

    _INSERT_ROW = text(
        "INSERT INTO job_counters (tenant_key, active, updated_at) "
        "VALUES (:key, 0, CURRENT_TIMESTAMP)"
    )
    _INCREMENT = text(
        "UPDATE job_counters SET active = active + 1, updated_at = CURRENT_TIMESTAMP "
        "WHERE tenant_key = :key AND active < :limit"
    )
    _DECREMENT = text(
        "UPDATE job_counters SET active = active - 1, updated_at = CURRENT_TIMESTAMP "
        "WHERE tenant_key = :key AND active > 0"
    )
    _SELECT = text("SELECT active FROM job_counters WHERE tenant_key = :key")

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def increment_if_below(self, key: str, limit: int) -> bool:
        self._ensure_row(key)
        try:
            with self._engine.begin() as connection:
                result = connection.execute(self._INCREMENT, {"key": key, "limit": limit})
                return result.rowcount == 1
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Job counter database is unavailable: {exc}") from exc

    def decrement(self, key: str) -> int:
        try:
            with self._engine.begin() as connection:
                connection.execute(self._DECREMENT, {"key": key})
                value = connection.execute(self._SELECT, {"key": key}).scalar()
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Job counter database is unavailable: {exc}") from exc
        return int(value or 0)

    def count_for(self, key: str) -> int:
        try:
            with self._engine.connect() as connection:
                value = connection.execute(self._SELECT, {"key": key}).scalar()
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Job counter database is unavailable: {exc}") from exc
        return int(value or 0)

    def ping(self) -> None:
        try:
            with self._engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Job counter database is unavailable: {exc}") from exc

    def _ensure_row(self, key: str) -> None:
        try:
            with self._engine.connect() as connection:
                exists = connection.execute(self._SELECT, {"key": key}).first() is not None
            if exists:
                return
            with self._engine.begin() as connection:
                connection.execute(self._INSERT_ROW, {"key": key})
        except IntegrityError:
            # Another request created the row between our check and insert.
            return
        except SQLAlchemyError as exc:
            raise StoreUnavailable(f"Job counter database is unavailable: {exc}") from exc


_ADMIT_LUA = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current < tonumber(ARGV[1]) then
  redis.call('INCR', KEYS[1])
  return 1
end
return 0
"""

_RELEASE_LUA = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
if current > 0 then
  return redis.call('DECR', KEYS[1])
end
redis.call('SET', KEYS[1], 0)
return 0
"""


class RedisCounterStore(CounterStore):
    """Counters held in Redis, shared by every process pointing at the server.

    Both the admission check and the floored decrement run as Lua scripts,
    which Redis executes atomically.
    """

    name = "redis"

    def __init__(self, client: Any, *, prefix: str = "charforge:jobs:active") -> None:
        self._client = client
        self._prefix = prefix
        self._admit = client.register_script(_ADMIT_LUA)
        self._release = client.register_script(_RELEASE_LUA)

    @classmethod
    def from_url(cls, url: str, **kwargs: Any) -> "RedisCounterStore":
        import redis

        return cls(redis.Redis.from_url(url, decode_responses=True), **kwargs)

    def key_for(self, key: str) -> str:
        return f"{self._prefix}:{key}"

    def increment_if_below(self, key: str, limit: int) -> bool:
        admitted = self._call(self._admit, keys=[self.key_for(key)], args=[limit])
        return int(admitted) == 1

    def decrement(self, key: str) -> int:
        return int(self._call(self._release, keys=[self.key_for(key)]))

    def count_for(self, key: str) -> int:
        value = self._call(self._client.get, self.key_for(key))
        return int(value or 0)

    def ping(self) -> None:
        self._call(self._client.ping)

    @staticmethod
    def _call(func: Any, *args: Any, **kwargs: Any) -> Any:
        from redis.exceptions import RedisError

        try:
            return func(*args, **kwargs)
        except RedisError as exc:
            raise StoreUnavailable(f"Job counter Redis is unavailable: {exc}") from exc


def build_counter_store(
    backend: str,
    *,
    engine: Optional[Engine] = None,
    redis_url: Optional[str] = None,
) -> CounterStore:
    """Instantiate the counter store named by ``backend``."""

    normalized = (backend or "memory").strip().lower()
    if normalized == "memory":
        return MemoryCounterStore()
    if normalized == "database":
        if engine is None:
            raise ValueError("The database counter store requires an engine.")
        return DatabaseCounterStore(engine)
    if normalized == "redis":
        if not redis_url:
            raise ValueError("The redis counter store requires REDIS_URL.")
        return RedisCounterStore.from_url(redis_url)
    raise ValueError(f"Unknown job counter backend: {backend!r}")
