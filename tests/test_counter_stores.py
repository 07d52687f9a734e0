import sys
import threading
from pathlib import Path

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy import create_engine

sys.path.append(str(Path(__file__).resolve().parents[1]))

from charforge.models import JobCounter
from charforge.services.counters import (
    DatabaseCounterStore,
    MemoryCounterStore,
    RedisCounterStore,
    StoreUnavailable,
    build_counter_store,
)


@pytest.fixture
def database_store(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'counters.db'}")
    JobCounter.__table__.create(engine)
    yield DatabaseCounterStore(engine)
    engine.dispose()


class FakeScript:
    def __init__(self, client, kind):
        self.client = client
        self.kind = kind

    def __call__(self, keys, args=()):
        self.client.maybe_fail()
        key = keys[0]
        current = int(self.client.values.get(key, 0))
        if self.kind == "admit":
            if current < int(args[0]):
                self.client.values[key] = current + 1
                return 1
            return 0
        self.client.values[key] = max(current - 1, 0)
        return self.client.values[key]


class FakeRedis:
    def __init__(self):
        self.values = {}
        self.down = False

    def maybe_fail(self):
        if self.down:
            raise RedisConnectionError("Connection refused")

    def register_script(self, source):
        return FakeScript(self, "admit" if "INCR" in source else "release")

    def get(self, key):
        self.maybe_fail()
        value = self.values.get(key)
        return None if value is None else str(value)

    def ping(self):
        self.maybe_fail()
        return True


def test_memory_store_increments_up_to_limit():
    store = MemoryCounterStore()

    assert store.increment_if_below("u1", 2)
    assert store.increment_if_below("u1", 2)
    assert not store.increment_if_below("u1", 2)
    assert store.count_for("u1") == 2

    assert store.decrement("u1") == 1
    assert store.decrement("u1") == 0
    assert store.decrement("u1") == 0

    store.increment_if_below("u2", 1)
    store.reset()
    assert store.count_for("u2") == 0


def test_database_store_creates_row_and_enforces_limit(database_store):
    assert database_store.count_for("u1") == 0

    assert database_store.increment_if_below("u1", 2)
    assert database_store.increment_if_below("u1", 2)
    assert not database_store.increment_if_below("u1", 2)
    assert database_store.count_for("u1") == 2

    assert database_store.decrement("u1") == 1
    assert database_store.decrement("u1") == 0
    assert database_store.decrement("u1") == 0
    assert database_store.increment_if_below("u1", 2)


def test_database_store_keys_are_independent(database_store):
    assert database_store.increment_if_below("u1", 1)
    assert database_store.increment_if_below("u2", 1)
    assert not database_store.increment_if_below("u1", 1)
    assert database_store.count_for("u2") == 1


def test_database_store_never_admits_past_limit_under_contention(database_store):
    workers = 12
    start = threading.Barrier(workers)
    lock = threading.Lock()
    admitted = []
    errors = []

    def attempt():
        start.wait()
        try:
            ok = database_store.increment_if_below("u1", 3)
        except StoreUnavailable as exc:
            with lock:
                errors.append(exc)
            return
        if ok:
            with lock:
                admitted.append(ok)

    threads = [threading.Thread(target=attempt) for _ in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert len(admitted) == 3
    assert database_store.count_for("u1") == 3

    for _ in admitted:
        database_store.decrement("u1")
    assert database_store.count_for("u1") == 0


def test_database_store_reports_missing_table_as_unavailable(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path / 'empty.db'}")
    store = DatabaseCounterStore(engine)

    with pytest.raises(StoreUnavailable):
        store.increment_if_below("u1", 1)
    store.ping()
    engine.dispose()


def test_redis_store_uses_scripts_and_prefix():
    client = FakeRedis()
    store = RedisCounterStore(client, prefix="test:jobs")

    assert store.increment_if_below("u1", 1)
    assert not store.increment_if_below("u1", 1)
    assert client.values == {"test:jobs:u1": 1}
    assert store.count_for("u1") == 1

    assert store.decrement("u1") == 0
    assert store.decrement("u1") == 0
    assert store.count_for("u1") == 0


def test_redis_errors_become_store_unavailable():
    client = FakeRedis()
    store = RedisCounterStore(client)
    client.down = True

    with pytest.raises(StoreUnavailable):
        store.increment_if_below("u1", 1)
    with pytest.raises(StoreUnavailable):
        store.decrement("u1")
    with pytest.raises(StoreUnavailable):
        store.ping()


def test_build_counter_store_selects_backend(tmp_path):
    assert isinstance(build_counter_store("memory"), MemoryCounterStore)
    assert isinstance(build_counter_store(" Memory "), MemoryCounterStore)

    engine = create_engine(f"sqlite:///{tmp_path / 'pick.db'}")
    assert isinstance(build_counter_store("database", engine=engine), DatabaseCounterStore)
    engine.dispose()

    with pytest.raises(ValueError):
        build_counter_store("database")
    with pytest.raises(ValueError):
        build_counter_store("redis")
    with pytest.raises(ValueError):
        build_counter_store("etcd")
