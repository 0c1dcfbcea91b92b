from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest
from psycopg2 import pool

from tank_telemetry.database.connection import DatabaseManager


class _FakePool:
    """Stands in for ThreadedConnectionPool: slow to build, fails fast when exhausted."""

    instances = []

    def __init__(self, minconn, maxconn, **kwargs):
        time.sleep(0.05)
        self.maxconn = maxconn
        self.in_use = 0
        self._lock = threading.Lock()
        _FakePool.instances.append(self)

    def getconn(self):
        with self._lock:
            if self.in_use >= self.maxconn:
                raise pool.PoolError("connection pool exhausted")
            self.in_use += 1
            return object()

    def putconn(self, connection):
        with self._lock:
            self.in_use -= 1

    def closeall(self):
        pass


@pytest.fixture(autouse=True)
def fake_pool(monkeypatch):
    _FakePool.instances = []
    monkeypatch.setattr(pool, "ThreadedConnectionPool", _FakePool)
    return _FakePool


def _manager(max_connections: int = 10, timeout_seconds: float = 5.0) -> DatabaseManager:
    return DatabaseManager(
        "postgresql://telemetry@localhost/telemetry",
        max_connections=max_connections,
        timeout_seconds=timeout_seconds,
    )


def test_first_concurrent_checkouts_share_one_pool(fake_pool) -> None:
    manager = _manager()

    with ThreadPoolExecutor(max_workers=4) as executor:
        connections = list(executor.map(lambda _: manager.get_connection(), range(4)))

    assert len(fake_pool.instances) == 1
    assert fake_pool.instances[0].in_use == 4

    for connection in connections:
        manager.return_connection(connection)

    assert fake_pool.instances[0].in_use == 0


def test_checkout_waits_for_a_returned_connection(fake_pool) -> None:
    manager = _manager(max_connections=2)
    held = [manager.get_connection(), manager.get_connection()]
    acquired = threading.Event()

    def _checkout():
        manager.get_connection()
        acquired.set()

    waiter = threading.Thread(target=_checkout)
    waiter.start()

    assert not acquired.wait(0.2)

    manager.return_connection(held.pop())
    waiter.join(timeout=5)

    assert acquired.is_set()
    assert fake_pool.instances[0].in_use == 2


def test_checkout_gives_up_after_the_timeout(fake_pool) -> None:
    manager = _manager(max_connections=1, timeout_seconds=0.1)
    manager.get_connection()

    with pytest.raises(pool.PoolError, match="Timed out"):
        manager.get_connection()
