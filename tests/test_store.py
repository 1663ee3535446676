import threading
import time
from unittest import mock

import psycopg2
import pytest
from psycopg2.pool import PoolError

from store import PostgresStore, StoreError


class FakePool:
    """Mimics ThreadedConnectionPool: raises once maxconn connections are out"""

    def __init__(self, minconn, maxconn, **kwargs):
        self.maxconn = maxconn
        self.in_use = 0
        self.peak = 0
        self.returned = []
        self.connections = []
        self._lock = threading.Lock()

    def _new_connection(self):
        conn = mock.MagicMock()
        cursor = conn.cursor.return_value.__enter__.return_value
        cursor.execute.side_effect = lambda *args: time.sleep(0.01)
        cursor.fetchone.return_value = {"skills": ["python"]}
        self.connections.append(conn)
        return conn

    def getconn(self):
        with self._lock:
            if self.in_use >= self.maxconn:
                raise PoolError("connection pool exhausted")
            self.in_use += 1
            self.peak = max(self.peak, self.in_use)
            return self._new_connection()

    def putconn(self, conn, close=False):
        with self._lock:
            self.in_use -= 1
            self.returned.append((conn, close))

    def closeall(self):
        pass


@pytest.fixture
def pg_store():
    with mock.patch("store.ThreadedConnectionPool", FakePool):
        yield PostgresStore(dsn="postgresql://test", max_connections=2)


def test_concurrent_queries_wait_for_a_free_connection(pg_store):
    errors, results = [], []

    def query():
        try:
            results.append(pg_store.get_user_skills("alice"))
        except Exception as e:
            errors.append(e)

    threads = [threading.Thread(target=query) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(5)

    assert errors == []
    assert results == [["python"]] * 8
    assert pg_store._pool.peak <= 2
    assert pg_store._pool.in_use == 0


def test_pool_errors_become_store_errors(pg_store):
    with mock.patch.object(pg_store._pool, "getconn", side_effect=PoolError("connection pool exhausted")):
        with pytest.raises(StoreError):
            pg_store.get_user_skills("alice")

    # The slot is released even though no connection was taken
    assert pg_store._slots.acquire(blocking=False)
    pg_store._slots.release()


def test_query_errors_become_store_errors(pg_store):
    conn = pg_store._pool._new_connection()
    conn.cursor.return_value.__enter__.return_value.execute.side_effect = psycopg2.OperationalError("gone")

    with mock.patch.object(pg_store._pool, "getconn", return_value=conn):
        with pytest.raises(StoreError):
            pg_store.count_post_likes("alice")

    conn.rollback.assert_called_once()
    assert pg_store._pool.returned[-1] == (conn, False)


def test_non_database_errors_still_roll_back(pg_store):
    with pytest.raises(ValueError):
        with pg_store._cursor():
            raise ValueError("bad row")

    conn, closed = pg_store._pool.returned[-1]
    conn.rollback.assert_called_once()
    assert closed is False


def test_failed_rollback_discards_connection(pg_store):
    conn = pg_store._pool._new_connection()
    conn.rollback.side_effect = psycopg2.InterfaceError("connection already closed")

    with mock.patch.object(pg_store._pool, "getconn", return_value=conn):
        pg_store.get_user_skills("alice")

    assert pg_store._pool.returned[-1] == (conn, True)
