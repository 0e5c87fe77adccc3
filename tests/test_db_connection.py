"""Tests for the pooled connection factory."""

from unittest.mock import MagicMock, patch

import pytest

from aiprovider.db import connection


@pytest.fixture
def fake_pool(monkeypatch):
    monkeypatch.setattr(connection, "_pool", None)
    pool = MagicMock()
    pool.closed = False
    with patch("psycopg2.pool.ThreadedConnectionPool", return_value=pool) as ctor:
        yield ctor, pool
    connection._pool = None


class TestGetPool:
    def test_sized_to_default_executor(self, fake_pool, monkeypatch):
        ctor, _ = fake_pool
        monkeypatch.setattr(connection.os, "cpu_count", lambda: 4)
        connection.get_pool()
        assert ctor.call_args.kwargs["minconn"] == 1
        assert ctor.call_args.kwargs["maxconn"] == 8

    def test_executor_cap(self, monkeypatch):
        monkeypatch.setattr(connection.os, "cpu_count", lambda: 64)
        assert connection._executor_workers() == 32

    def test_reused(self, fake_pool):
        ctor, pool = fake_pool
        assert connection.get_pool() is connection.get_pool() is pool
        ctor.assert_called_once()


class TestGetConnection:
    def test_commits_and_returns(self, fake_pool):
        _, pool = fake_pool
        with connection.get_connection() as conn:
            assert conn is pool.getconn.return_value
        conn.commit.assert_called_once()
        pool.putconn.assert_called_once_with(conn)

    def test_rolls_back_on_error(self, fake_pool):
        _, pool = fake_pool
        with pytest.raises(RuntimeError), connection.get_connection():
            raise RuntimeError("statement failed")
        conn = pool.getconn.return_value
        conn.rollback.assert_called_once()
        conn.commit.assert_not_called()
        pool.putconn.assert_called_once_with(conn)

    def test_close_pool(self, fake_pool):
        _, pool = fake_pool
        connection.get_pool()
        connection.close_pool()
        pool.closeall.assert_called_once()
        assert connection._pool is None
