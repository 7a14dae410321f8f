import sqlite3

import pytest

import database


class TrackingConnection:
    def __init__(self, conn):
        self._conn = conn
        self.closed = False

    def __getattr__(self, name):
        return getattr(self._conn, name)

    def close(self):
        self.closed = True
        self._conn.close()


@pytest.fixture
def tracked(monkeypatch):
    opened = []
    connect = database.connect_db

    def tracking_connect():
        conn = TrackingConnection(connect())
        opened.append(conn)
        return conn

    monkeypatch.setattr(database, "connect_db", tracking_connect)
    return opened


@pytest.mark.parametrize("fetch", [database._fetch_all, database._fetch_one])
def test_connection_closed_when_query_fails(tracked, fetch):
    with pytest.raises(sqlite3.OperationalError):
        fetch("SELECT * FROM no_such_table")
    assert [conn.closed for conn in tracked] == [True]


def test_rows_are_dicts(tracked):
    database.create_inventory_item("Grilli", "Piha")
    rows = database._fetch_all("SELECT name, location FROM inventory_items")
    assert rows == [{"name": "Grilli", "location": "Piha"}]
    assert all(conn.closed for conn in tracked)
