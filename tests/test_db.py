"""Tests for the psycopg2 wrapper."""

from unittest.mock import MagicMock, patch

import psycopg2
import pytest

from pgscv.core import queries
from pgscv.core.db import DB, QueryResult, conninfo_dbname, with_dbname


def _cursor(description, rows):
    cur = MagicMock()
    cur.description = description
    cur.fetchall.return_value = rows
    cur.__enter__.return_value = cur
    return cur


class TestConninfo:
    def test_with_dbname(self):
        cs = with_dbname("host=/tmp port=5432 dbname=postgres", "orders")
        assert conninfo_dbname(cs) == "orders"
        assert "host=/tmp" in cs

    def test_dbname_missing(self):
        assert conninfo_dbname("host=/tmp") == ""


class TestDB:
    @patch("pgscv.core.db.psycopg2.connect")
    def test_context_manager(self, mock_connect):
        with DB("host=a") as db:
            assert db.conn is mock_connect.return_value
        mock_connect.assert_called_once_with("host=a", connect_timeout=5)
        assert mock_connect.return_value.autocommit is True
        mock_connect.return_value.close.assert_called_once()

    def test_not_connected(self):
        with pytest.raises(RuntimeError):
            DB("host=a").conn

    @patch("pgscv.core.db.psycopg2.connect")
    def test_query_returns_text(self, mock_connect):
        cur = _cursor([("datname",), ("numbackends",), ("ok",)], [("app", 3, True), (None, 0, False)])
        mock_connect.return_value.cursor.return_value = cur
        db = DB("host=a").connect()
        assert db.query("SELECT 1") == QueryResult(
            ("datname", "numbackends", "ok"), [("app", "3", "1"), (None, "0", "0")]
        )

    @patch("pgscv.core.db.psycopg2.connect")
    def test_server_version_num(self, mock_connect):
        mock_connect.return_value.cursor.return_value = _cursor([("v",)], [(160002,)])
        assert DB("host=a").connect().server_version_num() == 160002

    @patch("pgscv.core.db.psycopg2.connect")
    def test_empty_version(self, mock_connect):
        mock_connect.return_value.cursor.return_value = _cursor([("v",)], [])
        with pytest.raises(ValueError):
            DB("host=a").connect().server_version_num()


class TestPgssAvailable:
    def _db(self, results):
        db = DB("host=a")
        db.query = MagicMock(side_effect=results)
        return db

    def test_available(self):
        db = self._db([QueryResult(("exists",), [("1",)]), QueryResult(("x",), [])])
        assert db.is_pgss_available()
        assert db.query.call_args_list[1].args == (queries.PGSS_SELECT_QUERY,)

    def test_view_missing(self):
        db = self._db([QueryResult(("exists",), [("0",)])])
        assert not db.is_pgss_available()
        assert db.query.call_count == 1

    def test_not_preloaded(self):
        db = self._db([
            QueryResult(("exists",), [("1",)]),
            psycopg2.errors.ObjectNotInPrerequisiteState("must be loaded via shared_preload_libraries"),
        ])
        assert not db.is_pgss_available()
