"""Thin psycopg2 wrapper used by discovery, health checks and exporters."""

from __future__ import annotations

import logging
from dataclasses import dataclass

import psycopg2
from psycopg2.extensions import make_dsn, parse_dsn

from pgscv.core import queries

logger = logging.getLogger("pgscv.db")

CONNECT_TIMEOUT = 5


@dataclass(frozen=True, slots=True)
class QueryResult:
    """Column names plus rows whose values are text or None."""

    colnames: tuple[str, ...]
    rows: list[tuple[str | None, ...]]


def with_dbname(conninfo: str, dbname: str) -> str:
    """Return ``conninfo`` pointing at another database."""
    return make_dsn(conninfo, dbname=dbname)


def conninfo_dbname(conninfo: str) -> str:
    try:
        return parse_dsn(conninfo).get("dbname", "")
    except psycopg2.ProgrammingError:
        return ""


def _as_text(value: object) -> str | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return str(int(value))
    return str(value)


class DB:
    """A single autocommit connection to Postgres or Pgbouncer.

    Usable as a context manager. Every value returned by ``query`` is text,
    which keeps the caller independent of the server-side column types.
    """

    def __init__(self, conninfo: str, connect_timeout: int = CONNECT_TIMEOUT) -> None:
        self.conninfo = conninfo
        self.connect_timeout = connect_timeout
        self._conn = None

    def connect(self) -> DB:
        self._conn = psycopg2.connect(self.conninfo, connect_timeout=self.connect_timeout)
        self._conn.autocommit = True
        return self

    def close(self) -> None:
        if self._conn is not None:
            try:
                self._conn.close()
            finally:
                self._conn = None

    def __enter__(self) -> DB:
        if self._conn is None:
            self.connect()
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    @property
    def conn(self):
        if self._conn is None:
            raise RuntimeError("DB is not connected")
        return self._conn

    @property
    def dbname(self) -> str:
        return conninfo_dbname(self.conninfo)

    def query(self, sql: str) -> QueryResult:
        with self.conn.cursor() as cur:
            cur.execute(sql)
            if cur.description is None:
                return QueryResult((), [])
            colnames = tuple(col[0] for col in cur.description)
            rows = [tuple(_as_text(v) for v in row) for row in cur.fetchall()]
        return QueryResult(colnames, rows)

    def query_scalar(self, sql: str) -> str | None:
        """First column of the first row, or None when no rows come back."""
        result = self.query(sql)
        if not result.rows:
            return None
        return result.rows[0][0]

    def server_version_num(self) -> int:
        value = self.query_scalar(queries.PG_VERSION_NUM_QUERY)
        if value is None:
            raise ValueError("server_version_num is empty")
        return int(value)

    def get_databases(self) -> list[str]:
        result = self.query(queries.PG_DATABASES_QUERY)
        return [row[0] for row in result.rows if row[0]]

    def is_pgss_available(self) -> bool:
        """Check that pg_stat_statements exists in this database and is queryable."""
        try:
            exists = self.query_scalar(queries.PGSS_VIEW_EXISTS_QUERY)
            if exists not in ("True", "true", "t", "1"):
                return False
            self.query(queries.PGSS_SELECT_QUERY)
        except psycopg2.Error as exc:
            logger.debug("pg_stat_statements is not available: %s", exc)
            return False
        return True


def ping(conninfo: str, sql: str = queries.PG_PING_QUERY, timeout: int = CONNECT_TIMEOUT) -> None:
    """Open a connection, run ``sql`` and close. Raises psycopg2.Error on failure."""
    with DB(conninfo, connect_timeout=timeout) as db:
        db.query(sql)
