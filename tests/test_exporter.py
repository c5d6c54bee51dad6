"""Tests for the per-service exporter."""

from datetime import datetime, timedelta, timezone
from unittest.mock import patch

import psycopg2
import pytest

from pgscv.core import queries
from pgscv.core.catalog import StatDescriptor
from pgscv.core.db import QueryResult, conninfo_dbname
from pgscv.core.exporter import Exporter
from pgscv.core.repository import ServiceRepository
from pgscv.models.enums import ServiceType
from pgscv.models.runtime import SYSTEM_SERVICE_ID, ConnSetting, Service

T0 = datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now=T0):
        self.now = now

    def __call__(self):
        return self.now


class FakeDB:
    """Stands in for pgscv.core.db.DB; answers queries from a dict keyed by SQL."""

    def __init__(self, results=None, dbname="postgres", version=160002, databases=None,
                 pgss=True):
        self.results = results or {}
        self.dbname = dbname
        self.version = version
        self.databases = databases or []
        self.pgss = pgss
        self.executed = []
        self.closed = False

    def connect(self):
        return self

    def close(self):
        self.closed = True

    def query(self, sql):
        self.executed.append(sql)
        result = self.results.get(sql, QueryResult((), []))
        if isinstance(result, Exception):
            raise result
        return result

    def query_scalar(self, sql):
        result = self.query(sql)
        return result.rows[0][0] if result.rows else None

    def server_version_num(self):
        return self.version

    def get_databases(self):
        return list(self.databases)

    def is_pgss_available(self):
        return self.pgss


class Recorder:
    def __init__(self):
        self.samples = []

    def __call__(self, name, value, labels):
        self.samples.append((name, value, labels))


def _exporter(stype=ServiceType.POSTGRESQL, conninfo="host=/tmp dbname=postgres", **kwargs):
    repo = ServiceRepository()
    service_id = SYSTEM_SERVICE_ID if stype is ServiceType.SYSTEM else f"{stype.value}:5432"
    service = Service(service_id, ConnSetting(stype, conninfo=conninfo), project_id="1")
    repo.add(service)
    kwargs.setdefault("clock", Clock())
    return Exporter(service, repo, hostname="db1", **kwargs), repo


def _desc(exporter, name, query=True):
    for d in exporter.catalog:
        if d.name == name and bool(d.query_text) == query:
            return d
    raise KeyError(name)


class TestInit:
    def test_only_own_service_type(self):
        exporter, _ = _exporter(ServiceType.PGBOUNCER)
        assert {d.name for d in exporter.catalog} == {"pgbouncer_pool", "pgbouncer_stats"}
        assert "pgbouncer_pool_cl_active" in exporter.descs
        assert "pg_stat_database_xact_commit" not in exporter.descs

    def test_disabled_collectors(self):
        exporter, _ = _exporter(disabled=("pg_settings",))
        assert "pg_settings" not in {d.name for d in exporter.catalog}
        assert "pg_settings_guc" not in exporter.descs

    def test_const_labels(self):
        exporter, _ = _exporter()
        desc = exporter.descs["pg_stat_database_xact_commit"]
        assert desc.const_labels == (
            ("project_id", "1"), ("sid", "postgres:5432"), ("db_instance", "db1"),
        )
        assert desc.label_values(("1", "app")) == ["1", "app", "1", "postgres:5432", "db1"]

    def test_private_catalog(self):
        a, _ = _exporter()
        b, _ = _exporter()
        a.catalog[0].collect_done = True
        assert not b.catalog[0].collect_done

    def test_describe(self):
        exporter, _ = _exporter(ServiceType.PGBOUNCER)
        names = {m.name for m in exporter.describe()}
        assert "pgbouncer_stats_query_count" in names


class TestEmitRows:
    def test_labels_found_by_column_name(self):
        exporter, _ = _exporter()
        desc = _desc(exporter, "pg_stat_database")
        result = QueryResult(
            ("xact_commit", "datname", "blks_read", "datid"),
            [("10", "app", "5", "16384")],
        )
        rec = Recorder()
        assert exporter.emit_rows(desc, result, rec) == 2
        assert rec.samples == [
            ("pg_stat_database_xact_commit", 10.0, ("16384", "app")),
            ("pg_stat_database_blks_read", 5.0, ("16384", "app")),
        ]

    def test_empty_and_non_numeric_skipped(self):
        exporter, _ = _exporter()
        desc = _desc(exporter, "pg_stat_database")
        result = QueryResult(
            ("datid", "datname", "xact_commit", "xact_rollback", "blks_read"),
            [("1", "app", "", "n/a", None)],
        )
        rec = Recorder()
        assert exporter.emit_rows(desc, result, rec) == 0
        assert rec.samples == []

    def test_undeclared_column_skipped(self):
        exporter, _ = _exporter()
        desc = _desc(exporter, "pg_stat_database")
        result = QueryResult(("datid", "datname", "mystery", "deadlocks"),
                             [("1", "app", "3", "2")])
        rec = Recorder()
        assert exporter.emit_rows(desc, result, rec) == 1
        assert rec.samples[0][0] == "pg_stat_database_deadlocks"

    def test_missing_label_column_is_empty(self):
        exporter, _ = _exporter()
        desc = _desc(exporter, "pg_stat_database")
        result = QueryResult(("datname", "deadlocks"), [("app", "2")])
        rec = Recorder()
        exporter.emit_rows(desc, result, rec)
        assert rec.samples == [("pg_stat_database_deadlocks", 2.0, ("", "app"))]


class TestWalk:
    def test_zero_rows_marks_done(self):
        exporter, _ = _exporter()
        db = FakeDB()
        exporter.walk(db, ServiceType.POSTGRESQL, 160002, Recorder())
        assert _desc(exporter, "pg_stat_database").collect_done
        assert _desc(exporter, "pg_stat_user_tables").collect_done

    def test_oneshot_not_repeated_in_second_database(self):
        exporter, _ = _exporter()
        first, second = FakeDB(dbname="postgres"), FakeDB(dbname="app")
        exporter._begin_round(ServiceType.POSTGRESQL)
        exporter.walk(first, ServiceType.POSTGRESQL, 160002, Recorder())
        exporter.walk(second, ServiceType.POSTGRESQL, 160002, Recorder())
        assert queries.PG_STAT_DATABASE_QUERY in first.executed
        assert queries.PG_STAT_DATABASE_QUERY not in second.executed
        assert queries.PG_STAT_USER_TABLES_QUERY in first.executed
        assert queries.PG_STAT_USER_TABLES_QUERY in second.executed

    def test_failed_query_retried_in_next_database(self):
        exporter, _ = _exporter()
        broken = FakeDB(results={
            queries.PG_STAT_DATABASE_QUERY: psycopg2.ProgrammingError("permission denied"),
        })
        healthy = FakeDB(results={
            queries.PG_STAT_DATABASE_QUERY: QueryResult(
                ("datid", "datname", "xact_commit"), [("1", "app", "7")]
            ),
        })
        rec = Recorder()
        exporter.walk(broken, ServiceType.POSTGRESQL, 160002, rec)
        assert not _desc(exporter, "pg_stat_database").collect_done
        exporter.walk(healthy, ServiceType.POSTGRESQL, 160002, rec)
        assert _desc(exporter, "pg_stat_database").collect_done
        assert ("pg_stat_database_xact_commit", 7.0, ("1", "app")) in rec.samples

    def test_pgss_skipped_when_unavailable(self):
        exporter, _ = _exporter()
        db = FakeDB(pgss=False)
        exporter.walk(db, ServiceType.POSTGRESQL, 160002, Recorder())
        assert queries.PG_STAT_STATEMENTS_QUERY not in db.executed
        assert not _desc(exporter, "pg_stat_statements").collect_done

    def test_inactive_descriptor_skipped(self):
        exporter, _ = _exporter()
        db = FakeDB()
        exporter.walk(db, ServiceType.POSTGRESQL, 160002, Recorder())
        assert queries.PG_SETTINGS_QUERY not in db.executed


class TestSchedule:
    def test_gated_oneshot_waits_for_interval(self):
        clock = Clock()
        exporter, _ = _exporter(clock=clock)
        settings = _desc(exporter, "pg_settings")
        rows = QueryResult(("name", "unit", "secondary", "guc"), [("max_connections", "", "", "100")])

        def round_(db):
            exporter._begin_round(ServiceType.POSTGRESQL)
            exporter.walk(db, ServiceType.POSTGRESQL, 160002, Recorder())
            exporter._end_round(ServiceType.POSTGRESQL)

        db = FakeDB(results={queries.PG_SETTINGS_QUERY: rows})
        round_(db)
        assert db.executed.count(queries.PG_SETTINGS_QUERY) == 1
        assert not settings.is_active()
        assert settings.schedule.last_fired == T0

        clock.now = T0 + timedelta(minutes=1)
        round_(db)
        assert db.executed.count(queries.PG_SETTINGS_QUERY) == 1

        clock.now = T0 + timedelta(minutes=5)
        round_(db)
        assert db.executed.count(queries.PG_SETTINGS_QUERY) == 2

    def test_gated_per_database_runs_in_every_database_of_a_round(self):
        exporter, _ = _exporter()
        first, second = FakeDB(dbname="postgres"), FakeDB(dbname="app")
        exporter._begin_round(ServiceType.POSTGRESQL)
        exporter.walk(first, ServiceType.POSTGRESQL, 160002, Recorder())
        exporter.walk(second, ServiceType.POSTGRESQL, 160002, Recorder())
        exporter._end_round(ServiceType.POSTGRESQL)
        assert queries.PG_SCHEMA_NON_PK_TABLES_QUERY in first.executed
        assert queries.PG_SCHEMA_NON_PK_TABLES_QUERY in second.executed
        assert not _desc(exporter, "pg_schema_non_pk_table").is_active()

    def test_begin_round_resets_done(self):
        exporter, _ = _exporter()
        desc = _desc(exporter, "pg_stat_database")
        desc.collect_done = True
        exporter._begin_round(ServiceType.POSTGRESQL)
        assert not desc.collect_done


class TestCollectPostgres:
    def _patch_db(self, fakes):
        return patch(
            "pgscv.core.exporter.DB",
            side_effect=lambda conninfo: fakes[conninfo_dbname(conninfo)],
        )

    def test_round_over_all_databases(self):
        exporter, _ = _exporter()
        stat_db = QueryResult(("datid", "datname", "xact_commit"), [("1", "app", "42")])
        fakes = {
            "postgres": FakeDB(results={queries.PG_STAT_DATABASE_QUERY: stat_db},
                               databases=["postgres", "app"]),
            "app": FakeDB(dbname="app"),
        }
        with self._patch_db(fakes):
            families = exporter.collect()
        by_name = {f.name: f for f in families}
        sample = by_name["pg_stat_database_xact_commit"].samples[0]
        assert sample.value == 42.0
        assert sample.labels == {
            "datid": "1", "datname": "app",
            "project_id": "1", "sid": "postgres:5432", "db_instance": "db1",
        }
        assert queries.PG_STAT_USER_TABLES_QUERY in fakes["app"].executed
        assert fakes["app"].closed
        assert exporter.total_failed == 0

    def test_version_adjusts_queries(self):
        exporter, _ = _exporter()
        fakes = {"postgres": FakeDB(version=90624)}
        with self._patch_db(fakes):
            exporter.collect()
        assert queries.PG_STAT_REPLICATION_QUERY_96 in fakes["postgres"].executed
        assert _desc(exporter, "pg_schema_sequence_fullness").stat_type is ServiceType.DISABLED

    @patch("pgscv.core.exporter.DB")
    def test_connection_failure_counts(self, mock_db):
        mock_db.return_value.connect.side_effect = psycopg2.OperationalError("refused")
        exporter, _ = _exporter()
        assert exporter.collect() == []
        assert exporter.collect() == []
        assert exporter.total_failed == 2

    def test_removed_service_collects_nothing(self):
        exporter, repo = _exporter()
        repo.remove("postgres:5432")
        assert exporter.collect() == []


class TestCollectPgbouncer:
    def test_pools(self):
        exporter, _ = _exporter(ServiceType.PGBOUNCER, conninfo="host=/tmp dbname=pgbouncer")
        pools = QueryResult(
            ("database", "user", "cl_active", "cl_waiting", "pool_mode"),
            [("app", "web", "5", "0", "transaction")],
        )
        fake = FakeDB(results={queries.PGBOUNCER_POOLS_QUERY: pools}, dbname="pgbouncer")
        with patch("pgscv.core.exporter.DB", return_value=fake):
            families = exporter.collect()
        by_name = {f.name: f for f in families}
        sample = by_name["pgbouncer_pool_cl_active"].samples[0]
        assert sample.value == 5.0
        assert sample.labels["pool_mode"] == "transaction"
        assert fake.closed


class TestCollectDirectory:
    @patch("pgscv.core.exporter.fsutil")
    def test_wal_directory(self, mock_fsutil):
        mock_fsutil.read_mounts.return_value = {"/": "/dev/sda1"}
        mock_fsutil.rewrite_path.side_effect = lambda p: p.replace("/pgdata", "/mnt/pgdata")
        mock_fsutil.find_mountpoint.return_value = ("/dev/sdb1", "/mnt")
        exporter, _ = _exporter()
        desc = _desc(exporter, "pg_wal_directory", query=False)
        db = FakeDB(results={
            queries.PG_DATA_DIRECTORY_QUERY: QueryResult(("d",), [("/pgdata/16",)]),
        })
        rec = Recorder()
        assert exporter.collect_directory(db, desc, 160002, rec) == 1
        mock_fsutil.rewrite_path.assert_called_once_with("/pgdata/16/pg_wal")
        assert rec.samples == [
            ("pg_wal_directory", 1.0, ("/dev/sdb1", "/mnt", "/mnt/pgdata/16/pg_wal")),
        ]

    @patch("pgscv.core.exporter.fsutil")
    def test_old_wal_directory_name(self, mock_fsutil):
        mock_fsutil.rewrite_path.side_effect = lambda p: p
        mock_fsutil.find_mountpoint.return_value = ("/dev/sda1", "/")
        exporter, _ = _exporter()
        desc = _desc(exporter, "pg_wal_directory", query=False)
        db = FakeDB(results={
            queries.PG_DATA_DIRECTORY_QUERY: QueryResult(("d",), [("/pgdata",)]),
        })
        exporter.collect_directory(db, desc, 90600, Recorder())
        mock_fsutil.rewrite_path.assert_called_once_with("/pgdata/pg_xlog")

    @patch("pgscv.core.exporter.fsutil")
    def test_relative_log_directory(self, mock_fsutil):
        mock_fsutil.rewrite_path.side_effect = lambda p: p
        mock_fsutil.find_mountpoint.return_value = ("/dev/sda1", "/")
        exporter, _ = _exporter()
        desc = _desc(exporter, "pg_log_directory", query=False)
        db = FakeDB(results={
            queries.PG_DATA_DIRECTORY_QUERY: QueryResult(("d",), [("/pgdata",)]),
            queries.PG_LOG_DIRECTORY_QUERY: QueryResult(("l",), [("log",)]),
        })
        exporter.collect_directory(db, desc, 160002, Recorder())
        mock_fsutil.rewrite_path.assert_called_once_with("/pgdata/log")

    def test_logging_collector_off(self):
        exporter, _ = _exporter()
        desc = _desc(exporter, "pg_log_directory", query=False)
        db = FakeDB(results={
            queries.PG_DATA_DIRECTORY_QUERY: QueryResult(("d",), [("/pgdata",)]),
        })
        with pytest.raises(ValueError):
            exporter.collect_directory(db, desc, 160002, Recorder())

    @patch("pgscv.core.exporter.fsutil")
    def test_directory_families_are_gauges(self, mock_fsutil):
        mock_fsutil.rewrite_path.side_effect = lambda p: p
        mock_fsutil.find_mountpoint.return_value = ("/dev/sda1", "/")
        exporter, _ = _exporter()
        fake = FakeDB(results={
            queries.PG_DATA_DIRECTORY_QUERY: QueryResult(("d",), [("/pgdata",)]),
        })
        with patch("pgscv.core.exporter.DB", return_value=fake):
            families = exporter.collect()
        by_name = {f.name: f for f in families}
        assert by_name["pg_data_directory"].type == "gauge"
        assert by_name["pg_data_directory"].samples[0].labels["path"] == "/pgdata"


class TestCollectSystem:
    def test_dispatch_and_failures(self):
        exporter, _ = _exporter(ServiceType.SYSTEM, conninfo="")

        def uptime(emit):
            emit("node_uptime_seconds", 100.0, ())
            return 1

        def broken(emit):
            raise OSError("no /proc")

        collectors = {"node_uptime_seconds": uptime, "node_cpu_usage": broken}
        with patch("pgscv.core.exporter.SYSTEM_COLLECTORS", collectors):
            families = exporter.collect()
        assert [f.name for f in families] == ["node_uptime_seconds"]
        assert families[0].samples[0].labels["sid"] == SYSTEM_SERVICE_ID
        assert _desc(exporter, "node_uptime_seconds", query=False).collect_done
        assert not _desc(exporter, "node_cpu_usage", query=False).collect_done


class TestCollectPatroni:
    def _exporter(self):
        repo = ServiceRepository()
        service = Service("patroni:8008", ConnSetting(ServiceType.PATRONI,
                                                     base_url="http://127.0.0.1:8008"))
        repo.add(service)
        return Exporter(service, repo, hostname="db1", clock=Clock())

    @patch("pgscv.core.exporter.patroni.fetch_status")
    def test_status(self, mock_fetch):
        mock_fetch.return_value = {"state": "running", "role": "replica",
                                   "patroni": {"version": "3.0.2", "scope": "main"}}
        exporter = self._exporter()
        by_name = {f.name: f for f in exporter.collect()}
        assert by_name["patroni_replica"].samples[0].value == 1.0
        assert by_name["patroni_version"].samples[0].value == 30002.0
        assert by_name["patroni_up"].samples[0].labels["scope"] == "main"
        mock_fetch.assert_called_once_with("http://127.0.0.1:8008")

    @patch("pgscv.core.exporter.patroni.fetch_status", side_effect=ValueError("bad json"))
    def test_failure_counts(self, mock_fetch):
        exporter = self._exporter()
        assert exporter.collect() == []
        assert exporter.total_failed == 1

    @pytest.mark.parametrize(
        "status",
        [
            {"patroni": "3.0.2"},
            {"timeline": "seven"},
            {"xlog": {"location": [1, 2]}},
        ],
    )
    @patch("pgscv.core.exporter.patroni.fetch_status")
    def test_malformed_status_counts_as_failure(self, mock_fetch, status):
        mock_fetch.return_value = status
        exporter = self._exporter()
        assert exporter.collect() == []
        assert exporter.total_failed == 1
