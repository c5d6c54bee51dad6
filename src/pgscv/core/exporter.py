"""Per-service metrics exporter.

An ``Exporter`` is bound to one service ID and owns a private copy of the
catalog descriptors for that service type. Every ``collect()`` call runs one
collection round:

* Postgres: connect, read the server version, adapt queries, list databases,
  then walk the descriptors once per database. Oneshot descriptors are
  collected in the first database that succeeds, the rest in every database.
* Pgbouncer: the same walk against the single ``pgbouncer`` database.
* System: a dispatch table of host statistic readers.
* Patroni: one request to the REST API.

Rounds start by clearing ``collect_done`` and activating gated descriptors
whose interval expired, and end by stamping every collected descriptor with
one timestamp.
"""

from __future__ import annotations

import logging
import socket
import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from datetime import datetime, timezone

import psutil
import psycopg2
import requests
from prometheus_client.core import GaugeMetricFamily, Metric, UnknownMetricFamily

from pgscv.core import fsutil, patroni, queries
from pgscv.core.catalog import StatDescriptor, adjust_queries, global_help_catalog, global_stat_catalog
from pgscv.core.db import DB, QueryResult, with_dbname
from pgscv.core.system import SYSTEM_COLLECTORS
from pgscv.models.enums import ServiceType
from pgscv.models.runtime import Service

logger = logging.getLogger("pgscv.exporter")

# Consecutive failed rounds before the orchestrator drops the service.
EXPORTER_FAILURE_LIMIT = 10

CONST_LABEL_NAMES = ("project_id", "sid", "db_instance")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True, slots=True)
class MetricDesc:
    """Name, help and labels of one metric produced by an exporter."""

    name: str
    help: str
    label_names: tuple[str, ...]
    const_labels: tuple[tuple[str, str], ...]
    gauge: bool = False

    def new_family(self) -> Metric:
        labels = list(self.label_names) + [k for k, _ in self.const_labels]
        if self.gauge:
            return GaugeMetricFamily(self.name, self.help, labels=labels)
        return UnknownMetricFamily(self.name, self.help, labels=labels)

    def label_values(self, values: tuple[str, ...]) -> list[str]:
        return list(values) + [v for _, v in self.const_labels]


class _Families:
    """Accumulates samples of one round into metric families."""

    def __init__(self, descs: dict[str, MetricDesc]) -> None:
        self._descs = descs
        self._families: dict[str, Metric] = {}

    def emit(self, name: str, value: float, labels: tuple[str, ...]) -> None:
        desc = self._descs.get(name)
        if desc is None:
            logger.debug("no descriptor for metric %s; skip", name)
            return
        family = self._families.get(name)
        if family is None:
            family = self._families[name] = desc.new_family()
        family.add_metric(desc.label_values(labels), value)

    def metrics(self) -> list[Metric]:
        return list(self._families.values())


class Exporter:
    """Collector bound to a single service in the repository."""

    def __init__(
        self,
        service: Service,
        repo,
        hostname: str | None = None,
        disabled: Iterable[str] = (),
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self.service_id = service.service_id
        self.service_type = service.service_type
        self.repo = repo
        self.total_failed = 0
        self._clock = clock
        self._lock = threading.Lock()

        skip = set(disabled)
        help_catalog = global_help_catalog()
        const_labels = (
            ("project_id", service.project_id),
            ("sid", service.service_id),
            ("db_instance", hostname or socket.gethostname()),
        )

        self.catalog: list[StatDescriptor] = []
        self.descs: dict[str, MetricDesc] = {}
        for desc in global_stat_catalog():
            if desc.stat_type is not self.service_type or desc.name in skip:
                continue
            for metric in desc.metric_names():
                self.descs[metric] = MetricDesc(
                    name=metric,
                    help=help_catalog.get(metric, metric),
                    label_names=desc.label_names,
                    const_labels=const_labels,
                    gauge=desc.is_directory_lookup,
                )
            self.catalog.append(desc)

    def __repr__(self) -> str:
        return f"Exporter({self.service_id!r}, descriptors={len(self.catalog)})"

    # -- prometheus_client collector protocol --------------------------------

    def describe(self) -> list[Metric]:
        return [desc.new_family() for desc in self.descs.values()]

    def collect(self) -> list[Metric]:
        with self._lock:
            service = self.repo.get(self.service_id)
            if service is None:
                return []
            families = _Families(self.descs)
            match service.service_type:
                case ServiceType.POSTGRESQL:
                    cnt = self.collect_postgres(service, families.emit)
                case ServiceType.PGBOUNCER:
                    cnt = self.collect_pgbouncer(service, families.emit)
                case ServiceType.SYSTEM:
                    cnt = self.collect_system(families.emit)
                case ServiceType.PATRONI:
                    cnt = self.collect_patroni(service, families.emit)
                case _:
                    cnt = 0
            logger.debug("%s: %d metrics generated", self.service_id, cnt)
            return families.metrics()

    # -- round bookkeeping ----------------------------------------------------

    def _begin_round(self, stype: ServiceType) -> None:
        now = self._clock()
        for desc in self.catalog:
            if desc.stat_type is not stype:
                continue
            desc.collect_done = False
            if desc.schedule.gated and desc.schedule.is_expired(now):
                desc.schedule.activate()

    def _end_round(self, stype: ServiceType) -> None:
        now = self._clock()
        for desc in self.catalog:
            if desc.stat_type is stype and desc.collect_done:
                desc.schedule.mark_fired(now)

    def _fail(self, service: Service, err: object) -> int:
        self.total_failed += 1
        logger.warning(
            "collect failed %d/%d: %s; skip collecting %s",
            self.total_failed, EXPORTER_FAILURE_LIMIT, str(err).strip(), service.service_id,
        )
        return 0

    # -- postgres and pgbouncer ------------------------------------------------

    def collect_postgres(self, service: Service, emit) -> int:
        conninfo = service.conn.conninfo
        try:
            db = DB(conninfo).connect()
        except psycopg2.Error as exc:
            return self._fail(service, exc)

        try:
            version = db.server_version_num()
        except (psycopg2.Error, ValueError) as exc:
            db.close()
            return self._fail(service, exc)

        adjust_queries(self.catalog, version)

        try:
            dblist = db.get_databases()
        except psycopg2.Error as exc:
            logger.warning("failed to get list of databases: %s; use default database", exc)
            dblist = []
        if not dblist:
            dblist = [db.dbname or "postgres"]
        db.close()

        self._begin_round(ServiceType.POSTGRESQL)

        cnt = 0
        for dbname in dblist:
            try:
                conn = DB(with_dbname(conninfo, dbname)).connect()
            except psycopg2.Error as exc:
                logger.warning("collect failed: %s; skip collecting for dbname %s",
                               str(exc).strip(), dbname)
                continue
            try:
                cnt += self.walk(conn, ServiceType.POSTGRESQL, version, emit)
            finally:
                conn.close()

        self._end_round(ServiceType.POSTGRESQL)
        self.total_failed = 0
        return cnt

    def collect_pgbouncer(self, service: Service, emit) -> int:
        self._begin_round(ServiceType.PGBOUNCER)
        try:
            db = DB(service.conn.conninfo).connect()
        except psycopg2.Error as exc:
            return self._fail(service, exc)
        try:
            cnt = self.walk(db, ServiceType.PGBOUNCER, 0, emit)
        finally:
            db.close()
        self._end_round(ServiceType.PGBOUNCER)
        self.total_failed = 0
        return cnt

    def walk(self, db: DB, stype: ServiceType, version: int, emit) -> int:
        """Run every due descriptor of ``stype`` against one database connection."""
        cnt = 0
        for desc in self.catalog:
            if desc.stat_type is not stype:
                continue
            if not desc.is_active():
                continue
            if desc.collect_oneshot and desc.collect_done:
                continue

            if desc.is_directory_lookup:
                try:
                    cnt += self.collect_directory(db, desc, version, emit)
                except (psycopg2.Error, OSError, ValueError) as exc:
                    logger.warning("skip collecting %s: %s", desc.name, str(exc).strip())
                    continue
                self._mark_done(desc)
                continue

            if desc.name == "pg_stat_statements" and not db.is_pgss_available():
                logger.debug("skip collecting pg_stat_statements in database %s", db.dbname)
                continue

            try:
                result = db.query(desc.query_text)
            except psycopg2.Error as exc:
                logger.warning("skip collecting %s, failed to execute query: %s",
                               desc.name, str(exc).strip())
                continue

            if not result.rows:
                logger.debug("no rows returned for %s", desc.name)
            cnt += self.emit_rows(desc, result, emit)
            self._mark_done(desc)
        return cnt

    @staticmethod
    def _mark_done(desc: StatDescriptor) -> None:
        desc.collect_done = True
        if desc.schedule.gated and desc.collect_oneshot:
            desc.schedule.deactivate()

    def emit_rows(self, desc: StatDescriptor, result: QueryResult, emit) -> int:
        """Turn query rows into samples; labels are found by column name."""
        label_idx = [
            result.colnames.index(name) if name in result.colnames else None
            for name in desc.label_names
        ]
        cnt = 0
        for row in result.rows:
            labels = tuple(
                "" if idx is None or row[idx] is None else row[idx] for idx in label_idx
            )
            for colname, value in zip(result.colnames, row):
                if colname in desc.label_names:
                    continue
                metric = f"{desc.name}_{colname}"
                if metric not in self.descs:
                    logger.debug("skip collecting %s: column is not declared", metric)
                    continue
                if value is None or value == "":
                    logger.debug("skip collecting %s metric: got empty value", metric)
                    continue
                try:
                    number = float(value)
                except ValueError:
                    logger.debug("skip collecting %s metric: %r is not a number", metric, value)
                    continue
                emit(metric, number, labels)
                cnt += 1
        return cnt

    def collect_directory(self, db: DB, desc: StatDescriptor, version: int, emit) -> int:
        """Emit the device and mountpoint behind a Postgres directory."""
        dirpath = db.query_scalar(queries.PG_DATA_DIRECTORY_QUERY)
        if not dirpath:
            raise ValueError("data_directory is empty")

        if desc.name == "pg_wal_directory":
            dirpath += "/pg_wal" if version >= 100000 else "/pg_xlog"
        elif desc.name == "pg_log_directory":
            logpath = db.query_scalar(queries.PG_LOG_DIRECTORY_QUERY)
            if not logpath:
                raise ValueError("logging_collector is off")
            dirpath = logpath if logpath.startswith("/") else f"{dirpath}/{logpath}"

        mounts = fsutil.read_mounts()
        realpath = fsutil.rewrite_path(dirpath)
        device, mountpoint = fsutil.find_mountpoint(realpath, mounts)
        emit(desc.name, 1.0, (device, mountpoint, realpath))
        return 1

    # -- system and patroni -----------------------------------------------------

    def collect_system(self, emit) -> int:
        self._begin_round(ServiceType.SYSTEM)
        cnt = 0
        for desc in self.catalog:
            if desc.stat_type is not ServiceType.SYSTEM or not desc.is_active():
                continue
            fn = SYSTEM_COLLECTORS.get(desc.name)
            if fn is None:
                continue
            try:
                cnt += fn(emit)
            except (OSError, ValueError, psutil.Error) as exc:
                logger.warning("failed to collect %s: %s", desc.name, exc)
                continue
            self._mark_done(desc)
        self._end_round(ServiceType.SYSTEM)
        return cnt

    def collect_patroni(self, service: Service, emit) -> int:
        self._begin_round(ServiceType.PATRONI)
        cnt = 0
        for desc in self.catalog:
            if desc.stat_type is not ServiceType.PATRONI or not desc.is_active():
                continue
            try:
                status = patroni.fetch_status(service.conn.base_url)
                scope, values = patroni.status_values(status)
            except (requests.RequestException, ValueError, TypeError, AttributeError) as exc:
                return self._fail(service, exc)
            for name, value in values.items():
                emit(f"{desc.name}_{name}", value, (scope,))
                cnt += 1
            self._mark_done(desc)
        self._end_round(ServiceType.PATRONI)
        self.total_failed = 0
        return cnt
