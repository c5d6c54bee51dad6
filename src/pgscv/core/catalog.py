"""Declarative catalog of statistic descriptors.

Each descriptor names a metric family prefix, the service type it belongs to,
the query which produces it and the columns used as values and labels. An
empty query marks a descriptor collected by a dedicated routine (directory
mountpoints, host statistics, the Patroni REST API).

``global_stat_catalog()`` builds new descriptor objects on every call, so an
exporter owns its schedule state and never shares it with other exporters.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import timedelta

from pgscv.core import queries
from pgscv.core.schedule import DEFAULT_SCHEDULE_INTERVAL, Schedule
from pgscv.models.enums import ServiceType

logger = logging.getLogger("pgscv.catalog")

PG = ServiceType.POSTGRESQL
PGB = ServiceType.PGBOUNCER
SYS = ServiceType.SYSTEM
PATRONI = ServiceType.PATRONI

DIRECTORY_LABELS = ("device", "mountpoint", "path")


@dataclass(slots=True)
class StatDescriptor:
    """One named statistic source and its per-exporter runtime state."""

    name: str
    stat_type: ServiceType
    query_text: str = ""
    value_names: tuple[str, ...] = ()
    label_names: tuple[str, ...] = ()
    collect_oneshot: bool = False
    collect_done: bool = False
    schedule: Schedule = field(default_factory=Schedule)

    def metric_names(self) -> list[str]:
        """Full metric names produced by this descriptor."""
        if not self.value_names:
            return [self.name]
        return [f"{self.name}_{suffix}" for suffix in self.value_names]

    def is_active(self) -> bool:
        return self.schedule.active

    @property
    def is_directory_lookup(self) -> bool:
        return self.stat_type is PG and not self.query_text and not self.value_names


def _gated(interval: timedelta = DEFAULT_SCHEDULE_INTERVAL) -> Schedule:
    return Schedule(interval=interval)


_DISKSTATS_VALUES = (
    "rcompleted", "rmerged", "rsectors", "rspent", "wcompleted", "wmerged", "wsectors",
    "wspent", "ioinprogress", "tspent", "tweighted", "uptime",
)
_NETDEV_VALUES = (
    "rbytes", "rpackets", "rerrs", "rdrop", "rfifo", "rframe", "rcompressed", "rmulticast",
    "tbytes", "tpackets", "terrs", "tdrop", "tfifo", "tcolls", "tcarrier", "tcompressed",
    "saturation", "uptime", "speed", "duplex",
)
_PG_STAT_DATABASE_VALUES = (
    "xact_commit", "xact_rollback", "blks_read", "blks_hit", "tup_returned", "tup_fetched",
    "tup_inserted", "tup_updated", "tup_deleted", "conflicts", "temp_files", "temp_bytes",
    "deadlocks", "blk_read_time", "blk_write_time", "db_size", "stats_age_seconds",
)
_PG_STAT_USER_TABLES_VALUES = (
    "seq_scan", "seq_tup_read", "idx_scan", "idx_tup_fetch", "n_tup_ins", "n_tup_upd",
    "n_tup_del", "n_tup_hot_upd", "n_live_tup", "n_dead_tup", "n_mod_since_analyze",
    "vacuum_count", "autovacuum_count", "analyze_count", "autoanalyze_count",
)
_PG_STATIO_USER_TABLES_VALUES = (
    "heap_blks_read", "heap_blks_hit", "idx_blks_read", "idx_blks_hit", "toast_blks_read",
    "toast_blks_hit", "tidx_blks_read", "tidx_blks_hit",
)
_PG_STAT_BGWRITER_VALUES = (
    "checkpoints_timed", "checkpoints_req", "checkpoint_write_time", "checkpoint_sync_time",
    "buffers_checkpoint", "buffers_clean", "maxwritten_clean", "buffers_backend",
    "buffers_backend_fsync", "buffers_alloc",
)
_PG_STAT_ACTIVITY_VALUES = (
    "conn_total", "conn_idle_total", "conn_idle_xact_total", "conn_active_total",
    "conn_waiting_total", "conn_others_total", "conn_prepared_total",
)
_PG_STAT_STATEMENTS_VALUES = (
    "calls", "rows", "total_time", "blk_read_time", "blk_write_time", "shared_blks_hit",
    "shared_blks_read", "shared_blks_dirtied", "shared_blks_written", "local_blks_hit",
    "local_blks_read", "local_blks_dirtied", "local_blks_written", "temp_blks_read",
    "temp_blks_written",
)
_PG_STAT_REPLICATION_VALUES = (
    "pg_wal_bytes", "pending_lag_bytes", "write_lag_bytes", "flush_lag_bytes",
    "replay_lag_bytes", "total_lag_bytes", "write_lag_sec", "flush_lag_sec", "replay_lag_sec",
)
_PGBOUNCER_POOLS_VALUES = (
    "cl_active", "cl_waiting", "sv_active", "sv_idle", "sv_used", "sv_tested", "sv_login",
    "maxwait", "maxwait_us",
)
_PGBOUNCER_STATS_VALUES = (
    "xact_count", "query_count", "bytes_received", "bytes_sent", "xact_time", "query_time",
    "wait_time",
)
PATRONI_VALUES = (
    "up", "version", "postgres_running", "postmaster_start_time", "master", "standby_leader",
    "replica", "xlog_location", "xlog_received_location", "xlog_replayed_location",
    "xlog_paused", "postgres_server_version", "cluster_unlocked", "postgres_timeline",
)


def global_stat_catalog() -> list[StatDescriptor]:
    """Return a fresh copy of every known statistic descriptor."""
    return [
        # Cluster-wide Postgres statistics, collected once per round.
        StatDescriptor("pg_stat_database", PG, queries.PG_STAT_DATABASE_QUERY,
                       _PG_STAT_DATABASE_VALUES, ("datid", "datname"), collect_oneshot=True),
        StatDescriptor("pg_stat_bgwriter", PG, queries.PG_STAT_BGWRITER_QUERY,
                       _PG_STAT_BGWRITER_VALUES, collect_oneshot=True),
        StatDescriptor("pg_stat_user_functions", PG, queries.PG_STAT_USER_FUNCTIONS_QUERY,
                       ("calls", "total_time", "self_time"),
                       ("funcid", "datname", "schemaname", "funcname")),
        StatDescriptor("pg_stat_activity", PG, queries.PG_STAT_ACTIVITY_QUERY,
                       _PG_STAT_ACTIVITY_VALUES, collect_oneshot=True),
        StatDescriptor("pg_stat_activity", PG, queries.PG_STAT_ACTIVITY_DURATIONS_QUERY,
                       ("max_seconds", "idle_xact_max_seconds", "wait_max_seconds"),
                       collect_oneshot=True),
        StatDescriptor("pg_stat_activity_autovac", PG, queries.PG_STAT_ACTIVITY_AUTOVAC_QUERY,
                       ("workers_total", "antiwraparound_workers_total", "user_vacuum_total",
                        "max_duration"), collect_oneshot=True),
        StatDescriptor("pg_stat_statements", PG, queries.PG_STAT_STATEMENTS_QUERY,
                       _PG_STAT_STATEMENTS_VALUES, ("usename", "datname", "queryid", "query"),
                       collect_oneshot=True),
        StatDescriptor("pg_stat_replication", PG, queries.PG_STAT_REPLICATION_QUERY,
                       _PG_STAT_REPLICATION_VALUES, ("client_addr", "application_name"),
                       collect_oneshot=True),
        StatDescriptor("pg_replication_slots_restart_lag", PG, queries.PG_REPLICATION_SLOTS_QUERY,
                       ("bytes",), ("slot_name", "active"), collect_oneshot=True),
        StatDescriptor("pg_replication_slots", PG, queries.PG_REPLICATION_SLOTS_COUNT_QUERY,
                       ("conn",), ("state",), collect_oneshot=True),
        StatDescriptor("pg_replication_standby", PG, queries.PG_REPLICATION_STANDBY_COUNT_QUERY,
                       ("count",), collect_oneshot=True),
        StatDescriptor("pg_recovery", PG, queries.PG_RECOVERY_STATUS_QUERY,
                       ("status",), collect_oneshot=True),
        StatDescriptor("pg_stat_database_conflicts", PG, queries.PG_STAT_DATABASE_CONFLICTS_QUERY,
                       ("total", "tablespace", "lock", "snapshot", "bufferpin", "deadlock"),
                       collect_oneshot=True),
        StatDescriptor("pg_stat_basebackup", PG, queries.PG_STAT_BASEBACKUP_QUERY,
                       ("count", "duration_seconds_max"), collect_oneshot=True),
        StatDescriptor("pg_stat_current_temp", PG, queries.PG_STAT_CURRENT_TEMP_FILES_QUERY,
                       ("files_total", "bytes_total", "oldest_file_age_seconds_max"),
                       ("tablespace",), collect_oneshot=True),
        StatDescriptor("pg_data_directory", PG, "", (), DIRECTORY_LABELS,
                       collect_oneshot=True, schedule=_gated()),
        StatDescriptor("pg_wal_directory", PG, "", (), DIRECTORY_LABELS,
                       collect_oneshot=True, schedule=_gated()),
        StatDescriptor("pg_log_directory", PG, "", (), DIRECTORY_LABELS,
                       collect_oneshot=True, schedule=_gated()),
        StatDescriptor("pg_wal_directory", PG, queries.PG_WAL_DIR_SIZE_QUERY,
                       ("size_bytes",), collect_oneshot=True, schedule=_gated()),
        StatDescriptor("pg_log_directory", PG, queries.PG_LOG_DIR_SIZE_QUERY,
                       ("size_bytes",), collect_oneshot=True, schedule=_gated()),
        StatDescriptor("pg_catalog_size", PG, queries.PG_CATALOG_SIZE_QUERY,
                       ("bytes",), ("datname",), schedule=_gated()),
        StatDescriptor("pg_settings", PG, queries.PG_SETTINGS_QUERY,
                       ("guc",), ("name", "unit", "secondary"),
                       collect_oneshot=True, schedule=_gated()),
        # Per-database Postgres statistics, collected in every database.
        StatDescriptor("pg_stat_user_tables", PG, queries.PG_STAT_USER_TABLES_QUERY,
                       _PG_STAT_USER_TABLES_VALUES, ("datname", "schemaname", "relname")),
        StatDescriptor("pg_statio_user_tables", PG, queries.PG_STATIO_USER_TABLES_QUERY,
                       _PG_STATIO_USER_TABLES_VALUES, ("datname", "schemaname", "relname")),
        StatDescriptor("pg_stat_user_indexes", PG, queries.PG_STAT_USER_INDEXES_QUERY,
                       ("idx_scan", "idx_tup_read", "idx_tup_fetch"),
                       ("datname", "schemaname", "relname", "indexrelname")),
        StatDescriptor("pg_statio_user_indexes", PG, queries.PG_STATIO_USER_INDEXES_QUERY,
                       ("idx_blks_read", "idx_blks_hit"),
                       ("datname", "schemaname", "relname", "indexrelname")),
        StatDescriptor("pg_schema_non_pk_table", PG, queries.PG_SCHEMA_NON_PK_TABLES_QUERY,
                       ("exists",), ("datname", "schemaname", "relname"), schedule=_gated()),
        StatDescriptor("pg_schema_invalid_index", PG, queries.PG_SCHEMA_INVALID_INDEXES_QUERY,
                       ("bytes",), ("datname", "schemaname", "relname", "indexrelname"),
                       schedule=_gated()),
        StatDescriptor("pg_schema_non_indexed_fkey", PG, queries.PG_SCHEMA_NON_INDEXED_FKEY_QUERY,
                       ("exists",),
                       ("datname", "schemaname", "relname", "colnames", "constraint", "referenced"),
                       schedule=_gated()),
        StatDescriptor("pg_schema_redundant_index", PG, queries.PG_SCHEMA_REDUNDANT_INDEXES_QUERY,
                       ("bytes",),
                       ("datname", "schemaname", "relname", "indexrelname", "indexdef",
                        "redundantdef"),
                       schedule=_gated()),
        StatDescriptor("pg_schema_sequence_fullness", PG,
                       queries.PG_SCHEMA_SEQUENCE_FULLNESS_QUERY,
                       ("ratio",), ("datname", "schemaname", "seqname"), schedule=_gated()),
        StatDescriptor("pg_schema_fkey_columns_mismatch", PG,
                       queries.PG_SCHEMA_FKEY_COLUMNS_MISMATCH_QUERY,
                       ("exists",),
                       ("datname", "schemaname", "relname", "colname", "refschemaname",
                        "refrelname", "refcolname"),
                       schedule=_gated()),
        # Host statistics; there is no database entity, so every one is oneshot.
        StatDescriptor("node_cpu_usage", SYS, value_names=("time",), label_names=("mode",),
                       collect_oneshot=True),
        StatDescriptor("node_diskstats", SYS, value_names=_DISKSTATS_VALUES,
                       label_names=("device",), collect_oneshot=True),
        StatDescriptor("node_netdev", SYS, value_names=_NETDEV_VALUES,
                       label_names=("interface",), collect_oneshot=True),
        StatDescriptor("node_memory", SYS, value_names=("usage_bytes",),
                       label_names=("usage",), collect_oneshot=True),
        StatDescriptor("node_filesystem", SYS, value_names=("bytes", "inodes"),
                       label_names=("usage", "device", "mountpoint", "flags"),
                       collect_oneshot=True),
        StatDescriptor("node_settings", SYS, value_names=("sysctl",), label_names=("sysctl",),
                       collect_oneshot=True, schedule=_gated()),
        StatDescriptor("node_hardware_cores", SYS, value_names=("total",),
                       label_names=("state",), collect_oneshot=True, schedule=_gated()),
        StatDescriptor("node_hardware_scaling_governors", SYS, value_names=("total",),
                       label_names=("governor",), collect_oneshot=True, schedule=_gated()),
        StatDescriptor("node_hardware_numa", SYS, value_names=("nodes",),
                       collect_oneshot=True, schedule=_gated()),
        StatDescriptor("node_hardware_storage_rotational", SYS,
                       label_names=("device", "scheduler"),
                       collect_oneshot=True, schedule=_gated()),
        StatDescriptor("node_uptime_seconds", SYS, collect_oneshot=True),
        # Pgbouncer has a single pseudo-database.
        StatDescriptor("pgbouncer_pool", PGB, queries.PGBOUNCER_POOLS_QUERY,
                       _PGBOUNCER_POOLS_VALUES, ("database", "user", "pool_mode")),
        StatDescriptor("pgbouncer_stats", PGB, queries.PGBOUNCER_STATS_QUERY,
                       _PGBOUNCER_STATS_VALUES, ("database",)),
        # Patroni node status from the REST API.
        StatDescriptor("patroni", PATRONI, value_names=PATRONI_VALUES, label_names=("scope",),
                       collect_oneshot=True),
    ]


_HELP_PREFIXES: dict[str, str] = {
    "pg_stat_database": "Per-database statistics from pg_stat_database",
    "pg_stat_bgwriter": "Background writer and checkpointer activity",
    "pg_stat_user_functions": "User-defined function call statistics",
    "pg_stat_activity": "Client connections and their durations from pg_stat_activity",
    "pg_stat_activity_autovac": "Running autovacuum and manual vacuum workers",
    "pg_stat_statements": "Statement execution statistics from pg_stat_statements",
    "pg_stat_replication": "WAL positions and lag of connected standbys",
    "pg_replication_slots_restart_lag": "WAL retained by replication slots",
    "pg_replication_slots": "Number of replication slots by state",
    "pg_replication_standby": "Number of connected standbys",
    "pg_recovery": "Recovery state of the server, 1 when in recovery",
    "pg_stat_database_conflicts": "Queries cancelled due to recovery conflicts",
    "pg_stat_basebackup": "Running base backups",
    "pg_stat_current_temp": "Temporary files currently present, by tablespace",
    "pg_wal_directory": "WAL directory",
    "pg_log_directory": "Log directory",
    "pg_catalog_size": "Total size of system catalog relations",
    "pg_settings": "Server configuration parameters, string values are exposed as -1000",
    "pg_stat_user_tables": "Table access statistics",
    "pg_statio_user_tables": "Table IO statistics",
    "pg_stat_user_indexes": "Index access statistics",
    "pg_statio_user_indexes": "Index IO statistics",
    "pg_schema_non_pk_table": "Tables without a primary key",
    "pg_schema_invalid_index": "Invalid indexes",
    "pg_schema_non_indexed_fkey": "Foreign keys without an index on the referencing columns",
    "pg_schema_redundant_index": "Indexes covered by another index",
    "pg_schema_sequence_fullness": "Ratio of used sequence values to the sequence maximum",
    "pg_schema_fkey_columns_mismatch": "Foreign keys whose columns differ in type",
    "node_cpu_usage": "CPU time spent in each mode, in seconds",
    "node_diskstats": "Block device statistics from /proc/diskstats",
    "node_netdev": "Network interface statistics from /proc/net/dev",
    "node_memory": "Memory and swap usage",
    "node_filesystem": "Mounted filesystem usage",
    "node_settings": "Kernel settings read from sysctl",
    "node_hardware_cores": "Number of CPU cores by state",
    "node_hardware_scaling_governors": "Number of CPU cores by frequency scaling governor",
    "node_hardware_numa": "Number of NUMA nodes",
    "pgbouncer_pool": "Pgbouncer pool state from SHOW POOLS",
    "pgbouncer_stats": "Pgbouncer totals from SHOW STATS_TOTALS",
    "patroni": "Patroni node status",
}

_HELP_EXACT: dict[str, str] = {
    "pg_data_directory": "Mountpoint and device backing the Postgres data directory.",
    "pg_wal_directory": "Mountpoint and device backing the Postgres WAL directory.",
    "pg_log_directory": "Mountpoint and device backing the Postgres log directory.",
    "pg_wal_directory_size_bytes": "Total size of WAL segments in the WAL directory, in bytes.",
    "pg_log_directory_size_bytes": "Total size of files in the log directory, in bytes.",
    "node_hardware_storage_rotational": "Block device rotational flag labeled by IO scheduler.",
    "node_uptime_seconds": "Seconds since the host booted.",
    "patroni_up": "State of Patroni service: 1 is up, 0 otherwise.",
    "patroni_version": "Numeric representation of Patroni version.",
    "patroni_master": "Value is 1 if this node is the leader, 0 otherwise.",
    "patroni_replica": "Value is 1 if this node is a replica, 0 otherwise.",
    "patroni_standby_leader": "Value is 1 if this node is the standby leader, 0 otherwise.",
    "patroni_cluster_unlocked": "Value is 1 if the cluster is unlocked, 0 if locked.",
}


def global_help_catalog() -> dict[str, str]:
    """Map every full metric name in the catalog to its help text."""
    help_catalog: dict[str, str] = {}
    for desc in global_stat_catalog():
        for metric in desc.metric_names():
            if metric in _HELP_EXACT:
                help_catalog[metric] = _HELP_EXACT[metric]
                continue
            prefix = _HELP_PREFIXES.get(desc.name, desc.name)
            suffix = metric[len(desc.name) + 1:].replace("_", " ")
            help_catalog[metric] = f"{prefix}: {suffix}." if suffix else f"{prefix}."
    return help_catalog


def adjust_queries(descs: list[StatDescriptor], version: int) -> None:
    """Rewrite version-dependent queries in place for a server of ``version``."""
    for desc in descs:
        if desc.stat_type is not PG or not desc.query_text:
            continue
        match desc.name:
            case "pg_stat_replication":
                if version < 100000:
                    desc.query_text = queries.PG_STAT_REPLICATION_QUERY_96
            case "pg_replication_slots_restart_lag":
                if version < 100000:
                    desc.query_text = queries.PG_REPLICATION_SLOTS_QUERY_96
            case "pg_wal_directory":
                if version < 100000:
                    desc.query_text = queries.PG_WAL_DIR_SIZE_QUERY_96
            case "pg_schema_sequence_fullness":
                if version < 100000:
                    logger.debug("disable %s on server version %d", desc.name, version)
                    desc.stat_type = ServiceType.DISABLED
            case "pg_stat_statements":
                if version >= 170000:
                    desc.query_text = queries.PG_STAT_STATEMENTS_QUERY_17
                elif version >= 130000:
                    desc.query_text = queries.PG_STAT_STATEMENTS_QUERY_13
            case "pg_stat_bgwriter":
                if version >= 170000:
                    desc.query_text = queries.PG_STAT_BGWRITER_QUERY_17
