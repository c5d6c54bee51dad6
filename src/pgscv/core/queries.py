"""SQL texts used by discovery and the Postgres/Pgbouncer exporters."""

# Service probes.
PG_VERSION_NUM_QUERY = "SELECT current_setting('server_version_num')"
PG_DATABASES_QUERY = "SELECT datname FROM pg_database WHERE NOT datistemplate AND datallowconn"
PG_PING_QUERY = "SELECT 1"
PGBOUNCER_PING_QUERY = "SHOW VERSION"
PGSS_VIEW_EXISTS_QUERY = (
    "SELECT EXISTS (SELECT 1 FROM information_schema.views "
    "WHERE table_name = 'pg_stat_statements')"
)
PGSS_SELECT_QUERY = "SELECT 1 FROM pg_stat_statements LIMIT 1"

# Directory lookups.
PG_DATA_DIRECTORY_QUERY = "SELECT current_setting('data_directory')"
PG_LOG_DIRECTORY_QUERY = (
    "SELECT current_setting('log_directory') "
    "WHERE current_setting('logging_collector') = 'on'"
)

PG_STAT_DATABASE_QUERY = (
    "SELECT datid, datname, xact_commit, xact_rollback, blks_read, blks_hit, tup_returned, "
    "tup_fetched, tup_inserted, tup_updated, tup_deleted, conflicts, temp_files, temp_bytes, "
    "deadlocks, blk_read_time, blk_write_time, pg_database_size(datname) AS db_size, "
    "coalesce(extract('epoch' from age(now(), stats_reset)), 0) AS stats_age_seconds "
    "FROM pg_stat_database "
    "WHERE datname IN (SELECT datname FROM pg_database WHERE datallowconn AND NOT datistemplate)"
)

PG_STAT_USER_TABLES_QUERY = (
    "SELECT current_database() AS datname, schemaname, relname, seq_scan, seq_tup_read, "
    "idx_scan, idx_tup_fetch, n_tup_ins, n_tup_upd, n_tup_del, n_tup_hot_upd, n_live_tup, "
    "n_dead_tup, n_mod_since_analyze, vacuum_count, autovacuum_count, analyze_count, "
    "autoanalyze_count FROM pg_stat_user_tables"
)

PG_STATIO_USER_TABLES_QUERY = (
    "SELECT current_database() AS datname, schemaname, relname, heap_blks_read, heap_blks_hit, "
    "idx_blks_read, idx_blks_hit, toast_blks_read, toast_blks_hit, tidx_blks_read, "
    "tidx_blks_hit FROM pg_statio_user_tables"
)

PG_STAT_USER_INDEXES_QUERY = (
    "SELECT current_database() AS datname, schemaname, relname, indexrelname, idx_scan, "
    "idx_tup_read, idx_tup_fetch FROM pg_stat_user_indexes"
)

PG_STATIO_USER_INDEXES_QUERY = (
    "SELECT current_database() AS datname, schemaname, relname, indexrelname, idx_blks_read, "
    "idx_blks_hit FROM pg_statio_user_indexes"
)

PG_STAT_BGWRITER_QUERY = (
    "SELECT checkpoints_timed, checkpoints_req, checkpoint_write_time, checkpoint_sync_time, "
    "buffers_checkpoint, buffers_clean, maxwritten_clean, buffers_backend, "
    "buffers_backend_fsync, buffers_alloc FROM pg_stat_bgwriter"
)

# Checkpoint counters moved into pg_stat_checkpointer; backend writes went to pg_stat_io.
PG_STAT_BGWRITER_QUERY_17 = (
    "SELECT c.num_timed AS checkpoints_timed, c.num_requested AS checkpoints_req, "
    "c.write_time AS checkpoint_write_time, c.sync_time AS checkpoint_sync_time, "
    "c.buffers_written AS buffers_checkpoint, b.buffers_clean, b.maxwritten_clean, "
    "b.buffers_alloc FROM pg_stat_bgwriter b, pg_stat_checkpointer c"
)

PG_STAT_USER_FUNCTIONS_QUERY = (
    "SELECT funcid, current_database() AS datname, schemaname, funcname, calls, total_time, "
    "self_time FROM pg_stat_user_functions"
)

PG_STAT_ACTIVITY_QUERY = """SELECT
    count(*) FILTER (WHERE state IS NOT NULL) AS conn_total,
    count(*) FILTER (WHERE state = 'idle') AS conn_idle_total,
    count(*) FILTER (WHERE state IN ('idle in transaction', 'idle in transaction (aborted)')) AS conn_idle_xact_total,
    count(*) FILTER (WHERE state = 'active') AS conn_active_total,
    count(*) FILTER (WHERE wait_event_type = 'Lock') AS conn_waiting_total,
    count(*) FILTER (WHERE state IN ('fastpath function call','disabled')) AS conn_others_total,
    (SELECT count(*) FROM pg_prepared_xacts) AS conn_prepared_total
FROM pg_stat_activity"""

PG_STAT_ACTIVITY_DURATIONS_QUERY = """SELECT
    coalesce(extract(epoch FROM max(clock_timestamp() - coalesce(xact_start, query_start)) FILTER (WHERE state != 'idle' AND query !~* '^autovacuum:' AND query !~* '^vacuum')), 0) AS max_seconds,
    coalesce(extract(epoch FROM max(clock_timestamp() - state_change) FILTER (WHERE state IN ('idle in transaction', 'idle in transaction (aborted)'))), 0) AS idle_xact_max_seconds,
    coalesce(extract(epoch FROM max(clock_timestamp() - state_change) FILTER (WHERE wait_event_type = 'Lock')), 0) AS wait_max_seconds
FROM pg_stat_activity WHERE pid <> pg_backend_pid()"""

PG_STAT_ACTIVITY_AUTOVAC_QUERY = """SELECT
    count(*) FILTER (WHERE query ~* '^autovacuum:') AS workers_total,
    count(*) FILTER (WHERE query ~* '^autovacuum:.*to prevent wraparound') AS antiwraparound_workers_total,
    count(*) FILTER (WHERE query ~ '^vacuum' AND state != 'idle') AS user_vacuum_total,
    coalesce(extract(epoch FROM max(clock_timestamp() - coalesce(xact_start, query_start))), 0) AS max_duration
FROM pg_stat_activity
WHERE (query ~* '^autovacuum:' OR query ~* '^vacuum') AND pid <> pg_backend_pid()"""

PG_STAT_REPLICATION_QUERY_96 = """SELECT coalesce(client_addr, '127.0.0.1') AS client_addr,
    application_name,
    (CASE pg_is_in_recovery() WHEN 't' THEN NULL ELSE pg_xlog_location_diff(pg_current_xlog_location(), '0/00000000') END) AS pg_wal_bytes,
    pg_xlog_location_diff(pg_current_xlog_location(), sent_location) AS pending_lag_bytes,
    pg_xlog_location_diff(sent_location, write_location) AS write_lag_bytes,
    pg_xlog_location_diff(write_location, flush_location) AS flush_lag_bytes,
    pg_xlog_location_diff(flush_location, replay_location) AS replay_lag_bytes,
    pg_xlog_location_diff(pg_current_xlog_location(), replay_location) AS total_lag_bytes
FROM pg_stat_replication WHERE state != 'backup' AND application_name != 'pg_basebackup'"""

PG_STAT_REPLICATION_QUERY = """SELECT coalesce(client_addr, '127.0.0.1') AS client_addr,
    application_name,
    (CASE pg_is_in_recovery() WHEN 't' THEN NULL ELSE pg_wal_lsn_diff(pg_current_wal_lsn(), '0/00000000') END) AS pg_wal_bytes,
    pg_wal_lsn_diff(pg_current_wal_lsn(), sent_lsn) AS pending_lag_bytes,
    pg_wal_lsn_diff(sent_lsn, write_lsn) AS write_lag_bytes,
    pg_wal_lsn_diff(write_lsn, flush_lsn) AS flush_lag_bytes,
    pg_wal_lsn_diff(flush_lsn, replay_lsn) AS replay_lag_bytes,
    pg_wal_lsn_diff(pg_current_wal_lsn(), replay_lsn) AS total_lag_bytes,
    extract(epoch FROM write_lag) AS write_lag_sec,
    extract(epoch FROM flush_lag) AS flush_lag_sec,
    extract(epoch FROM replay_lag) AS replay_lag_sec
FROM pg_stat_replication WHERE state != 'backup' AND application_name != 'pg_basebackup'"""

PG_REPLICATION_SLOTS_QUERY_96 = (
    "SELECT slot_name, active::int, "
    "pg_xlog_location_diff(pg_current_xlog_location(), restart_lsn) AS bytes "
    "FROM pg_replication_slots"
)

PG_REPLICATION_SLOTS_QUERY = (
    "SELECT slot_name, active::int, "
    "pg_wal_lsn_diff(pg_current_wal_lsn(), restart_lsn) AS bytes "
    "FROM pg_replication_slots"
)

PG_REPLICATION_SLOTS_COUNT_QUERY = """SELECT 'total' AS state, count(*) AS conn FROM pg_replication_slots
UNION SELECT 'active' AS state, count(*) FILTER (WHERE active) AS conn FROM pg_replication_slots
UNION SELECT 'inactive' AS state, count(*) FILTER (WHERE NOT active) AS conn FROM pg_replication_slots"""

PG_REPLICATION_STANDBY_COUNT_QUERY = (
    "SELECT count(1) FROM pg_stat_replication "
    "WHERE state != 'backup' AND application_name != 'pg_basebackup'"
)

PG_STAT_BASEBACKUP_QUERY = (
    "SELECT count(pid) AS count, "
    "coalesce(extract(epoch FROM max(clock_timestamp() - backend_start)), 0) AS duration_seconds_max "
    "FROM pg_stat_replication WHERE state = 'backup'"
)

PG_RECOVERY_STATUS_QUERY = "SELECT pg_is_in_recovery()::int AS status"

PG_STAT_DATABASE_CONFLICTS_QUERY = """SELECT
    sum(confl_tablespace + confl_lock + confl_snapshot + confl_bufferpin + confl_deadlock) AS total,
    sum(confl_tablespace) AS tablespace, sum(confl_lock) AS lock, sum(confl_snapshot) AS snapshot,
    sum(confl_bufferpin) AS bufferpin, sum(confl_deadlock) AS deadlock
FROM pg_stat_database_conflicts"""

_PG_STAT_STATEMENTS_TEMPLATE = """SELECT
    pg_get_userbyid(p.userid) AS usename, d.datname AS datname, p.queryid,
    regexp_replace(left(p.query, 1024), E'\\\\s+', ' ', 'g') AS query,
    p.calls, p.rows,
    {total_time} AS total_time, {read_time} AS blk_read_time, {write_time} AS blk_write_time,
    p.shared_blks_hit, p.shared_blks_read, p.shared_blks_dirtied, p.shared_blks_written,
    p.local_blks_hit, p.local_blks_read, p.local_blks_dirtied, p.local_blks_written,
    p.temp_blks_read, p.temp_blks_written
FROM pg_stat_statements p
JOIN pg_database d ON d.oid = p.dbid"""

PG_STAT_STATEMENTS_QUERY = _PG_STAT_STATEMENTS_TEMPLATE.format(
    total_time="p.total_time", read_time="p.blk_read_time", write_time="p.blk_write_time"
)
PG_STAT_STATEMENTS_QUERY_13 = _PG_STAT_STATEMENTS_TEMPLATE.format(
    total_time="p.total_exec_time", read_time="p.blk_read_time", write_time="p.blk_write_time"
)
PG_STAT_STATEMENTS_QUERY_17 = _PG_STAT_STATEMENTS_TEMPLATE.format(
    total_time="p.total_exec_time",
    read_time="p.shared_blk_read_time",
    write_time="p.shared_blk_write_time",
)

PG_STAT_CURRENT_TEMP_FILES_QUERY = r"""WITH RECURSIVE tablespace_dirs AS (
    SELECT dirname, 'pg_tblspc/' || dirname || '/' AS path, 1 AS depth
    FROM pg_catalog.pg_ls_dir('pg_tblspc/', true, false) AS dirname
    UNION ALL
    SELECT subdir, td.path || subdir || '/', td.depth + 1
    FROM tablespace_dirs AS td, pg_catalog.pg_ls_dir(td.path, true, false) AS subdir WHERE td.depth < 3
), temp_dirs AS (
    SELECT td.path, ts.spcname AS tablespace
    FROM tablespace_dirs AS td
    INNER JOIN pg_catalog.pg_tablespace AS ts ON (ts.oid = substring(td.path FROM 'pg_tblspc/(\d+)')::int)
    WHERE td.depth = 3 AND td.dirname = 'pgsql_tmp'
    UNION ALL
    VALUES ('base/pgsql_tmp/', 'pg_default')
), temp_files AS (
    SELECT td.tablespace, pg_stat_file(td.path || '/' || filename, true) AS file_stat
    FROM temp_dirs AS td
    LEFT JOIN pg_catalog.pg_ls_dir(td.path, true, false) AS filename ON true
) SELECT tablespace,
    count((file_stat).size) AS files_total,
    coalesce(sum((file_stat).size)::BIGINT, 0) AS bytes_total,
    coalesce(extract(epoch FROM clock_timestamp() - min((file_stat).access)), 0) AS oldest_file_age_seconds_max
FROM temp_files GROUP BY 1"""

# pg_xlog also holds archive_status, which is counted as one more segment.
PG_WAL_DIR_SIZE_QUERY_96 = (
    "SELECT (SELECT count(*) FROM pg_ls_dir('pg_xlog')) "
    "* pg_size_bytes(current_setting('wal_segment_size')) AS size_bytes"
)
PG_WAL_DIR_SIZE_QUERY = "SELECT sum(size) AS size_bytes FROM pg_ls_waldir()"

PG_LOG_DIR_SIZE_QUERY = (
    "SELECT sum(size) AS size_bytes FROM ("
    "SELECT (pg_stat_file(logdir || '/' || pg_ls_dir(logdir))).size "
    "FROM current_setting('log_directory') AS logdir "
    "WHERE current_setting('logging_collector') = 'on') AS size"
)

PG_CATALOG_SIZE_QUERY = (
    "SELECT current_database() AS datname, sum(pg_total_relation_size(relid)) AS bytes "
    "FROM pg_stat_sys_tables WHERE schemaname = 'pg_catalog'"
)

PG_SETTINGS_QUERY = """SELECT name, unit,
    CASE WHEN vartype = 'bool' THEN setting::bool::int::text
        WHEN vartype IN ('string', 'enum') THEN '-1000'::text
        ELSE setting
    END AS guc,
    CASE WHEN vartype IN ('string', 'enum', 'bool') THEN setting END AS secondary
FROM pg_show_all_settings()"""

PG_SCHEMA_NON_PK_TABLES_QUERY = (
    "SELECT current_database() AS datname, t.nspname AS schemaname, t.relname AS relname, "
    "1 AS exists FROM (SELECT c.oid, c.relname, n.nspname FROM pg_class c "
    "JOIN pg_namespace n ON n.oid = c.relnamespace WHERE c.relkind = 'r' "
    "AND n.nspname NOT IN ('pg_catalog', 'information_schema')) AS t "
    "LEFT OUTER JOIN pg_constraint c ON c.contype = 'p' AND c.conrelid = t.oid "
    "WHERE c.conname IS NULL"
)

PG_SCHEMA_INVALID_INDEXES_QUERY = (
    "SELECT current_database() AS datname, c1.relnamespace::regnamespace AS schemaname, "
    "c2.relname AS relname, c1.relname AS indexrelname, pg_relation_size(c1.oid) AS bytes "
    "FROM pg_index i JOIN pg_class c1 ON i.indexrelid = c1.oid "
    "JOIN pg_class c2 ON i.indrelid = c2.oid WHERE NOT i.indisvalid"
)

PG_SCHEMA_NON_INDEXED_FKEY_QUERY = (
    "SELECT current_database() AS datname, c.connamespace::regnamespace AS schemaname, "
    "s.relname AS relname, string_agg(a.attname, ',' ORDER BY x.n) AS colnames, "
    "c.conname AS constraint, c.confrelid::regclass AS referenced, 1 AS exists "
    "FROM pg_catalog.pg_constraint c "
    "CROSS JOIN LATERAL unnest(c.conkey) WITH ORDINALITY AS x(attnum, n) "
    "JOIN pg_catalog.pg_attribute a ON a.attnum = x.attnum AND a.attrelid = c.conrelid "
    "JOIN pg_class s ON c.conrelid = s.oid "
    "WHERE NOT EXISTS (SELECT 1 FROM pg_catalog.pg_index i WHERE i.indrelid = c.conrelid "
    "AND (i.indkey::smallint[])[0:cardinality(c.conkey)-1] @> c.conkey) AND c.contype = 'f' "
    "GROUP BY c.connamespace, s.relname, c.conname, c.confrelid"
)

PG_SCHEMA_REDUNDANT_INDEXES_QUERY = r"""WITH index_data AS (
    SELECT *, string_to_array(indkey::text, ' ') AS key_array,
        array_length(string_to_array(indkey::text, ' '), 1) AS nkeys
    FROM pg_index
) SELECT current_database() AS datname, c1.relnamespace::regnamespace AS schemaname,
    c1.relname AS relname, c2.relname AS indexrelname,
    pg_get_indexdef(i1.indexrelid) AS indexdef, pg_get_indexdef(i2.indexrelid) AS redundantdef,
    pg_relation_size(i2.indexrelid) AS bytes
FROM index_data AS i1
JOIN index_data AS i2 ON i1.indrelid = i2.indrelid AND i1.indexrelid <> i2.indexrelid
JOIN pg_class c1 ON i1.indrelid = c1.oid
JOIN pg_class c2 ON i2.indexrelid = c2.oid
WHERE (regexp_replace(i1.indpred, 'location \d+', 'location', 'g') IS NOT DISTINCT FROM regexp_replace(i2.indpred, 'location \d+', 'location', 'g'))
    AND (regexp_replace(i1.indexprs, 'location \d+', 'location', 'g') IS NOT DISTINCT FROM regexp_replace(i2.indexprs, 'location \d+', 'location', 'g'))
    AND ((i1.nkeys > i2.nkeys AND NOT i2.indisunique)
        OR (i1.nkeys = i2.nkeys AND ((i1.indisunique AND i2.indisunique AND (i1.indexrelid > i2.indexrelid))
            OR (NOT i1.indisunique AND NOT i2.indisunique AND (i1.indexrelid > i2.indexrelid))
            OR (i1.indisunique AND NOT i2.indisunique))))
    AND i1.key_array[1:i2.nkeys] = i2.key_array"""

PG_SCHEMA_SEQUENCE_FULLNESS_QUERY = (
    "SELECT current_database() AS datname, schemaname, sequencename AS seqname, "
    "coalesce(last_value, 0) / max_value::float AS ratio FROM pg_sequences"
)

PG_SCHEMA_FKEY_COLUMNS_MISMATCH_QUERY = (
    "SELECT current_database() AS datname, c1.relnamespace::regnamespace AS schemaname, "
    "c1.relname AS relname, a1.attname || '::' || t1.typname AS colname, "
    "c2.relnamespace::regnamespace AS refschemaname, c2.relname AS refrelname, "
    "a2.attname || '::' || t2.typname AS refcolname, 1 AS exists "
    "FROM pg_constraint JOIN pg_class c1 ON c1.oid = conrelid "
    "JOIN pg_class c2 ON c2.oid = confrelid "
    "JOIN pg_attribute a1 ON a1.attnum = conkey[1] AND a1.attrelid = conrelid "
    "JOIN pg_attribute a2 ON a2.attnum = confkey[1] AND a2.attrelid = confrelid "
    "JOIN pg_type t1 ON t1.oid = a1.atttypid JOIN pg_type t2 ON t2.oid = a2.atttypid "
    "WHERE a1.atttypid <> a2.atttypid AND contype = 'f'"
)

PGBOUNCER_POOLS_QUERY = "SHOW POOLS"
PGBOUNCER_STATS_QUERY = "SHOW STATS_TOTALS"
