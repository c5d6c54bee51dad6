"""Turn running processes into monitored services.

Postgres and Pgbouncer services are reconstructed from the files they leave
behind (``postmaster.pid``, ``pgbouncer.ini``), Patroni from its YAML config.
Resolvers raise ``DiscoveryError`` on any failure, the caller logs it and
moves on to the next process.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterator

import psutil
import psycopg2
import yaml
from psycopg2.extensions import make_dsn

from pgscv.core import db
from pgscv.errors import DiscoveryError
from pgscv.models.enums import ServiceType
from pgscv.models.runtime import ConnectionParams, ConnSetting, ProcessInfo, Service

logger = logging.getLogger("pgscv.discovery")

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PGBOUNCER_PORT = 6432
DEFAULT_PGBOUNCER_SOCKET_DIR = "/tmp"
DEFAULT_PATRONI_PORT = "8008"
DEFAULT_POSTGRES_USERNAME = "pgscv"
DEFAULT_POSTGRES_DBNAME = "postgres"
DEFAULT_PGBOUNCER_USERNAME = "pgscv"
DEFAULT_PGBOUNCER_DBNAME = "pgbouncer"

Connector = Callable[[str], None]


def attempt_connect(conninfo: str) -> None:
    """Open and close a connection. Raises DiscoveryError when it fails."""
    try:
        with db.DB(conninfo):
            pass
    except psycopg2.Error as exc:
        raise DiscoveryError(f"connect failed: {str(exc).strip()}") from exc


# -- processes --------------------------------------------------------------


def process_info(proc: psutil.Process) -> ProcessInfo | None:
    """Read what discovery needs from a process, or None if it vanished."""
    try:
        with proc.oneshot():
            name = proc.name()
            ppid = proc.ppid()
            try:
                cmdline = tuple(proc.cmdline())
            except psutil.AccessDenied:
                cmdline = ()
            try:
                cwd = proc.cwd()
            except psutil.AccessDenied:
                cwd = ""
    except (psutil.NoSuchProcess, psutil.ZombieProcess):
        return None
    except psutil.AccessDenied:
        logger.debug("access denied reading pid %d", proc.pid)
        return None
    return ProcessInfo(pid=proc.pid, name=name, ppid=ppid, cmdline=cmdline, cwd=cwd)


def iter_processes() -> Iterator[ProcessInfo]:
    for proc in psutil.process_iter():
        info = process_info(proc)
        if info is not None:
            yield info


def classify(proc: ProcessInfo, parent: ProcessInfo | None = None) -> ServiceType | None:
    """Decide which resolver, if any, handles ``proc``.

    Only the postmaster is interesting among Postgres processes: its parent is
    init (or anything else that is not Postgres).
    """
    if proc.name == "postgres":
        if proc.ppid == 1 or parent is None or parent.name != "postgres":
            return ServiceType.POSTGRESQL
        return None
    if proc.name == "pgbouncer":
        return ServiceType.PGBOUNCER
    if proc.name.startswith("python") and find_patroni_config(proc.cmdline, proc.cwd):
        return ServiceType.PATRONI
    return None


# -- postgres ---------------------------------------------------------------


def parse_postgres_cmdline(cmdline: tuple[str, ...] | list[str], cwd: str = "") -> str:
    """Return the data directory from ``-D``, falling back to the working directory."""
    for i, arg in enumerate(cmdline):
        if arg == "-D" and i + 1 < len(cmdline):
            return cmdline[i + 1]
        if arg.startswith("-D") and len(arg) > 2:
            return arg[2:]
    if cwd:
        return cwd
    raise DiscoveryError("data directory argument not found")


def parse_postmaster_pid(path: str) -> ConnectionParams:
    """Read connection parameters from a postmaster.pid file."""
    try:
        with open(path, encoding="utf-8") as f:
            lines = f.read().splitlines()
    except (OSError, UnicodeDecodeError) as exc:
        raise DiscoveryError(f"read {path}: {exc}") from exc

    if len(lines) < 4:
        raise DiscoveryError(f"{path}: truncated, {len(lines)} lines")

    try:
        pid = int(lines[0])
        start_ts = int(lines[2])
        port = int(lines[3])
    except ValueError as exc:
        raise DiscoveryError(f"{path}: {exc}") from exc

    listen_addr = lines[5] if len(lines) > 5 else ""
    if listen_addr == "*":
        listen_addr = DEFAULT_HOST

    return ConnectionParams(
        pid=pid,
        datadir_path=lines[1],
        start_ts=start_ts,
        listen_port=port,
        unix_socket_dir_path=lines[4] if len(lines) > 4 else "",
        listen_addr=listen_addr,
    )


def new_postgres_connection_string(
    params: ConnectionParams, defaults: dict[str, str], unix: bool
) -> str:
    username = defaults.get("postgres_username", DEFAULT_POSTGRES_USERNAME)
    dbname = defaults.get("postgres_dbname", DEFAULT_POSTGRES_DBNAME)
    password = defaults.get("postgres_password", "")

    host = params.unix_socket_dir_path if unix else params.listen_addr
    return make_dsn(
        application_name="pgscv",
        host=host or None,
        port=params.listen_port if params.listen_port > 0 else None,
        user=username,
        dbname=dbname,
        password=password or None,
    )


def discover_postgres(
    proc: ProcessInfo,
    defaults: dict[str, str],
    project_id: str = "",
    connect: Connector = attempt_connect,
) -> Service:
    datadir = parse_postgres_cmdline(proc.cmdline, proc.cwd)
    params = parse_postmaster_pid(os.path.join(datadir, "postmaster.pid"))

    errors = []
    for unix in (True, False):
        conninfo = new_postgres_connection_string(params, defaults, unix)
        try:
            connect(conninfo)
        except DiscoveryError as exc:
            errors.append(str(exc))
            continue
        logger.debug(
            "postgres found, pid %d, available through %s:%d",
            proc.pid, params.listen_addr or params.unix_socket_dir_path, params.listen_port,
        )
        return Service(
            service_id=f"{ServiceType.POSTGRESQL.value}:{params.listen_port}",
            conn=ConnSetting(ServiceType.POSTGRESQL, conninfo=conninfo),
            project_id=project_id,
        )
    raise DiscoveryError(f"postgres pid {proc.pid}: {'; '.join(errors)}")


# -- pgbouncer --------------------------------------------------------------


def parse_pgbouncer_cmdline(cmdline: tuple[str, ...] | list[str]) -> str:
    """Return the ini file path: the last argument which is not a flag."""
    args = list(cmdline[1:])
    for arg in reversed(args):
        if not arg.startswith("-"):
            return arg
    raise DiscoveryError("pgbouncer config file argument not found")


def parse_pgbouncer_ini(path: str) -> ConnectionParams:
    """Read listen settings from pgbouncer.ini, applying pgbouncer's own defaults."""
    listen_addr = ""
    listen_port = 0
    socket_dir = ""
    try:
        with open(path, encoding="utf-8") as f:
            for raw in f:
                line = raw.strip()
                if not line or line.startswith((";", "#")):
                    continue
                vals = line.replace(" ", "").split("=")
                if len(vals) != 2:
                    continue
                key, value = vals
                if key == "listen_addr":
                    listen_addr = value.split(",")[0]
                    if listen_addr == "*":
                        listen_addr = DEFAULT_HOST
                elif key == "listen_port":
                    try:
                        listen_port = int(value)
                    except ValueError as exc:
                        raise DiscoveryError(f"{path}: bad listen_port {value!r}") from exc
                elif key == "unix_socket_dir":
                    socket_dir = value
    except (OSError, UnicodeDecodeError) as exc:
        raise DiscoveryError(f"read {path}: {exc}") from exc

    return ConnectionParams(
        listen_addr=listen_addr,
        listen_port=listen_port or DEFAULT_PGBOUNCER_PORT,
        unix_socket_dir_path=socket_dir or DEFAULT_PGBOUNCER_SOCKET_DIR,
    )


def new_pgbouncer_connection_string(params: ConnectionParams, defaults: dict[str, str]) -> str:
    username = defaults.get("pgbouncer_username", DEFAULT_PGBOUNCER_USERNAME)
    password = defaults.get("pgbouncer_password", "")

    return make_dsn(
        application_name="pgscv",
        host=params.listen_addr or params.unix_socket_dir_path or None,
        port=params.listen_port if params.listen_port > 0 else None,
        user=username,
        dbname=DEFAULT_PGBOUNCER_DBNAME,
        password=password or None,
    )


def discover_pgbouncer(
    proc: ProcessInfo,
    defaults: dict[str, str],
    project_id: str = "",
    connect: Connector = attempt_connect,
) -> Service:
    ini_path = parse_pgbouncer_cmdline(proc.cmdline)
    if not os.path.isabs(ini_path) and proc.cwd:
        ini_path = os.path.join(proc.cwd, ini_path)
    params = parse_pgbouncer_ini(ini_path)
    conninfo = new_pgbouncer_connection_string(params, defaults)
    connect(conninfo)

    logger.debug(
        "pgbouncer found, pid %d, available through %s:%d",
        proc.pid, params.listen_addr or params.unix_socket_dir_path, params.listen_port,
    )
    return Service(
        service_id=f"{ServiceType.PGBOUNCER.value}:{params.listen_port}",
        conn=ConnSetting(ServiceType.PGBOUNCER, conninfo=conninfo),
        project_id=project_id,
    )


# -- patroni ----------------------------------------------------------------


def find_patroni_config(cmdline: tuple[str, ...] | list[str], cwd: str = "") -> str:
    """Return the first YAML argument as an absolute path, or an empty string."""
    for arg in cmdline[1:]:
        if arg.endswith((".yml", ".yaml")):
            if os.path.isabs(arg) or not cwd:
                return arg
            return os.path.join(cwd, arg)
    return ""


def parse_listen_string(listen: str) -> tuple[str, str]:
    """Split a Patroni ``restapi.listen`` value into a connectable host and port."""
    if not listen:
        raise DiscoveryError("empty listen string")
    if listen == "::":
        return "[::1]", DEFAULT_PATRONI_PORT

    if ":" in listen:
        host, _, port = listen.rpartition(":")
        if host.startswith("[") and host.endswith("]"):
            host = host[1:-1]
    else:
        host, port = listen, DEFAULT_PATRONI_PORT

    if not port.isdigit():
        raise DiscoveryError(f"invalid port in listen string {listen!r}")

    if host in ("", "0.0.0.0"):
        host = DEFAULT_HOST
    elif host == "::":
        host = "[::1]"
    elif ":" in host:
        host = f"[{host}]"
    return host, port


def parse_patroni_config(path: str) -> tuple[str, str, str]:
    """Return ``(scheme, host, port)`` of the Patroni REST API."""
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, UnicodeDecodeError, yaml.YAMLError) as exc:
        raise DiscoveryError(f"read {path}: {exc}") from exc

    restapi = data.get("restapi") if isinstance(data, dict) else None
    if not isinstance(restapi, dict):
        raise DiscoveryError(f"{path}: restapi section not found")

    host, port = parse_listen_string(str(restapi.get("listen") or ""))
    scheme = "https" if restapi.get("certfile") else "http"
    return scheme, host, port


def discover_patroni(
    proc: ProcessInfo,
    defaults: dict[str, str],
    project_id: str = "",
    connect: Connector | None = None,
) -> Service:
    path = find_patroni_config(proc.cmdline, proc.cwd)
    if not path:
        raise DiscoveryError(f"pid {proc.pid}: patroni config argument not found")
    scheme, host, port = parse_patroni_config(path)
    base_url = f"{scheme}://{host}:{port}"
    if connect is not None:
        connect(base_url)

    logger.debug("patroni found, pid %d, available through %s", proc.pid, base_url)
    return Service(
        service_id=f"{ServiceType.PATRONI.value}:{port}",
        conn=ConnSetting(ServiceType.PATRONI, base_url=base_url),
        project_id=project_id,
    )


RESOLVERS: dict[ServiceType, Callable[..., Service]] = {
    ServiceType.POSTGRESQL: discover_postgres,
    ServiceType.PGBOUNCER: discover_pgbouncer,
    ServiceType.PATRONI: discover_patroni,
}
