"""Frozen dataclass models for discovered services and their connection data."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pgscv.models.enums import ServiceType

SYSTEM_SERVICE_ID = "system:0"


@dataclass(frozen=True, slots=True)
class ConnSetting:
    """How to reach a service: a libpq conninfo or an HTTP base URL."""

    service_type: ServiceType
    conninfo: str = ""
    base_url: str = ""


@dataclass(frozen=True, slots=True)
class Service:
    """A monitored service instance.

    Instances are values: the repository replaces the whole object on every
    update, so a copy handed out to a caller never changes under it.
    """

    service_id: str
    conn: ConnSetting
    project_id: str = ""
    total_errors: int = 0
    collector: Any = field(default=None, compare=False, repr=False)

    @property
    def service_type(self) -> ServiceType:
        return self.conn.service_type


@dataclass(frozen=True, slots=True)
class ConnectionParams:
    """Connection details recovered from postmaster.pid or pgbouncer.ini."""

    pid: int = 0
    datadir_path: str = ""
    start_ts: int = 0
    unix_socket_dir_path: str = ""
    listen_addr: str = ""
    listen_port: int = 0


@dataclass(frozen=True, slots=True)
class ProcessInfo:
    """Snapshot of one OS process, as seen by the discovery scan."""

    pid: int
    name: str
    ppid: int = 0
    cmdline: tuple[str, ...] = ()
    cwd: str = ""
