"""Liveness probes for discovered services."""

from __future__ import annotations

import logging

import psycopg2
import requests

from pgscv.core import db, queries
from pgscv.models.enums import ServiceType
from pgscv.models.runtime import Service

logger = logging.getLogger("pgscv.health")

HTTP_HEALTH_TIMEOUT = 1


def check_sql(conninfo: str, sql: str) -> bool:
    try:
        db.ping(conninfo, sql=sql)
    except psycopg2.Error as exc:
        logger.debug("sql health check failed: %s", str(exc).strip())
        return False
    return True


def check_http(base_url: str) -> bool:
    try:
        resp = requests.get(f"{base_url.rstrip('/')}/health", timeout=HTTP_HEALTH_TIMEOUT)
    except requests.RequestException as exc:
        logger.debug("http health check %s failed: %s", base_url, exc)
        return False
    return resp.status_code == 200


def check_service(service: Service) -> bool:
    """Return True when the service answers its type-specific probe."""
    match service.service_type:
        case ServiceType.POSTGRESQL:
            return check_sql(service.conn.conninfo, queries.PG_PING_QUERY)
        case ServiceType.PGBOUNCER:
            return check_sql(service.conn.conninfo, queries.PGBOUNCER_PING_QUERY)
        case ServiceType.PATRONI:
            return check_http(service.conn.base_url)
        case _:
            return True
