"""Patroni node status read from its REST API."""

from __future__ import annotations

import logging
from datetime import datetime

import requests

logger = logging.getLogger("pgscv.patroni")

REQUEST_TIMEOUT = 5


def fetch_status(base_url: str, timeout: float = REQUEST_TIMEOUT) -> dict:
    """GET ``<base_url>/patroni``. Raises requests.RequestException or ValueError."""
    resp = requests.get(f"{base_url.rstrip('/')}/patroni", timeout=timeout)
    resp.raise_for_status()
    data = resp.json()
    if not isinstance(data, dict):
        raise ValueError("unexpected /patroni response")
    return data


def semver_to_int(version: str) -> int:
    """Encode ``major.minor.patch`` as ``major*10000 + minor*100 + patch``."""
    parts = (version.split("-")[0].split(".") + ["0", "0", "0"])[:3]
    try:
        major, minor, patch = (int(p) for p in parts)
    except ValueError:
        return 0
    return major * 10000 + minor * 100 + patch


def _epoch(value: str | None) -> float | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value).timestamp()
    except ValueError:
        logger.debug("unparsable timestamp %r", value)
        return None


def status_values(status: dict) -> tuple[str, dict[str, float]]:
    """Map a /patroni document to ``(scope, {value_name: value})``."""
    patroni = status.get("patroni") or {}
    xlog = status.get("xlog") or {}
    role = status.get("role", "")
    state = status.get("state", "")

    values: dict[str, float] = {
        "up": 1.0,
        "version": float(semver_to_int(str(patroni.get("version", "")))),
        "postgres_running": 1.0 if state == "running" else 0.0,
        "master": 1.0 if role in ("master", "primary") else 0.0,
        "standby_leader": 1.0 if role == "standby_leader" else 0.0,
        "replica": 1.0 if role == "replica" else 0.0,
        "xlog_location": float(xlog.get("location") or 0),
        "xlog_received_location": float(xlog.get("received_location") or 0),
        "xlog_replayed_location": float(xlog.get("replayed_location") or 0),
        "xlog_paused": 1.0 if xlog.get("paused") else 0.0,
        "postgres_server_version": float(status.get("server_version") or 0),
        "cluster_unlocked": 1.0 if status.get("cluster_unlocked") else 0.0,
        "postgres_timeline": float(status.get("timeline") or 0),
    }
    started = _epoch(status.get("postmaster_start_time"))
    if started is not None:
        values["postmaster_start_time"] = started
    return str(patroni.get("scope", "")), values
