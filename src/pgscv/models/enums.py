"""Enumerations for pgscv runtime models."""

from enum import Enum


class ServiceType(str, Enum):
    """Kind of monitored service."""

    SYSTEM = "system"
    POSTGRESQL = "postgres"
    PGBOUNCER = "pgbouncer"
    PATRONI = "patroni"
    # Descriptors reassigned here are never matched by any exporter.
    DISABLED = "disabled"


class RuntimeMode(str, Enum):
    """How collected metrics leave the agent."""

    PULL = "pull"
    PUSH = "push"
