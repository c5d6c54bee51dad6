"""pgscv data models."""

from pgscv.models.enums import RuntimeMode, ServiceType
from pgscv.models.runtime import (
    SYSTEM_SERVICE_ID,
    ConnectionParams,
    ConnSetting,
    ProcessInfo,
    Service,
)

__all__ = [
    "ServiceType",
    "RuntimeMode",
    "SYSTEM_SERVICE_ID",
    "ConnSetting",
    "Service",
    "ConnectionParams",
    "ProcessInfo",
]
