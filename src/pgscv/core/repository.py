"""Thread-safe registry of monitored services."""

from __future__ import annotations

import dataclasses
import logging
import threading
from collections.abc import Callable

from pgscv.models.enums import ServiceType
from pgscv.models.runtime import SYSTEM_SERVICE_ID, ConnSetting, Service

logger = logging.getLogger("pgscv.repository")


class ServiceRepository:
    """Services keyed by service ID.

    Every access takes the lock, and only for the dict operation itself.
    Services are immutable, so values returned to callers are safe to use
    for network I/O after the lock is released.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._services: dict[str, Service] = {}

    def add(self, service: Service) -> None:
        with self._lock:
            self._services[service.service_id] = service

    def add_if_absent(self, service: Service) -> bool:
        """Add ``service`` unless its ID is already registered."""
        with self._lock:
            if service.service_id in self._services:
                return False
            self._services[service.service_id] = service
            return True

    def get(self, service_id: str) -> Service | None:
        with self._lock:
            return self._services.get(service_id)

    def remove(self, service_id: str) -> bool:
        if service_id == SYSTEM_SERVICE_ID:
            logger.debug("refusing to remove %s", service_id)
            return False
        with self._lock:
            removed = self._services.pop(service_id, None)
        if removed is not None:
            logger.info("service %s removed from the repository", service_id)
        return removed is not None

    def list_ids(self) -> list[str]:
        with self._lock:
            return list(self._services)

    def list_services(self) -> list[Service]:
        with self._lock:
            return list(self._services.values())

    def count(self) -> int:
        with self._lock:
            return len(self._services)

    def _update(self, service_id: str, fn: Callable[[Service], Service]) -> Service | None:
        with self._lock:
            current = self._services.get(service_id)
            if current is None:
                return None
            updated = fn(current)
            self._services[service_id] = updated
            return updated

    def mark_failed(self, service_id: str) -> int:
        """Increment the failure counter and return the new value (0 if unknown)."""
        updated = self._update(
            service_id, lambda s: dataclasses.replace(s, total_errors=s.total_errors + 1)
        )
        return updated.total_errors if updated else 0

    def mark_healthy(self, service_id: str) -> None:
        self._update(service_id, lambda s: dataclasses.replace(s, total_errors=0))

    def failure_count(self, service_id: str) -> int:
        service = self.get(service_id)
        return service.total_errors if service else 0

    def attach_collector(self, service_id: str, collector: object) -> bool:
        """Attach ``collector`` unless the service already has one."""
        with self._lock:
            current = self._services.get(service_id)
            if current is None or current.collector is not None:
                return False
            self._services[service_id] = dataclasses.replace(current, collector=collector)
            return True

    def add_system_service(self, project_id: str = "") -> None:
        self.add_if_absent(
            Service(
                service_id=SYSTEM_SERVICE_ID,
                conn=ConnSetting(ServiceType.SYSTEM),
                project_id=project_id,
            )
        )

    def add_services_from_config(
        self,
        settings: dict[str, ConnSetting],
        project_id: str = "",
        probe: Callable[[Service], bool] | None = None,
    ) -> int:
        """Register statically configured services, skipping those failing ``probe``."""
        added = 0
        for service_id, setting in settings.items():
            service = Service(service_id=service_id, conn=setting, project_id=project_id)
            if probe is not None and not probe(service):
                logger.warning("service %s is unavailable; skip", service_id)
                continue
            self.add(service)
            added += 1
            logger.info("service %s added from configuration", service_id)
        return added
