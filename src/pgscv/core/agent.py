"""Long-running agent tasks: background discovery, scrape orchestration, push loop."""

from __future__ import annotations

import hashlib
import logging
import socket
import threading
from collections.abc import Callable, Iterable
from pathlib import Path

from prometheus_client import CollectorRegistry, pushadd_to_gateway, start_http_server
from prometheus_client.core import Metric
from prometheus_client.exposition import default_handler

from pgscv.config import PgscvConfig
from pgscv.core import discovery, health
from pgscv.core.exporter import EXPORTER_FAILURE_LIMIT, Exporter
from pgscv.core.repository import ServiceRepository
from pgscv.errors import DiscoveryError
from pgscv.models.enums import RuntimeMode
from pgscv.models.runtime import SYSTEM_SERVICE_ID, ProcessInfo, Service

logger = logging.getLogger("pgscv.agent")

DISCOVERY_INTERVAL = 60
HEALTHCHECK_FAILURE_LIMIT = 10
MACHINE_ID_PATH = Path("/etc/machine-id")
API_KEY_HEADER = "X-Weaponry-Api-Key"

ExporterFactory = Callable[[Service, ServiceRepository], Exporter]
HealthCheck = Callable[[Service], bool]


class DiscoveryLoop:
    """Background discovery: scan processes, attach exporters, probe health.

    Runs in its own thread until ``stop()``. ``ready`` is set after the first
    full cycle so that the metrics endpoint does not start empty.
    """

    def __init__(
        self,
        repo: ServiceRepository,
        config: PgscvConfig,
        exporter_factory: ExporterFactory | None = None,
        health_check: HealthCheck = health.check_service,
        processes: Callable[[], Iterable[ProcessInfo]] = discovery.iter_processes,
        interval: float = DISCOVERY_INTERVAL,
    ) -> None:
        self.repo = repo
        self.config = config
        self.exporter_factory = exporter_factory or self._default_factory
        self.health_check = health_check
        self.processes = processes
        self.interval = interval
        self.ready = threading.Event()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._resolved: dict[int, str] = {}

    def _default_factory(self, service: Service, repo: ServiceRepository) -> Exporter:
        return Exporter(service, repo, disabled=self.config.disable_collectors)

    def start(self) -> None:
        self.repo.add_system_service(self.config.project_id)
        self._thread = threading.Thread(target=self.run, name="pgscv-discovery", daemon=True)
        self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    def run(self) -> None:
        logger.debug("starting background discovery")
        self.repo.add_system_service(self.config.project_id)
        while not self._stop.is_set():
            self.run_once()
            self.ready.set()
            if self._stop.wait(self.interval):
                break
        logger.info("exit signaled, stop discovery")

    def run_once(self) -> None:
        self.lookup_services()
        self.setup_services()
        self.health_check_services()

    def lookup_services(self) -> int:
        """Scan processes and register newly found services. Returns how many were added."""
        procs = list(self.processes())
        by_pid = {p.pid: p for p in procs}
        self._forget_resolved(by_pid)
        added = 0
        for proc in procs:
            if proc.pid in self._resolved:
                continue
            stype = discovery.classify(proc, by_pid.get(proc.ppid))
            if stype is None:
                continue
            resolver = discovery.RESOLVERS[stype]
            try:
                service = resolver(proc, self.config.defaults, self.config.project_id)
            except DiscoveryError as exc:
                logger.warning("%s service discovery failed: %s; skip", stype.value, exc)
                continue
            self._resolved[proc.pid] = service.service_id
            if not self.repo.add_if_absent(service):
                logger.debug("service %s already in the repository, skip", service.service_id)
                continue
            logger.info("discovered new %s service [%s]", stype.value, service.service_id)
            added += 1
        return added

    def _forget_resolved(self, alive: dict[int, ProcessInfo]) -> None:
        """Drop pids which exited or whose service left the repository."""
        for pid, service_id in list(self._resolved.items()):
            if pid not in alive or self.repo.get(service_id) is None:
                del self._resolved[pid]

    def setup_services(self) -> int:
        """Attach an exporter to every service which has none yet."""
        created = 0
        for service_id in self.repo.list_ids():
            service = self.repo.get(service_id)
            if service is None or service.collector is not None:
                continue
            exporter = self.exporter_factory(service, self.repo)
            if self.repo.attach_collector(service_id, exporter):
                logger.info("exporter for %s has been created", service_id)
                created += 1
        return created

    def health_check_services(self) -> list[str]:
        """Probe remote services; return IDs of services removed after too many failures."""
        removed = []
        for service_id in self.repo.list_ids():
            if service_id == SYSTEM_SERVICE_ID:
                continue
            service = self.repo.get(service_id)
            if service is None:
                continue
            if self.health_check(service):
                self.repo.mark_healthy(service_id)
                continue
            failures = self.repo.mark_failed(service_id)
            logger.warning("health check of %s failed %d/%d",
                           service_id, failures, HEALTHCHECK_FAILURE_LIMIT)
            if failures >= HEALTHCHECK_FAILURE_LIMIT:
                self.repo.remove(service_id)
                removed.append(service_id)
        return removed


class Orchestrator:
    """Single registry collector fanning out to every service's exporter.

    Same-named families from different services are merged, as exporters of
    one service type share metric names and differ only by constant labels.
    """

    def __init__(self, repo: ServiceRepository) -> None:
        self.repo = repo

    def collect(self) -> Iterable[Metric]:
        merged: dict[str, Metric] = {}
        for service_id in self.repo.list_ids():
            service = self.repo.get(service_id)
            if service is None or service.collector is None:
                continue
            exporter = service.collector
            for family in exporter.collect():
                existing = merged.get(family.name)
                if existing is None:
                    merged[family.name] = family
                else:
                    existing.samples.extend(family.samples)
            check_exporter_failures(self.repo, exporter)
        return merged.values()


def check_exporter_failures(repo: ServiceRepository, exporter: Exporter) -> bool:
    """Remove the exporter's service once it failed too many rounds in a row."""
    if exporter.total_failed < EXPORTER_FAILURE_LIMIT:
        return False
    logger.warning("service %s has been removed from the repo, too many collect failures",
                   exporter.service_id)
    repo.remove(exporter.service_id)
    return True


def machine_id(path: Path = MACHINE_ID_PATH) -> str:
    """Stable host identity: /etc/machine-id, or an md5 of the hostname."""
    try:
        value = path.read_text(encoding="utf-8").strip()
    except OSError:
        value = ""
    if value:
        return value
    return hashlib.md5(socket.gethostname().encode()).hexdigest()  # noqa: S324


def job_label(service_id: str, machine: str | None = None) -> str:
    return f"db_system_{machine or machine_id()}_{service_id}"


def api_key_handler(api_key: str):
    """Push handler adding the gateway API key header."""

    def handler(url, method, timeout, headers, data):
        headers = list(headers) + [(API_KEY_HEADER, api_key)]
        return default_handler(url, method, timeout, headers, data)

    return handler


class PushLoop:
    """Periodically push every service's metrics under its own job label."""

    def __init__(
        self,
        repo: ServiceRepository,
        url: str,
        api_key: str = "",
        interval: float = 60,
        push: Callable[..., None] = pushadd_to_gateway,
    ) -> None:
        self.repo = repo
        self.url = url
        self.api_key = api_key
        self.interval = interval
        self._push = push
        self._machine = machine_id()
        self._stop = threading.Event()

    def stop(self) -> None:
        self._stop.set()

    def push_once(self) -> int:
        """Push each service separately; return the number of successful pushes."""
        pushed = 0
        for service_id in self.repo.list_ids():
            service = self.repo.get(service_id)
            if service is None or service.collector is None:
                continue
            exporter = service.collector
            registry = CollectorRegistry()
            registry.register(exporter)
            kwargs = {"handler": api_key_handler(self.api_key)} if self.api_key else {}
            try:
                self._push(self.url, job=job_label(service_id, self._machine),
                           registry=registry, **kwargs)
            except OSError as exc:
                logger.warning("failed to push metrics of %s: %s", service_id, exc)
            else:
                pushed += 1
            check_exporter_failures(self.repo, exporter)
        return pushed

    def run(self) -> None:
        while not self._stop.wait(self.interval):
            self.push_once()
        logger.info("exit signaled, stop pushing metrics")


def run_agent(config: PgscvConfig, stop: threading.Event) -> None:
    """Start discovery plus the pull endpoint or push loop; block until ``stop`` is set."""
    repo = ServiceRepository()
    repo.add_system_service(config.project_id)
    if config.services:
        repo.add_services_from_config(config.services, config.project_id, health.check_service)

    loop = DiscoveryLoop(repo, config)
    loop.start()
    while not loop.ready.wait(1):
        if stop.is_set():
            loop.stop(timeout=5)
            return

    if config.runtime_mode is RuntimeMode.PUSH:
        pusher = PushLoop(repo, config.push.metrics_service_url, config.push.api_key,
                          config.push.send_interval)
        thread = threading.Thread(target=pusher.run, name="pgscv-push", daemon=True)
        thread.start()
        logger.info("pushing metrics to %s every %ds",
                    config.push.metrics_service_url, config.push.send_interval)
        stop.wait()
        pusher.stop()
    else:
        registry = CollectorRegistry()
        registry.register(Orchestrator(repo))
        host, port = config.listen_host_port
        start_http_server(port, addr=host, registry=registry)
        logger.info("listening on %s:%d", host, port)
        stop.wait()

    loop.stop(timeout=5)
