"""Layered configuration: pgscv.toml -> PGSCV_* env vars -> defaults."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

from pgscv.errors import ConfigError
from pgscv.models.enums import RuntimeMode, ServiceType
from pgscv.models.runtime import ConnSetting

try:
    import tomllib  # 3.11+
except ModuleNotFoundError:
    import tomli as tomllib  # type: ignore[no-redef]

DEFAULT_CONFIG_PATH = Path("/etc/pgscv/pgscv.toml")
DEFAULT_LISTEN_ADDRESS = "127.0.0.1:9890"

# Keys of the [defaults] table which discovery uses to build connection strings.
DEFAULT_KEYS = (
    "postgres_username",
    "postgres_dbname",
    "postgres_password",
    "pgbouncer_username",
    "pgbouncer_password",
)

_DSN_PREFIXES = {
    "POSTGRES_DSN": ServiceType.POSTGRESQL,
    "PGBOUNCER_DSN": ServiceType.PGBOUNCER,
}
_URL_PREFIXES = {
    "PATRONI_URL": ServiceType.PATRONI,
}


@dataclass(frozen=True, slots=True)
class PushConfig:
    """Push gateway settings. An empty URL keeps the agent in pull mode."""

    metrics_service_url: str = ""
    api_key: str = ""
    send_interval: int = 60


@dataclass(frozen=True, slots=True)
class PgscvConfig:
    """Top-level configuration container."""

    listen_address: str = DEFAULT_LISTEN_ADDRESS
    project_id: str = ""
    defaults: dict[str, str] = field(default_factory=dict)
    services: dict[str, ConnSetting] = field(default_factory=dict)
    disable_collectors: tuple[str, ...] = ()
    push: PushConfig = field(default_factory=PushConfig)

    @property
    def runtime_mode(self) -> RuntimeMode:
        return RuntimeMode.PUSH if self.push.metrics_service_url else RuntimeMode.PULL

    @property
    def listen_host_port(self) -> tuple[str, int]:
        host, _, port = self.listen_address.rpartition(":")
        try:
            return host or "0.0.0.0", int(port)
        except ValueError as exc:
            raise ConfigError(f"invalid listen_address {self.listen_address!r}") from exc

    @classmethod
    def load(
        cls,
        path: Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> PgscvConfig:
        """Load config with layering: TOML file -> env vars -> defaults."""
        env = os.environ if environ is None else environ
        toml_path = Path(path) if path else DEFAULT_CONFIG_PATH

        toml_data: dict = {}
        if toml_path.is_file():
            try:
                with open(toml_path, "rb") as f:
                    toml_data = tomllib.load(f)
            except tomllib.TOMLDecodeError as exc:
                raise ConfigError(f"{toml_path}: {exc}") from exc
        elif path is not None:
            raise ConfigError(f"config file {toml_path} does not exist")

        push_data = toml_data.get("push", {})
        _push_defaults = PushConfig()

        try:
            send_interval = int(
                env.get(
                    "PGSCV_SEND_INTERVAL",
                    push_data.get("send_interval", _push_defaults.send_interval),
                )
            )
        except ValueError as exc:
            raise ConfigError(f"invalid send_interval: {exc}") from exc
        if send_interval <= 0:
            raise ConfigError("send_interval must be positive")

        push = PushConfig(
            metrics_service_url=env.get(
                "PGSCV_METRICS_SERVICE_URL",
                push_data.get("metrics_service_url", _push_defaults.metrics_service_url),
            ),
            api_key=env.get("PGSCV_API_KEY", push_data.get("api_key", _push_defaults.api_key)),
            send_interval=send_interval,
        )

        defaults = {k: str(v) for k, v in toml_data.get("defaults", {}).items()}
        for key in DEFAULT_KEYS:
            value = env.get(f"PGSCV_{key.upper()}")
            if value is not None:
                defaults[key] = value

        disabled = toml_data.get("disable_collectors", [])
        if "PGSCV_DISABLE_COLLECTORS" in env:
            disabled = [
                name.strip()
                for name in env["PGSCV_DISABLE_COLLECTORS"].split(",")
                if name.strip()
            ]

        services = _services_from_toml(toml_data.get("services", {}))
        services.update(services_from_env(env))

        return cls(
            listen_address=env.get(
                "PGSCV_LISTEN_ADDRESS",
                toml_data.get("listen_address", DEFAULT_LISTEN_ADDRESS),
            ),
            project_id=str(env.get("PGSCV_PROJECT_ID", toml_data.get("project_id", ""))),
            defaults=defaults,
            services=services,
            disable_collectors=tuple(disabled),
            push=push,
        )


def _services_from_toml(data: dict) -> dict[str, ConnSetting]:
    services: dict[str, ConnSetting] = {}
    for service_id, item in data.items():
        try:
            stype = ServiceType(item.get("service_type", ""))
        except ValueError as exc:
            raise ConfigError(f"service {service_id}: {exc}") from exc
        if stype in (ServiceType.SYSTEM, ServiceType.DISABLED):
            raise ConfigError(f"service {service_id}: type {stype.value} cannot be configured")
        conninfo = item.get("conninfo", "")
        base_url = item.get("baseurl", "")
        if stype is ServiceType.PATRONI and not base_url:
            raise ConfigError(f"service {service_id}: patroni requires baseurl")
        if stype is not ServiceType.PATRONI and not conninfo:
            raise ConfigError(f"service {service_id}: conninfo is required")
        services[service_id] = ConnSetting(stype, conninfo=conninfo, base_url=base_url)
    return services


def _strip_prefix(prefix: str, key: str, value: str) -> str:
    """Return the service ID encoded in an env key such as POSTGRES_DSN_main."""
    if not key.startswith(prefix):
        raise ConfigError(f"invalid key {key}")
    if key == prefix:
        return ""
    service_id = key[len(prefix):].removeprefix("_")
    if not service_id:
        raise ConfigError(f"invalid value '{value}' is in {key}")
    return service_id


def parse_dsn_env(key: str, value: str) -> tuple[str, ConnSetting]:
    """Map a POSTGRES_DSN/DATABASE_DSN/PGBOUNCER_DSN variable to a service."""
    key = key.replace("DATABASE_DSN", "POSTGRES_DSN", 1)
    for prefix, stype in _DSN_PREFIXES.items():
        if key.startswith(prefix):
            service_id = _strip_prefix(prefix, key, value) or stype.value
            return service_id, ConnSetting(stype, conninfo=value)
    raise ConfigError(f"invalid key {key}")


def parse_url_env(key: str, value: str) -> tuple[str, ConnSetting]:
    """Map a PATRONI_URL variable to a service."""
    for prefix, stype in _URL_PREFIXES.items():
        if key.startswith(prefix):
            service_id = _strip_prefix(prefix, key, value) or stype.value
            return service_id, ConnSetting(stype, base_url=value)
    raise ConfigError(f"invalid key {key}")


def services_from_env(environ: Mapping[str, str]) -> dict[str, ConnSetting]:
    """Collect statically defined services from environment variables."""
    services: dict[str, ConnSetting] = {}
    for key, value in environ.items():
        if key.startswith(("POSTGRES_DSN", "DATABASE_DSN", "PGBOUNCER_DSN")):
            service_id, setting = parse_dsn_env(key, value)
        elif key.startswith("PATRONI_URL"):
            service_id, setting = parse_url_env(key, value)
        else:
            continue
        services[service_id] = setting
    return services
