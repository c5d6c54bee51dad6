"""Tests for service health probes."""

from unittest.mock import MagicMock, patch

import psycopg2
import requests

from pgscv.core import health, queries
from pgscv.models.enums import ServiceType
from pgscv.models.runtime import ConnSetting, Service


def _service(stype, **conn):
    return Service(f"{stype.value}:1", ConnSetting(stype, **conn))


class TestCheckService:
    @patch("pgscv.core.health.db.ping")
    def test_postgres_ok(self, mock_ping):
        assert health.check_service(_service(ServiceType.POSTGRESQL, conninfo="host=a"))
        mock_ping.assert_called_once_with("host=a", sql=queries.PG_PING_QUERY)

    @patch("pgscv.core.health.db.ping")
    def test_pgbouncer_uses_show_version(self, mock_ping):
        assert health.check_service(_service(ServiceType.PGBOUNCER, conninfo="host=b"))
        mock_ping.assert_called_once_with("host=b", sql=queries.PGBOUNCER_PING_QUERY)

    @patch("pgscv.core.health.db.ping", side_effect=psycopg2.OperationalError("down"))
    def test_sql_failure(self, mock_ping):
        assert not health.check_service(_service(ServiceType.POSTGRESQL, conninfo="host=a"))

    @patch("pgscv.core.health.requests.get")
    def test_patroni(self, mock_get):
        mock_get.return_value = MagicMock(status_code=200)
        assert health.check_service(_service(ServiceType.PATRONI, base_url="http://p:8008"))
        mock_get.assert_called_once_with("http://p:8008/health", timeout=1)

    @patch("pgscv.core.health.requests.get")
    def test_patroni_unhealthy_status(self, mock_get):
        mock_get.return_value = MagicMock(status_code=503)
        assert not health.check_service(_service(ServiceType.PATRONI, base_url="http://p:8008"))

    @patch("pgscv.core.health.requests.get", side_effect=requests.ConnectionError("refused"))
    def test_patroni_unreachable(self, mock_get):
        assert not health.check_service(_service(ServiceType.PATRONI, base_url="http://p:8008"))

    def test_system_is_always_healthy(self):
        assert health.check_service(_service(ServiceType.SYSTEM))
