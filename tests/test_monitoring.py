"""
Tests for logging processors, health checks and metrics.
"""
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from prometheus_client import REGISTRY

from payment_systems.config import get_settings
from payment_systems.monitoring.health import HealthCheck, HealthCheckError
from payment_systems.monitoring.logging import add_app_context, scrub_sensitive_data
from payment_systems.monitoring.metrics import metrics


class TestLoggingProcessors:
    @pytest.mark.unit
    def test_sensitive_values_masked(self) -> None:
        event = scrub_sensitive_data(
            None,
            "info",
            {
                "event": "stripe_purchase",
                "instrument_token": "pm_card_visa_4242",
                "cvc": "123",
                "api_key": None,
                "amount": "10.00",
            },
        )

        assert event["instrument_token"] == "***4242"
        assert event["cvc"] == "***REDACTED***"
        assert event["api_key"] == "***REDACTED***"
        assert event["amount"] == "10.00"

    @pytest.mark.unit
    def test_app_context_added(self) -> None:
        settings = get_settings()

        event = add_app_context(None, "info", {"event": "ledger_operation_completed"})

        assert event["app_name"] == settings.app_name
        assert event["app_env"] == settings.app_env


class TestHealthCheck:
    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_all_healthy(self, session_factory) -> None:
        gateway = SimpleNamespace(circuit_breaker=SimpleNamespace(state="half_open"))

        result = await HealthCheck(session_factory, gateway).check_all()

        assert result["status"] == "healthy"
        assert result["checks"]["database"]["status"] == "healthy"
        assert result["checks"]["gateway"]["circuit_breaker"] == "half_open"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_open_circuit_is_unhealthy(self, session_factory) -> None:
        gateway = SimpleNamespace(circuit_breaker=SimpleNamespace(state="open"))

        result = await HealthCheck(session_factory, gateway).readiness()

        assert result["status"] == "unhealthy"
        assert result["checks"]["gateway"]["status"] == "unhealthy"
        assert result["checks"]["database"]["status"] == "healthy"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_database_failure(self) -> None:
        broken = MagicMock(side_effect=RuntimeError("connection refused"))

        with pytest.raises(HealthCheckError, match="connection refused"):
            await HealthCheck(broken).check_database()

    @pytest.mark.unit
    def test_gateway_without_breaker_reports_closed(self) -> None:
        assert HealthCheck(gateway=object()).check_gateway()["circuit_breaker"] == "closed"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_liveness(self) -> None:
        assert (await HealthCheck().liveness())["status"] == "alive"


class TestMetrics:
    @pytest.mark.unit
    def test_billing_item_counter(self) -> None:
        labels = {"sweep": "recurring", "outcome": "succeeded"}
        before = REGISTRY.get_sample_value("billing_items_total", labels) or 0.0

        metrics.record_billing_item("recurring", "succeeded")

        assert REGISTRY.get_sample_value("billing_items_total", labels) == before + 1

    @pytest.mark.unit
    def test_circuit_breaker_gauge(self) -> None:
        metrics.set_circuit_breaker_state("open")
        assert REGISTRY.get_sample_value("gateway_circuit_breaker_state") == 1

        metrics.set_circuit_breaker_state("closed")
        assert REGISTRY.get_sample_value("gateway_circuit_breaker_state") == 0
