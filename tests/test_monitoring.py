"""
Tests for health and metrics endpoints.
"""
from datetime import timedelta
from typing import Any

import pytest

from giftledger.database.models import EmailQueueEntry, utcnow
from giftledger.monitoring.logging import redact_secrets


class TestMonitoring:
    """Test suite for monitoring routes."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_health(self, client: Any) -> None:
        """Test the health check reports the database."""
        response = await client.get("/health")

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["status"] == "healthy"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_liveness(self, client: Any) -> None:
        """Test the liveness endpoint."""
        response = await client.get("/health/live")

        assert response.status_code == 200
        assert response.json()["status"] == "alive"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_metrics(self, client: Any) -> None:
        """Test gateway requests show up in the Prometheus exposition."""
        await client.get("/api/v1/nothing-here")

        response = await client.get("/metrics")

        assert response.status_code == 200
        assert "gateway_requests_total" in response.text

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_stale_email_backlog_degrades_health(self, client: Any, db: Any) -> None:
        """Test an old pending email degrades /health but not readiness."""
        db.add(
            EmailQueueEntry(
                to_address="friend@example.com",
                from_address="noreply@giftledger.io",
                subject="Your gift card",
                html="<p>Hi</p>",
                created_at=utcnow() - timedelta(hours=2),
            )
        )
        await db.commit()

        health = await client.get("/health")
        ready = await client.get("/health/ready")

        body = health.json()
        assert body["status"] == "degraded"
        assert body["checks"]["queues"]["email"]["pending"] == 1
        assert body["checks"]["queues"]["webhooks"]["status"] == "healthy"
        assert ready.status_code == 200


class TestRedaction:
    """Test suite for the log redaction processor."""

    @pytest.mark.unit
    def test_secrets_are_masked(self) -> None:
        """Test card numbers keep their last four and other secrets are hidden."""
        event = redact_secrets(
            None,
            "info",
            {
                "event": "card_issued",
                "card_number": "6012345678901234",
                "redemption_code": "ABCD1234EFGH5678",
                "code": "INSUFFICIENT_BALANCE",
            },
        )

        assert event["card_number"] == "************1234"
        assert event["redemption_code"] == "[REDACTED]"
        assert event["code"] == "INSUFFICIENT_BALANCE"
