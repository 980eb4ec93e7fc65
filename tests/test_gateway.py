"""
Tests for the /api/v1 gateway pipeline.
"""
from typing import Any, Dict, List

import pytest
from sqlalchemy import select

from giftledger.api.gateway import HandlerResult, Router
from giftledger.core.api_keys import api_key_service
from giftledger.database.models import ApiRequestLog
from tests.conftest import bearer, partner_scope_for, random_id

API = "/api/v1"


async def request_logs(db: Any) -> List[ApiRequestLog]:
    result = await db.execute(
        select(ApiRequestLog).order_by(ApiRequestLog.created_at).execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


async def _noop(db: Any, scope: Any, request: Any) -> HandlerResult:
    return HandlerResult({})


class TestRouter:
    """Test suite for path template matching."""

    @pytest.mark.unit
    def test_static_segment_wins(self) -> None:
        """Test a literal segment is preferred over a parameter."""
        router = Router(prefix="/api/v1")
        router.route("GET", "/cards/:cardId")(_noop)
        router.route("GET", "/cards/redeem-by-code")(_noop)

        route, params = router.match("GET", "/api/v1/cards/redeem-by-code")

        assert route.pattern == "/api/v1/cards/redeem-by-code"
        assert params == {}

    @pytest.mark.unit
    def test_parameters_are_captured(self) -> None:
        """Test parameters are extracted and percent-decoded."""
        router = Router(prefix="/api/v1")
        router.route("GET", "/cards/:cardId/transactions")(_noop)

        route, params = router.match("GET", "/api/v1/cards/abc%2D1/transactions")

        assert params == {"cardId": "abc-1"}

    @pytest.mark.unit
    def test_no_match(self) -> None:
        """Test wrong methods and lengths do not match."""
        router = Router(prefix="/api/v1")
        router.route("GET", "/cards/:cardId")(_noop)

        assert router.match("POST", "/api/v1/cards/abc") is None
        assert router.match("GET", "/api/v1/cards") is None
        assert router.match("GET", "/api/v1/cards/abc/extra") is None


class TestAuthentication:
    """Test suite for bearer key handling."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_bearer(self, client: Any) -> None:
        """Test requests without a bearer token are refused."""
        response = await client.get(f"{API}/cards")

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "UNAUTHORIZED"
        assert body["error"]["message"] == (
            "Missing or invalid Authorization header. Expected: Bearer lgf_..."
        )

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_wrong_key_format(self, client: Any) -> None:
        """Test tokens without the key prefix are refused before lookup."""
        response = await client.get(f"{API}/cards", headers=bearer("sk_live_123"))

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Invalid API key format"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_key_is_not_logged(self, client: Any, db: Any) -> None:
        """Test an unknown key is refused and leaves no request log."""
        response = await client.get(f"{API}/cards", headers=bearer("lgf_live_" + "z" * 56))

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_API_KEY"
        assert await request_logs(db) == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_revoked_key(
        self, client: Any, db: Any, owner_scope: Any, make_api_key: Any
    ) -> None:
        """Test a revoked key is refused with its own code."""
        key = await make_api_key(owner_scope)
        api_key = await api_key_service.validate_key(db, key)
        await api_key_service.revoke_key(db, owner_scope, api_key.id)
        await db.commit()

        response = await client.get(f"{API}/cards", headers=bearer(key))

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "API_KEY_REVOKED"


class TestPipeline:
    """Test suite for routing, limits, permissions and dispatch."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_endpoint(self, client: Any) -> None:
        """Test unmatched paths answer 404."""
        response = await client.get(f"{API}/nothing-here")

        assert response.status_code == 404
        assert response.json()["error"] == {"code": "NOT_FOUND", "message": "Endpoint not found"}

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_options_preflight(self, client: Any) -> None:
        """Test OPTIONS is answered directly with CORS headers."""
        response = await client.options(f"{API}/cards")

        assert response.status_code == 204
        assert response.headers["Access-Control-Allow-Origin"] == "*"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_invalid_json(self, client: Any) -> None:
        """Test an unparseable body is refused."""
        response = await client.post(
            f"{API}/cards",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == 400
        assert response.json()["error"]["message"] == "Invalid JSON in request body"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_check_balance_is_public(
        self, client: Any, owner_scope: Any, make_card: Any
    ) -> None:
        """Test the balance lookup needs no key."""
        issued = await make_card(owner_scope, initial_balance=4200)

        response = await client.post(
            f"{API}/cards/check-balance", json={"cardNumber": issued.card.card_number}
        )

        assert response.status_code == 200
        assert response.json()["data"] == {
            "currentBalance": 4200,
            "currency": "USD",
            "status": "active",
        }

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_success_carries_rate_limit_headers(
        self, client: Any, db: Any, owner_scope: Any, make_api_key: Any
    ) -> None:
        """Test an authorized request is dispatched, logged and annotated."""
        key = await make_api_key(owner_scope, rate_limit_per_minute=30)

        response = await client.get(f"{API}/cards", headers=bearer(key))

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["data"] == []
        assert body["meta"]["hasMore"] is False
        assert response.headers["X-RateLimit-Limit"] == "30"
        assert response.headers["X-RateLimit-Remaining"] == "29"
        assert "X-RateLimit-Reset" in response.headers

        logs = await request_logs(db)
        assert len(logs) == 1
        assert logs[0].status_code == 200
        assert logs[0].method == "GET"
        assert logs[0].path == f"{API}/cards"
        assert logs[0].error_message is None

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_rate_limit_exceeded(
        self, client: Any, db: Any, owner_scope: Any, make_api_key: Any
    ) -> None:
        """Test the request past the minute limit is refused and logged."""
        key = await make_api_key(owner_scope, rate_limit_per_minute=1)

        first = await client.get(f"{API}/cards", headers=bearer(key))
        second = await client.get(f"{API}/cards", headers=bearer(key))

        assert first.status_code == 200
        assert second.status_code == 429
        assert second.json()["error"]["code"] == "RATE_LIMITED"
        assert second.headers["X-RateLimit-Remaining"] == "0"

        logs = await request_logs(db)
        assert [log.status_code for log in logs] == [200, 429]
        assert logs[1].error_message == "Rate limit exceeded"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_missing_permission(
        self, client: Any, db: Any, owner_scope: Any, make_api_key: Any
    ) -> None:
        """Test a key without the route's permission is refused and logged."""
        key = await make_api_key(owner_scope, permissions=["cards:read"])

        response = await client.post(f"{API}/cards", json={}, headers=bearer(key))

        assert response.status_code == 403
        assert response.json()["error"] == {
            "code": "PERMISSION_DENIED",
            "message": "API key missing required permission: cards:create",
        }
        assert "X-RateLimit-Limit" in response.headers
        logs = await request_logs(db)
        assert logs[0].status_code == 403

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_card_lifecycle(
        self, client: Any, db: Any, owner_scope: Any, make_api_key: Any
    ) -> None:
        """Test issuing, loading and redeeming by code through the gateway."""
        headers = bearer(await make_api_key(owner_scope))

        created = await client.post(f"{API}/cards", json={"initialBalance": 2500}, headers=headers)
        assert created.status_code == 201
        card = created.json()["data"]
        assert card["currentBalance"] == 2500
        assert len(card["redemptionCode"]) == 16

        loaded = await client.post(
            f"{API}/cards/{card['id']}/load", json={"amount": 1000}, headers=headers
        )
        assert loaded.status_code == 200
        assert loaded.json()["data"]["balanceAfter"] == 3500

        redeemed = await client.post(
            f"{API}/cards/redeem-by-code",
            json={"code": card["redemptionCode"].lower(), "amount": 500},
            headers=headers,
        )
        assert redeemed.status_code == 200
        assert redeemed.json()["data"]["type"] == "redeem"
        assert redeemed.json()["data"]["balanceAfter"] == 3000

        fetched = await client.get(f"{API}/cards/{card['id']}", headers=headers)
        assert fetched.json()["data"]["currentBalance"] == 3000
        assert "redemptionCode" not in fetched.json()["data"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_domain_error_is_logged(
        self, client: Any, db: Any, owner_scope: Any, make_api_key: Any, make_card: Any
    ) -> None:
        """Test handler failures keep their status and are logged with the message."""
        headers = bearer(await make_api_key(owner_scope))
        issued = await make_card(owner_scope, initial_balance=100)

        response = await client.post(
            f"{API}/cards/{issued.card.id}/redeem", json={"amount": 500}, headers=headers
        )

        assert response.status_code == 422
        assert response.json()["error"]["code"] == "INSUFFICIENT_BALANCE"
        logs = await request_logs(db)
        assert logs[0].status_code == 422
        assert logs[0].error_message == response.json()["error"]["message"]

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_body_validation(
        self, client: Any, owner_scope: Any, make_api_key: Any
    ) -> None:
        """Test malformed fields are reported as validation errors."""
        headers = bearer(await make_api_key(owner_scope))

        response = await client.post(
            f"{API}/cards/{random_id()}/load", json={"amount": "lots"}, headers=headers
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"
        assert response.json()["error"]["message"].startswith("amount")


class TestPartnerKeys:
    """Test suite for partner-scoped keys at the gateway."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_partner_key_requires_merchant(
        self, client: Any, partner: Any, partner_merchant: Any, make_api_key: Any
    ) -> None:
        """Test a partner key must name the merchant it acts on."""
        headers: Dict[str, str] = bearer(await make_api_key(partner_scope_for(partner)))

        missing = await client.get(f"{API}/cards", headers=headers)
        assert missing.status_code == 400
        assert "merchantId is required" in missing.json()["error"]["message"]

        scoped = await client.get(
            f"{API}/cards", params={"merchantId": str(partner_merchant.id)}, headers=headers
        )
        assert scoped.status_code == 200

        created = await client.post(
            f"{API}/cards",
            json={"merchantId": str(partner_merchant.id), "initialBalance": 100},
            headers=headers,
        )
        assert created.status_code == 201
        assert created.json()["data"]["merchantId"] == str(partner_merchant.id)

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_partner_key_other_partner_merchant(
        self, client: Any, partner: Any, merchant: Any, make_api_key: Any
    ) -> None:
        """Test a partner key cannot reach merchants outside its partner."""
        headers = bearer(await make_api_key(partner_scope_for(partner)))

        response = await client.get(
            f"{API}/cards", params={"merchantId": str(merchant.id)}, headers=headers
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"
