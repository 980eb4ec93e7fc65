"""
Tests for the portal routes used by signed-in merchant staff.
"""
from typing import Any

import pytest
from sqlalchemy import func, select

from giftledger.database.models import EmailQueueEntry
from tests.conftest import bearer, portal_user

OWNER = portal_user("user_owner")
STAFF = portal_user("user_staff")


def base(merchant: Any) -> str:
    return f"/portal/merchants/{merchant.id}"


class TestPortalAccess:
    """Test suite for portal identity and membership checks."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_identity_required(self, client: Any, merchant: Any) -> None:
        """Test requests without a user identity are refused."""
        response = await client.get(f"{base(merchant)}/cards")

        assert response.status_code == 401
        assert response.json()["error"]["message"] == "Authentication required"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_non_member_forbidden(self, client: Any, merchant: Any, members: None) -> None:
        """Test users without a membership cannot see the merchant."""
        response = await client.get(f"{base(merchant)}/cards", headers=portal_user("user_stranger"))

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_platform_admin_has_access(self, client: Any, merchant: Any) -> None:
        """Test platform admins reach any merchant without a membership."""
        response = await client.get(
            f"{base(merchant)}/cards", headers=portal_user("user_ops", role="admin")
        )

        assert response.status_code == 200
        assert response.json()["data"] == []

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_unknown_merchant(self, client: Any) -> None:
        """Test a missing merchant answers 404."""
        response = await client.get(
            "/portal/merchants/00000000-0000-0000-0000-000000000000/cards", headers=OWNER
        )

        assert response.status_code == 404


class TestPortalLedger:
    """Test suite for card and ledger operations through the portal."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_issue_card_and_queue_email(
        self, client: Any, db: Any, merchant: Any, members: None
    ) -> None:
        """Test issuing with sendEmail queues the delivery email."""
        response = await client.post(
            f"{base(merchant)}/cards",
            json={
                "initialBalance": 2500,
                "recipientEmail": "friend@example.com",
                "sendEmail": True,
            },
            headers=STAFF,
        )

        assert response.status_code == 201
        data = response.json()["data"]
        assert data["currentBalance"] == 2500
        assert "redemptionCode" in data
        queued = await db.scalar(select(func.count()).select_from(EmailQueueEntry))
        assert queued == 1

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_redeem_and_refund(
        self, client: Any, merchant: Any, members: None, owner_scope: Any, make_card: Any
    ) -> None:
        """Test a redemption can be refunded once."""
        issued = await make_card(owner_scope, initial_balance=2500)

        redeemed = await client.post(
            f"{base(merchant)}/cards/{issued.card.id}/redeem", json={"amount": 500}, headers=STAFF
        )
        assert redeemed.status_code == 200
        redemption = redeemed.json()["data"]
        assert redemption["balanceAfter"] == 2000

        refunded = await client.post(
            f"{base(merchant)}/transactions/{redemption['id']}/refund", json={}, headers=STAFF
        )
        assert refunded.status_code == 200
        assert refunded.json()["data"]["type"] == "refund"
        assert refunded.json()["data"]["balanceAfter"] == 2500
        assert refunded.json()["data"]["linkedTransactionId"] == redemption["id"]

        again = await client.post(
            f"{base(merchant)}/transactions/{redemption['id']}/refund", json={}, headers=STAFF
        )
        assert again.status_code == 400

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_staff_cannot_adjust(
        self, client: Any, merchant: Any, members: None, owner_scope: Any, make_card: Any
    ) -> None:
        """Test balance adjustments need an owner or admin."""
        issued = await make_card(owner_scope, initial_balance=1000)

        response = await client.post(
            f"{base(merchant)}/cards/{issued.card.id}/adjust",
            json={"amount": -200, "reason": "Till mismatch"},
            headers=STAFF,
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "FORBIDDEN"

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_owner_can_adjust(
        self, client: Any, merchant: Any, members: None, owner_scope: Any, make_card: Any
    ) -> None:
        """Test an owner adjustment changes the balance."""
        issued = await make_card(owner_scope, initial_balance=1000)

        response = await client.post(
            f"{base(merchant)}/cards/{issued.card.id}/adjust",
            json={"amount": -200, "reason": "Till mismatch"},
            headers=OWNER,
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["type"] == "adjust"
        assert data["balanceAfter"] == 800

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_request_validation(self, client: Any, merchant: Any, members: None) -> None:
        """Test malformed bodies use the common error shape."""
        response = await client.post(
            f"{base(merchant)}/cards", json={"initialBalance": "lots"}, headers=OWNER
        )

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"


class TestPortalAdministration:
    """Test suite for API keys and the audit trail."""

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_created_key_works_at_gateway(
        self, client: Any, merchant: Any, members: None
    ) -> None:
        """Test a key created in the portal authenticates API requests."""
        created = await client.post(
            f"{base(merchant)}/api-keys",
            json={"name": "POS", "permissions": ["cards:read"]},
            headers=OWNER,
        )
        assert created.status_code == 201
        key = created.json()["data"]["key"]
        assert key.startswith("lgf_live_")

        listed = await client.get(f"{base(merchant)}/api-keys", headers=OWNER)
        assert [k["name"] for k in listed.json()["data"]] == ["POS"]
        assert "key" not in listed.json()["data"][0]

        response = await client.get("/api/v1/cards", headers=bearer(key))
        assert response.status_code == 200

    @pytest.mark.integration
    @pytest.mark.asyncio
    async def test_audit_logs_are_elevated_only(
        self, client: Any, merchant: Any, members: None, owner_scope: Any, make_card: Any
    ) -> None:
        """Test staff cannot read the audit trail while owners can."""
        await make_card(owner_scope)

        denied = await client.get(f"{base(merchant)}/audit-logs", headers=STAFF)
        assert denied.status_code == 403

        allowed = await client.get(f"{base(merchant)}/audit-logs", headers=OWNER)
        assert allowed.status_code == 200
        assert [e["action"] for e in allowed.json()["data"]] == ["card.created"]
