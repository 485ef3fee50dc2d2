"""
HTTP tests for the ledger API using FastAPI's TestClient.
"""

import time
from decimal import Decimal
from types import SimpleNamespace
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from advisory import FALLBACK_INSIGHT
from yield_ledger import api
from yield_ledger.api import app

client = TestClient(app)

ADMIN_HEADERS = {"X-Actor-Id": "admin-1", "X-Actor-Role": "ADMIN"}


def stub_client(create):
    return SimpleNamespace(chat=SimpleNamespace(completions=SimpleNamespace(create=create)))


def user_headers(account_id: str) -> dict:
    return {"X-Actor-Id": account_id, "X-Actor-Role": "USER"}


def new_account(available: str = "1000", **extra) -> str:
    account_id = f"api-{uuid4().hex[:8]}"
    response = client.post("/accounts", headers=ADMIN_HEADERS, json={
        "username": account_id,
        "account_id": account_id,
        "opening_available": available,
        **extra,
    })
    assert response.status_code == 201
    return account_id


class TestAccountEndpoints:
    """Tests for account routes."""

    def test_health(self):
        """Health check responds."""
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_open_and_get_account(self):
        """Opened accounts can be fetched."""
        account_id = new_account("42.5")

        response = client.get(f"/accounts/{account_id}", headers=user_headers(account_id))

        assert response.status_code == 200
        assert Decimal(response.json()["available"]) == Decimal("42.50")

    def test_unknown_account_is_404(self):
        """Missing accounts map to 404."""
        response = client.get("/accounts/nobody", headers=ADMIN_HEADERS)

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "AccountNotFound"

    def test_user_cannot_open_accounts(self):
        """Non-admins get 403."""
        response = client.post("/accounts", headers=user_headers("user-1"), json={"username": "x"})

        assert response.status_code == 403

    def test_dashboard_falls_back_without_advisory(self, monkeypatch):
        """Dashboard renders with the fallback insight when the advisory client is unavailable."""
        monkeypatch.setattr(api.insight_service, "client", None)
        account_id = new_account()

        response = client.get(f"/accounts/{account_id}/dashboard", headers=user_headers(account_id))

        assert response.status_code == 200
        body = response.json()
        assert body["insight"] == FALLBACK_INSIGHT
        assert Decimal(body["summary"]["available"]) == Decimal("1000")

    @pytest.mark.parametrize("path", [
        "", "/summary", "/dashboard", "/transactions", "/holdings", "/commissions", "/reconciliation",
    ])
    def test_other_users_account_is_403(self, path):
        """Account reads are limited to the owner and admins."""
        owner = new_account()
        stranger = new_account()

        denied = client.get(f"/accounts/{owner}{path}", headers=user_headers(stranger))
        as_admin = client.get(f"/accounts/{owner}{path}", headers=ADMIN_HEADERS)

        assert denied.status_code == 403
        assert denied.json()["detail"]["error"] == "PermissionDeniedError"
        assert as_admin.status_code == 200

    def test_dashboard_does_not_wait_for_advisory(self, monkeypatch):
        """A slow advisory model never holds up the dashboard."""
        def create(**kwargs):
            time.sleep(2.0)
            return SimpleNamespace(choices=[SimpleNamespace(message=SimpleNamespace(content="Too late"))])

        monkeypatch.setattr(api.insight_service, "client", stub_client(create))
        account_id = new_account()

        started = time.monotonic()
        response = client.get(f"/accounts/{account_id}/dashboard", headers=user_headers(account_id))

        assert response.status_code == 200
        assert response.json()["insight"] == FALLBACK_INSIGHT
        assert time.monotonic() - started < 1.0


class TestTransactionEndpoints:
    """Tests for deposit, withdrawal and settlement routes."""

    def test_deposit_then_approve(self):
        """Deposit is credited only after admin approval."""
        account_id = new_account("0")

        created = client.post(
            f"/accounts/{account_id}/deposits",
            headers=user_headers(account_id),
            json={"amount": "150", "network": "BEP20"},
        )
        assert created.status_code == 201
        tx = created.json()["transaction"]
        assert tx["status"] == "PENDING"
        assert tx["details"]["kind"] == "DEPOSIT"

        approved = client.post(f"/admin/transactions/{tx['id']}/approve", headers=ADMIN_HEADERS)
        assert approved.status_code == 200
        assert Decimal(approved.json()["balance"]["available"]) == Decimal("150")

        again = client.post(f"/admin/transactions/{tx['id']}/approve", headers=ADMIN_HEADERS)
        assert again.status_code == 409

    def test_withdrawal_below_minimum_is_400(self):
        """Validation errors map to 400."""
        account_id = new_account()

        response = client.post(
            f"/accounts/{account_id}/withdrawals",
            headers=user_headers(account_id),
            json={"amount": "10", "destination_address": "addr1"},
        )

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "BelowMinimum"

    def test_withdrawal_reject_round_trip(self):
        """Reject restores the pre-request balance."""
        account_id = new_account("500")

        created = client.post(
            f"/accounts/{account_id}/withdrawals",
            headers=user_headers(account_id),
            json={"amount": "120", "destination_address": "addr1"},
        )
        assert Decimal(created.json()["balance"]["locked"]) == Decimal("120")

        rejected = client.post(
            f"/admin/transactions/{created.json()['transaction']['id']}/reject",
            headers=ADMIN_HEADERS,
            json={"reason": "Address flagged"},
        )

        assert rejected.status_code == 200
        assert Decimal(rejected.json()["balance"]["available"]) == Decimal("500")
        assert Decimal(rejected.json()["balance"]["locked"]) == Decimal("0")

    def test_user_cannot_approve(self):
        """Approval by a non-admin is 403."""
        account_id = new_account()
        created = client.post(
            f"/accounts/{account_id}/deposits", headers=user_headers(account_id), json={"amount": "10"},
        )

        response = client.post(
            f"/admin/transactions/{created.json()['transaction']['id']}/approve",
            headers=user_headers(account_id),
        )

        assert response.status_code == 403

    def test_manual_entry(self):
        """Admins can record and apply a manual deposit."""
        account_id = new_account("0")

        response = client.post("/admin/transactions/manual", headers=ADMIN_HEADERS, json={
            "draft": {"account_id": account_id, "amount": "75", "type": "DEPOSIT", "status": "COMPLETED"},
            "apply_balance_change": True,
        })

        assert response.status_code == 200
        assert Decimal(response.json()["balance"]["available"]) == Decimal("75")


class TestPlanEndpoints:
    """Tests for plan catalog and purchase routes."""

    def test_purchase_insufficient_is_402(self):
        """Buying without funds maps to 402."""
        account_id = new_account("100")

        response = client.post(
            f"/accounts/{account_id}/purchases", headers=user_headers(account_id), json={"plan_id": "plan-2"},
        )

        assert response.status_code == 402
        assert response.json()["detail"]["error"] == "InsufficientBalance"

    def test_purchase_and_holdings(self):
        """A purchase shows up in the account's holdings."""
        account_id = new_account("1000")

        response = client.post(
            f"/accounts/{account_id}/purchases", headers=user_headers(account_id), json={"plan_id": "plan-1"},
        )
        assert response.status_code == 201

        holdings = client.get(f"/accounts/{account_id}/holdings", headers=user_headers(account_id)).json()
        assert len(holdings) == 1
        assert holdings[0]["plan"]["name"] == "Starter Yield"

    def test_create_plan_recomputes_total(self):
        """Caller-supplied totals are ignored."""
        response = client.post("/plans", headers=ADMIN_HEADERS, json={
            "name": "API Plan",
            "price": "500",
            "daily_interest_rate": "2.2",
            "duration_days": 45,
            "total_profit": "1",
        })

        assert response.status_code == 201
        assert Decimal(response.json()["total_profit"]) == Decimal("995.00")

    def test_blank_plan_name_rejected_on_update(self):
        """PATCH cannot blank a plan's name."""
        response = client.patch("/plans/plan-1", headers=ADMIN_HEADERS, json={"name": ""})

        assert response.status_code == 422


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
