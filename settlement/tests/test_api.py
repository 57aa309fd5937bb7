import time
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from referrals.codes import generate_referral_code
from referrals.rate_limit import InMemoryRateLimiter
from settlement.api import app, get_rate_limiter, get_settings, get_settlement_service
from settlement.config import Settings
from settlement.models import Account, ExtensionRequest


class SlowService:
    def settle_payment(self, account_id):
        time.sleep(1.0)


@pytest.fixture
def limiter():
    return InMemoryRateLimiter(max_requests=100, window_seconds=60)


@pytest.fixture
def client(service, limiter):
    app.dependency_overrides[get_settlement_service] = lambda: service
    app.dependency_overrides[get_rate_limiter] = lambda: limiter
    app.dependency_overrides[get_settings] = lambda: Settings(settlement_timeout_seconds=5)
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


class TestSettlementEndpoints:
    """Tests for the settlement HTTP surface."""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_settle_payment(self, storage, client):
        """Test that settlement results serialize amounts as decimal strings."""
        storage.add_account(Account(id="referrer", tier="Rookie"))
        storage.add_account(Account(id="member-1", referred_by="referrer"))

        response = client.post("/accounts/member-1/settle-payment")

        assert response.status_code == 200
        body = response.json()
        assert Decimal(body["referral_bonus_amount"]) == Decimal("10000")
        assert Decimal(body["cashback_amount"]) == Decimal("2000")
        assert body["referrer_id"] == "referrer"
        assert body["account"]["status"] == "paid"
        assert body["account"]["balance"] == "2000.00"
        assert body["new_expiry"].startswith("2024-02-26")

    def test_settle_payment_twice_conflicts(self, storage, client):
        storage.add_account(Account(id="member-1"))

        assert client.post("/accounts/member-1/settle-payment").status_code == 200
        assert client.post("/accounts/member-1/settle-payment").status_code == 409

    def test_unknown_account_is_404(self, client):
        response = client.post("/accounts/nobody/settle-payment")
        assert response.status_code == 404
        assert "nobody" in response.json()["detail"]

    def test_missing_price_is_500(self, storage, client):
        storage.subscription_prices.clear()
        storage.add_account(Account(id="member-1"))

        response = client.post("/accounts/member-1/settle-payment")

        assert response.status_code == 500
        assert "price" in response.json()["detail"].lower()

    def test_approve_extension(self, storage, client):
        storage.add_account(Account(id="referrer", tier="Rookie"))
        storage.add_account(Account(id="member-1", tier="Pro", referred_by="referrer"))
        storage.add_extension_request(ExtensionRequest(id="ext-1", user_id="member-1"))

        response = client.post("/extension-requests/ext-1/approve")

        assert response.status_code == 200
        body = response.json()
        assert body["extension_id"] == "ext-1"
        assert Decimal(body["referral_bonus"]) == Decimal("10000")
        assert Decimal(body["cashback"]) == Decimal("5000")

    def test_unknown_extension_is_404(self, client):
        assert client.post("/extension-requests/missing/approve").status_code == 404

    def test_timeout_is_503(self, client):
        """Test that a settlement exceeding the time budget is reported as retryable."""
        app.dependency_overrides[get_settlement_service] = lambda: SlowService()
        app.dependency_overrides[get_settings] = lambda: Settings(settlement_timeout_seconds=0.05)

        response = client.post("/accounts/member-1/settle-payment")

        assert response.status_code == 503

    def test_settlement_is_not_rate_limited(self, storage, client, limiter):
        """Test that admin settlement calls do not spend the registration budget."""
        limiter.max_requests = 1
        storage.add_account(Account(id="member-1"))
        storage.add_account(Account(id="member-2"))
        storage.add_extension_request(ExtensionRequest(id="ext-1", user_id="member-1"))

        assert client.post("/accounts/member-1/settle-payment").status_code == 200
        assert client.post("/accounts/member-2/settle-payment").status_code == 200
        assert client.post("/extension-requests/ext-1/approve").status_code == 200


class TestBalanceEndpoints:
    """Tests for balance projection endpoints."""

    def test_balance_and_reconcile(self, storage, client):
        storage.add_account(Account(id="referrer", tier="Rookie"))
        storage.add_account(Account(id="member-1", referred_by="referrer"))
        client.post("/accounts/member-1/settle-payment")
        storage.users["referrer"]["balance"] = "0.00"

        drifted = client.get("/accounts/referrer/balance").json()
        assert Decimal(drifted["cached_balance"]) == Decimal("0")
        assert Decimal(drifted["ledger_balance"]) == Decimal("10000")

        repaired = client.post("/accounts/referrer/balance/reconcile").json()
        assert Decimal(repaired["cached_balance"]) == Decimal("10000")
        assert repaired["total_entries"] == 1

    def test_balance_of_unknown_account(self, client):
        assert client.get("/accounts/nobody/balance").status_code == 404


class TestReferralCodeEndpoint:
    """Tests for referral code issuance and caller rate limiting."""

    def test_issue_code(self, client):
        response = client.post("/referral-codes", json={
            "email": "john.doe@example.com", "whatsapp": "+62812345678", "was_referred": True,
        })

        assert response.status_code == 201
        assert response.json()["referral_code"] == generate_referral_code(
            "john.doe@example.com", "+62812345678", True
        )

    def test_taken_code_gets_suffix(self, storage, client):
        base = generate_referral_code("john.doe@example.com", "+62812345678", False)
        storage.add_account(Account(id="member-1", referral_code=base))

        response = client.post("/referral-codes", json={
            "email": "john.doe@example.com", "whatsapp": "+62812345678",
        })

        code = response.json()["referral_code"]
        assert code.startswith(base)
        assert len(code) == len(base) + 2

    def test_rate_limit_per_caller(self, client, limiter):
        """Test that each forwarded caller gets its own request budget."""
        limiter.max_requests = 2
        payload = {"email": "a@b.co", "whatsapp": "0812345"}
        first_caller = {"X-Forwarded-For": "203.0.113.7, 10.0.0.1"}

        assert client.post("/referral-codes", json=payload, headers=first_caller).status_code == 201
        assert client.post("/referral-codes", json=payload, headers=first_caller).status_code == 201
        assert client.post("/referral-codes", json=payload, headers=first_caller).status_code == 429

        other_caller = {"X-Forwarded-For": "198.51.100.2"}
        assert client.post("/referral-codes", json=payload, headers=other_caller).status_code == 201
