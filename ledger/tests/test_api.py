"""
HTTP tests for the ledger API
"""

import pytest
from fastapi.testclient import TestClient

from ledger.api import create_app


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as client:
        yield client


@pytest.fixture
def admin_client(settings):
    guarded = settings.model_copy(update={"admin_token": "s3cret"})
    with TestClient(create_app(guarded)) as client:
        yield client


def _register(client, username):
    response = client.post("/users", json={"username": username, "email": f"{username}@example.com"})
    assert response.status_code == 201
    return response.json()


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestDepositFlow:
    """Register, submit a deposit, approve it, read the balance."""

    def test_submit_and_approve(self, client):
        user = _register(client, "dana")

        submitted = client.post("/payment-requests", json={"user_id": user["id"], "amount": "50.00"})
        assert submitted.status_code == 201
        request_id = submitted.json()["id"]

        approved = client.post(f"/payment-requests/{request_id}/approve", json={"admin_notes": "ok"})
        assert approved.status_code == 200
        assert approved.json()["payment_request"]["status"] == "approved"

        balance = client.get(f"/users/{user['id']}/balance").json()
        assert balance["current_balance"] == "50.00"
        assert balance["total_entries"] == 1

        # Verify the second approval is refused with a machine-readable code
        again = client.post(f"/payment-requests/{request_id}/approve")
        assert again.status_code == 404
        assert again.json()["code"] == "not_found_or_already_processed"

    def test_invalid_amount_is_400(self, client):
        user = _register(client, "erin")

        response = client.post("/payment-requests", json={"user_id": user["id"], "amount": "0"})

        assert response.status_code == 400
        assert response.json()["code"] == "invalid_amount"

    def test_transactions_listing(self, client):
        user = _register(client, "finn")
        request_id = client.post("/payment-requests", json={"user_id": user["id"], "amount": "12.5"}).json()["id"]
        client.post(f"/payment-requests/{request_id}/approve")

        response = client.get(f"/users/{user['id']}/transactions", params={"limit": 10})

        body = response.json()
        assert response.status_code == 200
        assert body["total_count"] == 1
        assert body["entries"][0]["transaction_type"] == "deposit"
        assert body["entries"][0]["related_payment_request_id"] == request_id


class TestPurchases:
    def test_insufficient_funds_is_409(self, client):
        user = _register(client, "gale")

        response = client.post("/purchases", json={
            "user_id": user["id"], "product_id": "aim", "product_name": "Aim Assist", "price": "25",
        })

        assert response.status_code == 409
        assert response.json()["code"] == "insufficient_funds"

    def test_purchase_and_delete_inventory_item(self, client):
        user = _register(client, "hale")
        client.post(f"/users/{user['id']}/adjustments", json={"amount": "30", "description": "Promo"})

        purchase = client.post("/purchases", json={
            "user_id": user["id"], "product_id": "aim", "product_name": "Aim Assist", "price": "25",
        })
        assert purchase.status_code == 201
        item_id = purchase.json()["inventory_item"]["id"]

        deleted = client.delete(f"/users/{user['id']}/inventory/{item_id}")
        assert deleted.status_code == 204
        assert client.get(f"/users/{user['id']}/inventory").json() == []
        assert len(client.get(f"/users/{user['id']}/purchases").json()) == 1

    def test_unknown_user_is_404(self, client):
        response = client.get("/users/999/balance")

        assert response.status_code == 404
        assert response.json()["code"] == "user_not_found"


class TestReferralRoutes:
    def test_check_code(self, client):
        referrer = _register(client, "ivy")

        valid = client.get("/referrals/check", params={"code": referrer["referral_code"]})
        invalid = client.get("/referrals/check", params={"code": "GH-NOBODY"})

        assert valid.status_code == 200
        assert valid.json()["referrer_id"] == referrer["id"]
        assert invalid.status_code == 404
        assert invalid.json()["is_valid"] is False

    def test_referred_listing(self, client):
        referrer = _register(client, "jay")
        client.post("/users", json={
            "username": "kim", "email": "kim@example.com", "referral_code": referrer["referral_code"],
        })

        listing = client.get(f"/users/{referrer['id']}/referrals").json()

        assert listing["count"] == 1
        assert listing["referred"][0]["username"] == "kim"


class TestAdminGate:
    """Administrative routes require the admin token once one is configured."""

    def test_missing_token_is_403(self, admin_client):
        user = _register(admin_client, "lee")

        response = admin_client.post(f"/users/{user['id']}/adjustments", json={"amount": "5", "description": "Gift"})

        assert response.status_code == 403
        assert admin_client.get(f"/users/{user['id']}/balance").json()["current_balance"] == "0.00"

    def test_wrong_token_is_403(self, admin_client):
        response = admin_client.get("/payment-requests", headers={"X-Admin-Token": "guess"})

        assert response.status_code == 403

    def test_valid_token_is_accepted(self, admin_client):
        user = _register(admin_client, "max")

        response = admin_client.post(
            f"/users/{user['id']}/adjustments",
            json={"amount": "5", "description": "Gift"},
            headers={"X-Admin-Token": "s3cret"},
        )

        assert response.status_code == 201
        assert response.json()["transaction_type"] == "admin_adjustment"
        pending = admin_client.get("/payment-requests", params={"status": "pending"}, headers={"X-Admin-Token": "s3cret"})
        assert pending.status_code == 200
        assert pending.json() == []

    def test_unconfigured_admin_is_refused(self, settings):
        """Without a token and without the development flag every admin route is closed."""
        closed = settings.model_copy(update={"admin_open": False})
        with TestClient(create_app(closed)) as client:
            user = _register(client, "ned")

            response = client.post(f"/users/{user['id']}/adjustments", json={"amount": "5", "description": "Gift"})

            assert response.status_code == 403
            assert client.get("/payment-requests").status_code == 403
            assert client.get(f"/users/{user['id']}/balance").json()["current_balance"] == "0.00"


class TestPromoCodeRoutes:
    def test_create_and_apply(self, client):
        user = _register(client, "olga")

        created = client.post("/promo-codes", json={"code": "SPRING5", "value": "5", "max_uses": 3})
        assert created.status_code == 201
        assert created.json()["current_uses"] == 0

        applied = client.post("/promo-codes/apply", json={"user_id": user["id"], "code": "SPRING5"})
        assert applied.status_code == 200
        assert applied.json()["ledger_entry"]["amount"] == "5.00"
        assert client.get(f"/users/{user['id']}/balance").json()["current_balance"] == "5.00"

        # Verify the second apply is refused with a machine-readable code
        again = client.post("/promo-codes/apply", json={"user_id": user["id"], "code": "SPRING5"})
        assert again.status_code == 409
        assert again.json()["code"] == "promo_code_already_used"

    def test_expired_code_is_400(self, client):
        user = _register(client, "pia")
        client.post("/promo-codes", json={"code": "OLD", "value": "5", "expires_at": "2020-01-01T00:00:00Z"})

        response = client.post("/promo-codes/apply", json={"user_id": user["id"], "code": "OLD"})

        assert response.status_code == 400
        assert response.json()["code"] == "invalid_promo_code"


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
