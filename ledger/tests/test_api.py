"""
HTTP Tests for the Channel Credits API

Tests cover:
1. Account, purchase and balance endpoints
2. Scheduling and cancelling through the API
3. Error mapping to status codes
"""

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from ledger.api import app


client = TestClient(app)


def create_account(role: str = "ADVERTISER", name: str = "account") -> str:
    response = client.post("/accounts", json={"name": name, "role": role})
    assert response.status_code == 201
    return response.json()["id"]


def create_channel(owner_id: str, price: int = 30) -> str:
    response = client.post("/channels", json={
        "owner_id": owner_id,
        "name": "Deals",
        "destination_handle": "@deals",
        "price_per_post": price,
        "is_verified": True,
    })
    assert response.status_code == 201
    return response.json()["id"]


def in_one_hour() -> str:
    return (datetime.now(timezone.utc) + timedelta(hours=1)).isoformat()


class TestAccountsApi:
    def test_health(self):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_purchase_and_balance(self):
        account_id = create_account()

        response = client.post(f"/accounts/{account_id}/purchases",
                               json={"credits": 100, "payment_reference": f"pay-{account_id}"})
        assert response.status_code == 201
        assert response.json()["kind"] == "PURCHASE"

        balance = client.get(f"/accounts/{account_id}/balance").json()
        assert balance["current_balance"] == 100
        assert balance["total_entries"] == 1

    def test_unknown_account_is_404(self):
        response = client.get(f"/accounts/{uuid4()}/balance")

        assert response.status_code == 404
        assert response.json()["code"] == "not_found"

    def test_non_positive_purchase_rejected_by_schema(self):
        account_id = create_account()

        response = client.post(f"/accounts/{account_id}/purchases",
                               json={"credits": 0, "payment_reference": "pay-zero"})

        assert response.status_code == 422

    def test_posting_terms_and_channel_update(self):
        owner_id = create_account("PUBLISHER", "owner")
        channel_id = create_channel(owner_id, price=30)

        response = client.patch(f"/accounts/{owner_id}/posting-terms",
                                json={"free_posts_limit": 5, "commission_rate": 0.1})
        assert response.status_code == 200
        assert response.json()["free_posts_limit"] == 5
        assert response.json()["commission_rate"] == 0.1

        response = client.patch(f"/channels/{channel_id}", json={"price_per_post": 40, "is_active": False})
        assert response.status_code == 200
        assert response.json()["price_per_post"] == 40
        assert response.json()["is_active"] is False

    def test_commission_rate_above_one_rejected_by_schema(self):
        owner_id = create_account("PUBLISHER", "owner")

        response = client.patch(f"/accounts/{owner_id}/posting-terms", json={"commission_rate": 2})

        assert response.status_code == 422


class TestSchedulingApi:
    def test_schedule_then_cancel(self):
        owner_id = create_account("PUBLISHER", "owner")
        channel_id = create_channel(owner_id)
        advertiser_id = create_account()
        client.post(f"/accounts/{advertiser_id}/purchases",
                    json={"credits": 100, "payment_reference": f"pay-{advertiser_id}"})
        post_id = client.post("/posts", json={
            "channel_id": channel_id, "advertiser_id": advertiser_id, "content": "Spring sale",
        }).json()["id"]

        response = client.post(f"/posts/{post_id}/fire-times",
                               json={"actor_id": advertiser_id, "scheduled_at": in_one_hour()})
        assert response.status_code == 201
        fire_time_id = response.json()["id"]
        assert client.get(f"/accounts/{advertiser_id}/balance").json()["current_balance"] == 70
        assert client.get(f"/posts/{post_id}").json()["status"] == "SCHEDULED"

        response = client.delete(f"/fire-times/{fire_time_id}", params={"actor_id": advertiser_id})
        assert response.status_code == 200
        assert response.json()["status"] == "DRAFT"

    def test_insufficient_credit_is_402(self):
        owner_id = create_account("PUBLISHER", "owner")
        channel_id = create_channel(owner_id, price=30)
        advertiser_id = create_account()
        post_id = client.post("/posts", json={
            "channel_id": channel_id, "advertiser_id": advertiser_id, "content": "Broke",
        }).json()["id"]

        response = client.post(f"/posts/{post_id}/fire-times",
                               json={"actor_id": advertiser_id, "scheduled_at": in_one_hour()})

        assert response.status_code == 402
        body = response.json()
        assert body["code"] == "insufficient_credit"
        assert body["global_shortfall"] == 30
        assert body["grantor_shortfall"] is None

    def test_past_fire_time_is_400(self):
        owner_id = create_account("PUBLISHER", "owner")
        channel_id = create_channel(owner_id)
        post_id = client.post("/posts", json={
            "channel_id": channel_id, "advertiser_id": owner_id, "content": "Yesterday",
        }).json()["id"]
        past = (datetime.now(timezone.utc) - timedelta(hours=1)).isoformat()

        response = client.post(f"/posts/{post_id}/fire-times",
                               json={"actor_id": owner_id, "scheduled_at": past})

        assert response.status_code == 400

    def test_dispatch_run(self):
        response = client.post("/dispatch/run")

        assert response.status_code == 200
        assert set(response.json()) == {"processed", "sent", "failed", "errors"}


class TestCreditRequestsApi:
    def test_approve_then_reject_conflicts(self):
        publisher_id = create_account("PUBLISHER", "publisher")
        advertiser_id = create_account()
        request_id = client.post("/credit-requests", json={
            "requester_id": advertiser_id, "grantor_id": publisher_id, "amount": 50,
        }).json()["id"]

        response = client.post(f"/credit-requests/{request_id}/approve", json={"approver_id": publisher_id})
        assert response.status_code == 200
        assert response.json()["request"]["status"] == "APPROVED"

        response = client.post(f"/credit-requests/{request_id}/reject",
                               json={"approver_id": publisher_id, "reason": "Too late"})
        assert response.status_code == 409

        available = client.get(f"/accounts/{advertiser_id}/available/{publisher_id}").json()
        assert available["available"] == 50

    def test_stranger_cannot_approve(self):
        publisher_id = create_account("PUBLISHER", "publisher")
        advertiser_id = create_account()
        stranger_id = create_account()
        request_id = client.post("/credit-requests", json={
            "requester_id": advertiser_id, "grantor_id": publisher_id, "amount": 50,
        }).json()["id"]

        response = client.post(f"/credit-requests/{request_id}/approve", json={"approver_id": stranger_id})

        assert response.status_code == 403
        assert client.get(f"/credit-requests/{request_id}").json()["status"] == "PENDING"

    def test_list_requires_a_filter(self):
        response = client.get("/credit-requests")

        assert response.status_code == 400


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
