"""Tests for the HTTP API."""

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient

from creditledger.main import create_app

API = "/api/v1/credits"


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as test_client:
        response = test_client.post(f"{API}/users", json={
            "user_id": "user-1",
            "email": "user1@example.com",
            "initial_credits": "1000",
        })
        assert response.status_code == 201
        yield test_client


def reserve(client, amount, **overrides):
    body = {
        "user_id": "user-1",
        "amount": str(amount),
        "reservation_context": {"model": "gpt-4o", "provider": "openai"},
    }
    body.update(overrides)
    return client.post(f"{API}/reservations", json=body)


class TestUsers:
    """Test user creation and balance checks."""

    def test_balance(self, client):
        response = client.get(f"{API}/users/user-1/balance", params={"required": 50})

        assert response.status_code == 200
        data = response.json()
        assert data["has_credits"] is True
        assert Decimal(data["balance"]) == Decimal("1000")

    def test_duplicate_user(self, client):
        response = client.post(f"{API}/users", json={"user_id": "user-1"})

        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "INVALID_INPUT"


class TestDeduct:
    """Test direct deductions over HTTP."""

    def test_deduct(self, client):
        response = client.post(f"{API}/deduct", json={"user_id": "user-1", "amount": "150"})

        assert response.status_code == 200
        assert Decimal(response.json()["new_balance"]) == Decimal("850")

    def test_insufficient_funds(self, client):
        client.post(f"{API}/deduct", json={"user_id": "user-1", "amount": "600"})

        response = client.post(f"{API}/deduct", json={"user_id": "user-1", "amount": "600"})

        assert response.status_code == 402
        assert response.json()["detail"]["error"] == "INSUFFICIENT_FUNDS"

    def test_unknown_user(self, client):
        response = client.post(f"{API}/deduct", json={"user_id": "nobody", "amount": "5"})

        assert response.status_code == 404

    def test_invalid_amount(self, client):
        response = client.post(f"{API}/deduct", json={"user_id": "user-1", "amount": "-5"})

        assert response.status_code == 400

    def test_safety_limit(self, client):
        client.post(f"{API}/grant", json={"user_id": "user-1", "amount": "1000", "operation": "adjustment"})

        response = client.post(f"{API}/deduct", json={"user_id": "user-1", "amount": "1500"})

        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "SAFETY_LIMIT_EXCEEDED"

    def test_huge_amount_is_a_safety_limit_not_a_crash(self, client):
        response = client.post(f"{API}/deduct", json={"user_id": "user-1", "amount": "1e25"})

        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "SAFETY_LIMIT_EXCEEDED"

    def test_provenance_recorded(self, client):
        client.post(
            f"{API}/deduct",
            json={"user_id": "user-1", "amount": "10"},
            headers={"X-Forwarded-For": "203.0.113.7, 10.0.0.1", "User-Agent": "ledger-tests"},
        )

        entries = client.get(f"{API}/users/user-1/audit", params={"operation": "deduct"}).json()

        assert entries[0]["ip_address"] == "203.0.113.7"
        assert entries[0]["user_agent"] == "ledger-tests"
        assert "metadata" in entries[0]


class TestReservations:
    """Test the reservation lifecycle over HTTP."""

    def test_reserve_and_settle(self, client):
        reservation = reserve(client, 100)
        assert reservation.status_code == 201
        reservation_id = reservation.json()["reservation_id"]

        response = client.post(
            f"{API}/reservations/{reservation_id}/settle", json={"actual_credits_used": "60"}
        )

        assert response.status_code == 200
        data = response.json()
        assert data["settlement_type"] == "completed"
        assert Decimal(data["credits_refunded"]) == Decimal("40")
        assert Decimal(data["new_balance"]) == Decimal("940")

    def test_double_settle_conflicts(self, client):
        reservation_id = reserve(client, 100).json()["reservation_id"]
        client.post(f"{API}/reservations/{reservation_id}/settle", json={"actual_credits_used": "60"})

        response = client.post(
            f"{API}/reservations/{reservation_id}/settle", json={"actual_credits_used": "60"}
        )

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "INVALID_STATE_TRANSITION"

    def test_cancel(self, client):
        reservation_id = reserve(client, 100).json()["reservation_id"]

        response = client.post(f"{API}/reservations/{reservation_id}/cancel", json={"reason": "User stopped"})

        assert response.status_code == 200
        assert Decimal(response.json()["new_balance"]) == Decimal("1000")
        assert client.get(f"{API}/users/user-1/reservations").json() == []

    def test_huge_ttl_is_capped(self, client):
        response = reserve(client, 10, ttl_minutes=1e15)

        assert response.status_code == 201

    def test_missing_context(self, client):
        response = reserve(client, 100, reservation_context={})

        assert response.status_code == 400
        assert response.json()["detail"]["details"]["missing"] == ["model", "provider"]

    def test_unknown_reservation(self, client):
        response = client.post(f"{API}/reservations/nope/settle", json={"actual_credits_used": "1"})

        assert response.status_code == 404


class TestUsageAndEstimates:
    """Test usage recording and estimates."""

    def test_record_usage(self, client):
        response = client.post(f"{API}/usage", json={
            "user_id": "user-1",
            "message_id": "msg-1",
            "provider": "openai",
            "model": "gpt-4o",
            "input_units": 1000,
            "output_units": 1000,
        })

        assert response.status_code == 201
        assert response.json()["credits_charged"] == 13

        duplicate = client.post(f"{API}/usage", json={
            "user_id": "user-1",
            "message_id": "msg-1",
            "provider": "openai",
            "model": "gpt-4o",
            "input_units": 1000,
            "output_units": 1000,
        })
        assert duplicate.status_code == 400

        stats = client.get(f"{API}/users/user-1/usage").json()
        assert Decimal(stats["current_balance"]) == Decimal("1000")
        assert stats["total_requests"] == 1

    def test_estimate(self, client):
        response = client.post(f"{API}/estimate", json={
            "content": "Hello world" * 100,
            "model": "gpt-4o",
            "provider": "openai",
        })

        assert response.status_code == 200
        data = response.json()
        assert data["estimate"]["input_units"] == 275
        assert data["reservation_amount"] >= data["estimate"]["credits_to_charge"]


class TestMaintenance:
    """Test compensation, cleanup and health endpoints."""

    def test_compensation_flow(self, client):
        created = client.post(f"{API}/compensations", json={
            "user_id": "user-1", "credits": "15", "reason": "Provider error",
        })
        assert created.status_code == 201
        assert created.json()["status"] == "pending"

        outcomes = client.post(f"{API}/compensations/process").json()

        assert outcomes[0]["success"] is True
        balance = client.get(f"{API}/users/user-1/balance").json()["balance"]
        assert Decimal(balance) == Decimal("1015")

    def test_cleanup_run(self, client):
        response = client.post(f"{API}/cleanup/run")

        assert response.status_code == 200
        assert response.json()["expired_reservations"]["processed"] == 0
        assert client.get(f"{API}/cleanup/stats").json()["total_runs"] == 1

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json()["status"] == "healthy"


class TestRefresh:
    """Test the credit refresh endpoints."""

    def test_refresh_info(self, client):
        response = client.get(f"{API}/users/user-1/refresh")

        assert response.status_code == 200
        data = response.json()
        assert data["is_eligible"] is False
        assert data["days_remaining"] == 30
        assert Decimal(data["credits_to_receive"]) == Decimal("1000")

    def test_refresh_not_due_conflicts(self, client):
        response = client.post(f"{API}/users/user-1/refresh", json={})

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "INVALID_STATE_TRANSITION"

    def test_forced_refresh(self, client):
        response = client.post(f"{API}/users/user-1/refresh", json={"amount": "100", "force": True})

        assert response.status_code == 200
        assert response.json()["refresh_type"] == "manual"
        assert Decimal(response.json()["new_balance"]) == Decimal("1100")

        entries = client.get(f"{API}/users/user-1/audit", params={"operation": "refresh"}).json()
        assert entries[0]["metadata"]["triggered_by"] == "api"

    def test_refresh_run_and_stats(self, client):
        response = client.post(f"{API}/refresh/run")

        assert response.status_code == 200
        assert response.json()["total"] == 0

        stats = client.get(f"{API}/refresh/stats").json()
        assert stats["total_users"] == 1
        assert stats["total_runs"] == 1
