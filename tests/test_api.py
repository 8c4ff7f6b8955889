"""API tests: the billing cycle over HTTP."""

from decimal import Decimal

import pytest
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Query


@pytest.fixture
def account_with_meter(client):
    """An account with one metered month ready to bill at 1.00 per unit."""
    response = client.post(
        "/api/tariffs/",
        json={
            "code": "STD",
            "name": "Standard",
            "effective_from": "2023-01-01",
            "rates": [{"min_units": "0", "rate_per_unit": "1.00"}],
        },
    )
    assert response.status_code == 201

    response = client.post("/api/accounts/", json={"account_number": "ACC-9001", "name": "Test Account"})
    assert response.status_code == 201
    account = response.json()

    response = client.post("/api/meters/", json={"account_id": account["id"], "meter_number": "M-9001"})
    assert response.status_code == 201
    meter = response.json()

    for reading_date, value in (("2024-01-31", "100"), ("2024-02-29", "250")):
        response = client.post(
            "/api/readings/",
            json={"meter_id": meter["id"], "reading_date": reading_date, "value": value},
        )
        assert response.status_code == 201
    return account


def test_health_endpoint(client) -> None:
    response = client.get("/api/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_bill_and_reconcile(client, account_with_meter) -> None:
    """Generate a bill, pay part of it and check the balance."""
    account_id = account_with_meter["id"]

    response = client.post(
        "/api/bills/",
        json={"account_id": account_id, "billing_period": "2024-02", "issue_date": "2024-03-01"},
        headers={"X-Actor-Id": "7"},
    )
    assert response.status_code == 201
    bill = response.json()
    assert Decimal(bill["total_amount"]) == Decimal("150.00")
    assert bill["due_date"] == "2024-03-15"
    assert bill["generated_by"] == 7

    response = client.post(
        "/api/payments/",
        json={"account_id": account_id, "amount": "100", "method": "cash", "reference": "P-1"},
    )
    assert response.status_code == 201
    payment = response.json()

    response = client.post(f"/api/payments/{payment['id']}/reconcile")
    assert response.status_code == 200
    result = response.json()
    assert result["reconciliation_status"] == "reconciled"
    assert Decimal(result["account_balance"]) == Decimal("50.00")
    assert result["bills"][0]["status"] == "partially_paid"

    response = client.get(f"/api/accounts/{account_id}/balance", params={"fresh": True})
    assert response.status_code == 200
    assert Decimal(response.json()["current_balance"]) == Decimal("50.00")

    response = client.post(f"/api/payments/{payment['id']}/reverse")
    assert response.status_code == 200
    assert response.json()["allocations_reversed"] == 1

    response = client.get(f"/api/bills/{bill['id']}")
    assert response.json()["status"] == "pending"


def test_duplicate_bill_error_shape(client, account_with_meter) -> None:
    payload = {"account_id": account_with_meter["id"], "billing_period": "2024-02"}
    assert client.post("/api/bills/", json=payload).status_code == 201

    response = client.post("/api/bills/", json=payload)

    assert response.status_code == 409
    body = response.json()
    assert body["error"] == "duplicate_bill"
    assert "bill_id" in body["details"]


def test_reconcile_twice_conflicts(client, account_with_meter) -> None:
    account_id = account_with_meter["id"]
    response = client.post(
        "/api/payments/",
        json={"account_id": account_id, "amount": "10", "method": "cash", "reference": "P-2"},
    )
    payment_id = response.json()["id"]
    assert client.post(f"/api/payments/{payment_id}/reconcile").status_code == 200

    response = client.post(f"/api/payments/{payment_id}/reconcile")

    assert response.status_code == 409
    assert response.json()["error"] == "already_reconciled"


def test_unknown_account(client) -> None:
    response = client.get("/api/accounts/999")
    assert response.status_code == 404
    assert response.json()["error"] == "not_found"


def test_invalid_billing_period(client, account_with_meter) -> None:
    response = client.post(
        "/api/bills/",
        json={"account_id": account_with_meter["id"], "billing_period": "2024-13"},
    )
    assert response.status_code == 422


def test_tariff_quote(client) -> None:
    response = client.post(
        "/api/tariffs/",
        json={
            "code": "TIER",
            "name": "Tiered",
            "effective_from": "2023-01-01",
            "fixed_charge": "10",
            "tax_rate": "10",
            "rates": [
                {"min_units": "0", "max_units": "100", "rate_per_unit": "1.50"},
                {"min_units": "100", "rate_per_unit": "2.00"},
            ],
        },
    )
    tariff_id = response.json()["id"]

    response = client.post(f"/api/tariffs/{tariff_id}/quote", json={"consumption": "150"})

    assert response.status_code == 200
    charges = response.json()
    assert Decimal(charges["total"]) == Decimal("286.00")
    assert [item["tier"] for item in charges["breakdown"]] == ["0-100", "100+"]


def test_locked_account_is_retryable(client, account_with_meter, monkeypatch) -> None:
    def lock_timeout(*args, **kwargs):
        raise OperationalError("SELECT ... FOR UPDATE", {}, Exception("lock timeout"))

    monkeypatch.setattr(Query, "with_for_update", lock_timeout)

    response = client.post(
        "/api/bills/",
        json={"account_id": account_with_meter["id"], "billing_period": "2024-02"},
    )

    assert response.status_code == 503
    assert response.headers["Retry-After"] == "1"
    body = response.json()
    assert body["error"] == "account_locked"
    assert body["details"] == {"account_id": account_with_meter["id"]}

    monkeypatch.undo()
    response = client.get(f"/api/accounts/{account_with_meter['id']}/bills")
    assert response.json() == []


def test_void_partially_paid_bill(client, account_with_meter) -> None:
    account_id = account_with_meter["id"]
    bill = client.post(
        "/api/bills/", json={"account_id": account_id, "billing_period": "2024-02"}
    ).json()
    payment = client.post(
        "/api/payments/",
        json={"account_id": account_id, "amount": "40", "method": "cash", "reference": "P-3"},
    ).json()
    client.post(f"/api/payments/{payment['id']}/reconcile")

    response = client.post(f"/api/bills/{bill['id']}/void", json={"reason": "Misread meter"})

    assert response.status_code == 200
    result = response.json()
    assert result["voided"]["status"] == "voided"
    assert len(result["released_carry_forward_ids"]) == 1
