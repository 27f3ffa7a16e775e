from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from commerce.api import app

client = TestClient(app)

BANK_DETAILS = {
    "bank_name": "Guaranty Trust Bank",
    "account_number": "0123456789",
    "account_name": "Ada Lovelace",
}


@pytest.fixture
def sale():
    """A confirmed sale for a fresh lecturer / course."""
    suffix = uuid4().hex[:8]
    lecturer_id, course_id = f"lecturer-{suffix}", f"course-{suffix}"
    response = client.put(f"/courses/{course_id}", json={"lecturer_id": lecturer_id, "total_lessons": 4})
    assert response.status_code == 200

    event = {
        "buyer_id": f"student-{suffix}",
        "course_id": course_id,
        "lecturer_id": lecturer_id,
        "amount": 40000,
        "external_reference": f"T-{suffix}",
    }
    response = client.post("/payments/confirmed", json=event)
    assert response.status_code == 200
    return event, response.json()


def test_health():
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


def test_payment_confirmed(sale):
    event, result = sale

    assert result["replayed"] is False
    assert result["transaction"]["lecturer_earning"] == 30000
    assert client.get(f"/transactions/{event['external_reference']}").json()["amount"] == 40000

    balance = client.get(f"/lecturers/{event['lecturer_id']}/balance").json()
    assert balance["available_balance"] == 30000


def test_payment_replay_with_other_amount_conflicts(sale):
    event, _ = sale
    response = client.post("/payments/confirmed", json={**event, "amount": 50000})

    assert response.status_code == 409
    assert response.json()["code"] == "IDEMPOTENCY_CONFLICT"


def test_lesson_progress(sale):
    _, result = sale
    enrollment_id = result["enrollment"]["id"]

    response = client.post(f"/enrollments/{enrollment_id}/lessons/complete", json={"lesson_id": "L1"})
    assert response.status_code == 200
    assert response.json()["progress"] == 25


def test_withdrawal_flow(sale):
    event, _ = sale
    lecturer_id = event["lecturer_id"]

    response = client.post("/withdrawals", json={"lecturer_id": lecturer_id, "amount": 5000, "bank_details": BANK_DETAILS})
    assert response.status_code == 400
    assert response.json()["code"] == "BELOW_MINIMUM_WITHDRAWAL"

    response = client.post("/withdrawals", json={"lecturer_id": lecturer_id, "amount": 20000, "bank_details": BANK_DETAILS})
    assert response.status_code == 201
    body = response.json()
    assert body["available_balance"] == 10000

    withdrawal_id = body["withdrawal"]["id"]
    response = client.post(f"/withdrawals/{withdrawal_id}/status", json={"status": "completed"})
    assert response.status_code == 409
    assert response.json()["code"] == "INVALID_STATE_TRANSITION"


def test_unknown_records():
    assert client.get("/transactions/does-not-exist").status_code == 404
    response = client.get(f"/enrollments/{uuid4()}/progress")
    assert response.status_code == 404
    assert response.json()["code"] == "ENROLLMENT_NOT_FOUND"


def test_transaction_listing_limit(sale):
    event, _ = sale
    url = f"/lecturers/{event['lecturer_id']}/transactions"

    assert len(client.get(url, params={"limit": 1}).json()) == 1
    assert client.get(url, params={"limit": 0}).status_code == 422
    assert client.get(url, params={"limit": -1}).status_code == 422
