"""HTTP surface: open checkout, client callbacks, status polling."""

import json
import time
from uuid import uuid4

import httpx
import pytest
from fastapi.testclient import TestClient

from lessonpay.services.checkout import main
from lessonpay.services.checkout.verification import VerificationClient


@pytest.fixture
def authority(monkeypatch):
    """Verification authority that knows only the references in `cleared`."""

    cleared: set[str] = set()

    def handler(request):
        reference = json.loads(request.content)["reference"]
        if reference in cleared:
            return httpx.Response(200, json={"success": True, "message": "Verification successful"})
        return httpx.Response(404, json={"success": False, "message": "reference not found"})

    verifier = VerificationClient(
        url="https://verify.example.test/verify",
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    monkeypatch.setattr(main, "verifier", verifier)
    return cleared


@pytest.fixture
def client():
    with TestClient(main.app) as test_client:
        yield test_client


def new_buyer():
    buyer_id = f"S{uuid4().hex[:8]}"
    return {"id": buyer_id, "email": f"{buyer_id}@x.com"}


def open_checkout(client, buyer, **item):
    item = {"id": "L1", "title": "Intro to Algebra", "price": "5000", **item}
    return client.post("/checkouts", json={"buyer": buyer, "item": item})


def wait_for_outcome(client, reference):
    for _ in range(200):
        body = client.get(f"/checkouts/{reference}").json()
        if body["outcome"] is not None:
            return body
        time.sleep(0.01)
    raise AssertionError(f"checkout {reference} never finished")


def test_create_checkout_returns_gateway_config(client, authority):
    """Opening a checkout returns the config for the gateway modal."""

    resp = open_checkout(client, new_buyer())

    assert resp.status_code == 201
    body = resp.json()
    assert body["status"] == "AWAITING_GATEWAY_RESULT"
    assert body["config"]["amount_minor_units"] == 500_000
    assert body["config"]["currency"] == "NGN"
    assert set(body["config"]["channels"]) == {"card", "bank_transfer", "ussd", "mobile_money"}
    assert body["outcome"] is None


def test_approved_and_cleared_payment_is_granted(client, authority):
    """A client approval the authority confirms ends GRANTED."""

    reference = open_checkout(client, new_buyer()).json()["reference"]
    authority.add(reference)

    resp = client.post(f"/checkouts/{reference}/approve", json={"transaction_id": "T1", "status": "success"})
    assert resp.status_code == 202

    body = wait_for_outcome(client, reference)
    assert body["status"] == "GRANTED"
    assert body["outcome"]["kind"] == "GRANTED"
    assert body["outcome"]["verified"] is True


def test_client_reported_success_is_not_trusted(client, authority):
    """A client approval the authority does not know ends FAILED."""

    reference = open_checkout(client, new_buyer()).json()["reference"]

    client.post(f"/checkouts/{reference}/approve", json={"transaction_id": "T1", "status": "success"})

    body = wait_for_outcome(client, reference)
    assert body["status"] == "FAILED"
    assert body["outcome"]["detail"] == "reference not found"


def test_dismissal_cancels(client, authority):
    """Closing the modal ends CANCELLED."""

    reference = open_checkout(client, new_buyer()).json()["reference"]

    resp = client.post(f"/checkouts/{reference}/dismiss", json={})
    assert resp.status_code == 202

    body = wait_for_outcome(client, reference)
    assert body["outcome"]["kind"] == "CANCELLED"
    assert body["outcome"]["error_code"] == "USER_CANCELLED"


def test_reentrant_start_conflicts_until_terminal(client, authority):
    """A buyer with a checkout in flight gets 409 until it settles."""

    buyer = new_buyer()
    reference = open_checkout(client, buyer).json()["reference"]

    assert open_checkout(client, buyer).status_code == 409

    client.post(f"/checkouts/{reference}/dismiss", json={"error": "network error"})
    wait_for_outcome(client, reference)

    retry = open_checkout(client, buyer)
    assert retry.status_code == 201
    assert retry.json()["reference"] != reference


def test_callbacks_for_unknown_or_settled_reference_404(client, authority):
    """Callbacks for unknown or settled references are 404."""

    assert client.post("/checkouts/LSN_nope/approve", json={"transaction_id": "T1"}).status_code == 404

    reference = open_checkout(client, new_buyer()).json()["reference"]
    client.post(f"/checkouts/{reference}/dismiss", json={})
    assert client.post(f"/checkouts/{reference}/approve", json={"transaction_id": "T1"}).status_code == 404
    assert client.get("/checkouts/LSN_nope").status_code == 404


def test_item_needs_exactly_one_price(client, authority):
    """Items must carry exactly one of price or price_minor_units."""

    resp = client.post(
        "/checkouts",
        json={"buyer": new_buyer(), "item": {"id": "L1", "price": "10", "price_minor_units": 1000}},
    )

    assert resp.status_code == 422


def test_health_and_metrics(client):
    """Health and metrics endpoints respond."""

    assert client.get("/health").json() == {"ok": True}
    assert "checkout_attempts_total" in client.get("/metrics").text
