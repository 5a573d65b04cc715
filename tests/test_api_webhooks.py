"""Tests for the webhook endpoint."""

import json

from sqlalchemy import select

from clubpay.models.payment import MandateStatus, WebhookRecord


def _payload(*events) -> bytes:
    return json.dumps({"events": list(events)}).encode()


def test_api_webhook_activates_subscription(
    client, db_session, provider, subscriptions, pending_subscription, make_mandate
):
    mandate = make_mandate(status=MandateStatus.submitted)
    subscriptions.attach_mandate(pending_subscription.id, mandate.id)
    db_session.commit()
    body = _payload(
        {
            "id": "EV1",
            "resource_type": "mandates",
            "action": "active",
            "links": {"mandate": mandate.provider_mandate_id},
        }
    )
    resp = client.post(
        "/webhooks/fake", content=body, headers={"webhook-signature": provider.sign(body)}
    )
    assert resp.status_code == 200
    data = resp.json()
    assert data["received"] is True
    assert data["events_processed"] == 1
    assert data["results"][0]["status"] == "processed"
    assert data["results"][0]["result"]["activated"] == [str(pending_subscription.id)]


def test_api_webhook_replay_is_skipped(client, provider):
    body = _payload({"id": "EV1", "resource_type": "payouts", "action": "paid", "links": {}})
    headers = {"webhook-signature": provider.sign(body)}
    assert client.post("/webhooks/fake", content=body, headers=headers).status_code == 200
    resp = client.post("/webhooks/fake", content=body, headers=headers)
    assert resp.status_code == 200
    assert resp.json()["events_processed"] == 0
    assert resp.json()["results"][0]["status"] == "skipped"


def test_api_webhook_bad_signature(client, db_session):
    body = _payload({"id": "EV1", "resource_type": "mandates", "action": "active"})
    resp = client.post("/webhooks/fake", content=body, headers={"webhook-signature": "nope"})
    assert resp.status_code == 401
    assert resp.json()["code"] == "invalid_signature"
    record = db_session.scalars(select(WebhookRecord)).one()
    assert record.signature_valid is False


def test_api_webhook_missing_signature(client):
    resp = client.post("/webhooks/fake", content=b"{}")
    assert resp.status_code == 400
    assert resp.json()["message"] == "Missing webhook signature"


def test_api_webhook_unknown_provider(client):
    resp = client.post("/webhooks/stripe", content=b"{}", headers={"webhook-signature": "x"})
    assert resp.status_code == 404


def test_api_webhook_invalid_json(client, provider):
    body = b"{not json"
    resp = client.post(
        "/webhooks/fake", content=body, headers={"webhook-signature": provider.sign(body)}
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "validation_error"


def test_api_webhook_reports_failed_event(client, provider):
    body = _payload(
        {
            "id": "EV1",
            "resource_type": "payments",
            "action": "paid_out",
            "links": {"payment": "PM_UNKNOWN"},
        }
    )
    resp = client.post(
        "/webhooks/fake", content=body, headers={"webhook-signature": provider.sign(body)}
    )
    assert resp.status_code == 200
    result = resp.json()["results"][0]
    assert result["status"] == "failed"
    assert result["error"] == "Payment not found"
