"""Tests for mandate and payment method API endpoints."""

import uuid
from urllib.parse import parse_qs, urlparse


def _start_setup(client, user_headers, club_id):
    return client.post(
        "/mandates/setup",
        json={"club_id": str(club_id), "provider": "fake", "email": "parent@example.com"},
        headers=user_headers,
    )


def test_api_setup_requires_user(client, club_id):
    resp = client.post("/mandates/setup", json={"club_id": str(club_id), "provider": "fake"})
    assert resp.status_code == 401
    assert resp.json()["message"] == "Missing X-User-Id header"


def test_api_setup_and_complete(client, user_headers, club_id, provider):
    resp = _start_setup(client, user_headers, club_id)
    assert resp.status_code == 201
    started = resp.json()
    assert started["authorisation_url"].startswith("https://pay.example.test/flow/")

    (_, redirect_urls, _), = provider.called("create_mandate_setup_flow")
    state = parse_qs(urlparse(redirect_urls.success_url).query)["state"][0]
    assert state == started["state"]

    resp = client.post("/mandates/complete", json={"state": state}, headers=user_headers)
    assert resp.status_code == 200
    mandate = resp.json()
    assert mandate["id"] == started["mandate_id"]
    assert mandate["status"] == "active"
    assert mandate["provider_mandate_id"].startswith("MD")

    resp = client.get("/payment-methods", headers=user_headers)
    (method,) = resp.json()
    assert method["is_default"] is True
    assert method["mandate_id"] == mandate["id"]


def test_api_complete_by_other_user(client, user_headers, club_id):
    started = _start_setup(client, user_headers, club_id).json()
    resp = client.post(
        "/mandates/complete",
        json={"state": started["state"]},
        headers={"X-User-Id": str(uuid.uuid4())},
    )
    assert resp.status_code == 400
    assert resp.json()["code"] == "invalid_state_token"


def test_api_setup_unknown_provider(client, user_headers, club_id):
    resp = client.post(
        "/mandates/setup",
        json={"club_id": str(club_id), "provider": "stripe"},
        headers=user_headers,
    )
    assert resp.status_code == 400


def test_api_setup_provider_failure(client, user_headers, club_id, provider):
    provider.fail_on.add("create_mandate_setup_flow")
    resp = _start_setup(client, user_headers, club_id)
    assert resp.status_code == 502
    assert resp.json()["code"] == "provider_error"


def test_api_list_mandates(client, user_headers, mandate):
    resp = client.get("/mandates", headers=user_headers)
    assert resp.status_code == 200
    assert [m["id"] for m in resp.json()] == [str(mandate.id)]


def test_api_cancel_mandate(client, user_headers, mandate, provider):
    resp = client.post(f"/mandates/{mandate.id}/cancel", headers=user_headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "cancelled"
    assert provider.called("cancel_mandate") == [(mandate.provider_mandate_id,)]


def test_api_cancel_other_users_mandate(client, mandate):
    resp = client.post(
        f"/mandates/{mandate.id}/cancel", headers={"X-User-Id": str(uuid.uuid4())}
    )
    assert resp.status_code == 404


def test_api_set_default_and_remove(client, user_headers, make_mandate):
    make_mandate(with_method=True)
    make_mandate(with_method=True)
    first, second = client.get("/payment-methods", headers=user_headers).json()

    resp = client.post(f"/payment-methods/{first['id']}/default", headers=user_headers)
    assert resp.status_code == 200
    assert resp.json()["is_default"] is True

    resp = client.delete(f"/payment-methods/{first['id']}", headers=user_headers)
    assert resp.status_code == 200
    assert resp.json()["status"] == "revoked"

    (remaining,) = client.get("/payment-methods", headers=user_headers).json()
    assert remaining["id"] == second["id"]
    assert remaining["is_default"] is True


def test_api_remove_in_use(client, user_headers, make_mandate, make_subscription):
    mandate = make_mandate(with_method=True)
    make_subscription(mandate=mandate)
    (method,) = client.get("/payment-methods", headers=user_headers).json()
    resp = client.delete(f"/payment-methods/{method['id']}", headers=user_headers)
    assert resp.status_code == 409
