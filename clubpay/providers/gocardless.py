"""GoCardless Direct Debit integration."""

import hashlib
import hmac
import logging
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import httpx

from clubpay.errors import ProviderError
from clubpay.providers.base import (
    CustomerData,
    PaymentProvider,
    ProviderCustomer,
    ProviderEvent,
    ProviderMandate,
    ProviderPaymentResult,
    RedirectUrls,
    SetupFlow,
)

logger = logging.getLogger(__name__)

GOCARDLESS_LIVE_URL = "https://api.gocardless.com"
GOCARDLESS_SANDBOX_URL = "https://api-sandbox.gocardless.com"
GOCARDLESS_API_VERSION = "2015-07-06"

# GoCardless statuses folded onto the engine's mandate states
_MANDATE_STATUS_MAP = {
    "pending_customer_approval": "pending_submission",
    "pending_submission": "pending_submission",
    "submitted": "submitted",
    "active": "active",
    "cancelled": "cancelled",
    "suspended_by_payer": "cancelled",
    "failed": "failed",
    "blocked": "failed",
    "expired": "expired",
    "consumed": "expired",
}

_PAYMENT_STATUS_MAP = {
    "pending_customer_approval": "pending_submission",
    "pending_submission": "pending_submission",
    "submitted": "submitted",
    "confirmed": "confirmed",
    "paid_out": "paid_out",
    "cancelled": "cancelled",
    "customer_approval_denied": "failed",
    "failed": "failed",
    "charged_back": "charged_back",
}


def _parse_date(value: str | None) -> date | None:
    if not value:
        return None
    return date.fromisoformat(value)


def _parse_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


def _to_minor_units(amount: Decimal) -> int:
    return int((amount * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class GoCardlessProvider(PaymentProvider):
    """Thin wrapper around the GoCardless REST API."""

    name = "gocardless"
    signature_header = "webhook-signature"

    def __init__(
        self,
        access_token: str,
        environment: str = "sandbox",
        webhook_secret: str = "",
    ) -> None:
        self._access_token = access_token
        self._webhook_secret = webhook_secret
        self._base_url = (
            GOCARDLESS_LIVE_URL if environment == "live" else GOCARDLESS_SANDBOX_URL
        )

    def _headers(self, idempotency_key: str | None = None) -> dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self._access_token}",
            "GoCardless-Version": GOCARDLESS_API_VERSION,
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if idempotency_key:
            headers["Idempotency-Key"] = idempotency_key
        return headers

    def is_configured(self) -> bool:
        return bool(self._access_token)

    def _request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> dict[str, Any]:
        if not self.is_configured():
            raise ProviderError("GoCardless is not configured", provider=self.name)
        try:
            with httpx.Client(timeout=30) as client:
                resp = client.request(
                    method,
                    f"{self._base_url}{path}",
                    json=payload,
                    headers=self._headers(idempotency_key),
                )
        except httpx.HTTPError as exc:
            logger.error("GoCardless %s %s failed: %s", method, path, exc)
            raise ProviderError(
                f"GoCardless request failed: {exc}", provider=self.name
            ) from exc
        try:
            data: dict[str, Any] = resp.json()
        except ValueError:
            data = {}
        if resp.status_code >= 400:
            error = data.get("error") or {}
            logger.error(
                "GoCardless %s %s returned %s: %s",
                method,
                path,
                resp.status_code,
                error.get("message"),
            )
            raise ProviderError(
                error.get("message") or "GoCardless request failed",
                provider=self.name,
                http_status=resp.status_code,
                error_type=error.get("type"),
                request_id=error.get("request_id"),
            )
        return data

    # ── Customers ────────────────────────────────────────

    def create_customer(self, data: CustomerData) -> ProviderCustomer:
        body = {
            "customers": {
                "email": data.email,
                "given_name": data.given_name,
                "family_name": data.family_name,
                "metadata": data.metadata,
            }
        }
        result = self._request("POST", "/customers", body)
        customer_id = result["customers"]["id"]
        logger.info("Created GoCardless customer: %s", customer_id)
        return ProviderCustomer(provider_customer_id=customer_id)

    def update_customer(self, provider_customer_id: str, data: CustomerData) -> None:
        fields = {
            "email": data.email,
            "given_name": data.given_name,
            "family_name": data.family_name,
        }
        body: dict[str, Any] = {k: v for k, v in fields.items() if v is not None}
        if data.metadata:
            body["metadata"] = data.metadata
        self._request("PUT", f"/customers/{provider_customer_id}", {"customers": body})

    # ── Mandates ─────────────────────────────────────────

    def create_mandate_setup_flow(
        self,
        provider_customer_id: str,
        redirect_urls: RedirectUrls,
        *,
        scheme: str,
        currency: str,
    ) -> SetupFlow:
        """Create a billing request and the hosted flow the payer completes."""
        billing_request = self._request(
            "POST",
            "/billing_requests",
            {
                "billing_requests": {
                    "mandate_request": {
                        "scheme": scheme,
                        "currency": currency,
                        "verify": "when_available",
                    },
                    "links": {"customer": provider_customer_id},
                }
            },
        )["billing_requests"]
        flow = self._request(
            "POST",
            "/billing_request_flows",
            {
                "billing_request_flows": {
                    "redirect_uri": redirect_urls.success_url,
                    "exit_uri": redirect_urls.cancel_url,
                    "links": {"billing_request": billing_request["id"]},
                }
            },
        )["billing_request_flows"]
        return SetupFlow(
            flow_id=billing_request["id"],
            authorisation_url=flow["authorisation_url"],
            expires_at=_parse_datetime(flow.get("expires_at")),
        )

    def complete_mandate_setup(self, flow_id: str) -> ProviderMandate:
        billing_request = self._request("GET", f"/billing_requests/{flow_id}")[
            "billing_requests"
        ]
        if billing_request.get("status") not in ("fulfilled", "pending"):
            raise ProviderError(
                f"Billing request {flow_id} is {billing_request.get('status')}",
                provider=self.name,
            )
        links = billing_request.get("links") or {}
        mandate_request = billing_request.get("mandate_request") or {}
        mandate_id = (
            links.get("mandate_request_mandate")
            or links.get("mandate")
            or (mandate_request.get("links") or {}).get("mandate")
        )
        if not mandate_id:
            raise ProviderError(
                f"Billing request {flow_id} has no mandate yet", provider=self.name
            )
        return self.get_mandate(mandate_id)

    def get_mandate(self, provider_mandate_id: str) -> ProviderMandate:
        mandate = self._request("GET", f"/mandates/{provider_mandate_id}")["mandates"]
        return ProviderMandate(
            provider_mandate_id=mandate["id"],
            status=self.normalize_mandate_status(mandate["status"]),
            reference=mandate.get("reference"),
            next_possible_charge_date=_parse_date(mandate.get("next_possible_charge_date")),
        )

    def cancel_mandate(self, provider_mandate_id: str) -> None:
        self._request("POST", f"/mandates/{provider_mandate_id}/actions/cancel", {})
        logger.info("Cancelled GoCardless mandate: %s", provider_mandate_id)

    # ── Payments ─────────────────────────────────────────

    def create_payment(
        self,
        provider_mandate_id: str,
        amount: Decimal,
        *,
        currency: str,
        description: str | None = None,
        charge_date: date | None = None,
        metadata: dict[str, str] | None = None,
        idempotency_key: str | None = None,
    ) -> ProviderPaymentResult:
        body: dict[str, Any] = {
            "amount": _to_minor_units(amount),
            "currency": currency,
            "links": {"mandate": provider_mandate_id},
        }
        if description:
            body["description"] = description
        if charge_date:
            body["charge_date"] = charge_date.isoformat()
        if metadata:
            body["metadata"] = metadata
        payment = self._request(
            "POST", "/payments", {"payments": body}, idempotency_key=idempotency_key
        )["payments"]
        return ProviderPaymentResult(
            provider_payment_id=payment["id"],
            status=self.normalize_payment_status(payment["status"]),
            amount=Decimal(payment["amount"]) / 100,
            charge_date=_parse_date(payment.get("charge_date")),
        )

    # ── Webhooks ─────────────────────────────────────────

    def verify_webhook_signature(self, raw_body: bytes, signature: str) -> bool:
        if not self._webhook_secret or not signature:
            return False
        expected = hmac.new(
            self._webhook_secret.encode("utf-8"),
            raw_body,
            hashlib.sha256,
        ).hexdigest()
        return hmac.compare_digest(expected, signature)

    def parse_webhook_events(self, payload: dict[str, Any]) -> list[ProviderEvent]:
        events = []
        for event in payload.get("events") or []:
            if not event.get("id"):
                logger.warning("Ignoring GoCardless event without an id")
                continue
            resource_type = event.get("resource_type", "")
            links = event.get("links") or {}
            # links are keyed by the singular resource name
            link_key = resource_type[:-1] if resource_type.endswith("s") else resource_type
            events.append(
                ProviderEvent(
                    id=event["id"],
                    resource_type=resource_type,
                    action=event.get("action", ""),
                    resource_id=links.get(link_key),
                    details=event.get("details") or {},
                    links=links,
                    raw=event,
                )
            )
        return events

    @staticmethod
    def normalize_mandate_status(status: str) -> str:
        return _MANDATE_STATUS_MAP.get(status, status)

    @staticmethod
    def normalize_payment_status(status: str) -> str:
        return _PAYMENT_STATUS_MAP.get(status, status)
