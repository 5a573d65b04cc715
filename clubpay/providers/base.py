"""Provider-neutral contract the billing engine consumes."""
from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any


@dataclass(frozen=True)
class CustomerData:
    email: str | None = None
    given_name: str | None = None
    family_name: str | None = None
    metadata: dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class ProviderCustomer:
    provider_customer_id: str


@dataclass(frozen=True)
class RedirectUrls:
    success_url: str
    cancel_url: str


@dataclass(frozen=True)
class SetupFlow:
    flow_id: str
    authorisation_url: str
    expires_at: datetime | None = None


@dataclass(frozen=True)
class ProviderMandate:
    provider_mandate_id: str
    status: str
    reference: str | None = None
    next_possible_charge_date: date | None = None


@dataclass(frozen=True)
class ProviderPaymentResult:
    provider_payment_id: str
    status: str
    amount: Decimal
    charge_date: date | None = None


@dataclass(frozen=True)
class ProviderEvent:
    """One normalized notification out of a webhook delivery."""

    id: str
    resource_type: str
    action: str
    resource_id: str | None
    details: dict[str, Any] = field(default_factory=dict)
    links: dict[str, str] = field(default_factory=dict)
    raw: dict[str, Any] = field(default_factory=dict)


class PaymentProvider(abc.ABC):
    name: str
    signature_header: str

    @abc.abstractmethod
    def create_customer(self, data: CustomerData) -> ProviderCustomer: ...

    @abc.abstractmethod
    def update_customer(self, provider_customer_id: str, data: CustomerData) -> None: ...

    @abc.abstractmethod
    def create_mandate_setup_flow(
        self,
        provider_customer_id: str,
        redirect_urls: RedirectUrls,
        *,
        scheme: str,
        currency: str,
    ) -> SetupFlow: ...

    @abc.abstractmethod
    def complete_mandate_setup(self, flow_id: str) -> ProviderMandate: ...

    @abc.abstractmethod
    def get_mandate(self, provider_mandate_id: str) -> ProviderMandate: ...

    @abc.abstractmethod
    def cancel_mandate(self, provider_mandate_id: str) -> None: ...

    @abc.abstractmethod
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
    ) -> ProviderPaymentResult: ...

    @abc.abstractmethod
    def verify_webhook_signature(self, raw_body: bytes, signature: str) -> bool: ...

    @abc.abstractmethod
    def parse_webhook_events(self, payload: dict[str, Any]) -> list[ProviderEvent]: ...
