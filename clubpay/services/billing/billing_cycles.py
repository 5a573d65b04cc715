"""Collection and period rollover for due subscriptions.

Nothing here schedules itself; an external job runner calls these operations.
"""

import logging
from dataclasses import dataclass
from datetime import date

from sqlalchemy import select
from sqlalchemy.orm import Session

from clubpay.clock import Clock, SystemClock
from clubpay.errors import NotFoundError, ProviderError, ValidationError
from clubpay.models.billing import Invoice, Subscription, SubscriptionStatus
from clubpay.models.payment import (
    MandateStatus,
    PaymentMandate,
    PaymentStatus,
    ProviderPayment,
)
from clubpay.providers.base import PaymentProvider
from clubpay.services.billing.customers import resolve_provider
from clubpay.services.billing.invoices import InvoiceLedger
from clubpay.services.billing.subscriptions import SubscriptionService
from clubpay.services.common import coerce_uuid

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BillingCycleResult:
    subscription: Subscription
    invoice: Invoice | None = None
    payment: ProviderPayment | None = None
    error: str | None = None


class BillingCycleService:
    def __init__(
        self,
        db: Session,
        providers: dict[str, PaymentProvider],
        clock: Clock | None = None,
    ) -> None:
        self.db = db
        self.providers = providers
        self.clock = clock or SystemClock()
        self.subscriptions = SubscriptionService(db, self.clock)
        self.invoices = InvoiceLedger(db, self.clock)

    def due_subscriptions(self, as_of: date | None = None) -> list[Subscription]:
        as_of = as_of or self.clock.now().date()
        stmt = (
            select(Subscription)
            .join(PaymentMandate, Subscription.payment_mandate_id == PaymentMandate.id)
            .where(
                Subscription.status == SubscriptionStatus.active,
                PaymentMandate.status == MandateStatus.active,
                Subscription.next_billing_date <= as_of,
            )
            .order_by(Subscription.next_billing_date.asc())
        )
        return list(self.db.scalars(stmt).all())

    def _active_mandate(self, subscription: Subscription) -> PaymentMandate:
        mandate = (
            self.db.get(PaymentMandate, subscription.payment_mandate_id)
            if subscription.payment_mandate_id
            else None
        )
        if mandate is None or mandate.status != MandateStatus.active:
            raise ValidationError(
                "Subscription has no active mandate",
                {"subscription_id": str(subscription.id)},
            )
        return mandate

    def collect_payment(self, subscription_id, invoice_id=None) -> ProviderPayment:
        subscription = self.subscriptions.get(subscription_id)
        mandate = self._active_mandate(subscription)
        provider = resolve_provider(self.providers, mandate.provider)
        today = self.clock.now().date()
        charge_date = mandate.next_possible_charge_date
        if charge_date is not None and charge_date <= today:
            charge_date = None
        reference = str(invoice_id) if invoice_id else subscription.next_billing_date.isoformat()
        result = provider.create_payment(
            mandate.provider_mandate_id,
            subscription.amount,
            currency=subscription.currency,
            description=f"{subscription.tier.name} membership",
            charge_date=charge_date,
            metadata={"subscription_id": str(subscription.id)},
            idempotency_key=f"{subscription.id}:{reference}",
        )
        payment = ProviderPayment(
            provider=provider.name,
            provider_payment_id=result.provider_payment_id,
            mandate_id=mandate.id,
            subscription_id=subscription.id,
            invoice_id=coerce_uuid(invoice_id),
            amount=subscription.amount,
            currency=subscription.currency,
            status=_payment_status(result.status, provider.name),
            charge_date=result.charge_date,
            description=f"{subscription.tier.name} membership",
            retry_count=0,
        )
        self.db.add(payment)
        self.db.flush()
        logger.info(
            "Created payment %s for %s",
            payment.provider_payment_id,
            subscription.id,
            extra={"subscription_id": subscription.id, "provider": provider.name},
        )
        return payment

    def process_billing_cycle(self, subscription_id) -> BillingCycleResult:
        subscription = self.subscriptions.get(subscription_id)
        if subscription.status != SubscriptionStatus.active:
            raise ValidationError(
                "Only active subscriptions can be billed",
                {"status": SubscriptionStatus(subscription.status).value},
            )
        now = self.clock.now()
        if (
            subscription.cancelled_at is not None
            and subscription.cancelled_at <= now
        ):
            subscription = self.subscriptions.advance_billing_period(subscription.id)
            return BillingCycleResult(subscription=subscription)

        self._active_mandate(subscription)
        invoice = self.invoices.create_for_period(subscription)
        payment = None
        error = None
        try:
            payment = self.collect_payment(subscription.id, invoice.id)
        except ProviderError as exc:
            logger.error(
                "Collection failed for %s: %s",
                subscription.id,
                exc,
                extra={"subscription_id": subscription.id},
            )
            error = str(exc)
        subscription = self.subscriptions.advance_billing_period(subscription.id)
        return BillingCycleResult(subscription, invoice, payment, error)

    def payments_for_retry(self, max_retries: int = 3) -> list[ProviderPayment]:
        stmt = (
            select(ProviderPayment)
            .join(Subscription, ProviderPayment.subscription_id == Subscription.id)
            .join(PaymentMandate, ProviderPayment.mandate_id == PaymentMandate.id)
            .where(
                ProviderPayment.status == PaymentStatus.failed,
                ProviderPayment.retry_count < max_retries,
                Subscription.status == SubscriptionStatus.active,
                PaymentMandate.status == MandateStatus.active,
            )
            .order_by(ProviderPayment.updated_at.asc())
        )
        return list(self.db.scalars(stmt).all())

    def retry_payment(self, payment_id) -> ProviderPayment:
        payment = self.db.get(ProviderPayment, coerce_uuid(payment_id))
        if not payment:
            raise NotFoundError("Payment not found", {"payment_id": str(payment_id)})
        if payment.status != PaymentStatus.failed:
            raise ValidationError("Only failed payments can be retried")
        mandate = self.db.get(PaymentMandate, payment.mandate_id) if payment.mandate_id else None
        if mandate is None or mandate.status != MandateStatus.active:
            raise ValidationError("Payment mandate is not active")
        provider = resolve_provider(self.providers, payment.provider)
        result = provider.create_payment(
            mandate.provider_mandate_id,
            payment.amount,
            currency=payment.currency,
            description=payment.description,
            metadata={"retry_of": payment.provider_payment_id},
            idempotency_key=f"{payment.id}:retry:{payment.retry_count}",
        )
        previous_id = payment.provider_payment_id
        payment.provider_payment_id = result.provider_payment_id
        payment.status = _payment_status(result.status, provider.name)
        payment.charge_date = result.charge_date
        payment.failure_reason = None
        self.db.flush()
        logger.info(
            "Retried payment %s as %s",
            previous_id,
            payment.provider_payment_id,
            extra={"provider": provider.name},
        )
        return payment


def _payment_status(value: str, provider: str) -> PaymentStatus:
    try:
        return PaymentStatus(value)
    except ValueError as exc:
        raise ProviderError(f"Unknown payment status: {value}", provider=provider) from exc
