"""Applies provider payment outcomes to payments, invoices and subscriptions."""

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from clubpay.clock import Clock, SystemClock
from clubpay.errors import NotFoundError
from clubpay.models.billing import (
    BillingFrequency,
    Invoice,
    MembershipTier,
    Subscription,
    SubscriptionStatus,
)
from clubpay.models.payment import PaymentStatus, ProviderPayment
from clubpay.services.billing.invoices import InvoiceLedger
from clubpay.services.billing.proration import Proration, compute_proration, whole_days
from clubpay.services.billing.subscriptions import (
    SYSTEM_ACTOR,
    Actor,
    SubscriptionService,
    can_transition,
)
from clubpay.services.common import coerce_uuid

logger = logging.getLogger(__name__)

# Failed collections tolerated before a subscription is suspended.
SUSPENSION_THRESHOLD = 3

_PAYMENT_PROGRESSION = {
    PaymentStatus.created: 0,
    PaymentStatus.pending_submission: 0,
    PaymentStatus.submitted: 1,
    PaymentStatus.confirmed: 2,
    PaymentStatus.paid_out: 3,
    PaymentStatus.charged_back: 4,
}
_TERMINAL_PAYMENT_STATUSES = {PaymentStatus.failed, PaymentStatus.cancelled}


def payment_moves_forward(current: PaymentStatus, new: PaymentStatus) -> bool:
    """Whether ``new`` may replace ``current`` on the same provider payment.

    Statuses only advance. Failure is possible until the money is paid out;
    after that only a chargeback can follow.
    """
    if current == new:
        # A resubmitted collection can fail again under the same id.
        return new == PaymentStatus.failed
    if current in _TERMINAL_PAYMENT_STATUSES:
        return False
    if new in _TERMINAL_PAYMENT_STATUSES:
        return _PAYMENT_PROGRESSION[current] < _PAYMENT_PROGRESSION[PaymentStatus.paid_out]
    return _PAYMENT_PROGRESSION[new] > _PAYMENT_PROGRESSION[current]


@dataclass(frozen=True)
class PaymentOutcome:
    payment: ProviderPayment
    subscription: Subscription | None = None
    invoice: Invoice | None = None
    subscription_suspended: bool = False
    stale: bool = False

    def summary(self) -> dict:
        return {
            "payment_id": str(self.payment.id),
            "status": PaymentStatus(self.payment.status).value,
            "subscription_id": str(self.subscription.id) if self.subscription else None,
            "invoice_id": str(self.invoice.id) if self.invoice else None,
            "subscription_suspended": self.subscription_suspended,
            "stale": self.stale,
        }


@dataclass(frozen=True)
class ProrationPreview:
    proration: Proration
    effective_date: datetime

    def as_dict(self) -> dict:
        return {**self.proration.as_dict(), "effective_date": self.effective_date}


class PaymentReconciler:
    def __init__(self, db: Session, clock: Clock | None = None) -> None:
        self.db = db
        self.clock = clock or SystemClock()
        self.subscriptions = SubscriptionService(db, self.clock)
        self.invoices = InvoiceLedger(db, self.clock)

    def find_payment(self, provider: str, provider_payment_id: str) -> ProviderPayment | None:
        return self.db.scalar(
            select(ProviderPayment).where(
                ProviderPayment.provider == provider,
                ProviderPayment.provider_payment_id == provider_payment_id,
            )
        )

    def _require_payment(self, provider: str, provider_payment_id: str) -> ProviderPayment:
        payment = self.find_payment(provider, provider_payment_id)
        if not payment:
            raise NotFoundError(
                "Payment not found",
                {"provider": provider, "provider_payment_id": provider_payment_id},
            )
        return payment

    def _advances(self, payment: ProviderPayment, status: PaymentStatus) -> bool:
        current = PaymentStatus(payment.status)
        if payment_moves_forward(current, status):
            return True
        logger.info(
            "Ignoring stale status %s for payment %s; already %s",
            status.value,
            payment.provider_payment_id,
            current.value,
            extra={"provider": payment.provider},
        )
        return False

    def update_payment_status(
        self, provider: str, provider_payment_id: str, status: PaymentStatus
    ) -> ProviderPayment | None:
        """Mirror the provider's status; unknown payments are left alone.

        An out-of-order status that would move the payment backwards is
        ignored; the payment is returned unchanged.
        """
        payment = self.find_payment(provider, provider_payment_id)
        if payment is None:
            logger.info(
                "Status %s for unknown payment %s",
                status.value,
                provider_payment_id,
                extra={"provider": provider},
            )
            return None
        if self._advances(payment, status):
            payment.status = status
            self.db.flush()
        return payment

    def handle_payment_success(
        self,
        provider: str,
        provider_payment_id: str,
        payout_id: str | None = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> PaymentOutcome:
        payment = self._require_payment(provider, provider_payment_id)
        if not self._advances(payment, PaymentStatus.paid_out):
            return PaymentOutcome(payment, stale=True)
        payment.status = PaymentStatus.paid_out
        payment.paid_out_at = self.clock.now()
        if payout_id:
            payment.payout_id = payout_id
        self.db.flush()

        invoice = None
        if payment.invoice_id:
            invoice = self.invoices.mark_paid(payment.invoice_id)
        subscription = None
        if payment.subscription_id:
            subscription = self.subscriptions.reset_failed_payment_count(
                payment.subscription_id, provider_payment_id, actor
            )
        logger.info("Payment %s paid out", provider_payment_id, extra={"provider": provider})
        return PaymentOutcome(payment, subscription, invoice)

    def handle_payment_failure(
        self,
        provider: str,
        provider_payment_id: str,
        reason: str | None = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> PaymentOutcome:
        payment = self._require_payment(provider, provider_payment_id)
        if not self._advances(payment, PaymentStatus.failed):
            return PaymentOutcome(payment, stale=True)
        payment.retry_count = (payment.retry_count or 0) + 1
        payment.status = PaymentStatus.failed
        payment.failure_reason = reason
        self.db.flush()
        logger.warning(
            "Payment %s failed: %s", provider_payment_id, reason, extra={"provider": provider}
        )
        if not payment.subscription_id:
            return PaymentOutcome(payment)
        subscription, suspended = self._record_failure(payment, reason, actor)
        return PaymentOutcome(payment, subscription, subscription_suspended=suspended)

    def handle_chargeback(
        self,
        provider: str,
        provider_payment_id: str,
        reason: str | None = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> PaymentOutcome:
        payment = self._require_payment(provider, provider_payment_id)
        if not self._advances(payment, PaymentStatus.charged_back):
            return PaymentOutcome(payment, stale=True)
        payment.status = PaymentStatus.charged_back
        payment.failure_reason = reason or "charged_back"
        self.db.flush()
        invoice = None
        if payment.invoice_id:
            invoice = self.invoices.mark_overdue(payment.invoice_id)
        logger.warning(
            "Payment %s charged back", provider_payment_id, extra={"provider": provider}
        )
        if not payment.subscription_id:
            return PaymentOutcome(payment, invoice=invoice)
        subscription, suspended = self._record_failure(
            payment, reason or "Payment charged back", actor
        )
        return PaymentOutcome(payment, subscription, invoice, suspended)

    def _record_failure(
        self, payment: ProviderPayment, reason: str | None, actor: Actor
    ) -> tuple[Subscription, bool]:
        subscription = self.subscriptions.record_failed_payment(
            payment.subscription_id, reason, payment.provider_payment_id, actor
        )
        if subscription.failed_payment_count < SUSPENSION_THRESHOLD:
            return subscription, False
        # Read the current status first; a suspended or paused subscription stays put.
        if not can_transition(subscription.status, SubscriptionStatus.suspended):
            logger.info(
                "Subscription %s at %d failures but %s; not suspending",
                subscription.id,
                subscription.failed_payment_count,
                SubscriptionStatus(subscription.status).value,
                extra={"subscription_id": subscription.id},
            )
            return subscription, False
        subscription = self.subscriptions.suspend(
            subscription.id, "Payment failure threshold exceeded", actor
        )
        return subscription, True

    def calculate_proration(self, subscription_id, new_tier_id) -> ProrationPreview:
        """Preview a tier change in whole days, as billing reports it."""
        subscription = self.subscriptions.get(subscription_id)
        new_tier = self.db.scalar(
            select(MembershipTier).where(
                MembershipTier.id == coerce_uuid(new_tier_id),
                MembershipTier.club_id == subscription.club_id,
            )
        )
        if not new_tier:
            raise NotFoundError("Membership tier not found", {"tier_id": str(new_tier_id)})
        now = self.clock.now()
        proration = compute_proration(
            Decimal(subscription.amount),
            new_tier.price_for(BillingFrequency(subscription.billing_frequency)),
            whole_days(subscription.current_period_start, subscription.current_period_end),
            whole_days(now, subscription.current_period_end),
        )
        return ProrationPreview(proration=proration, effective_date=now)
