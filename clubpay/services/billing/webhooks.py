"""Webhook ingestion: verify, deduplicate, and dispatch provider events.

Each event gets its own WebhookRecord, claimed under the (provider, event_id)
unique constraint, and is dispatched inside its own savepoint so one failing
event never rolls back its siblings.
"""

import enum
import hashlib
import json
import logging
import uuid
from datetime import date
from collections.abc import Callable
from dataclasses import dataclass, field

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clubpay.clock import Clock, SystemClock
from clubpay.errors import NotFoundError, SignatureInvalidError, ValidationError
from clubpay.metrics import WEBHOOK_EVENTS
from clubpay.models.billing import Subscription, SubscriptionStatus
from clubpay.models.payment import MandateStatus, PaymentStatus, WebhookRecord
from clubpay.providers.base import PaymentProvider, ProviderEvent
from clubpay.services.billing.mandates import USABLE_STATUSES, MandateService
from clubpay.services.billing.reconciler import PaymentReconciler
from clubpay.services.billing.subscriptions import WEBHOOK_ACTOR

logger = logging.getLogger(__name__)


class EventKind(str, enum.Enum):
    mandate_created = "mandates.created"
    mandate_submitted = "mandates.submitted"
    mandate_active = "mandates.active"
    mandate_cancelled = "mandates.cancelled"
    mandate_failed = "mandates.failed"
    mandate_expired = "mandates.expired"
    payment_created = "payments.created"
    payment_submitted = "payments.submitted"
    payment_confirmed = "payments.confirmed"
    payment_paid_out = "payments.paid_out"
    payment_failed = "payments.failed"
    payment_cancelled = "payments.cancelled"
    payment_approval_denied = "payments.customer_approval_denied"
    payment_charged_back = "payments.charged_back"
    refund_created = "refunds.created"
    refund_paid = "refunds.paid"
    refund_settled = "refunds.refund_settled"
    refund_failed = "refunds.failed"
    refund_cancelled = "refunds.cancelled"
    refund_bounced = "refunds.bounced"
    refund_funds_returned = "refunds.funds_returned"


def classify(event: ProviderEvent) -> EventKind | None:
    try:
        return EventKind(f"{event.resource_type}.{event.action}")
    except ValueError:
        return None


@dataclass(frozen=True)
class EventResult:
    event_id: str
    status: str
    result: dict | None = None
    error: str | None = None

    def as_dict(self) -> dict:
        return {
            "event_id": self.event_id,
            "status": self.status,
            "result": self.result,
            "error": self.error,
        }


@dataclass(frozen=True)
class WebhookResult:
    delivery_id: uuid.UUID
    results: list[EventResult] = field(default_factory=list)
    error_summary: str | None = None

    @property
    def events_processed(self) -> int:
        return sum(1 for r in self.results if r.status in ("processed", "failed", "ignored"))


def _failure_reason(event: ProviderEvent) -> str:
    return event.details.get("cause") or event.details.get("description") or event.action


class WebhookProcessor:
    def __init__(
        self,
        db: Session,
        providers: dict[str, PaymentProvider],
        clock: Clock | None = None,
    ) -> None:
        self.db = db
        self.providers = providers
        self.clock = clock or SystemClock()
        self.mandates = MandateService(db, providers, self.clock)
        self.reconciler = PaymentReconciler(db, self.clock)
        self.subscriptions = self.reconciler.subscriptions
        self._handlers: dict[EventKind, Callable[[str, ProviderEvent], dict]] = {
            EventKind.mandate_created: self._mandate_created,
            EventKind.mandate_submitted: self._mandate_usable,
            EventKind.mandate_active: self._mandate_usable,
            EventKind.mandate_cancelled: self._mandate_lost,
            EventKind.mandate_failed: self._mandate_lost,
            EventKind.mandate_expired: self._mandate_lost,
            EventKind.payment_created: self._payment_status,
            EventKind.payment_submitted: self._payment_status,
            EventKind.payment_confirmed: self._payment_status,
            EventKind.payment_paid_out: self._payment_paid_out,
            EventKind.payment_failed: self._payment_failed,
            EventKind.payment_cancelled: self._payment_failed,
            EventKind.payment_approval_denied: self._payment_failed,
            EventKind.payment_charged_back: self._payment_charged_back,
            EventKind.refund_created: self._refund,
            EventKind.refund_paid: self._refund,
            EventKind.refund_settled: self._refund,
            EventKind.refund_failed: self._refund,
            EventKind.refund_cancelled: self._refund,
            EventKind.refund_bounced: self._refund,
            EventKind.refund_funds_returned: self._refund,
        }

    def process(self, provider_name: str, raw_body: bytes, signature: str) -> WebhookResult:
        """Handle one inbound delivery and commit its outcome."""
        provider = self.providers.get(provider_name)
        if provider is None:
            raise NotFoundError(f"Unknown payment provider: {provider_name}")
        if not provider.verify_webhook_signature(raw_body, signature):
            self._record_rejected(provider.name, raw_body)
            self.db.commit()
            WEBHOOK_EVENTS.labels(provider.name, "unknown", "rejected").inc()
            logger.warning(
                "Rejected webhook with invalid signature", extra={"provider": provider.name}
            )
            raise SignatureInvalidError("Invalid webhook signature")

        try:
            payload = json.loads(raw_body)
        except ValueError as exc:
            raise ValidationError("Webhook body is not valid JSON") from exc
        if not isinstance(payload, dict):
            raise ValidationError("Webhook body must be a JSON object")

        delivery_id = uuid.uuid4()
        results = []
        for event in provider.parse_webhook_events(payload):
            record = self._claim(provider.name, delivery_id, event)
            if record is None:
                WEBHOOK_EVENTS.labels(provider.name, event.resource_type, "skipped").inc()
                logger.info(
                    "Skipping duplicate webhook event %s",
                    event.id,
                    extra={"provider": provider.name, "event_id": event.id},
                )
                results.append(EventResult(event.id, "skipped"))
                continue
            results.append(self._dispatch(provider.name, record, event))
        self.db.commit()

        errors = [f"{r.event_id}: {r.error}" for r in results if r.error]
        summary = "; ".join(errors) or None
        if summary:
            logger.error(
                "Webhook delivery %s finished with failures: %s",
                delivery_id,
                summary,
                extra={"provider": provider.name},
            )
        return WebhookResult(delivery_id, results, summary)

    # ── Ingestion ────────────────────────────────────────

    def _record_rejected(self, provider: str, raw_body: bytes) -> None:
        digest = hashlib.sha256(raw_body).hexdigest()
        record = WebhookRecord(
            provider=provider,
            delivery_id=uuid.uuid4(),
            event_id=f"invalid_{digest[:32]}",
            payload={"raw": raw_body.decode("utf-8", errors="replace")},
            signature_valid=False,
            processed=False,
            error_message="Invalid signature",
            created_at=self.clock.now(),
        )
        try:
            with self.db.begin_nested():
                self.db.add(record)
                self.db.flush()
        except IntegrityError:
            logger.info("Rejected webhook body %s already recorded", digest[:32])

    def _claim(
        self, provider: str, delivery_id: uuid.UUID, event: ProviderEvent
    ) -> WebhookRecord | None:
        """Insert the event's record; None means another delivery already handled it."""
        record = WebhookRecord(
            provider=provider,
            delivery_id=delivery_id,
            event_id=event.id,
            resource_type=event.resource_type,
            action=event.action,
            resource_id=event.resource_id,
            payload=event.raw,
            signature_valid=True,
            processed=False,
            created_at=self.clock.now(),
        )
        try:
            with self.db.begin_nested():
                self.db.add(record)
                self.db.flush()
        except IntegrityError:
            existing = self.db.scalar(
                select(WebhookRecord).where(
                    WebhookRecord.provider == provider,
                    WebhookRecord.event_id == event.id,
                )
            )
            if existing is None or existing.processed:
                return None
            return existing
        return record

    def _dispatch(
        self, provider: str, record: WebhookRecord, event: ProviderEvent
    ) -> EventResult:
        kind = classify(event)
        handler = self._handlers.get(kind) if kind else None
        try:
            with self.db.begin_nested():
                if handler is None:
                    result = self._unhandled(provider, event)
                else:
                    result = handler(provider, event)
        except Exception as exc:
            logger.exception(
                "Webhook event %s (%s.%s) failed",
                event.id,
                event.resource_type,
                event.action,
                extra={"provider": provider, "event_id": event.id},
            )
            outcome = EventResult(event.id, "failed", error=str(exc))
            record.error_message = str(exc)
        else:
            status = "ignored" if handler is None else "processed"
            outcome = EventResult(event.id, status, result=result)
            record.result = result
        record.processed = True
        record.processed_at = self.clock.now()
        self.db.flush()
        WEBHOOK_EVENTS.labels(provider, event.resource_type, outcome.status).inc()
        return outcome

    def _unhandled(self, provider: str, event: ProviderEvent) -> dict:
        logger.warning(
            "No handler for webhook event %s.%s",
            event.resource_type,
            event.action,
            extra={"provider": provider, "event_id": event.id},
        )
        return {"handled": False}

    # ── Mandate events ───────────────────────────────────

    def _mandate_created(self, provider: str, event: ProviderEvent) -> dict:
        return {"handled": True}

    def _update_mandate(self, provider: str, event: ProviderEvent):
        if not event.resource_id:
            raise ValidationError("Mandate event has no mandate link")
        charge_date = event.details.get("next_possible_charge_date")
        return self.mandates.update_mandate_status(
            provider,
            event.resource_id,
            MandateStatus(event.action),
            reference=event.details.get("reference"),
            next_possible_charge_date=date.fromisoformat(charge_date) if charge_date else None,
        )

    def _mandate_usable(self, provider: str, event: ProviderEvent) -> dict:
        mandate = self._update_mandate(provider, event)
        if mandate is None:
            return {"mandate_found": False}
        status = MandateStatus(mandate.status)
        if status not in USABLE_STATUSES:
            # A late event for a mandate that is already gone.
            return {
                "mandate_id": str(mandate.id),
                "status": status.value,
                "stale": True,
                "activated": [],
            }
        pending = self.db.scalars(
            select(Subscription).where(
                Subscription.payment_mandate_id == mandate.id,
                Subscription.status == SubscriptionStatus.pending,
            )
        ).all()
        activated = []
        failed = {}
        for subscription in pending:
            try:
                with self.db.begin_nested():
                    self.subscriptions.activate(subscription.id, mandate.id, WEBHOOK_ACTOR)
            except Exception as exc:
                logger.exception(
                    "Could not activate subscription %s on mandate %s",
                    subscription.id,
                    mandate.id,
                    extra={"subscription_id": subscription.id, "provider": provider},
                )
                failed[str(subscription.id)] = str(exc)
                continue
            activated.append(str(subscription.id))
        return {
            "mandate_id": str(mandate.id),
            "status": status.value,
            "activated": activated,
            "failed": failed,
        }

    def _mandate_lost(self, provider: str, event: ProviderEvent) -> dict:
        mandate = self._update_mandate(provider, event)
        if mandate is None:
            return {"mandate_found": False}
        affected = self.db.scalars(
            select(Subscription).where(
                Subscription.payment_mandate_id == mandate.id,
                Subscription.status.in_(
                    [SubscriptionStatus.active, SubscriptionStatus.paused]
                ),
            )
        ).all()
        suspended = []
        skipped = []
        failed = {}
        for subscription in affected:
            if subscription.status == SubscriptionStatus.paused:
                # No paused -> suspended edge; the pause stands.
                logger.warning(
                    "Mandate %s %s but subscription %s is paused; left paused",
                    mandate.id,
                    event.action,
                    subscription.id,
                    extra={"subscription_id": subscription.id, "provider": provider},
                )
                skipped.append(str(subscription.id))
                continue
            try:
                with self.db.begin_nested():
                    self.subscriptions.suspend(
                        subscription.id, f"Payment mandate {event.action}", WEBHOOK_ACTOR
                    )
            except Exception as exc:
                logger.exception(
                    "Could not suspend subscription %s on mandate %s",
                    subscription.id,
                    mandate.id,
                    extra={"subscription_id": subscription.id, "provider": provider},
                )
                failed[str(subscription.id)] = str(exc)
                continue
            suspended.append(str(subscription.id))
        return {
            "mandate_id": str(mandate.id),
            "status": MandateStatus(mandate.status).value,
            "suspended": suspended,
            "skipped": skipped,
            "failed": failed,
        }

    # ── Payment events ───────────────────────────────────

    def _require_payment_id(self, event: ProviderEvent) -> str:
        if not event.resource_id:
            raise ValidationError("Payment event has no payment link")
        return event.resource_id

    def _payment_status(self, provider: str, event: ProviderEvent) -> dict:
        status = PaymentStatus(event.action)
        payment = self.reconciler.update_payment_status(
            provider, self._require_payment_id(event), status
        )
        return {"updated": payment is not None and payment.status == status}

    def _payment_paid_out(self, provider: str, event: ProviderEvent) -> dict:
        outcome = self.reconciler.handle_payment_success(
            provider,
            self._require_payment_id(event),
            payout_id=event.links.get("payout"),
            actor=WEBHOOK_ACTOR,
        )
        return outcome.summary()

    def _payment_failed(self, provider: str, event: ProviderEvent) -> dict:
        outcome = self.reconciler.handle_payment_failure(
            provider,
            self._require_payment_id(event),
            reason=_failure_reason(event),
            actor=WEBHOOK_ACTOR,
        )
        return outcome.summary()

    def _payment_charged_back(self, provider: str, event: ProviderEvent) -> dict:
        outcome = self.reconciler.handle_chargeback(
            provider,
            self._require_payment_id(event),
            reason=_failure_reason(event),
            actor=WEBHOOK_ACTOR,
        )
        return outcome.summary()

    # ── Refund events ────────────────────────────────────

    def _refund(self, provider: str, event: ProviderEvent) -> dict:
        # Refunds are recorded only.
        logger.info(
            "Refund %s %s recorded",
            event.resource_id,
            event.action,
            extra={"provider": provider, "event_id": event.id},
        )
        return {"recorded": True}
