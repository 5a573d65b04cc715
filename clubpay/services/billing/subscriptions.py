"""Subscription lifecycle: state machine, billing periods, tier changes, audit trail.

Methods flush but never commit. The caller owns the transaction so that a
status change and its SubscriptionEvent row land together or not at all.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from pydantic import BaseModel
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clubpay.clock import Clock, SystemClock
from clubpay.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from clubpay.metrics import SUBSCRIPTION_TRANSITIONS
from clubpay.models.billing import (
    ActorType,
    BillingFrequency,
    MembershipTier,
    Subscription,
    SubscriptionEvent,
    SubscriptionEventType,
    SubscriptionStatus,
)
from clubpay.models.club import UserChild
from clubpay.models.payment import PaymentMandate
from clubpay.schemas.billing import (
    CancelledMetadata,
    CreatedMetadata,
    MandateMetadata,
    PausedMetadata,
    PaymentFailedMetadata,
    PaymentSucceededMetadata,
    PeriodAdvancedMetadata,
    ResumedMetadata,
    SubscriptionCreate,
    SuspendedMetadata,
    TierChangedMetadata,
)
from clubpay.services.billing.periods import next_billing_date, period_end
from clubpay.services.billing.proration import (
    Proration,
    compute_proration,
    fractional_days,
)
from clubpay.services.common import apply_ordering, apply_pagination, coerce_uuid

logger = logging.getLogger(__name__)

VALID_TRANSITIONS: dict[SubscriptionStatus, set[SubscriptionStatus]] = {
    SubscriptionStatus.pending: {SubscriptionStatus.active, SubscriptionStatus.cancelled},
    SubscriptionStatus.active: {
        SubscriptionStatus.paused,
        SubscriptionStatus.suspended,
        SubscriptionStatus.cancelled,
    },
    SubscriptionStatus.paused: {SubscriptionStatus.active, SubscriptionStatus.cancelled},
    SubscriptionStatus.suspended: {SubscriptionStatus.active, SubscriptionStatus.cancelled},
    SubscriptionStatus.cancelled: set(),
}


@dataclass(frozen=True)
class Actor:
    type: ActorType
    id: str | None = None


SYSTEM_ACTOR = Actor(ActorType.system)
WEBHOOK_ACTOR = Actor(ActorType.webhook)


@dataclass(frozen=True)
class TierChange:
    subscription: Subscription
    proration: Proration | None


def can_transition(current: SubscriptionStatus | str, new: SubscriptionStatus) -> bool:
    return new in VALID_TRANSITIONS[SubscriptionStatus(current)]


class SubscriptionService:
    def __init__(self, db: Session, clock: Clock | None = None) -> None:
        self.db = db
        self.clock = clock or SystemClock()

    # ── Queries ──────────────────────────────────────────

    def get(
        self, subscription_id, club_id=None, *, for_update: bool = False
    ) -> Subscription:
        stmt = select(Subscription).where(Subscription.id == coerce_uuid(subscription_id))
        if club_id is not None:
            stmt = stmt.where(Subscription.club_id == coerce_uuid(club_id))
        if for_update:
            # Serializes concurrent mutations on databases with row locks.
            stmt = stmt.with_for_update().execution_options(populate_existing=True)
        subscription = self.db.scalar(stmt)
        if not subscription:
            raise NotFoundError(
                "Subscription not found", {"subscription_id": str(subscription_id)}
            )
        return subscription

    def list_for_club(
        self,
        club_id,
        status: str | None = None,
        tier_id=None,
        order_by: str = "created_at",
        order_dir: str = "desc",
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Subscription], int]:
        stmt = select(Subscription).where(Subscription.club_id == coerce_uuid(club_id))
        if status:
            stmt = stmt.where(Subscription.status == _parse_status(status))
        if tier_id:
            stmt = stmt.where(Subscription.tier_id == coerce_uuid(tier_id))
        total = self.db.scalar(select(func.count()).select_from(stmt.subquery())) or 0
        stmt = apply_ordering(
            stmt,
            order_by,
            order_dir,
            {
                "created_at": Subscription.created_at,
                "next_billing_date": Subscription.next_billing_date,
                "amount": Subscription.amount,
            },
        )
        items = list(self.db.scalars(apply_pagination(stmt, limit, offset)).all())
        return items, total

    def list_for_parent(
        self, parent_user_id, status: str | None = None, club_id=None
    ) -> list[Subscription]:
        stmt = select(Subscription).where(
            Subscription.parent_user_id == coerce_uuid(parent_user_id)
        )
        if status:
            stmt = stmt.where(Subscription.status == _parse_status(status))
        if club_id:
            stmt = stmt.where(Subscription.club_id == coerce_uuid(club_id))
        return list(self.db.scalars(stmt.order_by(Subscription.created_at.desc())).all())

    def events(self, subscription_id) -> list[SubscriptionEvent]:
        subscription = self.get(subscription_id)
        stmt = (
            select(SubscriptionEvent)
            .where(SubscriptionEvent.subscription_id == subscription.id)
            .order_by(SubscriptionEvent.sequence.asc())
        )
        return list(self.db.scalars(stmt).all())

    def stats(self, club_id) -> dict:
        rows = self.db.execute(
            select(Subscription.status, func.count(Subscription.id))
            .where(Subscription.club_id == coerce_uuid(club_id))
            .group_by(Subscription.status)
        ).all()
        counts = {status.value: 0 for status in SubscriptionStatus}
        for status, count in rows:
            counts[SubscriptionStatus(status).value] = count
        mrr = Decimal("0")
        active = self.db.execute(
            select(Subscription.amount, Subscription.billing_frequency).where(
                Subscription.club_id == coerce_uuid(club_id),
                Subscription.status == SubscriptionStatus.active,
            )
        ).all()
        for amount, frequency in active:
            monthly = Decimal(amount)
            if BillingFrequency(frequency) == BillingFrequency.annual:
                monthly = monthly / 12
            mrr += monthly
        return {
            "counts": counts,
            "total": sum(counts.values()),
            "monthly_recurring_revenue": mrr.quantize(Decimal("0.01")),
        }

    # ── Internals ────────────────────────────────────────

    def _transition(
        self, subscription: Subscription, new_status: SubscriptionStatus
    ) -> SubscriptionStatus:
        current = SubscriptionStatus(subscription.status)
        if not can_transition(current, new_status):
            raise InvalidTransitionError(current.value, new_status.value)
        subscription.status = new_status
        SUBSCRIPTION_TRANSITIONS.labels(current.value, new_status.value).inc()
        logger.info(
            "Subscription %s: %s -> %s",
            subscription.id,
            current.value,
            new_status.value,
            extra={"subscription_id": subscription.id},
        )
        return current

    def _log_event(
        self,
        subscription: Subscription,
        event_type: SubscriptionEventType,
        actor: Actor,
        metadata: BaseModel,
        *,
        previous_status: SubscriptionStatus | None = None,
        previous_tier_id: uuid.UUID | None = None,
        new_tier_id: uuid.UUID | None = None,
        description: str | None = None,
    ) -> SubscriptionEvent:
        last = self.db.scalar(
            select(func.max(SubscriptionEvent.sequence)).where(
                SubscriptionEvent.subscription_id == subscription.id
            )
        )
        event = SubscriptionEvent(
            subscription_id=subscription.id,
            sequence=(last or 0) + 1,
            event_type=event_type,
            previous_status=previous_status,
            new_status=SubscriptionStatus(subscription.status),
            previous_tier_id=previous_tier_id,
            new_tier_id=new_tier_id,
            description=description,
            actor_type=actor.type,
            actor_id=actor.id,
            metadata_=metadata.model_dump(mode="json"),
            created_at=self.clock.now(),
        )
        self.db.add(event)
        self.db.flush()
        return event

    def _require_mandate(self, mandate_id) -> PaymentMandate:
        mandate = self.db.get(PaymentMandate, coerce_uuid(mandate_id))
        if not mandate:
            raise NotFoundError("Payment mandate not found", {"mandate_id": str(mandate_id)})
        return mandate

    # ── Lifecycle ────────────────────────────────────────

    def create(self, payload: SubscriptionCreate, actor: Actor = SYSTEM_ACTOR) -> Subscription:
        tier = self.db.scalar(
            select(MembershipTier).where(
                MembershipTier.id == payload.tier_id,
                MembershipTier.club_id == payload.club_id,
                MembershipTier.is_active.is_(True),
            )
        )
        if not tier:
            raise NotFoundError(
                "Membership tier not found or inactive", {"tier_id": str(payload.tier_id)}
            )
        existing = self.db.scalar(
            select(Subscription.id).where(
                Subscription.child_user_id == payload.child_user_id,
                Subscription.club_id == payload.club_id,
                Subscription.status != SubscriptionStatus.cancelled,
            )
        )
        if existing:
            raise ConflictError(
                "Child already has a subscription at this club",
                {"subscription_id": str(existing)},
            )
        if payload.parent_user_id != payload.child_user_id:
            link = self.db.scalar(
                select(UserChild.id).where(
                    UserChild.parent_user_id == payload.parent_user_id,
                    UserChild.child_user_id == payload.child_user_id,
                    UserChild.club_id == payload.club_id,
                )
            )
            if not link:
                raise ValidationError("Payer is not a parent of this member")
        if payload.payment_mandate_id:
            self._require_mandate(payload.payment_mandate_id)

        now = self.clock.now()
        frequency = BillingFrequency(payload.billing_frequency)
        billing_day = payload.billing_day or 1
        subscription = Subscription(
            club_id=payload.club_id,
            parent_user_id=payload.parent_user_id,
            child_user_id=payload.child_user_id,
            tier_id=tier.id,
            payment_mandate_id=payload.payment_mandate_id,
            status=(
                SubscriptionStatus.active
                if payload.payment_mandate_id
                else SubscriptionStatus.pending
            ),
            billing_frequency=frequency,
            billing_day=billing_day,
            amount=tier.price_for(frequency),
            current_period_start=now,
            current_period_end=period_end(now, frequency),
            next_billing_date=next_billing_date(now, frequency, billing_day),
            failed_payment_count=0,
        )
        try:
            with self.db.begin_nested():
                self.db.add(subscription)
                self.db.flush()
        except IntegrityError as exc:
            raise ConflictError("Child already has a subscription at this club") from exc
        self._log_event(
            subscription,
            SubscriptionEventType.created,
            actor,
            CreatedMetadata(
                tier_id=tier.id,
                amount=subscription.amount,
                billing_frequency=frequency.value,
                billing_day=billing_day,
                payment_mandate_id=payload.payment_mandate_id,
            ),
            new_tier_id=tier.id,
            description=f"Subscription created on {tier.name}",
        )
        logger.info(
            "Created Subscription: %s",
            subscription.id,
            extra={"subscription_id": subscription.id},
        )
        return subscription

    def activate(self, subscription_id, mandate_id, actor: Actor = SYSTEM_ACTOR) -> Subscription:
        subscription = self.get(subscription_id, for_update=True)
        mandate = self._require_mandate(mandate_id)
        previous = self._transition(subscription, SubscriptionStatus.active)
        subscription.payment_mandate_id = mandate.id
        self._log_event(
            subscription,
            SubscriptionEventType.activated,
            actor,
            MandateMetadata(payment_mandate_id=mandate.id),
            previous_status=previous,
            description="Subscription activated",
        )
        return subscription

    def attach_mandate(
        self, subscription_id, mandate_id, actor: Actor = SYSTEM_ACTOR
    ) -> Subscription:
        """Link a mandate to a pending subscription ahead of its activation webhook."""
        subscription = self.get(subscription_id, for_update=True)
        if subscription.status != SubscriptionStatus.pending:
            raise ValidationError(
                "Mandates can only be attached to pending subscriptions",
                {"status": SubscriptionStatus(subscription.status).value},
            )
        mandate = self._require_mandate(mandate_id)
        subscription.payment_mandate_id = mandate.id
        self._log_event(
            subscription,
            SubscriptionEventType.mandate_attached,
            actor,
            MandateMetadata(payment_mandate_id=mandate.id),
            previous_status=SubscriptionStatus.pending,
        )
        return subscription

    def pause(
        self,
        subscription_id,
        resume_date: date | None = None,
        reason: str | None = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Subscription:
        subscription = self.get(subscription_id, for_update=True)
        previous = self._transition(subscription, SubscriptionStatus.paused)
        subscription.paused_at = self.clock.now()
        subscription.resume_date = resume_date
        self._log_event(
            subscription,
            SubscriptionEventType.paused,
            actor,
            PausedMetadata(resume_date=resume_date, reason=reason),
            previous_status=previous,
            description=reason,
        )
        return subscription

    def resume(self, subscription_id, actor: Actor = SYSTEM_ACTOR) -> Subscription:
        subscription = self.get(subscription_id, for_update=True)
        previous = self._transition(subscription, SubscriptionStatus.active)
        # The original billing anchor is not preserved across a pause.
        subscription.next_billing_date = next_billing_date(
            self.clock.now(), subscription.billing_frequency, subscription.billing_day
        )
        subscription.paused_at = None
        subscription.resume_date = None
        self._log_event(
            subscription,
            SubscriptionEventType.resumed,
            actor,
            ResumedMetadata(next_billing_date=subscription.next_billing_date),
            previous_status=previous,
        )
        return subscription

    def cancel(
        self,
        subscription_id,
        reason: str | None = None,
        immediate: bool = False,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Subscription:
        """Cancel now, or at period end for active subscriptions when not immediate."""
        subscription = self.get(subscription_id, for_update=True)
        if subscription.status == SubscriptionStatus.active and not immediate:
            subscription.cancelled_at = subscription.current_period_end
            subscription.cancellation_reason = reason
            self._log_event(
                subscription,
                SubscriptionEventType.cancellation_scheduled,
                actor,
                CancelledMetadata(
                    reason=reason,
                    immediate=False,
                    effective_at=subscription.current_period_end,
                ),
                previous_status=SubscriptionStatus.active,
                description=reason,
            )
            logger.info(
                "Scheduled cancellation of %s at %s",
                subscription.id,
                subscription.current_period_end.isoformat(),
                extra={"subscription_id": subscription.id},
            )
            return subscription

        previous = self._transition(subscription, SubscriptionStatus.cancelled)
        now = self.clock.now()
        subscription.cancelled_at = now
        subscription.cancellation_reason = reason
        self._log_event(
            subscription,
            SubscriptionEventType.cancelled,
            actor,
            CancelledMetadata(reason=reason, immediate=True, effective_at=now),
            previous_status=previous,
            description=reason,
        )
        return subscription

    def suspend(self, subscription_id, reason: str, actor: Actor = SYSTEM_ACTOR) -> Subscription:
        subscription = self.get(subscription_id, for_update=True)
        previous = self._transition(subscription, SubscriptionStatus.suspended)
        self._log_event(
            subscription,
            SubscriptionEventType.suspended,
            actor,
            SuspendedMetadata(
                reason=reason, failed_payment_count=subscription.failed_payment_count
            ),
            previous_status=previous,
            description=reason,
        )
        return subscription

    def change_tier(
        self,
        subscription_id,
        new_tier_id,
        prorate: bool = True,
        actor: Actor = SYSTEM_ACTOR,
    ) -> TierChange:
        subscription = self.get(subscription_id, for_update=True)
        if subscription.status != SubscriptionStatus.active:
            raise ValidationError(
                "Tier changes are only allowed on active subscriptions",
                {"status": SubscriptionStatus(subscription.status).value},
            )
        new_tier = self.db.scalar(
            select(MembershipTier).where(
                MembershipTier.id == coerce_uuid(new_tier_id),
                MembershipTier.club_id == subscription.club_id,
                MembershipTier.is_active.is_(True),
            )
        )
        if not new_tier:
            raise NotFoundError(
                "Membership tier not found or inactive", {"tier_id": str(new_tier_id)}
            )
        if new_tier.id == subscription.tier_id:
            raise ValidationError("Subscription is already on this tier")

        previous_tier_id = subscription.tier_id
        previous_amount = Decimal(subscription.amount)
        new_amount = new_tier.price_for(BillingFrequency(subscription.billing_frequency))
        proration = None
        if prorate:
            proration = compute_proration(
                previous_amount,
                new_amount,
                fractional_days(
                    subscription.current_period_start, subscription.current_period_end
                ),
                fractional_days(self.clock.now(), subscription.current_period_end),
            )
        subscription.tier_id = new_tier.id
        subscription.amount = new_amount
        self._log_event(
            subscription,
            SubscriptionEventType.tier_changed,
            actor,
            TierChangedMetadata(
                previous_amount=previous_amount,
                new_amount=new_amount,
                prorated=prorate,
                net_amount=proration.net_amount if proration else None,
            ),
            previous_status=SubscriptionStatus(subscription.status),
            previous_tier_id=previous_tier_id,
            new_tier_id=new_tier.id,
            description=f"Tier changed to {new_tier.name}",
        )
        return TierChange(subscription=subscription, proration=proration)

    def record_failed_payment(
        self,
        subscription_id,
        reason: str | None = None,
        provider_payment_id: str | None = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Subscription:
        """Count a failed collection. Suspension is decided by the reconciler."""
        subscription = self.get(subscription_id, for_update=True)
        subscription.failed_payment_count = (subscription.failed_payment_count or 0) + 1
        subscription.last_failed_payment_at = self.clock.now()
        self._log_event(
            subscription,
            SubscriptionEventType.payment_failed,
            actor,
            PaymentFailedMetadata(
                failed_payment_count=subscription.failed_payment_count,
                reason=reason,
                provider_payment_id=provider_payment_id,
            ),
            previous_status=SubscriptionStatus(subscription.status),
            description=reason,
        )
        return subscription

    def reset_failed_payment_count(
        self,
        subscription_id,
        provider_payment_id: str | None = None,
        actor: Actor = SYSTEM_ACTOR,
    ) -> Subscription:
        subscription = self.get(subscription_id, for_update=True)
        previous_count = subscription.failed_payment_count or 0
        subscription.failed_payment_count = 0
        subscription.last_failed_payment_at = None
        self._log_event(
            subscription,
            SubscriptionEventType.payment_succeeded,
            actor,
            PaymentSucceededMetadata(
                previous_failed_payment_count=previous_count,
                provider_payment_id=provider_payment_id,
            ),
            previous_status=SubscriptionStatus(subscription.status),
        )
        return subscription

    def advance_billing_period(
        self, subscription_id, actor: Actor = SYSTEM_ACTOR
    ) -> Subscription:
        """Roll an active subscription into its next period.

        A cancellation scheduled for the end of the current period takes
        effect here instead.
        """
        subscription = self.get(subscription_id, for_update=True)
        if subscription.status != SubscriptionStatus.active:
            raise ValidationError(
                "Only active subscriptions can be billed",
                {"status": SubscriptionStatus(subscription.status).value},
            )
        now = self.clock.now()
        if subscription.cancelled_at is not None and subscription.cancelled_at <= now:
            previous = self._transition(subscription, SubscriptionStatus.cancelled)
            self._log_event(
                subscription,
                SubscriptionEventType.cancelled,
                actor,
                CancelledMetadata(
                    reason=subscription.cancellation_reason,
                    immediate=False,
                    effective_at=subscription.cancelled_at,
                ),
                previous_status=previous,
                description="Scheduled cancellation took effect",
            )
            return subscription

        subscription.current_period_start = now
        subscription.current_period_end = period_end(now, subscription.billing_frequency)
        subscription.next_billing_date = next_billing_date(
            now, subscription.billing_frequency, subscription.billing_day
        )
        self._log_event(
            subscription,
            SubscriptionEventType.period_advanced,
            actor,
            PeriodAdvancedMetadata(
                period_start=subscription.current_period_start,
                period_end=subscription.current_period_end,
                next_billing_date=subscription.next_billing_date,
            ),
            previous_status=SubscriptionStatus.active,
        )
        return subscription


def _parse_status(value: str) -> SubscriptionStatus:
    try:
        return SubscriptionStatus(value)
    except ValueError as exc:
        allowed = ", ".join(status.value for status in SubscriptionStatus)
        raise ValidationError(f"Invalid status. Allowed: {allowed}") from exc
