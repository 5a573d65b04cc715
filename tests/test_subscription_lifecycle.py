"""Tests for the subscription state machine and its audit trail."""

import uuid
from datetime import UTC, date, datetime
from decimal import Decimal

import pytest

from clubpay.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from clubpay.models.billing import (
    ActorType,
    SubscriptionEvent,
    SubscriptionEventType,
    SubscriptionStatus,
)
from clubpay.models.club import UserChild
from clubpay.schemas.billing import SubscriptionCreate
from clubpay.services.billing import VALID_TRANSITIONS, Actor


def _event_types(subscriptions, subscription):
    return [e.event_type for e in subscriptions.events(subscription.id)]


# ── Transition table ─────────────────────────────────────


@pytest.mark.parametrize(
    ("current", "allowed"),
    [
        (SubscriptionStatus.pending, {"active", "cancelled"}),
        (SubscriptionStatus.active, {"paused", "suspended", "cancelled"}),
        (SubscriptionStatus.paused, {"active", "cancelled"}),
        (SubscriptionStatus.suspended, {"active", "cancelled"}),
        (SubscriptionStatus.cancelled, set()),
    ],
)
def test_transition_table(current, allowed):
    assert {s.value for s in VALID_TRANSITIONS[current]} == allowed


def test_cancelled_is_terminal(subscriptions, subscription, mandate):
    subscriptions.cancel(subscription.id, immediate=True)
    with pytest.raises(InvalidTransitionError) as exc_info:
        subscriptions.activate(subscription.id, mandate.id)
    assert exc_info.value.details == {
        "current_status": "cancelled",
        "requested_status": "active",
    }


def test_pending_cannot_be_paused(subscriptions, pending_subscription):
    with pytest.raises(InvalidTransitionError):
        subscriptions.pause(pending_subscription.id)
    assert pending_subscription.status == SubscriptionStatus.pending


def test_paused_cannot_be_suspended(subscriptions, subscription):
    subscriptions.pause(subscription.id)
    with pytest.raises(InvalidTransitionError):
        subscriptions.suspend(subscription.id, "mandate lost")


# ── Create ───────────────────────────────────────────────


def test_create_with_mandate_is_active(subscription, tier, mandate):
    assert subscription.status == SubscriptionStatus.active
    assert subscription.payment_mandate_id == mandate.id
    assert subscription.amount == Decimal("30.00")
    assert subscription.failed_payment_count == 0


def test_create_without_mandate_is_pending(pending_subscription):
    assert pending_subscription.status == SubscriptionStatus.pending
    assert pending_subscription.payment_mandate_id is None


def test_create_sets_monthly_period(subscription, clock):
    assert subscription.current_period_start == clock.now()
    assert subscription.current_period_end == datetime(2024, 2, 15, 9, 0, tzinfo=UTC)
    assert subscription.next_billing_date == date(2024, 2, 1)


def test_create_annual_uses_annual_price(make_subscription, mandate):
    subscription = make_subscription(mandate=mandate, billing_frequency="annual")
    assert subscription.amount == Decimal("300.00")
    assert subscription.current_period_end == datetime(2025, 1, 15, 9, 0, tzinfo=UTC)


def test_create_logs_created_event(subscriptions, subscription, tier):
    events = subscriptions.events(subscription.id)
    assert len(events) == 1
    event = events[0]
    assert event.event_type == SubscriptionEventType.created
    assert event.previous_status is None
    assert event.new_status == SubscriptionStatus.active
    assert event.new_tier_id == tier.id
    assert event.metadata_["billing_day"] == 1
    assert event.metadata_["amount"] == "30.00"


def test_create_records_actor(subscriptions, db_session, club_id, parent_id, child_id, tier):
    actor = Actor(ActorType.admin, "admin-7")
    subscription = subscriptions.create(
        SubscriptionCreate(
            club_id=club_id,
            parent_user_id=parent_id,
            child_user_id=child_id,
            tier_id=tier.id,
        ),
        actor,
    )
    event = subscriptions.events(subscription.id)[0]
    assert event.actor_type == ActorType.admin
    assert event.actor_id == "admin-7"


def test_create_duplicate_open_subscription_conflicts(
    subscriptions, club_id, parent_id, child_id, tier
):
    payload = SubscriptionCreate(
        club_id=club_id, parent_user_id=parent_id, child_user_id=child_id, tier_id=tier.id
    )
    subscriptions.create(payload)
    with pytest.raises(ConflictError):
        subscriptions.create(payload)


def test_create_after_cancellation_is_allowed(
    subscriptions, club_id, parent_id, child_id, tier
):
    payload = SubscriptionCreate(
        club_id=club_id, parent_user_id=parent_id, child_user_id=child_id, tier_id=tier.id
    )
    first = subscriptions.create(payload)
    subscriptions.cancel(first.id, immediate=True)
    second = subscriptions.create(payload)
    assert second.id != first.id


def test_create_rejects_inactive_tier(db_session, subscriptions, club_id, parent_id, child_id, tier):
    tier.is_active = False
    db_session.commit()
    with pytest.raises(NotFoundError):
        subscriptions.create(
            SubscriptionCreate(
                club_id=club_id, parent_user_id=parent_id, child_user_id=child_id, tier_id=tier.id
            )
        )


def test_create_rejects_tier_from_other_club(subscriptions, parent_id, child_id, tier):
    with pytest.raises(NotFoundError):
        subscriptions.create(
            SubscriptionCreate(
                club_id=uuid.uuid4(),
                parent_user_id=parent_id,
                child_user_id=child_id,
                tier_id=tier.id,
            )
        )


def test_create_requires_parent_link(subscriptions, club_id, parent_id, tier):
    with pytest.raises(ValidationError):
        subscriptions.create(
            SubscriptionCreate(
                club_id=club_id,
                parent_user_id=parent_id,
                child_user_id=uuid.uuid4(),
                tier_id=tier.id,
            )
        )


def test_self_subscription_needs_no_link(subscriptions, club_id, tier):
    member = uuid.uuid4()
    subscription = subscriptions.create(
        SubscriptionCreate(
            club_id=club_id, parent_user_id=member, child_user_id=member, tier_id=tier.id
        )
    )
    assert subscription.status == SubscriptionStatus.pending


def test_create_rejects_unknown_mandate(subscriptions, club_id, parent_id, child_id, tier):
    with pytest.raises(NotFoundError):
        subscriptions.create(
            SubscriptionCreate(
                club_id=club_id,
                parent_user_id=parent_id,
                child_user_id=child_id,
                tier_id=tier.id,
                payment_mandate_id=uuid.uuid4(),
            )
        )


def test_link_in_another_club_is_not_enough(db_session, subscriptions, club_id, parent_id, tier):
    child = uuid.uuid4()
    db_session.add(UserChild(parent_user_id=parent_id, child_user_id=child, club_id=uuid.uuid4()))
    db_session.commit()
    with pytest.raises(ValidationError):
        subscriptions.create(
            SubscriptionCreate(
                club_id=club_id, parent_user_id=parent_id, child_user_id=child, tier_id=tier.id
            )
        )


# ── Activate / attach ────────────────────────────────────


def test_activate_pending(subscriptions, pending_subscription, mandate):
    subscriptions.activate(pending_subscription.id, mandate.id)
    assert pending_subscription.status == SubscriptionStatus.active
    assert pending_subscription.payment_mandate_id == mandate.id
    event = subscriptions.events(pending_subscription.id)[-1]
    assert event.event_type == SubscriptionEventType.activated
    assert event.previous_status == SubscriptionStatus.pending
    assert event.metadata_ == {"payment_mandate_id": str(mandate.id)}


def test_second_activate_fails(subscriptions, subscription, mandate):
    with pytest.raises(InvalidTransitionError):
        subscriptions.activate(subscription.id, mandate.id)


def test_activate_with_unknown_mandate(subscriptions, pending_subscription):
    with pytest.raises(NotFoundError):
        subscriptions.activate(pending_subscription.id, uuid.uuid4())
    assert pending_subscription.status == SubscriptionStatus.pending


def test_attach_mandate_keeps_pending(subscriptions, pending_subscription, mandate):
    subscriptions.attach_mandate(pending_subscription.id, mandate.id)
    assert pending_subscription.status == SubscriptionStatus.pending
    assert pending_subscription.payment_mandate_id == mandate.id
    assert _event_types(subscriptions, pending_subscription)[-1] == (
        SubscriptionEventType.mandate_attached
    )


def test_attach_mandate_requires_pending(subscriptions, subscription, mandate):
    with pytest.raises(ValidationError):
        subscriptions.attach_mandate(subscription.id, mandate.id)


# ── Pause / resume ───────────────────────────────────────


def test_pause_and_resume(subscriptions, subscription, clock):
    subscriptions.pause(subscription.id, resume_date=date(2024, 3, 1), reason="injury")
    assert subscription.status == SubscriptionStatus.paused
    assert subscription.paused_at == clock.now()
    assert subscription.resume_date == date(2024, 3, 1)

    clock.set(datetime(2024, 3, 20, 12, 0, tzinfo=UTC))
    subscriptions.resume(subscription.id)
    assert subscription.status == SubscriptionStatus.active
    assert subscription.paused_at is None
    assert subscription.resume_date is None
    # Recomputed from the resume date, not the original anchor
    assert subscription.next_billing_date == date(2024, 4, 1)
    assert _event_types(subscriptions, subscription)[-2:] == [
        SubscriptionEventType.paused,
        SubscriptionEventType.resumed,
    ]


def test_resume_requires_paused_or_suspended(subscriptions, pending_subscription):
    with pytest.raises(InvalidTransitionError):
        subscriptions.resume(pending_subscription.id)


def test_suspended_can_resume(subscriptions, subscription):
    subscriptions.suspend(subscription.id, "payments failing")
    subscriptions.resume(subscription.id)
    assert subscription.status == SubscriptionStatus.active


# ── Cancel ───────────────────────────────────────────────


def test_deferred_cancel_keeps_active_until_period_end(subscriptions, subscription, clock):
    subscriptions.cancel(subscription.id, reason="moving away", immediate=False)
    assert subscription.status == SubscriptionStatus.active
    assert subscription.cancelled_at == subscription.current_period_end
    assert subscription.cancelled_at != clock.now()
    assert subscription.cancellation_reason == "moving away"
    event = subscriptions.events(subscription.id)[-1]
    assert event.event_type == SubscriptionEventType.cancellation_scheduled
    assert event.previous_status == event.new_status == SubscriptionStatus.active


def test_immediate_cancel(subscriptions, subscription, clock):
    subscriptions.cancel(subscription.id, reason="refund", immediate=True)
    assert subscription.status == SubscriptionStatus.cancelled
    assert subscription.cancelled_at == clock.now()
    event = subscriptions.events(subscription.id)[-1]
    assert event.event_type == SubscriptionEventType.cancelled
    assert event.metadata_["immediate"] is True


def test_cancel_non_active_is_immediate(subscriptions, pending_subscription, clock):
    subscriptions.cancel(pending_subscription.id, immediate=False)
    assert pending_subscription.status == SubscriptionStatus.cancelled
    assert pending_subscription.cancelled_at == clock.now()


def test_cancel_paused_is_immediate(subscriptions, subscription):
    subscriptions.pause(subscription.id)
    subscriptions.cancel(subscription.id)
    assert subscription.status == SubscriptionStatus.cancelled


# ── Tier change ──────────────────────────────────────────


def test_change_tier_updates_amount(subscriptions, subscription, premium_tier, tier):
    change = subscriptions.change_tier(subscription.id, premium_tier.id)
    assert subscription.tier_id == premium_tier.id
    assert subscription.amount == Decimal("60.00")
    assert change.proration.is_upgrade
    event = subscriptions.events(subscription.id)[-1]
    assert event.event_type == SubscriptionEventType.tier_changed
    assert event.previous_tier_id == tier.id
    assert event.new_tier_id == premium_tier.id


def test_change_tier_without_proration(subscriptions, subscription, premium_tier):
    change = subscriptions.change_tier(subscription.id, premium_tier.id, prorate=False)
    assert change.proration is None
    assert subscription.amount == Decimal("60.00")


def test_change_tier_to_same_tier(subscriptions, subscription, tier):
    with pytest.raises(ValidationError):
        subscriptions.change_tier(subscription.id, tier.id)


def test_change_tier_requires_active(subscriptions, pending_subscription, premium_tier):
    with pytest.raises(ValidationError):
        subscriptions.change_tier(pending_subscription.id, premium_tier.id)


def test_change_tier_unknown_tier(subscriptions, subscription):
    with pytest.raises(NotFoundError):
        subscriptions.change_tier(subscription.id, uuid.uuid4())


# ── Failure counters ─────────────────────────────────────


def test_record_failed_payment_does_not_suspend(subscriptions, subscription, clock):
    for _ in range(5):
        subscriptions.record_failed_payment(subscription.id, "insufficient_funds")
    assert subscription.failed_payment_count == 5
    assert subscription.status == SubscriptionStatus.active
    assert subscription.last_failed_payment_at == clock.now()


def test_reset_failed_payment_count(subscriptions, subscription):
    subscriptions.record_failed_payment(subscription.id)
    subscriptions.record_failed_payment(subscription.id)
    subscriptions.reset_failed_payment_count(subscription.id, "PM1")
    assert subscription.failed_payment_count == 0
    assert subscription.last_failed_payment_at is None
    event = subscriptions.events(subscription.id)[-1]
    assert event.event_type == SubscriptionEventType.payment_succeeded
    assert event.metadata_["previous_failed_payment_count"] == 2


# ── Billing period rollover ──────────────────────────────


def test_advance_billing_period(subscriptions, subscription, clock):
    clock.set(datetime(2024, 2, 15, 9, 0, tzinfo=UTC))
    subscriptions.advance_billing_period(subscription.id)
    assert subscription.current_period_start == clock.now()
    assert subscription.current_period_end == datetime(2024, 3, 15, 9, 0, tzinfo=UTC)
    assert subscription.next_billing_date == date(2024, 3, 1)
    assert _event_types(subscriptions, subscription)[-1] == SubscriptionEventType.period_advanced


def test_advance_applies_scheduled_cancellation(subscriptions, subscription, clock):
    subscriptions.cancel(subscription.id, reason="season over")
    clock.set(subscription.current_period_end)
    subscriptions.advance_billing_period(subscription.id)
    assert subscription.status == SubscriptionStatus.cancelled
    assert _event_types(subscriptions, subscription)[-2:] == [
        SubscriptionEventType.cancellation_scheduled,
        SubscriptionEventType.cancelled,
    ]


def test_advance_requires_active(subscriptions, pending_subscription):
    with pytest.raises(ValidationError):
        subscriptions.advance_billing_period(pending_subscription.id)


# ── Audit trail ──────────────────────────────────────────


def test_every_mutation_appends_one_event(subscriptions, subscription):
    subscriptions.pause(subscription.id)
    subscriptions.resume(subscription.id)
    subscriptions.cancel(subscription.id, immediate=True)
    events = subscriptions.events(subscription.id)
    assert [e.sequence for e in events] == [1, 2, 3, 4]
    assert [e.event_type for e in events] == [
        SubscriptionEventType.created,
        SubscriptionEventType.paused,
        SubscriptionEventType.resumed,
        SubscriptionEventType.cancelled,
    ]


def test_events_use_injected_clock(subscriptions, subscription, clock):
    clock.advance(days=3)
    subscriptions.pause(subscription.id)
    assert subscriptions.events(subscription.id)[-1].created_at == clock.now()


def test_events_are_append_only(db_session, subscriptions, subscription):
    event = subscriptions.events(subscription.id)[0]
    event.description = "rewritten"
    with pytest.raises(RuntimeError):
        db_session.flush()
    db_session.rollback()

    event = db_session.get(SubscriptionEvent, event.id)
    db_session.delete(event)
    with pytest.raises(RuntimeError):
        db_session.flush()


def test_failed_transition_writes_no_event(subscriptions, pending_subscription):
    with pytest.raises(InvalidTransitionError):
        subscriptions.suspend(pending_subscription.id, "nope")
    assert len(subscriptions.events(pending_subscription.id)) == 1


# ── Queries ──────────────────────────────────────────────


def test_get_scoped_to_club(subscriptions, subscription):
    assert subscriptions.get(subscription.id, subscription.club_id).id == subscription.id
    with pytest.raises(NotFoundError):
        subscriptions.get(subscription.id, uuid.uuid4())


def test_get_invalid_id(subscriptions):
    with pytest.raises(ValidationError):
        subscriptions.get("not-a-uuid")


def test_list_for_club_filters(subscriptions, subscription, pending_subscription, club_id):
    items, total = subscriptions.list_for_club(club_id, status="pending")
    assert total == 1
    assert items[0].id == pending_subscription.id
    items, total = subscriptions.list_for_club(club_id)
    assert total == 2


def test_list_for_club_rejects_bad_status(subscriptions, club_id):
    with pytest.raises(ValidationError):
        subscriptions.list_for_club(club_id, status="lapsed")


def test_list_for_parent(subscriptions, subscription, pending_subscription, parent_id):
    assert len(subscriptions.list_for_parent(parent_id)) == 2
    active = subscriptions.list_for_parent(parent_id, status="active")
    assert [s.id for s in active] == [subscription.id]


def test_stats_mrr_normalizes_annual(subscriptions, make_subscription, mandate, club_id):
    make_subscription(mandate=mandate)
    make_subscription(mandate=mandate, billing_frequency="annual")
    make_subscription()
    stats = subscriptions.stats(club_id)
    assert stats["counts"]["active"] == 2
    assert stats["counts"]["pending"] == 1
    assert stats["total"] == 3
    assert stats["monthly_recurring_revenue"] == Decimal("55.00")
