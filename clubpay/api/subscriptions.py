from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.orm import Session

from clubpay.api.deps import get_actor, get_clock, get_db
from clubpay.clock import Clock
from clubpay.schemas.billing import (
    ActivateRequest,
    CancelRequest,
    ChangeTierRead,
    ChangeTierRequest,
    PauseRequest,
    ProrationRead,
    SubscriptionCreate,
    SubscriptionEventRead,
    SubscriptionRead,
    SubscriptionStats,
)
from clubpay.schemas.common import ListResponse
from clubpay.services.billing import Actor, PaymentReconciler, SubscriptionService
from clubpay.services.response import list_response

router = APIRouter(tags=["subscriptions"])


def get_service(
    db: Session = Depends(get_db), clock: Clock = Depends(get_clock)
) -> SubscriptionService:
    return SubscriptionService(db, clock)


@router.post(
    "/subscriptions", response_model=SubscriptionRead, status_code=status.HTTP_201_CREATED
)
def create_subscription(
    payload: SubscriptionCreate,
    service: SubscriptionService = Depends(get_service),
    actor: Actor = Depends(get_actor),
):
    subscription = service.create(payload, actor)
    service.db.commit()
    return subscription


@router.get("/subscriptions/{subscription_id}", response_model=SubscriptionRead)
def get_subscription(
    subscription_id: UUID, service: SubscriptionService = Depends(get_service)
):
    return service.get(subscription_id)


@router.get("/subscriptions/{subscription_id}/events", response_model=list[SubscriptionEventRead])
def list_subscription_events(
    subscription_id: UUID, service: SubscriptionService = Depends(get_service)
):
    return service.events(subscription_id)


@router.get(
    "/clubs/{club_id}/subscriptions", response_model=ListResponse[SubscriptionRead]
)
def list_club_subscriptions(
    club_id: UUID,
    status: str | None = None,
    tier_id: UUID | None = None,
    order_by: str = Query(default="created_at"),
    order_dir: str = Query(default="desc", pattern="^(asc|desc)$"),
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    service: SubscriptionService = Depends(get_service),
):
    items, total = service.list_for_club(
        club_id, status, tier_id, order_by, order_dir, limit, offset
    )
    return list_response(items, limit, offset, total=total)


@router.get("/clubs/{club_id}/subscriptions/stats", response_model=SubscriptionStats)
def subscription_stats(club_id: UUID, service: SubscriptionService = Depends(get_service)):
    return service.stats(club_id)


@router.post("/subscriptions/{subscription_id}/activate", response_model=SubscriptionRead)
def activate_subscription(
    subscription_id: UUID,
    payload: ActivateRequest,
    service: SubscriptionService = Depends(get_service),
    actor: Actor = Depends(get_actor),
):
    subscription = service.activate(subscription_id, payload.payment_mandate_id, actor)
    service.db.commit()
    return subscription


@router.post("/subscriptions/{subscription_id}/pause", response_model=SubscriptionRead)
def pause_subscription(
    subscription_id: UUID,
    payload: PauseRequest,
    service: SubscriptionService = Depends(get_service),
    actor: Actor = Depends(get_actor),
):
    subscription = service.pause(subscription_id, payload.resume_date, payload.reason, actor)
    service.db.commit()
    return subscription


@router.post("/subscriptions/{subscription_id}/resume", response_model=SubscriptionRead)
def resume_subscription(
    subscription_id: UUID,
    service: SubscriptionService = Depends(get_service),
    actor: Actor = Depends(get_actor),
):
    subscription = service.resume(subscription_id, actor)
    service.db.commit()
    return subscription


@router.post("/subscriptions/{subscription_id}/cancel", response_model=SubscriptionRead)
def cancel_subscription(
    subscription_id: UUID,
    payload: CancelRequest,
    service: SubscriptionService = Depends(get_service),
    actor: Actor = Depends(get_actor),
):
    subscription = service.cancel(subscription_id, payload.reason, payload.immediate, actor)
    service.db.commit()
    return subscription


@router.post("/subscriptions/{subscription_id}/change-tier", response_model=ChangeTierRead)
def change_subscription_tier(
    subscription_id: UUID,
    payload: ChangeTierRequest,
    service: SubscriptionService = Depends(get_service),
    actor: Actor = Depends(get_actor),
):
    change = service.change_tier(subscription_id, payload.tier_id, payload.prorate, actor)
    service.db.commit()
    return {
        "subscription": SubscriptionRead.model_validate(change.subscription),
        "proration": change.proration.as_dict() if change.proration else None,
    }


@router.get("/subscriptions/{subscription_id}/proration", response_model=ProrationRead)
def preview_proration(
    subscription_id: UUID,
    tier_id: UUID,
    db: Session = Depends(get_db),
    clock: Clock = Depends(get_clock),
):
    return PaymentReconciler(db, clock).calculate_proration(subscription_id, tier_id).as_dict()
