from fastapi import Depends, Header, HTTPException, Request

from clubpay.clock import Clock, SystemClock
from clubpay.db import SessionLocal
from clubpay.models.billing import ActorType
from clubpay.providers.base import PaymentProvider
from clubpay.services.billing.subscriptions import Actor
from clubpay.services.common import coerce_uuid


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_clock(request: Request) -> Clock:
    return getattr(request.app.state, "clock", None) or SystemClock()


def get_providers(request: Request) -> dict[str, PaymentProvider]:
    providers = getattr(request.app.state, "providers", None)
    if providers is None:
        raise HTTPException(status_code=503, detail="Payment providers not configured")
    return providers


def get_actor(
    x_user_id: str | None = Header(default=None),
    x_actor_type: str = Header(default="user"),
) -> Actor:
    # Upstream auth middleware sets these headers.
    try:
        actor_type = ActorType(x_actor_type)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid X-Actor-Type header") from exc
    return Actor(actor_type, x_user_id)


def require_user_id(actor: Actor = Depends(get_actor)):
    if not actor.id:
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return coerce_uuid(actor.id)
