from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from clubpay.api.deps import get_clock, get_db, get_providers, require_user_id
from clubpay.clock import Clock
from clubpay.providers.base import CustomerData, PaymentProvider
from clubpay.schemas.billing import (
    MandateCompleteRequest,
    MandateRead,
    MandateSetupRead,
    MandateSetupRequest,
    PaymentMethodRead,
)
from clubpay.services.billing import MandateService, PaymentMethodService

router = APIRouter(tags=["mandates"])


@router.post(
    "/mandates/setup", response_model=MandateSetupRead, status_code=status.HTTP_201_CREATED
)
def start_mandate_setup(
    payload: MandateSetupRequest,
    user_id: UUID = Depends(require_user_id),
    db: Session = Depends(get_db),
    providers: dict[str, PaymentProvider] = Depends(get_providers),
    clock: Clock = Depends(get_clock),
):
    service = MandateService(db, providers, clock)
    started = service.initiate_setup_flow(
        user_id,
        payload.club_id,
        payload.provider,
        CustomerData(
            email=payload.email,
            given_name=payload.given_name,
            family_name=payload.family_name,
        ),
        scheme=payload.scheme,
    )
    db.commit()
    return {
        "authorisation_url": started.authorisation_url,
        "flow_id": started.flow_id,
        "expires_at": started.expires_at,
        "state": started.state,
        "mandate_id": started.mandate.id,
    }


@router.post("/mandates/complete", response_model=MandateRead)
def complete_mandate_setup(
    payload: MandateCompleteRequest,
    user_id: UUID = Depends(require_user_id),
    db: Session = Depends(get_db),
    providers: dict[str, PaymentProvider] = Depends(get_providers),
    clock: Clock = Depends(get_clock),
):
    mandate = MandateService(db, providers, clock).complete_setup_flow(payload.state, user_id)
    db.commit()
    return mandate


@router.get("/mandates", response_model=list[MandateRead])
def list_mandates(
    provider: str | None = None,
    user_id: UUID = Depends(require_user_id),
    db: Session = Depends(get_db),
    providers: dict[str, PaymentProvider] = Depends(get_providers),
):
    return MandateService(db, providers).list_for_user(user_id, provider)


@router.post("/mandates/{mandate_id}/cancel", response_model=MandateRead)
def cancel_mandate(
    mandate_id: UUID,
    user_id: UUID = Depends(require_user_id),
    db: Session = Depends(get_db),
    providers: dict[str, PaymentProvider] = Depends(get_providers),
    clock: Clock = Depends(get_clock),
):
    mandate = MandateService(db, providers, clock).cancel_mandate(mandate_id, user_id)
    db.commit()
    return mandate


# ── Payment methods ──────────────────────────────────────


@router.get("/payment-methods", response_model=list[PaymentMethodRead])
def list_payment_methods(
    user_id: UUID = Depends(require_user_id),
    db: Session = Depends(get_db),
    providers: dict[str, PaymentProvider] = Depends(get_providers),
):
    return PaymentMethodService(db, providers).list_for_user(user_id)


@router.post("/payment-methods/{payment_method_id}/default", response_model=PaymentMethodRead)
def set_default_payment_method(
    payment_method_id: UUID,
    user_id: UUID = Depends(require_user_id),
    db: Session = Depends(get_db),
    providers: dict[str, PaymentProvider] = Depends(get_providers),
):
    method = PaymentMethodService(db, providers).set_default(payment_method_id, user_id)
    db.commit()
    return method


@router.delete("/payment-methods/{payment_method_id}", response_model=PaymentMethodRead)
def remove_payment_method(
    payment_method_id: UUID,
    user_id: UUID = Depends(require_user_id),
    db: Session = Depends(get_db),
    providers: dict[str, PaymentProvider] = Depends(get_providers),
    clock: Clock = Depends(get_clock),
):
    method = PaymentMethodService(db, providers, clock).remove(payment_method_id, user_id)
    db.commit()
    return method
