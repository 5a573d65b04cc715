"""Inbound payment provider webhooks. No user auth; signatures are verified."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from clubpay.api.deps import get_clock, get_db, get_providers
from clubpay.clock import Clock
from clubpay.providers.base import PaymentProvider
from clubpay.schemas.billing import WebhookReceipt
from clubpay.services.billing import WebhookProcessor

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/{provider}", response_model=WebhookReceipt)
async def receive_webhook(
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
    providers: dict[str, PaymentProvider] = Depends(get_providers),
    clock: Clock = Depends(get_clock),
) -> dict:
    handler = providers.get(provider)
    if handler is None:
        raise HTTPException(status_code=404, detail="Unknown payment provider")
    signature = request.headers.get(handler.signature_header)
    if not signature:
        raise HTTPException(status_code=400, detail="Missing webhook signature")

    body = await request.body()
    result = WebhookProcessor(db, providers, clock).process(provider, body, signature)
    return {
        "received": True,
        "events_processed": result.events_processed,
        "results": [r.as_dict() for r in result.results],
    }
