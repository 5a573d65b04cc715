from datetime import date, datetime
from decimal import Decimal
from typing import Literal
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

# ── Tier ─────────────────────────────────────────────────


class TierBase(BaseModel):
    name: str = Field(min_length=1, max_length=100)
    description: str | None = None
    monthly_price: Decimal = Field(ge=0, max_digits=10, decimal_places=2)
    annual_price: Decimal | None = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    billing_frequency: Literal["monthly", "annual"] = "monthly"
    features: list[str] = Field(default_factory=list)
    is_active: bool = True


class TierCreate(TierBase):
    pass


class TierUpdate(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=100)
    description: str | None = None
    monthly_price: Decimal | None = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    annual_price: Decimal | None = Field(default=None, ge=0, max_digits=10, decimal_places=2)
    billing_frequency: Literal["monthly", "annual"] | None = None
    features: list[str] | None = None
    is_active: bool | None = None
    sort_order: int | None = Field(default=None, ge=0)


class TierRead(TierBase):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)
    id: UUID
    club_id: UUID
    billing_frequency: str  # type: ignore[assignment]
    features: list[str] | None = None  # type: ignore[assignment]
    sort_order: int
    created_at: datetime
    updated_at: datetime


class TierReorder(BaseModel):
    tier_ids: list[UUID] = Field(min_length=1)


class TierStats(BaseModel):
    tier_id: UUID
    name: str
    active_subscriptions: int
    recurring_revenue: Decimal


# ── Subscription ─────────────────────────────────────────


class SubscriptionCreate(BaseModel):
    club_id: UUID
    parent_user_id: UUID
    child_user_id: UUID
    tier_id: UUID
    billing_frequency: Literal["monthly", "annual"] = "monthly"
    billing_day: int | None = Field(default=None, ge=1, le=31)
    payment_mandate_id: UUID | None = None


class SubscriptionRead(BaseModel):
    model_config = ConfigDict(
        from_attributes=True, populate_by_name=True, use_enum_values=True
    )
    id: UUID
    club_id: UUID
    parent_user_id: UUID
    child_user_id: UUID
    tier_id: UUID
    payment_mandate_id: UUID | None = None
    status: str
    billing_frequency: str
    billing_day: int
    amount: Decimal
    currency: str
    current_period_start: datetime
    current_period_end: datetime
    next_billing_date: date
    failed_payment_count: int
    last_failed_payment_at: datetime | None = None
    paused_at: datetime | None = None
    resume_date: date | None = None
    cancelled_at: datetime | None = None
    cancellation_reason: str | None = None
    created_at: datetime
    updated_at: datetime


class ActivateRequest(BaseModel):
    payment_mandate_id: UUID


class PauseRequest(BaseModel):
    resume_date: date | None = None
    reason: str | None = Field(default=None, max_length=500)


class CancelRequest(BaseModel):
    reason: str | None = Field(default=None, max_length=500)
    immediate: bool = False


class ChangeTierRequest(BaseModel):
    tier_id: UUID
    prorate: bool = True


class ProrationRead(BaseModel):
    total_days: Decimal
    days_remaining: Decimal
    credit_for_unused: Decimal
    charge_for_new: Decimal
    net_amount: Decimal
    is_upgrade: bool
    effective_date: datetime | None = None


class ChangeTierRead(BaseModel):
    subscription: SubscriptionRead
    proration: ProrationRead | None = None


class SubscriptionEventRead(BaseModel):
    model_config = ConfigDict(
        from_attributes=True, populate_by_name=True, use_enum_values=True
    )
    id: UUID
    subscription_id: UUID
    sequence: int
    event_type: str
    previous_status: str | None = None
    new_status: str | None = None
    previous_tier_id: UUID | None = None
    new_tier_id: UUID | None = None
    description: str | None = None
    actor_type: str
    actor_id: str | None = None
    metadata_: dict | None = Field(default=None, serialization_alias="metadata")
    created_at: datetime


class SubscriptionStats(BaseModel):
    counts: dict[str, int]
    total: int
    monthly_recurring_revenue: Decimal


# ── Event metadata ───────────────────────────────────────
# One shape per SubscriptionEventType, stored as JSON on the event row.


class CreatedMetadata(BaseModel):
    tier_id: UUID
    amount: Decimal
    billing_frequency: str
    billing_day: int
    payment_mandate_id: UUID | None = None


class MandateMetadata(BaseModel):
    payment_mandate_id: UUID


class PausedMetadata(BaseModel):
    resume_date: date | None = None
    reason: str | None = None


class ResumedMetadata(BaseModel):
    next_billing_date: date


class CancelledMetadata(BaseModel):
    reason: str | None = None
    immediate: bool
    effective_at: datetime


class SuspendedMetadata(BaseModel):
    reason: str
    failed_payment_count: int


class TierChangedMetadata(BaseModel):
    previous_amount: Decimal
    new_amount: Decimal
    prorated: bool
    net_amount: Decimal | None = None


class PaymentFailedMetadata(BaseModel):
    failed_payment_count: int
    reason: str | None = None
    provider_payment_id: str | None = None


class PaymentSucceededMetadata(BaseModel):
    previous_failed_payment_count: int
    provider_payment_id: str | None = None


class PeriodAdvancedMetadata(BaseModel):
    period_start: datetime
    period_end: datetime
    next_billing_date: date


# ── Mandate ──────────────────────────────────────────────


class ContactDetails(BaseModel):
    email: str | None = Field(default=None, max_length=255)
    given_name: str | None = Field(default=None, max_length=100)
    family_name: str | None = Field(default=None, max_length=100)


class MandateSetupRequest(ContactDetails):
    club_id: UUID
    provider: str = "gocardless"
    scheme: str | None = Field(default=None, max_length=40)


class MandateSetupRead(BaseModel):
    authorisation_url: str
    flow_id: str
    expires_at: datetime | None = None
    state: str
    mandate_id: UUID


class MandateCompleteRequest(BaseModel):
    state: str = Field(min_length=1)


class MandateRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)
    id: UUID
    customer_id: UUID
    provider: str
    provider_mandate_id: str
    scheme: str
    status: str
    reference: str | None = None
    next_possible_charge_date: date | None = None
    cancelled_at: datetime | None = None
    created_at: datetime


# ── Payment method ───────────────────────────────────────


class PaymentMethodRead(BaseModel):
    model_config = ConfigDict(from_attributes=True, use_enum_values=True)
    id: UUID
    user_id: UUID
    type: str
    mandate_id: UUID | None = None
    is_default: bool
    display_name: str | None = None
    card_brand: str | None = None
    card_last4: str | None = None
    status: str
    created_at: datetime


# ── Webhook ──────────────────────────────────────────────


class WebhookEventResult(BaseModel):
    event_id: str
    status: Literal["processed", "failed", "skipped", "ignored"]
    result: dict | None = None
    error: str | None = None


class WebhookReceipt(BaseModel):
    received: bool = True
    events_processed: int
    results: list[WebhookEventResult]
