import enum
import uuid
from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import (
    JSON,
    Boolean,
    Date,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clubpay.db import Base, TimestampMixin, UTCDateTime

# ── Enums ────────────────────────────────────────────────


class BillingFrequency(str, enum.Enum):
    monthly = "monthly"
    annual = "annual"


class SubscriptionStatus(str, enum.Enum):
    pending = "pending"
    active = "active"
    paused = "paused"
    suspended = "suspended"
    cancelled = "cancelled"


class SubscriptionEventType(str, enum.Enum):
    created = "created"
    activated = "activated"
    mandate_attached = "mandate_attached"
    paused = "paused"
    resumed = "resumed"
    cancelled = "cancelled"
    cancellation_scheduled = "cancellation_scheduled"
    suspended = "suspended"
    tier_changed = "tier_changed"
    payment_failed = "payment_failed"
    payment_succeeded = "payment_succeeded"
    period_advanced = "period_advanced"


class ActorType(str, enum.Enum):
    user = "user"
    admin = "admin"
    system = "system"
    webhook = "webhook"


class InvoiceStatus(str, enum.Enum):
    draft = "draft"
    sent = "sent"
    paid = "paid"
    overdue = "overdue"
    cancelled = "cancelled"


# ── Catalog ──────────────────────────────────────────────


class MembershipTier(TimestampMixin, Base):
    __tablename__ = "membership_tiers"
    __table_args__ = (UniqueConstraint("club_id", "name", name="uq_tiers_club_name"),)

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    club_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    description: Mapped[str | None] = mapped_column(Text)
    monthly_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    annual_price: Mapped[Decimal | None] = mapped_column(Numeric(10, 2))
    billing_frequency: Mapped[BillingFrequency] = mapped_column(
        Enum(BillingFrequency), default=BillingFrequency.monthly
    )
    features: Mapped[list | None] = mapped_column(JSON)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)
    sort_order: Mapped[int] = mapped_column(Integer, default=0)

    def price_for(self, frequency: BillingFrequency) -> Decimal:
        if frequency == BillingFrequency.annual and self.annual_price is not None:
            return self.annual_price
        return self.monthly_price


# ── Subscriptions ────────────────────────────────────────


class Subscription(TimestampMixin, Base):
    __tablename__ = "subscriptions"
    __table_args__ = (
        Index(
            "uq_subscriptions_child_club_open",
            "child_user_id",
            "club_id",
            unique=True,
            postgresql_where=text("status != 'cancelled'"),
            sqlite_where=text("status != 'cancelled'"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    club_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    parent_user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    child_user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    tier_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("membership_tiers.id"), nullable=False
    )
    payment_mandate_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("payment_mandates.id"), index=True
    )
    status: Mapped[SubscriptionStatus] = mapped_column(
        Enum(SubscriptionStatus), default=SubscriptionStatus.pending
    )
    billing_frequency: Mapped[BillingFrequency] = mapped_column(
        Enum(BillingFrequency), default=BillingFrequency.monthly
    )
    billing_day: Mapped[int] = mapped_column(Integer, default=1)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="GBP")
    current_period_start: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    current_period_end: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    next_billing_date: Mapped[date] = mapped_column(Date, nullable=False)
    failed_payment_count: Mapped[int] = mapped_column(Integer, default=0)
    last_failed_payment_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    paused_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    resume_date: Mapped[date | None] = mapped_column(Date)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    cancellation_reason: Mapped[str | None] = mapped_column(Text)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)

    tier = relationship("MembershipTier")
    mandate = relationship("PaymentMandate")


class SubscriptionEvent(Base):
    """Append-only audit row; one per subscription state change."""

    __tablename__ = "subscription_events"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    subscription_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id"), nullable=False, index=True
    )
    sequence: Mapped[int] = mapped_column(Integer, nullable=False)
    event_type: Mapped[SubscriptionEventType] = mapped_column(
        Enum(SubscriptionEventType), nullable=False
    )
    previous_status: Mapped[SubscriptionStatus | None] = mapped_column(
        Enum(SubscriptionStatus)
    )
    new_status: Mapped[SubscriptionStatus | None] = mapped_column(Enum(SubscriptionStatus))
    previous_tier_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    new_tier_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    description: Mapped[str | None] = mapped_column(Text)
    actor_type: Mapped[ActorType] = mapped_column(Enum(ActorType), default=ActorType.system)
    actor_id: Mapped[str | None] = mapped_column(String(120))
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)


@event.listens_for(SubscriptionEvent, "before_update")
def _reject_event_update(mapper, connection, target) -> None:
    raise RuntimeError("Subscription events are append-only")


@event.listens_for(SubscriptionEvent, "before_delete")
def _reject_event_delete(mapper, connection, target) -> None:
    raise RuntimeError("Subscription events are append-only")


# ── Invoices ─────────────────────────────────────────────


class Invoice(TimestampMixin, Base):
    __tablename__ = "invoices"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    club_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id"), index=True
    )
    parent_user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    child_user_id: Mapped[uuid.UUID | None] = mapped_column(UUID(as_uuid=True))
    reference_number: Mapped[str] = mapped_column(String(40), unique=True, nullable=False)
    status: Mapped[InvoiceStatus] = mapped_column(
        Enum(InvoiceStatus), default=InvoiceStatus.draft
    )
    total_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"))
    currency: Mapped[str] = mapped_column(String(3), default="GBP")
    period_start: Mapped[datetime | None] = mapped_column(UTCDateTime())
    period_end: Mapped[datetime | None] = mapped_column(UTCDateTime())
    due_date: Mapped[date | None] = mapped_column(Date)
    paid_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    payment_method: Mapped[str | None] = mapped_column(String(40))
