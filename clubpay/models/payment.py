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
    text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from clubpay.db import Base, TimestampMixin, UTCDateTime
from clubpay.models.types import EncryptedJSON, EncryptedText

# ── Enums ────────────────────────────────────────────────


class MandateStatus(str, enum.Enum):
    pending_setup = "pending_setup"
    pending_submission = "pending_submission"
    submitted = "submitted"
    active = "active"
    cancelled = "cancelled"
    failed = "failed"
    expired = "expired"


class PaymentMethodType(str, enum.Enum):
    direct_debit = "direct_debit"
    card = "card"


class PaymentMethodStatus(str, enum.Enum):
    active = "active"
    expired = "expired"
    revoked = "revoked"


class PaymentStatus(str, enum.Enum):
    pending_submission = "pending_submission"
    created = "created"
    submitted = "submitted"
    confirmed = "confirmed"
    paid_out = "paid_out"
    failed = "failed"
    cancelled = "cancelled"
    charged_back = "charged_back"


# ── Customers & mandates ─────────────────────────────────


class PaymentCustomer(TimestampMixin, Base):
    __tablename__ = "payment_customers"
    __table_args__ = (
        UniqueConstraint(
            "user_id", "club_id", "provider", name="uq_payment_customers_user_club_provider"
        ),
        UniqueConstraint(
            "provider", "provider_customer_id", name="uq_payment_customers_provider_id"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    club_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    provider_customer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(EncryptedText())
    given_name: Mapped[str | None] = mapped_column(EncryptedText())
    family_name: Mapped[str | None] = mapped_column(EncryptedText())
    metadata_: Mapped[dict | None] = mapped_column("metadata", EncryptedJSON())


class PaymentMandate(TimestampMixin, Base):
    __tablename__ = "payment_mandates"
    __table_args__ = (
        UniqueConstraint(
            "provider", "provider_mandate_id", name="uq_payment_mandates_provider_id"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    customer_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("payment_customers.id"), nullable=False, index=True
    )
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    provider_mandate_id: Mapped[str] = mapped_column(String(255), nullable=False)
    scheme: Mapped[str] = mapped_column(String(40), default="bacs")
    status: Mapped[MandateStatus] = mapped_column(
        Enum(MandateStatus), default=MandateStatus.pending_setup
    )
    reference: Mapped[str | None] = mapped_column(String(120))
    next_possible_charge_date: Mapped[date | None] = mapped_column(Date)
    cancelled_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    # Provider passthrough fields with no fixed schema (flow id, setup timestamps).
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSON)

    customer = relationship("PaymentCustomer")


class PaymentMethod(TimestampMixin, Base):
    __tablename__ = "payment_methods"
    __table_args__ = (
        Index(
            "uq_payment_methods_one_default",
            "user_id",
            unique=True,
            postgresql_where=text("is_default"),
            sqlite_where=text("is_default"),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    type: Mapped[PaymentMethodType] = mapped_column(
        Enum(PaymentMethodType), default=PaymentMethodType.direct_debit
    )
    mandate_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("payment_mandates.id"), index=True
    )
    is_default: Mapped[bool] = mapped_column(Boolean, default=False)
    display_name: Mapped[str | None] = mapped_column(String(120))
    card_brand: Mapped[str | None] = mapped_column(String(40))
    card_last4: Mapped[str | None] = mapped_column(String(4))
    card_exp_month: Mapped[int | None] = mapped_column(Integer)
    card_exp_year: Mapped[int | None] = mapped_column(Integer)
    status: Mapped[PaymentMethodStatus] = mapped_column(
        Enum(PaymentMethodStatus), default=PaymentMethodStatus.active
    )

    mandate = relationship("PaymentMandate")


# ── Payments ─────────────────────────────────────────────


class ProviderPayment(TimestampMixin, Base):
    __tablename__ = "provider_payments"
    __table_args__ = (
        UniqueConstraint(
            "provider", "provider_payment_id", name="uq_provider_payments_provider_id"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    provider_payment_id: Mapped[str] = mapped_column(String(255), nullable=False)
    mandate_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("payment_mandates.id")
    )
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id"), index=True
    )
    invoice_id: Mapped[uuid.UUID | None] = mapped_column(
        UUID(as_uuid=True), ForeignKey("invoices.id")
    )
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="GBP")
    status: Mapped[PaymentStatus] = mapped_column(
        Enum(PaymentStatus), default=PaymentStatus.created
    )
    charge_date: Mapped[date | None] = mapped_column(Date)
    description: Mapped[str | None] = mapped_column(Text)
    failure_reason: Mapped[str | None] = mapped_column(Text)
    retry_count: Mapped[int] = mapped_column(Integer, default=0)
    payout_id: Mapped[str | None] = mapped_column(String(255))
    paid_out_at: Mapped[datetime | None] = mapped_column(UTCDateTime())


# ── Webhooks ─────────────────────────────────────────────


class WebhookRecord(Base):
    __tablename__ = "payment_webhooks"
    __table_args__ = (
        UniqueConstraint("provider", "event_id", name="uq_payment_webhooks_provider_event"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    delivery_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False, index=True)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    resource_type: Mapped[str | None] = mapped_column(String(40))
    action: Mapped[str | None] = mapped_column(String(80))
    resource_id: Mapped[str | None] = mapped_column(String(255))
    payload: Mapped[dict | None] = mapped_column(EncryptedJSON())
    signature_valid: Mapped[bool] = mapped_column(Boolean, default=False)
    processed: Mapped[bool] = mapped_column(Boolean, default=False)
    processed_at: Mapped[datetime | None] = mapped_column(UTCDateTime())
    result: Mapped[dict | None] = mapped_column(JSON)
    error_message: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
