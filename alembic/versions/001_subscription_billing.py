"""subscription billing schema

Revision ID: 001_subscription_billing
Revises:
Create Date: 2026-10-19 00:00:00.000000

"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "001_subscription_billing"
down_revision = None
branch_labels = None
depends_on = None

SUBSCRIPTION_STATUSES = ("pending", "active", "paused", "suspended", "cancelled")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
    ]


def upgrade() -> None:
    # Shared by several tables, so created once up front.
    billing_frequency = postgresql.ENUM(
        "monthly", "annual", name="billingfrequency", create_type=False
    )
    subscription_status = postgresql.ENUM(
        *SUBSCRIPTION_STATUSES, name="subscriptionstatus", create_type=False
    )
    billing_frequency.create(op.get_bind(), checkfirst=True)
    subscription_status.create(op.get_bind(), checkfirst=True)

    # Roster links
    op.create_table(
        "user_children",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("parent_user_id", sa.UUID(), nullable=False),
        sa.Column("child_user_id", sa.UUID(), nullable=False),
        sa.Column("club_id", sa.UUID(), nullable=False),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "parent_user_id", "child_user_id", "club_id", name="uq_user_children_link"
        ),
    )

    # Tier catalog
    op.create_table(
        "membership_tiers",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("club_id", sa.UUID(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("monthly_price", sa.Numeric(10, 2), nullable=False),
        sa.Column("annual_price", sa.Numeric(10, 2), nullable=True),
        sa.Column("billing_frequency", billing_frequency, nullable=True),
        sa.Column("features", sa.JSON(), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=True),
        sa.Column("sort_order", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("club_id", "name", name="uq_tiers_club_name"),
    )
    op.create_index("ix_membership_tiers_club_id", "membership_tiers", ["club_id"])

    # Customers & mandates
    op.create_table(
        "payment_customers",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column("club_id", sa.UUID(), nullable=False),
        sa.Column("provider", sa.String(length=40), nullable=False),
        sa.Column("provider_customer_id", sa.String(length=255), nullable=False),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("given_name", sa.Text(), nullable=True),
        sa.Column("family_name", sa.Text(), nullable=True),
        sa.Column("metadata", sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "user_id", "club_id", "provider", name="uq_payment_customers_user_club_provider"
        ),
        sa.UniqueConstraint(
            "provider", "provider_customer_id", name="uq_payment_customers_provider_id"
        ),
    )
    op.create_index("ix_payment_customers_user_id", "payment_customers", ["user_id"])

    op.create_table(
        "payment_mandates",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("customer_id", sa.UUID(), nullable=False),
        sa.Column("provider", sa.String(length=40), nullable=False),
        sa.Column("provider_mandate_id", sa.String(length=255), nullable=False),
        sa.Column("scheme", sa.String(length=40), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "pending_setup",
                "pending_submission",
                "submitted",
                "active",
                "cancelled",
                "failed",
                "expired",
                name="mandatestatus",
            ),
            nullable=True,
        ),
        sa.Column("reference", sa.String(length=120), nullable=True),
        sa.Column("next_possible_charge_date", sa.Date(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["customer_id"], ["payment_customers.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "provider", "provider_mandate_id", name="uq_payment_mandates_provider_id"
        ),
    )
    op.create_index("ix_payment_mandates_customer_id", "payment_mandates", ["customer_id"])

    op.create_table(
        "payment_methods",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("user_id", sa.UUID(), nullable=False),
        sa.Column(
            "type",
            sa.Enum("direct_debit", "card", name="paymentmethodtype"),
            nullable=True,
        ),
        sa.Column("mandate_id", sa.UUID(), nullable=True),
        sa.Column("is_default", sa.Boolean(), nullable=True),
        sa.Column("display_name", sa.String(length=120), nullable=True),
        sa.Column("card_brand", sa.String(length=40), nullable=True),
        sa.Column("card_last4", sa.String(length=4), nullable=True),
        sa.Column("card_exp_month", sa.Integer(), nullable=True),
        sa.Column("card_exp_year", sa.Integer(), nullable=True),
        sa.Column(
            "status",
            sa.Enum("active", "expired", "revoked", name="paymentmethodstatus"),
            nullable=True,
        ),
        *_timestamps(),
        sa.ForeignKeyConstraint(["mandate_id"], ["payment_mandates.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_payment_methods_user_id", "payment_methods", ["user_id"])
    op.create_index("ix_payment_methods_mandate_id", "payment_methods", ["mandate_id"])
    op.create_index(
        "uq_payment_methods_one_default",
        "payment_methods",
        ["user_id"],
        unique=True,
        postgresql_where=sa.text("is_default"),
    )

    # Subscriptions
    op.create_table(
        "subscriptions",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("club_id", sa.UUID(), nullable=False),
        sa.Column("parent_user_id", sa.UUID(), nullable=False),
        sa.Column("child_user_id", sa.UUID(), nullable=False),
        sa.Column("tier_id", sa.UUID(), nullable=False),
        sa.Column("payment_mandate_id", sa.UUID(), nullable=True),
        sa.Column("status", subscription_status, nullable=True),
        sa.Column("billing_frequency", billing_frequency, nullable=True),
        sa.Column("billing_day", sa.Integer(), nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("current_period_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("current_period_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("next_billing_date", sa.Date(), nullable=False),
        sa.Column("failed_payment_count", sa.Integer(), nullable=True),
        sa.Column("last_failed_payment_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("paused_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("resume_date", sa.Date(), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["tier_id"], ["membership_tiers.id"]),
        sa.ForeignKeyConstraint(["payment_mandate_id"], ["payment_mandates.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_subscriptions_club_id", "subscriptions", ["club_id"])
    op.create_index("ix_subscriptions_parent_user_id", "subscriptions", ["parent_user_id"])
    op.create_index(
        "ix_subscriptions_payment_mandate_id", "subscriptions", ["payment_mandate_id"]
    )
    op.create_index(
        "uq_subscriptions_child_club_open",
        "subscriptions",
        ["child_user_id", "club_id"],
        unique=True,
        postgresql_where=sa.text("status != 'cancelled'"),
    )

    op.create_table(
        "subscription_events",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("subscription_id", sa.UUID(), nullable=False),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column(
            "event_type",
            sa.Enum(
                "created",
                "activated",
                "mandate_attached",
                "paused",
                "resumed",
                "cancelled",
                "cancellation_scheduled",
                "suspended",
                "tier_changed",
                "payment_failed",
                "payment_succeeded",
                "period_advanced",
                name="subscriptioneventtype",
            ),
            nullable=False,
        ),
        sa.Column("previous_status", subscription_status, nullable=True),
        sa.Column("new_status", subscription_status, nullable=True),
        sa.Column("previous_tier_id", sa.UUID(), nullable=True),
        sa.Column("new_tier_id", sa.UUID(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column(
            "actor_type",
            sa.Enum("user", "admin", "system", "webhook", name="actortype"),
            nullable=True,
        ),
        sa.Column("actor_id", sa.String(length=120), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index(
        "ix_subscription_events_subscription_id", "subscription_events", ["subscription_id"]
    )

    # Invoices & payments
    op.create_table(
        "invoices",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("club_id", sa.UUID(), nullable=False),
        sa.Column("subscription_id", sa.UUID(), nullable=True),
        sa.Column("parent_user_id", sa.UUID(), nullable=False),
        sa.Column("child_user_id", sa.UUID(), nullable=True),
        sa.Column("reference_number", sa.String(length=40), nullable=False),
        sa.Column(
            "status",
            sa.Enum("draft", "sent", "paid", "overdue", "cancelled", name="invoicestatus"),
            nullable=True,
        ),
        sa.Column("total_amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("amount_paid", sa.Numeric(10, 2), nullable=True),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column("period_start", sa.DateTime(timezone=True), nullable=True),
        sa.Column("period_end", sa.DateTime(timezone=True), nullable=True),
        sa.Column("due_date", sa.Date(), nullable=True),
        sa.Column("paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("payment_method", sa.String(length=40), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("reference_number"),
    )
    op.create_index("ix_invoices_club_id", "invoices", ["club_id"])
    op.create_index("ix_invoices_subscription_id", "invoices", ["subscription_id"])

    op.create_table(
        "provider_payments",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("provider", sa.String(length=40), nullable=False),
        sa.Column("provider_payment_id", sa.String(length=255), nullable=False),
        sa.Column("mandate_id", sa.UUID(), nullable=True),
        sa.Column("subscription_id", sa.UUID(), nullable=True),
        sa.Column("invoice_id", sa.UUID(), nullable=True),
        sa.Column("amount", sa.Numeric(10, 2), nullable=False),
        sa.Column("currency", sa.String(length=3), nullable=True),
        sa.Column(
            "status",
            sa.Enum(
                "pending_submission",
                "created",
                "submitted",
                "confirmed",
                "paid_out",
                "failed",
                "cancelled",
                "charged_back",
                name="paymentstatus",
            ),
            nullable=True,
        ),
        sa.Column("charge_date", sa.Date(), nullable=True),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("retry_count", sa.Integer(), nullable=True),
        sa.Column("payout_id", sa.String(length=255), nullable=True),
        sa.Column("paid_out_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(["mandate_id"], ["payment_mandates.id"]),
        sa.ForeignKeyConstraint(["subscription_id"], ["subscriptions.id"]),
        sa.ForeignKeyConstraint(["invoice_id"], ["invoices.id"]),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint(
            "provider", "provider_payment_id", name="uq_provider_payments_provider_id"
        ),
    )
    op.create_index(
        "ix_provider_payments_subscription_id", "provider_payments", ["subscription_id"]
    )

    # Webhook inbox
    op.create_table(
        "payment_webhooks",
        sa.Column("id", sa.UUID(), nullable=False),
        sa.Column("provider", sa.String(length=40), nullable=False),
        sa.Column("delivery_id", sa.UUID(), nullable=False),
        sa.Column("event_id", sa.String(length=255), nullable=False),
        sa.Column("resource_type", sa.String(length=40), nullable=True),
        sa.Column("action", sa.String(length=80), nullable=True),
        sa.Column("resource_id", sa.String(length=255), nullable=True),
        sa.Column("payload", sa.Text(), nullable=True),
        sa.Column("signature_valid", sa.Boolean(), nullable=True),
        sa.Column("processed", sa.Boolean(), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("result", sa.JSON(), nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("provider", "event_id", name="uq_payment_webhooks_provider_event"),
    )
    op.create_index("ix_payment_webhooks_delivery_id", "payment_webhooks", ["delivery_id"])


def downgrade() -> None:
    op.drop_index("ix_payment_webhooks_delivery_id", table_name="payment_webhooks")
    op.drop_table("payment_webhooks")

    op.drop_index("ix_provider_payments_subscription_id", table_name="provider_payments")
    op.drop_table("provider_payments")

    op.drop_index("ix_invoices_subscription_id", table_name="invoices")
    op.drop_index("ix_invoices_club_id", table_name="invoices")
    op.drop_table("invoices")

    op.drop_index("ix_subscription_events_subscription_id", table_name="subscription_events")
    op.drop_table("subscription_events")

    op.drop_index("uq_subscriptions_child_club_open", table_name="subscriptions")
    op.drop_index("ix_subscriptions_payment_mandate_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_parent_user_id", table_name="subscriptions")
    op.drop_index("ix_subscriptions_club_id", table_name="subscriptions")
    op.drop_table("subscriptions")

    op.drop_index("uq_payment_methods_one_default", table_name="payment_methods")
    op.drop_index("ix_payment_methods_mandate_id", table_name="payment_methods")
    op.drop_index("ix_payment_methods_user_id", table_name="payment_methods")
    op.drop_table("payment_methods")

    op.drop_index("ix_payment_mandates_customer_id", table_name="payment_mandates")
    op.drop_table("payment_mandates")

    op.drop_index("ix_payment_customers_user_id", table_name="payment_customers")
    op.drop_table("payment_customers")

    op.drop_index("ix_membership_tiers_club_id", table_name="membership_tiers")
    op.drop_table("membership_tiers")

    op.drop_table("user_children")

    for enum_name in [
        "paymentstatus",
        "invoicestatus",
        "actortype",
        "subscriptioneventtype",
        "subscriptionstatus",
        "paymentmethodstatus",
        "paymentmethodtype",
        "mandatestatus",
        "billingfrequency",
    ]:
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
