import logging
import secrets
from datetime import timedelta
from decimal import Decimal

from sqlalchemy.orm import Session

from clubpay.clock import Clock, SystemClock
from clubpay.errors import NotFoundError
from clubpay.models.billing import Invoice, InvoiceStatus, Subscription
from clubpay.services.common import coerce_uuid

logger = logging.getLogger(__name__)


def _generate_reference() -> str:
    return f"INV-{secrets.token_hex(6).upper()}"


class InvoiceLedger:
    """The few invoice mutations billing reconciliation needs."""

    def __init__(self, db: Session, clock: Clock | None = None) -> None:
        self.db = db
        self.clock = clock or SystemClock()

    def get(self, invoice_id) -> Invoice:
        invoice = self.db.get(Invoice, coerce_uuid(invoice_id))
        if not invoice:
            raise NotFoundError("Invoice not found", {"invoice_id": str(invoice_id)})
        return invoice

    def create_for_period(self, subscription: Subscription) -> Invoice:
        invoice = Invoice(
            club_id=subscription.club_id,
            subscription_id=subscription.id,
            parent_user_id=subscription.parent_user_id,
            child_user_id=subscription.child_user_id,
            reference_number=_generate_reference(),
            status=InvoiceStatus.sent,
            total_amount=subscription.amount,
            amount_paid=Decimal("0.00"),
            currency=subscription.currency,
            period_start=subscription.current_period_start,
            period_end=subscription.current_period_end,
            due_date=subscription.next_billing_date or (self.clock.now() + timedelta(days=14)).date(),
            payment_method="direct_debit",
        )
        self.db.add(invoice)
        self.db.flush()
        logger.info("Created Invoice %s for subscription %s", invoice.id, subscription.id)
        return invoice

    def mark_paid(self, invoice_id, payment_method: str = "direct_debit") -> Invoice:
        invoice = self.get(invoice_id)
        invoice.status = InvoiceStatus.paid
        invoice.amount_paid = invoice.total_amount
        invoice.paid_at = self.clock.now()
        invoice.payment_method = payment_method
        self.db.flush()
        logger.info("Invoice %s marked paid", invoice.id)
        return invoice

    def mark_overdue(self, invoice_id) -> Invoice:
        """Reverse a collected invoice, e.g. after a chargeback."""
        invoice = self.get(invoice_id)
        invoice.status = InvoiceStatus.overdue
        invoice.amount_paid = Decimal("0.00")
        invoice.paid_at = None
        self.db.flush()
        logger.info("Invoice %s marked overdue", invoice.id)
        return invoice
