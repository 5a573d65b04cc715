"""Direct Debit mandate registry: hosted setup flow, cancellation, status sync."""

import logging
from dataclasses import dataclass
from datetime import date, datetime
from urllib.parse import quote

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from clubpay.clock import Clock, SystemClock
from clubpay.config import settings
from clubpay.errors import NotFoundError, ProviderError, StateTokenError
from clubpay.models.payment import (
    MandateStatus,
    PaymentCustomer,
    PaymentMandate,
    PaymentMethod,
    PaymentMethodStatus,
    PaymentMethodType,
)
from clubpay.providers.base import CustomerData, PaymentProvider, RedirectUrls
from clubpay.services.billing.customers import CustomerService, resolve_provider
from clubpay.services.common import coerce_uuid
from clubpay.services.crypto import issue_state_token, verify_state_token

logger = logging.getLogger(__name__)

PLACEHOLDER_PREFIX = "pending_"
TERMINAL_STATUSES = {MandateStatus.cancelled, MandateStatus.failed, MandateStatus.expired}
USABLE_STATUSES = {MandateStatus.submitted, MandateStatus.active}

_SETUP_PROGRESSION = {
    MandateStatus.pending_setup: 0,
    MandateStatus.pending_submission: 1,
    MandateStatus.submitted: 2,
    MandateStatus.active: 3,
}


def mandate_moves_forward(current: MandateStatus, new: MandateStatus) -> bool:
    """Whether ``new`` may replace ``current``; terminal statuses are never left."""
    if current == new:
        return True
    if current in TERMINAL_STATUSES:
        return False
    if new in TERMINAL_STATUSES:
        return True
    return _SETUP_PROGRESSION[new] > _SETUP_PROGRESSION[current]


@dataclass(frozen=True)
class SetupFlowStart:
    authorisation_url: str
    flow_id: str
    expires_at: datetime | None
    state: str
    mandate: PaymentMandate


def _mandate_status(value: str, provider: str) -> MandateStatus:
    try:
        return MandateStatus(value)
    except ValueError as exc:
        raise ProviderError(f"Unknown mandate status: {value}", provider=provider) from exc


class MandateService:
    def __init__(
        self,
        db: Session,
        providers: dict[str, PaymentProvider],
        clock: Clock | None = None,
    ) -> None:
        self.db = db
        self.providers = providers
        self.clock = clock or SystemClock()
        self.customers = CustomerService(db, providers)

    # ── Queries ──────────────────────────────────────────

    def get(self, mandate_id) -> PaymentMandate:
        mandate = self.db.get(PaymentMandate, coerce_uuid(mandate_id))
        if not mandate:
            raise NotFoundError("Payment mandate not found", {"mandate_id": str(mandate_id)})
        return mandate

    def get_by_provider_id(self, provider: str, provider_mandate_id: str) -> PaymentMandate | None:
        return self.db.scalar(
            select(PaymentMandate).where(
                PaymentMandate.provider == provider,
                PaymentMandate.provider_mandate_id == provider_mandate_id,
            )
        )

    def get_for_user(self, mandate_id, user_id) -> PaymentMandate:
        mandate = self.db.scalar(
            select(PaymentMandate)
            .join(PaymentCustomer, PaymentMandate.customer_id == PaymentCustomer.id)
            .where(
                PaymentMandate.id == coerce_uuid(mandate_id),
                PaymentCustomer.user_id == coerce_uuid(user_id),
            )
        )
        if not mandate:
            raise NotFoundError("Payment mandate not found", {"mandate_id": str(mandate_id)})
        return mandate

    def list_for_user(self, user_id, provider: str | None = None) -> list[PaymentMandate]:
        stmt = (
            select(PaymentMandate)
            .join(PaymentCustomer, PaymentMandate.customer_id == PaymentCustomer.id)
            .where(
                PaymentCustomer.user_id == coerce_uuid(user_id),
                PaymentMandate.status != MandateStatus.pending_setup,
            )
        )
        if provider:
            stmt = stmt.where(PaymentMandate.provider == provider)
        return list(self.db.scalars(stmt.order_by(PaymentMandate.created_at.desc())).all())

    def active_for_user(self, user_id, club_id) -> PaymentMandate | None:
        return self.db.scalar(
            select(PaymentMandate)
            .join(PaymentCustomer, PaymentMandate.customer_id == PaymentCustomer.id)
            .where(
                PaymentCustomer.user_id == coerce_uuid(user_id),
                PaymentCustomer.club_id == coerce_uuid(club_id),
                PaymentMandate.status == MandateStatus.active,
            )
            .order_by(PaymentMandate.created_at.desc())
            .limit(1)
        )

    # ── Setup flow ───────────────────────────────────────

    def initiate_setup_flow(
        self,
        user_id,
        club_id,
        provider_name: str,
        contact: CustomerData,
        scheme: str | None = None,
    ) -> SetupFlowStart:
        provider = resolve_provider(self.providers, provider_name)
        customer = self.customers.get_or_create_customer(
            user_id, club_id, provider.name, contact
        )
        now = self.clock.now()
        state, _ = issue_state_token(
            user_id=str(customer.user_id),
            club_id=str(customer.club_id),
            provider=provider.name,
            customer_id=str(customer.id),
            now=now,
        )
        base_url = settings.frontend_url.rstrip("/")
        encoded = quote(state, safe="")
        flow = provider.create_mandate_setup_flow(
            customer.provider_customer_id,
            RedirectUrls(
                success_url=f"{base_url}/billing/mandate/complete?state={encoded}",
                cancel_url=f"{base_url}/billing/mandate/cancel?state={encoded}",
            ),
            scheme=scheme or settings.default_mandate_scheme,
            currency=settings.default_currency,
        )
        mandate = PaymentMandate(
            customer_id=customer.id,
            provider=provider.name,
            provider_mandate_id=f"{PLACEHOLDER_PREFIX}{flow.flow_id}",
            scheme=scheme or settings.default_mandate_scheme,
            status=MandateStatus.pending_setup,
            metadata_={"flow_id": flow.flow_id, "setup_initiated_at": now.isoformat()},
        )
        self.db.add(mandate)
        self.db.flush()
        logger.info(
            "Started mandate setup %s for customer %s",
            flow.flow_id,
            customer.id,
            extra={"provider": provider.name},
        )
        return SetupFlowStart(
            authorisation_url=flow.authorisation_url,
            flow_id=flow.flow_id,
            expires_at=flow.expires_at,
            state=state,
            mandate=mandate,
        )

    def complete_setup_flow(self, state: str, user_id=None) -> PaymentMandate:
        """Exchange a finished hosted flow for a real mandate and default payment method."""
        claims = verify_state_token(state, now=self.clock.now())
        if user_id is not None and claims["user_id"] != str(coerce_uuid(user_id)):
            raise StateTokenError("State token was issued to another user")
        customer = self.db.get(PaymentCustomer, coerce_uuid(claims["customer_id"]))
        if (
            customer is None
            or str(customer.user_id) != claims["user_id"]
            or str(customer.club_id) != claims["club_id"]
            or customer.provider != claims["provider"]
        ):
            raise StateTokenError("State token does not match a payment customer")

        mandate = self.db.scalar(
            select(PaymentMandate)
            .where(
                PaymentMandate.customer_id == customer.id,
                PaymentMandate.status == MandateStatus.pending_setup,
            )
            .order_by(PaymentMandate.created_at.desc())
            .limit(1)
        )
        if not mandate:
            raise NotFoundError("No pending mandate setup for this customer")

        provider = resolve_provider(self.providers, customer.provider)
        flow_id = (mandate.metadata_ or {}).get(
            "flow_id"
        ) or mandate.provider_mandate_id.removeprefix(PLACEHOLDER_PREFIX)
        completed = provider.complete_mandate_setup(flow_id)
        mandate.provider_mandate_id = completed.provider_mandate_id
        mandate.status = _mandate_status(completed.status, provider.name)
        mandate.reference = completed.reference
        mandate.next_possible_charge_date = completed.next_possible_charge_date
        mandate.metadata_ = {
            **(mandate.metadata_ or {}),
            "setup_completed_at": self.clock.now().isoformat(),
        }
        self.db.flush()

        # Only one default per user; clear before inserting the new one.
        self.db.execute(
            update(PaymentMethod)
            .where(PaymentMethod.user_id == customer.user_id, PaymentMethod.is_default.is_(True))
            .values(is_default=False)
        )
        payment_method = PaymentMethod(
            user_id=customer.user_id,
            type=PaymentMethodType.direct_debit,
            mandate_id=mandate.id,
            is_default=True,
            display_name=f"Direct Debit {completed.reference or ''}".strip(),
            status=PaymentMethodStatus.active,
        )
        self.db.add(payment_method)
        self.db.flush()
        logger.info(
            "Completed mandate setup: %s (%s)",
            mandate.provider_mandate_id,
            MandateStatus(mandate.status).value,
            extra={"provider": provider.name},
        )
        return mandate

    # ── Cancellation & status ────────────────────────────

    def cancel_mandate(self, mandate_id, user_id) -> PaymentMandate:
        mandate = self.get_for_user(mandate_id, user_id)
        if mandate.status == MandateStatus.cancelled:
            return mandate
        if not mandate.provider_mandate_id.startswith(PLACEHOLDER_PREFIX):
            provider = resolve_provider(self.providers, mandate.provider)
            provider.cancel_mandate(mandate.provider_mandate_id)
        mandate.status = MandateStatus.cancelled
        mandate.cancelled_at = self.clock.now()
        self._retire_payment_methods(mandate, PaymentMethodStatus.revoked)
        self.db.flush()
        logger.info("Cancelled mandate %s", mandate.id, extra={"provider": mandate.provider})
        return mandate

    def update_mandate_status(
        self,
        provider: str,
        provider_mandate_id: str,
        status: MandateStatus | str,
        reference: str | None = None,
        next_possible_charge_date: date | None = None,
    ) -> PaymentMandate | None:
        """Set the provider-reported status. Returns None for unknown mandates.

        Notifications arrive out of order, so an update that would move the
        mandate backwards, or out of cancelled/failed/expired, leaves it as is.
        Callers compare the returned mandate's status with the one they asked for.
        """
        mandate = self.get_by_provider_id(provider, provider_mandate_id)
        if mandate is None:
            logger.warning(
                "Status update for unknown mandate %s",
                provider_mandate_id,
                extra={"provider": provider},
            )
            return None
        new_status = (
            status if isinstance(status, MandateStatus) else _mandate_status(status, provider)
        )
        current = MandateStatus(mandate.status)
        if not mandate_moves_forward(current, new_status):
            logger.info(
                "Ignoring stale status %s for mandate %s; already %s",
                new_status.value,
                provider_mandate_id,
                current.value,
                extra={"provider": provider},
            )
            return mandate
        mandate.status = new_status
        if reference is not None:
            mandate.reference = reference
        if next_possible_charge_date is not None:
            mandate.next_possible_charge_date = next_possible_charge_date
        if new_status in TERMINAL_STATUSES:
            mandate.cancelled_at = mandate.cancelled_at or self.clock.now()
            self._retire_payment_methods(
                mandate,
                PaymentMethodStatus.revoked
                if new_status == MandateStatus.cancelled
                else PaymentMethodStatus.expired,
            )
        self.db.flush()
        logger.info(
            "Mandate %s is now %s",
            provider_mandate_id,
            new_status.value,
            extra={"provider": provider},
        )
        return mandate

    def sync_mandate(self, mandate_id) -> PaymentMandate:
        mandate = self.get(mandate_id)
        provider = resolve_provider(self.providers, mandate.provider)
        remote = provider.get_mandate(mandate.provider_mandate_id)
        if remote.status != MandateStatus(mandate.status).value:
            self.update_mandate_status(
                mandate.provider,
                mandate.provider_mandate_id,
                remote.status,
                reference=remote.reference,
                next_possible_charge_date=remote.next_possible_charge_date,
            )
        return mandate

    def _retire_payment_methods(
        self, mandate: PaymentMandate, status: PaymentMethodStatus
    ) -> None:
        self.db.execute(
            update(PaymentMethod)
            .where(PaymentMethod.mandate_id == mandate.id)
            .values(status=status, is_default=False)
        )
