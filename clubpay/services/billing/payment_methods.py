import logging

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from clubpay.clock import Clock
from clubpay.errors import ConflictError, NotFoundError, ProviderError
from clubpay.models.billing import Subscription, SubscriptionStatus
from clubpay.models.payment import PaymentMethod, PaymentMethodStatus
from clubpay.providers.base import PaymentProvider
from clubpay.services.billing.mandates import MandateService
from clubpay.services.common import coerce_uuid

logger = logging.getLogger(__name__)


class PaymentMethodService:
    def __init__(
        self,
        db: Session,
        providers: dict[str, PaymentProvider],
        clock: Clock | None = None,
    ) -> None:
        self.db = db
        self.mandates = MandateService(db, providers, clock)

    def list_for_user(self, user_id) -> list[PaymentMethod]:
        stmt = (
            select(PaymentMethod)
            .where(
                PaymentMethod.user_id == coerce_uuid(user_id),
                PaymentMethod.status != PaymentMethodStatus.revoked,
            )
            .order_by(PaymentMethod.is_default.desc(), PaymentMethod.created_at.desc())
        )
        return list(self.db.scalars(stmt).all())

    def get(self, payment_method_id, user_id) -> PaymentMethod:
        method = self.db.scalar(
            select(PaymentMethod).where(
                PaymentMethod.id == coerce_uuid(payment_method_id),
                PaymentMethod.user_id == coerce_uuid(user_id),
            )
        )
        if not method:
            raise NotFoundError(
                "Payment method not found", {"payment_method_id": str(payment_method_id)}
            )
        return method

    def default_for_user(self, user_id) -> PaymentMethod | None:
        return self.db.scalar(
            select(PaymentMethod).where(
                PaymentMethod.user_id == coerce_uuid(user_id),
                PaymentMethod.is_default.is_(True),
                PaymentMethod.status == PaymentMethodStatus.active,
            )
        )

    def set_default(self, payment_method_id, user_id) -> PaymentMethod:
        method = self.get(payment_method_id, user_id)
        if method.status != PaymentMethodStatus.active:
            raise ConflictError("Only active payment methods can be the default")
        self._clear_default(method.user_id)
        method.is_default = True
        self.db.flush()
        logger.info("Default payment method for %s is now %s", method.user_id, method.id)
        return method

    def remove(self, payment_method_id, user_id) -> PaymentMethod:
        method = self.get(payment_method_id, user_id)
        was_default = method.is_default
        if method.mandate_id:
            in_use = self.db.scalar(
                select(func.count(Subscription.id)).where(
                    Subscription.payment_mandate_id == method.mandate_id,
                    Subscription.status.in_(
                        [SubscriptionStatus.active, SubscriptionStatus.paused]
                    ),
                )
            )
            if in_use:
                raise ConflictError(
                    "Payment method is used by active subscriptions",
                    {"subscriptions": in_use},
                )
            try:
                self.mandates.cancel_mandate(method.mandate_id, method.user_id)
            except (ProviderError, NotFoundError) as exc:
                # Best-effort cleanup; removal goes ahead.
                logger.warning(
                    "Could not cancel mandate %s while removing payment method %s: %s",
                    method.mandate_id,
                    method.id,
                    exc,
                )

        method.status = PaymentMethodStatus.revoked
        method.is_default = False
        self.db.flush()
        if was_default:
            replacement = self.db.scalar(
                select(PaymentMethod)
                .where(
                    PaymentMethod.user_id == method.user_id,
                    PaymentMethod.status == PaymentMethodStatus.active,
                    PaymentMethod.id != method.id,
                )
                .order_by(PaymentMethod.created_at.desc())
                .limit(1)
            )
            if replacement:
                replacement.is_default = True
                self.db.flush()
        logger.info("Removed payment method %s", method.id)
        return method

    def summary(self, user_id) -> dict:
        methods = self.list_for_user(user_id)
        default = next((m for m in methods if m.is_default), None)
        return {
            "total": len(methods),
            "active": sum(1 for m in methods if m.status == PaymentMethodStatus.active),
            "default_payment_method_id": default.id if default else None,
        }

    def _clear_default(self, user_id) -> None:
        self.db.execute(
            update(PaymentMethod)
            .where(PaymentMethod.user_id == user_id, PaymentMethod.is_default.is_(True))
            .values(is_default=False)
        )
        self.db.flush()
