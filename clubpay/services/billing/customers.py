import logging

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from clubpay.errors import NotFoundError, ValidationError
from clubpay.models.payment import PaymentCustomer
from clubpay.providers.base import CustomerData, PaymentProvider
from clubpay.services.common import coerce_uuid

logger = logging.getLogger(__name__)


def resolve_provider(providers: dict[str, PaymentProvider], name: str) -> PaymentProvider:
    provider = providers.get(name)
    if provider is None:
        raise ValidationError(f"Unsupported payment provider: {name}")
    return provider


class CustomerService:
    def __init__(self, db: Session, providers: dict[str, PaymentProvider]) -> None:
        self.db = db
        self.providers = providers

    def get(self, customer_id) -> PaymentCustomer:
        customer = self.db.get(PaymentCustomer, coerce_uuid(customer_id))
        if not customer:
            raise NotFoundError(
                "Payment customer not found", {"customer_id": str(customer_id)}
            )
        return customer

    def get_by_user(self, user_id, club_id, provider: str) -> PaymentCustomer | None:
        return self.db.scalar(
            select(PaymentCustomer).where(
                PaymentCustomer.user_id == coerce_uuid(user_id),
                PaymentCustomer.club_id == coerce_uuid(club_id),
                PaymentCustomer.provider == provider,
            )
        )

    def get_or_create_customer(
        self, user_id, club_id, provider_name: str, contact: CustomerData
    ) -> PaymentCustomer:
        """Look up the provider customer for (user, club, provider), creating it remotely if needed.

        Remote creation happens first. If the local insert then fails the remote
        customer is orphaned; its id is logged for manual cleanup.
        """
        existing = self.get_by_user(user_id, club_id, provider_name)
        if existing:
            return existing
        provider = resolve_provider(self.providers, provider_name)
        user_uuid = coerce_uuid(user_id)
        club_uuid = coerce_uuid(club_id)
        remote = provider.create_customer(
            CustomerData(
                email=contact.email,
                given_name=contact.given_name,
                family_name=contact.family_name,
                metadata={**contact.metadata, "user_id": str(user_uuid), "club_id": str(club_uuid)},
            )
        )
        customer = PaymentCustomer(
            user_id=user_uuid,
            club_id=club_uuid,
            provider=provider.name,
            provider_customer_id=remote.provider_customer_id,
            email=contact.email,
            given_name=contact.given_name,
            family_name=contact.family_name,
            metadata_=dict(contact.metadata) or None,
        )
        try:
            with self.db.begin_nested():
                self.db.add(customer)
                self.db.flush()
        except SQLAlchemyError:
            logger.error(
                "Orphaned provider customer %s for user %s",
                remote.provider_customer_id,
                user_uuid,
                extra={"provider": provider.name},
            )
            raise
        logger.info("Created PaymentCustomer: %s", customer.id, extra={"provider": provider.name})
        return customer

    def update_customer(self, customer_id, contact: CustomerData) -> PaymentCustomer:
        customer = self.get(customer_id)
        provider = resolve_provider(self.providers, customer.provider)
        provider.update_customer(customer.provider_customer_id, contact)
        if contact.email is not None:
            customer.email = contact.email
        if contact.given_name is not None:
            customer.given_name = contact.given_name
        if contact.family_name is not None:
            customer.family_name = contact.family_name
        if contact.metadata:
            customer.metadata_ = {**(customer.metadata_ or {}), **contact.metadata}
        self.db.flush()
        logger.info("Updated PaymentCustomer: %s", customer.id)
        return customer
