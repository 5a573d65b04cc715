from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from clubpay.errors import ConflictError, NotFoundError, ValidationError
from clubpay.models.billing import (
    BillingFrequency,
    MembershipTier,
    Subscription,
    SubscriptionStatus,
)
from clubpay.schemas.billing import TierCreate, TierUpdate
from clubpay.services.common import coerce_uuid

logger = logging.getLogger(__name__)

# Fields that define what a subscriber is charged; frozen while anyone is subscribed.
PRICE_FIELDS = ("monthly_price", "annual_price", "billing_frequency")


def _open_subscription_count(db: Session, tier_id) -> int:
    stmt = select(func.count(Subscription.id)).where(
        Subscription.tier_id == tier_id,
        Subscription.status != SubscriptionStatus.cancelled,
    )
    return db.scalar(stmt) or 0


def _name_taken(db: Session, club_id, name: str, exclude_id=None) -> bool:
    stmt = select(MembershipTier.id).where(
        MembershipTier.club_id == club_id, MembershipTier.name == name
    )
    if exclude_id is not None:
        stmt = stmt.where(MembershipTier.id != exclude_id)
    return db.scalar(stmt) is not None


class Tiers:
    @staticmethod
    def create(db: Session, club_id: str, payload: TierCreate) -> MembershipTier:
        club_uuid = coerce_uuid(club_id)
        if _name_taken(db, club_uuid, payload.name):
            raise ConflictError(
                "A tier with this name already exists", {"name": payload.name}
            )
        max_order = db.scalar(
            select(func.max(MembershipTier.sort_order)).where(
                MembershipTier.club_id == club_uuid
            )
        )
        data = payload.model_dump()
        data["billing_frequency"] = BillingFrequency(data["billing_frequency"])
        tier = MembershipTier(club_id=club_uuid, sort_order=(max_order or 0) + 1, **data)
        db.add(tier)
        try:
            db.commit()
        except IntegrityError as exc:
            db.rollback()
            raise ConflictError(
                "A tier with this name already exists", {"name": payload.name}
            ) from exc
        db.refresh(tier)
        logger.info("Created MembershipTier: %s", tier.id)
        return tier

    @staticmethod
    def get(db: Session, tier_id: str, club_id: str | None = None) -> MembershipTier:
        tier = db.get(MembershipTier, coerce_uuid(tier_id))
        if not tier or (club_id is not None and tier.club_id != coerce_uuid(club_id)):
            raise NotFoundError("Membership tier not found", {"tier_id": str(tier_id)})
        return tier

    @staticmethod
    def list(db: Session, club_id: str, active_only: bool = False) -> list[MembershipTier]:
        stmt = select(MembershipTier).where(MembershipTier.club_id == coerce_uuid(club_id))
        if active_only:
            stmt = stmt.where(MembershipTier.is_active.is_(True))
        stmt = stmt.order_by(MembershipTier.sort_order.asc(), MembershipTier.name.asc())
        return list(db.scalars(stmt).all())

    @staticmethod
    def update(
        db: Session, tier_id: str, club_id: str, payload: TierUpdate
    ) -> MembershipTier:
        tier = Tiers.get(db, tier_id, club_id)
        changes = payload.model_dump(exclude_unset=True)
        if "name" in changes and _name_taken(db, tier.club_id, changes["name"], tier.id):
            raise ConflictError(
                "A tier with this name already exists", {"name": changes["name"]}
            )
        if "billing_frequency" in changes and changes["billing_frequency"] is not None:
            changes["billing_frequency"] = BillingFrequency(changes["billing_frequency"])
        price_changes = [
            key for key in PRICE_FIELDS if key in changes and changes[key] != getattr(tier, key)
        ]
        if price_changes and _open_subscription_count(db, tier.id):
            raise ConflictError(
                "Pricing cannot change while subscriptions reference this tier",
                {"fields": price_changes},
            )
        for key, value in changes.items():
            setattr(tier, key, value)
        db.commit()
        db.refresh(tier)
        logger.info("Updated %s: %s", MembershipTier.__name__, tier.id)
        return tier

    @staticmethod
    def deactivate(db: Session, tier_id: str, club_id: str) -> MembershipTier:
        tier = Tiers.get(db, tier_id, club_id)
        tier.is_active = False
        db.commit()
        db.refresh(tier)
        logger.info("Deactivated %s: %s", MembershipTier.__name__, tier.id)
        return tier

    @staticmethod
    def reorder(db: Session, club_id: str, tier_ids: list) -> list[MembershipTier]:
        club_uuid = coerce_uuid(club_id)
        wanted = [coerce_uuid(tier_id) for tier_id in tier_ids]
        if len(set(wanted)) != len(wanted):
            raise ValidationError("Tier ids must be unique")
        tiers = {
            tier.id: tier
            for tier in db.scalars(
                select(MembershipTier).where(
                    MembershipTier.club_id == club_uuid, MembershipTier.id.in_(wanted)
                )
            ).all()
        }
        unknown = [str(tier_id) for tier_id in wanted if tier_id not in tiers]
        if unknown:
            raise ValidationError(
                "Tiers do not belong to this club", {"tier_ids": unknown}
            )
        for position, tier_id in enumerate(wanted, start=1):
            tiers[tier_id].sort_order = position
        db.commit()
        logger.info("Reordered %d tiers for club %s", len(wanted), club_uuid)
        return Tiers.list(db, club_id)

    @staticmethod
    def stats(db: Session, club_id: str) -> list[dict]:
        stmt = (
            select(
                MembershipTier.id,
                MembershipTier.name,
                func.count(Subscription.id),
                func.coalesce(func.sum(Subscription.amount), 0),
            )
            .outerjoin(
                Subscription,
                (Subscription.tier_id == MembershipTier.id)
                & (Subscription.status == SubscriptionStatus.active),
            )
            .where(MembershipTier.club_id == coerce_uuid(club_id))
            .group_by(MembershipTier.id, MembershipTier.name, MembershipTier.sort_order)
            .order_by(MembershipTier.sort_order.asc())
        )
        return [
            {
                "tier_id": tier_id,
                "name": name,
                "active_subscriptions": count,
                "recurring_revenue": Decimal(str(revenue)).quantize(Decimal("0.01")),
            }
            for tier_id, name, count, revenue in db.execute(stmt).all()
        ]


tiers = Tiers()
