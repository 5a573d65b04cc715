from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy.orm import Session

from clubpay.api.deps import get_db
from clubpay.schemas.billing import (
    TierCreate,
    TierRead,
    TierReorder,
    TierStats,
    TierUpdate,
)
from clubpay.services.billing import tiers as tier_service

router = APIRouter(prefix="/clubs/{club_id}/tiers", tags=["tiers"])


@router.post("", response_model=TierRead, status_code=status.HTTP_201_CREATED)
def create_tier(club_id: UUID, payload: TierCreate, db: Session = Depends(get_db)):
    return tier_service.create(db, club_id, payload)


@router.get("", response_model=list[TierRead])
def list_tiers(club_id: UUID, active_only: bool = False, db: Session = Depends(get_db)):
    return tier_service.list(db, club_id, active_only)


@router.get("/stats", response_model=list[TierStats])
def tier_stats(club_id: UUID, db: Session = Depends(get_db)):
    return tier_service.stats(db, club_id)


@router.post("/reorder", response_model=list[TierRead])
def reorder_tiers(club_id: UUID, payload: TierReorder, db: Session = Depends(get_db)):
    return tier_service.reorder(db, club_id, payload.tier_ids)


@router.get("/{tier_id}", response_model=TierRead)
def get_tier(club_id: UUID, tier_id: UUID, db: Session = Depends(get_db)):
    return tier_service.get(db, tier_id, club_id)


@router.patch("/{tier_id}", response_model=TierRead)
def update_tier(
    club_id: UUID, tier_id: UUID, payload: TierUpdate, db: Session = Depends(get_db)
):
    return tier_service.update(db, tier_id, club_id, payload)


@router.delete("/{tier_id}", response_model=TierRead)
def deactivate_tier(club_id: UUID, tier_id: UUID, db: Session = Depends(get_db)):
    return tier_service.deactivate(db, tier_id, club_id)
