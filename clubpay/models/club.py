import uuid

from sqlalchemy import UniqueConstraint
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from clubpay.db import Base, TimestampMixin


class UserChild(TimestampMixin, Base):
    """Parent/child link from the club roster, used to authorise payers."""

    __tablename__ = "user_children"
    __table_args__ = (
        UniqueConstraint(
            "parent_user_id", "child_user_id", "club_id", name="uq_user_children_link"
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    parent_user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    child_user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    club_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
