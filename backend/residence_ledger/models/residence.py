"""Residence and room models (read for pricing, written for occupancy)."""

import enum
import uuid
from decimal import Decimal

from sqlalchemy import String, Integer, Numeric, Enum, ForeignKey, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from residence_ledger.database import Base


class RoomStatus(str, enum.Enum):
    AVAILABLE = "available"
    RESERVED = "reserved"
    OCCUPIED = "occupied"
    MAINTENANCE = "maintenance"


class Residence(Base):
    __tablename__ = "residences"

    id: Mapped[str] = mapped_column(
        String(36), primary_key=True, default=lambda: uuid.uuid4().hex
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)

    rooms = relationship("Room", back_populates="residence", cascade="all, delete-orphan")


class Room(Base):
    __tablename__ = "rooms"
    __table_args__ = (
        UniqueConstraint("residence_id", "room_number", name="uq_room_number"),
        CheckConstraint("current_occupancy >= 0", name="ck_room_occupancy_non_negative"),
    )

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    residence_id: Mapped[str] = mapped_column(
        ForeignKey("residences.id", ondelete="CASCADE"), nullable=False
    )
    room_number: Mapped[str] = mapped_column(String(50), nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    current_occupancy: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    price: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[RoomStatus] = mapped_column(
        Enum(RoomStatus), default=RoomStatus.AVAILABLE, nullable=False
    )

    residence = relationship("Residence", back_populates="rooms")
