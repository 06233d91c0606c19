from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from sqlalchemy import JSON, Boolean, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import Mapped, mapped_column, relationship

from durak.database import Base


class RoomRow(Base):
    __tablename__ = "rooms"

    room_id: Mapped[str] = mapped_column(String(8), primary_key=True)
    trump: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    deck: Mapped[list] = mapped_column(JSON, default=list)
    game_table: Mapped[list] = mapped_column(JSON, default=list)
    discard: Mapped[list] = mapped_column(JSON, default=list)
    current_attacker: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    current_defender: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    last_activity_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow, index=True)
    active_players: Mapped[int] = mapped_column(Integer, default=0)
    game_ended: Mapped[bool] = mapped_column(Boolean, default=False)

    players: Mapped[List["PlayerRow"]] = relationship(
        back_populates="room",
        cascade="all, delete-orphan",
        order_by="PlayerRow.seat",
        lazy="selectin",
    )


class PlayerRow(Base):
    __tablename__ = "players"

    player_id: Mapped[str] = mapped_column(String(50), primary_key=True)
    room_id: Mapped[str] = mapped_column(ForeignKey("rooms.room_id", ondelete="CASCADE"), index=True)
    name: Mapped[str] = mapped_column(String(50), nullable=False)
    seat: Mapped[int] = mapped_column(Integer, default=0)
    ready: Mapped[bool] = mapped_column(Boolean, default=False)
    hand: Mapped[list] = mapped_column(JSON, default=list)
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=datetime.utcnow)
    is_disconnected: Mapped[bool] = mapped_column(Boolean, default=False)
    last_disconnected_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    language: Mapped[str] = mapped_column(String(8), default="en")

    room: Mapped[RoomRow] = relationship(back_populates="players")
