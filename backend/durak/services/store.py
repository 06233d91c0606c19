from __future__ import annotations

import asyncio
import logging
import random
import weakref
from datetime import datetime, timedelta
from typing import Any, List, Optional

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm import selectinload

from durak.errors import GameError, RoomNotFound
from durak.models import PlayerRow, RoomRow
from models import Card, Player, Room, TablePair, Trump

logger = logging.getLogger(__name__)

ROOM_CODE_ATTEMPTS = 100


def _dump_cards(cards: List[Card]) -> List[dict]:
    return [card.model_dump() for card in cards]


def _load_cards(raw: Optional[list]) -> List[Card]:
    return [Card.model_validate(item) for item in raw or []]


def room_from_row(row: RoomRow) -> Room:
    return Room(
        room_id=row.room_id,
        trump=Trump.model_validate(row.trump) if row.trump else None,
        deck=_load_cards(row.deck),
        table=[TablePair.model_validate(item) for item in row.game_table or []],
        discard=_load_cards(row.discard),
        current_attacker=row.current_attacker,
        current_defender=row.current_defender,
        created_at=row.created_at,
        last_activity_at=row.last_activity_at,
        game_ended=row.game_ended,
        players=[
            Player(
                player_id=p.player_id,
                name=p.name,
                hand=_load_cards(p.hand),
                ready=p.ready,
                disconnected=p.is_disconnected,
                last_disconnected_at=p.last_disconnected_at,
                language=p.language,
                seat=p.seat,
                joined_at=p.joined_at,
            )
            for p in sorted(row.players, key=lambda p: p.seat)
        ],
    )


def _apply_player(row: PlayerRow, player: Player) -> None:
    row.name = player.name
    row.seat = player.seat
    row.ready = player.ready
    row.hand = _dump_cards(player.hand)
    row.joined_at = player.joined_at
    row.is_disconnected = player.disconnected
    row.last_disconnected_at = player.last_disconnected_at
    row.language = player.language


class RoomStore:
    """Durable room records plus the per-room lock every mutation runs under."""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession], rng: Optional[random.Random] = None):
        self._session_maker = session_maker
        self._rng = rng or random.Random()
        self._locks: weakref.WeakValueDictionary[str, asyncio.Lock] = weakref.WeakValueDictionary()
        self._create_lock = asyncio.Lock()

    def lock(self, room_id: str) -> asyncio.Lock:
        """Per-room lock; it lives only while some task holds or awaits it."""
        lock = self._locks.get(room_id)
        if lock is None:
            lock = self._locks[room_id] = asyncio.Lock()
        return lock

    async def create_room(self) -> str:
        async with self._create_lock:
            async with self._session_maker() as session:
                for _ in range(ROOM_CODE_ATTEMPTS):
                    code = str(self._rng.randint(1000, 9999))
                    if await session.get(RoomRow, code) is None:
                        break
                    logger.debug("Room code %s is taken, retrying", code)
                else:
                    raise GameError("no_free_room_codes")
                now = datetime.utcnow()
                session.add(
                    RoomRow(
                        room_id=code,
                        deck=[],
                        game_table=[],
                        discard=[],
                        created_at=now,
                        last_activity_at=now,
                        game_ended=False,
                    )
                )
                await session.commit()
        logger.info("Generated room code %s", code)
        return code

    async def get_room(self, room_id: str) -> Optional[Room]:
        async with self._session_maker() as session:
            row = await self._load(session, room_id)
            return room_from_row(row) if row is not None else None

    async def save_room(self, room: Room) -> None:
        async with self._session_maker() as session:
            row = await self._load(session, room.room_id)
            if row is None:
                raise RoomNotFound(room.room_id)
            row.trump = room.trump.model_dump() if room.trump else None
            row.deck = _dump_cards(room.deck)
            row.game_table = [pair.model_dump() for pair in room.table]
            row.discard = _dump_cards(room.discard)
            row.current_attacker = room.current_attacker
            row.current_defender = room.current_defender
            row.last_activity_at = room.last_activity_at
            row.game_ended = room.game_ended
            row.active_players = len(room.connected_players())

            existing = {p.player_id: p for p in row.players}
            for player in room.players:
                player_row = existing.pop(player.player_id, None)
                if player_row is None:
                    player_row = PlayerRow(player_id=player.player_id, room_id=room.room_id)
                    row.players.append(player_row)
                _apply_player(player_row, player)
            for stale in existing.values():
                row.players.remove(stale)
            await session.commit()

    async def update_room(self, room_id: str, **changes: Any) -> None:
        async with self._session_maker() as session:
            result = await session.execute(
                update(RoomRow).where(RoomRow.room_id == room_id).values(**changes)
            )
            if result.rowcount == 0:
                raise RoomNotFound(room_id)
            await session.commit()

    async def delete_room(self, room_id: str) -> None:
        async with self._session_maker() as session:
            await session.execute(delete(PlayerRow).where(PlayerRow.room_id == room_id))
            await session.execute(delete(RoomRow).where(RoomRow.room_id == room_id))
            await session.commit()
        self._locks.pop(room_id, None)
        logger.info("Room %s deleted", room_id)

    async def list_stale_rooms(self, idle_after: timedelta, now: Optional[datetime] = None) -> List[str]:
        cutoff = (now or datetime.utcnow()) - idle_after
        async with self._session_maker() as session:
            result = await session.execute(
                select(RoomRow.room_id).where(
                    RoomRow.last_activity_at < cutoff,
                    RoomRow.game_ended.is_(False),
                )
            )
            return list(result.scalars().all())

    async def find_player_room(self, player_id: str) -> Optional[str]:
        async with self._session_maker() as session:
            result = await session.execute(
                select(PlayerRow.room_id).where(PlayerRow.player_id == player_id)
            )
            return result.scalar_one_or_none()

    async def _load(self, session: AsyncSession, room_id: str) -> Optional[RoomRow]:
        result = await session.execute(
            select(RoomRow).options(selectinload(RoomRow.players)).where(RoomRow.room_id == room_id)
        )
        return result.scalar_one_or_none()
