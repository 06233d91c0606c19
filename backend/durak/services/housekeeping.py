from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy.exc import SQLAlchemyError

from durak.errors import GameError

logger = logging.getLogger(__name__)


async def sweep_stale_rooms(engine, idle_after: timedelta, now: Optional[datetime] = None) -> List[str]:
    """Delete rooms with no activity for ``idle_after``; returns their ids."""
    removed = []
    for room_id in await engine.store.list_stale_rooms(idle_after, now=now):
        if await engine.expire_room(room_id):
            removed.append(room_id)
    if removed:
        logger.info("Swept %s stale room(s): %s", len(removed), ", ".join(removed))
    return removed


async def prune_stale_sessions(engine) -> List[str]:
    """Mark players whose every connection died as disconnected."""
    gone = engine.presence.prune_dead()
    for player_id in gone:
        room_id = await engine.store.find_player_room(player_id)
        if room_id is None:
            continue
        try:
            await engine.mark_disconnected(room_id, player_id)
        except GameError as exc:
            logger.info("Skipping stale session %s: %s", player_id, exc.code)
    return gone


async def run_housekeeping(engine, interval: float, idle_after: timedelta) -> None:
    logger.info("Housekeeping every %ss, rooms expire after %s", interval, idle_after)
    while True:
        await asyncio.sleep(interval)
        try:
            await prune_stale_sessions(engine)
            await sweep_stale_rooms(engine, idle_after)
        except SQLAlchemyError:
            logger.exception("Housekeeping pass failed")
