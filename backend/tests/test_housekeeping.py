from datetime import datetime, timedelta

import pytest

from conftest import seat_players, start_game
from durak.services.housekeeping import prune_stale_sessions, sweep_stale_rooms


@pytest.mark.asyncio
async def test_sweep_removes_idle_rooms(engine):
    room_id, conns = await start_game(engine, ["Ann", "Bob"])

    assert await sweep_stale_rooms(engine, timedelta(hours=1)) == []

    later = datetime.utcnow() + timedelta(hours=2)
    assert await sweep_stale_rooms(engine, timedelta(hours=1), now=later) == [room_id]
    assert await engine.store.get_room(room_id) is None
    assert engine.timers.generation(room_id) is None
    assert conns["Bob"].of_type("roomDeleted") == [{"roomId": room_id, "reason": "expired"}]


@pytest.mark.asyncio
async def test_prune_marks_dead_sessions_disconnected(engine):
    room_id, conns = await seat_players(engine, ["Ann", "Bob"])
    conns["Bob"].alive = False

    assert await prune_stale_sessions(engine) == ["id-Bob"]

    room = await engine.store.get_room(room_id)
    assert room.player("id-Bob").disconnected
    assert not room.player("id-Ann").disconnected
    assert await prune_stale_sessions(engine) == []
