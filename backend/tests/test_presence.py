import pytest

from conftest import FakeConnection
from durak.services.presence import TAKEOVER_CLOSE_CODE, PresenceRegistry


@pytest.mark.asyncio
async def test_attach_evicts_previous_handle():
    registry = PresenceRegistry()
    old, new = FakeConnection("old"), FakeConnection("new")
    await registry.attach("p1", old)
    await registry.attach("p1", new)

    assert old.errors() == ["session_taken_over"]
    assert old.closed_with == (TAKEOVER_CLOSE_CODE, "session_taken_over")
    assert registry.owner_of(old) is None
    assert registry.owner_of(new) == "p1"
    assert registry.handles("p1") == [new]


@pytest.mark.asyncio
async def test_detach_reports_last_handle():
    registry = PresenceRegistry()
    conn = FakeConnection()
    await registry.attach("p1", conn)
    assert registry.disconnected_at("p1") is None

    assert registry.detach("p1", conn) is True
    assert not registry.has_live("p1")
    assert registry.disconnected_at("p1") is not None


@pytest.mark.asyncio
async def test_broadcast_skips_dead_handles():
    registry = PresenceRegistry()
    conn = FakeConnection()
    await registry.attach("p1", conn)
    conn.alive = False

    await registry.broadcast_to("p1", {"type": "ping", "payload": {}})
    assert conn.messages == []
    assert registry.prune_dead() == ["p1"]
    assert registry.prune_dead() == []


@pytest.mark.asyncio
async def test_forget_drops_everything():
    registry = PresenceRegistry()
    conn = FakeConnection()
    await registry.attach("p1", conn)
    registry.forget("p1")
    assert registry.owner_of(conn) is None
    assert not registry.has_live("p1")
