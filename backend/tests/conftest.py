import os
import random
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="durak-tests-")
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{_DB_DIR}/app.db"
os.environ.setdefault("ORIGIN", "http://localhost:5173")
os.environ["TURN_TIMEOUT_SEC"] = "3600"
os.environ["HOUSEKEEPING_INTERVAL_SEC"] = "3600"

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

import durak.models  # noqa: F401
from durak.database import Base
from durak.services.presence import PresenceRegistry
from durak.services.store import RoomStore
from game import DurakEngine, RulesConfig
from models import Card, Trump


class FakeConnection:
    _counter = 0

    def __init__(self, name: str = "conn"):
        FakeConnection._counter += 1
        self.id = f"{name}-{FakeConnection._counter}"
        self.alive = True
        self.messages = []
        self.closed_with = None

    async def send_json(self, message):
        if not self.alive:
            raise RuntimeError("closed")
        self.messages.append(message)

    async def close(self, code: int = 1000, reason=None):
        self.alive = False
        self.closed_with = (code, reason)

    def of_type(self, kind: str):
        return [m["payload"] for m in self.messages if m["type"] == kind]

    def errors(self):
        return [m["error"] for m in self.messages if m["type"] == "error"]

    def last(self, kind: str):
        found = self.of_type(kind)
        return found[-1] if found else None


def card(label: str) -> Card:
    """``card("10♠")`` / ``card("Q♥")``"""
    return Card.model_validate({"rank": label[:-1], "suit": label[-1]})


def cards(*labels: str):
    return [card(label) for label in labels]


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path}/rooms.db")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield async_sessionmaker(engine, expire_on_commit=False)
    await engine.dispose()


@pytest_asyncio.fixture
async def store(session_maker):
    return RoomStore(session_maker, rng=random.Random(3))


@pytest.fixture
def presence():
    return PresenceRegistry()


@pytest.fixture
def rules():
    return RulesConfig(turn_timeout_sec=3600)


@pytest_asyncio.fixture
async def engine(store, presence, rules):
    eng = DurakEngine(store, presence, rules=rules, rng=random.Random(7))
    yield eng
    eng.timers.cancel_all()


async def seat_players(engine, names):
    """Create a room for the first name and join the rest; returns (room_id, {name: conn})."""
    conns = {name: FakeConnection(name) for name in names}
    host = names[0]
    room = await engine.create_room(host, f"id-{host}", "en", conns[host])
    for name in names[1:]:
        await engine.join_room(room.room_id, name, f"id-{name}", "en", conns[name])
    return room.room_id, conns


async def start_game(engine, names):
    room_id, conns = await seat_players(engine, names)
    for name in names:
        await engine.set_ready(room_id, f"id-{name}")
    return room_id, conns


async def rig(engine, room_id, hands, deck=(), trump="♣", attacker=None, defender=None):
    """Overwrite a running game with a known position."""
    room = await engine.store.get_room(room_id)
    for player in room.players:
        player.hand = list(hands.get(player.name, []))
    room.deck = list(deck)
    room.table = []
    room.discard = []
    room.trump = Trump(card=Card(rank=6, suit=trump), suit=trump)
    room.current_attacker = f"id-{attacker}" if attacker else room.current_attacker
    room.current_defender = f"id-{defender}" if defender else room.current_defender
    await engine.store.save_room(room)
    return room


def total_cards(room) -> int:
    return (
        sum(len(p.hand) for p in room.players)
        + len(room.deck)
        + len(room.table_cards())
        + len(room.discard)
    )
