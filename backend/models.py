from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

Suit = Literal["♠", "♥", "♦", "♣"]

RANK_LABELS: Dict[int, str] = {
    6: "6",
    7: "7",
    8: "8",
    9: "9",
    10: "10",
    11: "J",
    12: "Q",
    13: "K",
    14: "A",
}

# accepted spellings from clients: "J", "Jack", "10", 10 ...
RANK_ALIASES: Dict[str, int] = {
    **{label.lower(): rank for rank, label in RANK_LABELS.items()},
    "jack": 11,
    "queen": 12,
    "king": 13,
    "ace": 14,
}

SUIT_ALIASES: Dict[str, Suit] = {
    "spades": "♠",
    "hearts": "♥",
    "diamonds": "♦",
    "clubs": "♣",
    "s": "♠",
    "h": "♥",
    "d": "♦",
    "c": "♣",
}


class Card(BaseModel):
    rank: int = Field(ge=6, le=14)  # 6..14 (11=J,12=Q,13=K,14=A)
    suit: Suit

    model_config = ConfigDict(frozen=True)

    @model_validator(mode="before")
    @classmethod
    def normalize(cls, value):
        if isinstance(value, dict):
            rank = value.get("rank")
            suit = value.get("suit")
            if isinstance(rank, str):
                value = {**value, "rank": RANK_ALIASES.get(rank.strip().lower(), rank)}
            if isinstance(suit, str) and suit.strip().lower() in SUIT_ALIASES:
                value = {**value, "suit": SUIT_ALIASES[suit.strip().lower()]}
        return value

    def __str__(self) -> str:
        return f"{RANK_LABELS[self.rank]}{self.suit}"


class Trump(BaseModel):
    card: Card
    suit: Suit


class TablePair(BaseModel):
    attack: Card
    defense: Optional[Card] = None

    @property
    def is_open(self) -> bool:
        return self.defense is None

    def cards(self) -> List[Card]:
        return [self.attack] if self.defense is None else [self.attack, self.defense]


class Player(BaseModel):
    player_id: str = Field(alias="playerId")
    name: str
    hand: List[Card] = Field(default_factory=list)
    ready: bool = False
    disconnected: bool = Field(default=False, alias="isDisconnected")
    last_disconnected_at: Optional[datetime] = Field(default=None, alias="lastDisconnectedAt")
    language: str = "en"
    seat: int = 0
    joined_at: datetime = Field(default_factory=datetime.utcnow, alias="joinedAt")

    model_config = ConfigDict(populate_by_name=True)


class Room(BaseModel):
    room_id: str = Field(alias="roomId")
    trump: Optional[Trump] = None
    deck: List[Card] = Field(default_factory=list)
    table: List[TablePair] = Field(default_factory=list)
    discard: List[Card] = Field(default_factory=list)
    current_attacker: Optional[str] = Field(default=None, alias="currentAttacker")
    current_defender: Optional[str] = Field(default=None, alias="currentDefender")
    created_at: datetime = Field(default_factory=datetime.utcnow, alias="createdAt")
    last_activity_at: datetime = Field(default_factory=datetime.utcnow, alias="lastActivityAt")
    game_ended: bool = Field(default=False, alias="gameEnded")
    players: List[Player] = Field(default_factory=list)

    model_config = ConfigDict(populate_by_name=True)

    @property
    def phase(self) -> Literal["lobby", "active", "ended"]:
        if self.game_ended:
            return "ended"
        return "lobby" if self.trump is None else "active"

    def player(self, player_id: Optional[str]) -> Optional[Player]:
        return next((p for p in self.players if p.player_id == player_id), None)

    def connected_players(self) -> List[Player]:
        return [p for p in self.players if not p.disconnected]

    def first_open_pair(self) -> Optional[TablePair]:
        return next((pair for pair in self.table if pair.is_open), None)

    def table_cards(self) -> List[Card]:
        return [card for pair in self.table for card in pair.cards()]


# ---------- projections sent to clients ----------

class PlayerSummary(BaseModel):
    player_id: str = Field(alias="playerId")
    name: str
    ready: bool
    is_disconnected: bool = Field(alias="isDisconnected")
    language: str

    model_config = ConfigDict(populate_by_name=True)


class RoomState(BaseModel):
    players: List[PlayerSummary]
    ready_count: int = Field(alias="readyCount")
    total_count: int = Field(alias="totalCount")

    model_config = ConfigDict(populate_by_name=True)


class GamePlayer(BaseModel):
    id: str
    name: str
    hand: Optional[List[Card]] = None
    hand_size: int = Field(alias="handSize")
    is_disconnected: bool = Field(alias="isDisconnected")
    language: str = "en"

    model_config = ConfigDict(populate_by_name=True)


class GameState(BaseModel):
    players: List[GamePlayer]
    trump: Optional[Trump]
    deck_count: int = Field(alias="deckCount")
    discard_count: int = Field(default=0, alias="discardCount")
    table: List[TablePair] = Field(default_factory=list)
    current_attacker: Optional[str] = Field(default=None, alias="currentAttacker")
    current_defender: Optional[str] = Field(default=None, alias="currentDefender")
    can_take_cards: bool = Field(default=False, alias="canTakeCards")
    turn_deadline_ts: Optional[float] = Field(default=None, alias="turnDeadlineTs")

    model_config = ConfigDict(populate_by_name=True)


class RoomSnapshot(BaseModel):
    """Polling view: lobby fields plus the public game fields."""

    room_id: str = Field(alias="roomId")
    phase: Literal["lobby", "active", "ended"]
    players: List[GamePlayer]
    ready_count: int = Field(alias="readyCount")
    total_count: int = Field(alias="totalCount")
    trump: Optional[Trump] = None
    deck_count: int = Field(alias="deckCount")
    table: List[TablePair] = Field(default_factory=list)
    current_attacker: Optional[str] = Field(default=None, alias="currentAttacker")
    current_defender: Optional[str] = Field(default=None, alias="currentDefender")
    can_take_cards: bool = Field(default=False, alias="canTakeCards")

    model_config = ConfigDict(populate_by_name=True)


def make_event(kind: str, payload: Any = None) -> Dict[str, Any]:
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(by_alias=True, mode="json")
    return {"type": kind, "payload": payload if payload is not None else {}}


def make_error(code: str) -> Dict[str, Any]:
    return {"type": "error", "error": code}
