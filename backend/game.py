from __future__ import annotations

import asyncio
import logging
import random
import time
import uuid
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Union

from sqlalchemy.exc import SQLAlchemyError

from cards import is_legal_attack, is_legal_defense, lowest_trump_holder, new_shuffled_deck, select_trump
from durak.errors import GameError, PlayerNotFound, RoomNotFound
from durak.services.presence import Connection, PresenceRegistry, send_safely
from durak.services.store import RoomStore
from models import (
    Card,
    GamePlayer,
    GameState,
    Player,
    PlayerSummary,
    Room,
    RoomSnapshot,
    RoomState,
    TablePair,
    make_event,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Attack:
    card: Card


@dataclass(frozen=True)
class Defend:
    card: Card


Play = Union[Attack, Defend]


@dataclass
class RulesConfig:
    hand_size: int = 6
    max_table_cards: int = 12
    max_players: int = 6
    turn_timeout_sec: float = 30
    failed_defense_skips: bool = True

    @classmethod
    def from_settings(cls, settings) -> "RulesConfig":
        return cls(
            hand_size=settings.hand_size,
            max_table_cards=settings.max_table_cards,
            max_players=settings.max_players,
            turn_timeout_sec=settings.turn_timeout_sec,
            failed_defense_skips=settings.failed_defense_skips,
        )


def new_player_id() -> str:
    return uuid.uuid4().hex


TimeoutCallback = Callable[[str, int], Awaitable[None]]


class TurnTimers:
    """One cancelable turn timer per room.

    Every start or cancel bumps the room's generation; a timer that wakes up
    with an outdated generation does nothing.
    """

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}
        self._generations: Dict[str, int] = {}
        self._deadlines: Dict[str, float] = {}

    def start(self, room_id: str, delay: float, callback: TimeoutCallback) -> int:
        self.cancel(room_id)
        generation = self._generations[room_id]
        self._deadlines[room_id] = time.time() + delay
        self._tasks[room_id] = asyncio.create_task(self._run(room_id, generation, delay, callback))
        return generation

    def cancel(self, room_id: str) -> None:
        self._generations[room_id] = self._generations.get(room_id, 0) + 1
        self._deadlines.pop(room_id, None)
        task = self._tasks.pop(room_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()

    def discard(self, room_id: str) -> None:
        self.cancel(room_id)
        self._generations.pop(room_id, None)

    def cancel_all(self) -> None:
        for room_id in list(self._tasks):
            self.discard(room_id)

    def generation(self, room_id: str) -> Optional[int]:
        return self._generations.get(room_id)

    def is_current(self, room_id: str, generation: int) -> bool:
        return self._generations.get(room_id) == generation

    def deadline(self, room_id: str) -> Optional[float]:
        return self._deadlines.get(room_id)

    async def _run(self, room_id: str, generation: int, delay: float, callback: TimeoutCallback) -> None:
        await asyncio.sleep(delay)
        if not self.is_current(room_id, generation):
            return
        if self._tasks.get(room_id) is asyncio.current_task():
            self._tasks.pop(room_id, None)
        await callback(room_id, generation)


class DurakEngine:
    def __init__(
        self,
        store: RoomStore,
        presence: PresenceRegistry,
        rules: Optional[RulesConfig] = None,
        rng: Optional[random.Random] = None,
        timers: Optional[TurnTimers] = None,
    ):
        self.store = store
        self.presence = presence
        self.rules = rules or RulesConfig()
        self.rng = rng or random.Random()
        self.timers = timers or TurnTimers()

    # ------------------------------------------------------------------
    # Projections
    # ------------------------------------------------------------------
    def room_state(self, room: Room) -> RoomState:
        return RoomState(
            players=[
                PlayerSummary(
                    player_id=p.player_id,
                    name=p.name,
                    ready=p.ready,
                    is_disconnected=p.disconnected,
                    language=p.language,
                )
                for p in room.players
            ],
            ready_count=sum(1 for p in room.players if p.ready),
            total_count=len(room.players),
        )

    def _game_players(self, room: Room, viewer_id: Optional[str]) -> List[GamePlayer]:
        return [
            GamePlayer(
                id=p.player_id,
                name=p.name,
                hand=list(p.hand) if p.player_id == viewer_id else None,
                hand_size=len(p.hand),
                is_disconnected=p.disconnected,
                language=p.language,
            )
            for p in room.players
        ]

    def game_state(self, room: Room, viewer_id: Optional[str]) -> GameState:
        return GameState(
            players=self._game_players(room, viewer_id),
            trump=room.trump,
            deck_count=len(room.deck),
            discard_count=len(room.discard),
            table=list(room.table),
            current_attacker=room.current_attacker,
            current_defender=room.current_defender,
            can_take_cards=room.first_open_pair() is not None,
            turn_deadline_ts=self.timers.deadline(room.room_id),
        )

    def snapshot(self, room: Room, viewer_id: Optional[str] = None) -> RoomSnapshot:
        return RoomSnapshot(
            room_id=room.room_id,
            phase=room.phase,
            players=self._game_players(room, viewer_id),
            ready_count=sum(1 for p in room.players if p.ready),
            total_count=len(room.players),
            trump=room.trump,
            deck_count=len(room.deck),
            table=list(room.table),
            current_attacker=room.current_attacker,
            current_defender=room.current_defender,
            can_take_cards=room.first_open_pair() is not None,
        )

    async def _broadcast(self, room: Room, event: dict) -> None:
        for player in room.players:
            await self.presence.broadcast_to(player.player_id, event)

    async def _send_status(self, room: Room, player: Player) -> None:
        await self._broadcast(
            room,
            make_event(
                "playerStatus",
                {"playerId": player.player_id, "ready": player.ready, "isDisconnected": player.disconnected},
            ),
        )

    async def publish_room_state(self, room: Room) -> None:
        await self._broadcast(room, make_event("updateRoom", self.room_state(room)))
        for player in room.players:
            await self._send_status(room, player)

    async def publish_game_state(self, room: Room) -> None:
        for player in room.players:
            state = self.game_state(room, player.player_id)
            await self.presence.broadcast_to(player.player_id, make_event("updateGame", state))

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    @asynccontextmanager
    async def _room(self, room_id: str) -> AsyncIterator[Room]:
        async with self.store.lock(room_id):
            room = await self.store.get_room(room_id)
            if room is not None and not room.game_ended:
                yield room
                return
        raise RoomNotFound(room_id)

    @staticmethod
    def _require_player(room: Room, player_id: str) -> Player:
        player = room.player(player_id)
        if player is None:
            raise PlayerNotFound(player_id)
        return player

    def _require_connected(self, room: Room, player_id: str) -> Player:
        player = self._require_player(room, player_id)
        if player.disconnected:
            raise GameError("player_disconnected")
        return player

    @staticmethod
    def _require_active(room: Room) -> None:
        if room.trump is None:
            raise GameError("game_not_active")

    @staticmethod
    def _seat_after(room: Room, player_id: Optional[str]) -> Optional[str]:
        seating = room.players
        if not seating:
            return None
        start = next((i for i, p in enumerate(seating) if p.player_id == player_id), -1)
        for offset in range(1, len(seating) + 1):
            candidate = seating[(start + offset) % len(seating)]
            if not candidate.disconnected:
                return candidate.player_id
        return None

    def _draw(self, room: Room, player_ids: Iterable[Optional[str]]) -> None:
        seen = set()
        for player_id in player_ids:
            if player_id is None or player_id in seen:
                continue
            seen.add(player_id)
            player = room.player(player_id)
            if player is None or player.disconnected:
                continue
            while len(player.hand) < self.rules.hand_size and room.deck:
                player.hand.append(room.deck.pop(0))

    @staticmethod
    def _winners(room: Room) -> Optional[List[Player]]:
        """None while the game goes on, otherwise the (possibly empty) list of winners."""
        if room.trump is None or room.game_ended:
            return None
        connected = room.connected_players()
        if len(connected) < 2:
            return connected
        if not room.deck:
            empty_handed = [p for p in connected if not p.hand]
            if empty_handed:
                return empty_handed
        return None

    async def _commit_game(self, room: Room, *, restart_timer: bool = True) -> bool:
        """Persist an active room, then either end the game or keep it going.

        Returns True when the game ended and the room is gone.
        """
        room.last_activity_at = datetime.utcnow()
        await self.store.save_room(room)
        winners = self._winners(room)
        if winners is not None:
            await self.publish_game_state(room)
            await self._end_game(room, winners)
            return True
        if restart_timer:
            self.timers.start(room.room_id, self.rules.turn_timeout_sec, self.handle_turn_timeout)
        await self.publish_game_state(room)
        if restart_timer:
            await self._broadcast(
                room, make_event("startTimer", {"duration": int(self.rules.turn_timeout_sec * 1000)})
            )
        return False

    async def _end_game(self, room: Room, winners: List[Player]) -> None:
        room.game_ended = True
        self.timers.discard(room.room_id)
        await self.store.update_room(room.room_id, game_ended=True)
        logger.info(
            "Game over in room %s, winners: %s",
            room.room_id,
            ", ".join(p.name for p in winners) or "none",
        )
        await self._broadcast(
            room,
            make_event(
                "gameOver",
                {"winners": [p.name for p in winners], "winnerIds": [p.player_id for p in winners]},
            ),
        )
        await self._teardown(room, "game_over")

    async def _teardown(self, room: Room, reason: str) -> None:
        self.timers.discard(room.room_id)
        await self.store.delete_room(room.room_id)
        await self._broadcast(room, make_event("roomDeleted", {"roomId": room.room_id, "reason": reason}))
        for player in room.players:
            self.presence.forget(player.player_id)

    # ------------------------------------------------------------------
    # Lobby
    # ------------------------------------------------------------------
    async def create_room(self, name: str, player_id: str, language: str, conn: Connection) -> Room:
        if await self.store.find_player_room(player_id) is not None:
            player_id = new_player_id()
            await send_safely(conn, make_event("setPlayerId", {"playerId": player_id}))
            logger.info("Player id already seated elsewhere, issued %s", player_id)
        room_id = await self.store.create_room()
        async with self._room(room_id) as room:
            player = Player(player_id=player_id, name=name, language=language, seat=0)
            room.players.append(player)
            room.last_activity_at = datetime.utcnow()
            await self.store.save_room(room)
            logger.info("Room %s created by %s (%s)", room_id, name, player_id)

            await self.presence.attach(player_id, conn)
            payload = {"roomId": room_id, "playerId": player_id, "language": language, "playerName": name}
            await send_safely(conn, make_event("roomCreated", payload))
            await send_safely(conn, make_event("roomJoined", payload))
            await self.publish_room_state(room)
            return room

    async def join_room(self, room_id: str, name: str, player_id: str, language: str, conn: Connection) -> Player:
        async with self._room(room_id) as room:
            player = room.player(player_id)
            if player is not None:
                if player.name != name:
                    raise GameError("name_mismatch")
                await self._resume_player(room, player, conn, language=language)
                return player

            if room.trump is not None:
                raise GameError("game_in_progress")
            rival = next((p for p in room.players if p.name == name), None)
            if rival is not None and not rival.disconnected and self.presence.has_live(rival.player_id):
                raise GameError("name_taken")
            if len([p for p in room.players if p.name != name]) >= self.rules.max_players:
                raise GameError("room_full")

            if await self.store.find_player_room(player_id) is not None:
                player_id = new_player_id()
                await send_safely(conn, make_event("setPlayerId", {"playerId": player_id}))
            for stale in [p for p in room.players if p.name == name]:
                logger.info("Removing stale seat %s for %s in room %s", stale.player_id, name, room_id)
                room.players.remove(stale)
                self.presence.forget(stale.player_id)

            seat = max((p.seat for p in room.players), default=-1) + 1
            player = Player(player_id=player_id, name=name, language=language, seat=seat)
            room.players.append(player)
            room.last_activity_at = datetime.utcnow()
            await self.store.save_room(room)
            logger.info("%s joined room %s as %s (seat %s)", name, room_id, player_id, seat)

            await self.presence.attach(player_id, conn)
            await send_safely(
                conn,
                make_event(
                    "roomJoined",
                    {"roomId": room_id, "playerId": player_id, "language": language, "playerName": name},
                ),
            )
            await self.publish_room_state(room)
            return player

    async def reconnect(self, room_id: str, player_id: str, name: str, conn: Connection) -> Player:
        async with self._room(room_id) as room:
            player = self._require_player(room, player_id)
            if player.name != name:
                raise GameError("name_mismatch")
            await self._resume_player(room, player, conn)
            return player

    async def _resume_player(
        self, room: Room, player: Player, conn: Connection, language: Optional[str] = None
    ) -> None:
        was_disconnected = player.disconnected
        if was_disconnected or (language and language != player.language):
            player.disconnected = False
            player.last_disconnected_at = None
            if language:
                player.language = language
            room.last_activity_at = datetime.utcnow()
            await self.store.save_room(room)

        await self.presence.attach(player.player_id, conn)
        await send_safely(
            conn,
            make_event(
                "roomJoined",
                {
                    "roomId": room.room_id,
                    "playerId": player.player_id,
                    "language": player.language,
                    "playerName": player.name,
                },
            ),
        )
        if was_disconnected:
            logger.info("%s reconnected to room %s", player.name, room.room_id)
            await self._broadcast(room, make_event("playerReconnected", {"playerName": player.name}))
        await self.publish_room_state(room)
        if room.trump is not None:
            winners = self._winners(room)
            if winners is not None:
                await self._end_game(room, winners)
            else:
                await self.publish_game_state(room)

    async def set_ready(self, room_id: str, player_id: str) -> None:
        async with self._room(room_id) as room:
            player = self._require_player(room, player_id)
            if player.ready:
                await self._send_status(room, player)
                return
            player.ready = True
            room.last_activity_at = datetime.utcnow()
            await self.store.save_room(room)
            connected = room.connected_players()
            logger.info(
                "Room %s: %s/%s ready",
                room_id,
                sum(1 for p in connected if p.ready),
                len(connected),
            )
            await self.publish_room_state(room)
            if self._can_start(room):
                await self._start_game(room)

    @staticmethod
    def _can_start(room: Room) -> bool:
        connected = room.connected_players()
        return room.trump is None and len(connected) >= 2 and all(p.ready for p in connected)

    async def _start_game(self, room: Room) -> None:
        connected = room.connected_players()
        for absent in [p for p in room.players if p.disconnected]:
            logger.info("Dropping absent seat %s from room %s at deal", absent.player_id, room.room_id)
            room.players.remove(absent)
            self.presence.forget(absent.player_id)
        deck = new_shuffled_deck(self.rng)
        trump, deck = select_trump(deck, self.rng)
        for player in connected:
            player.hand, deck = deck[: self.rules.hand_size], deck[self.rules.hand_size:]

        attacker = lowest_trump_holder(connected, trump.suit)
        if attacker is None:
            logger.info("No trumps dealt in room %s, first seat attacks", room.room_id)
            attacker = connected[0].player_id
        room.trump = trump
        room.deck = deck
        room.table = []
        room.discard = []
        room.current_attacker = attacker
        room.current_defender = self._seat_after(room, attacker)
        room.game_ended = False
        room.last_activity_at = datetime.utcnow()
        await self.store.save_room(room)
        logger.info(
            "Game started in room %s: trump %s, attacker %s, defender %s, deck %s",
            room.room_id,
            trump.card,
            room.current_attacker,
            room.current_defender,
            len(room.deck),
        )
        await self._broadcast(
            room,
            make_event(
                "startGame",
                {
                    "trump": trump.model_dump(mode="json"),
                    "currentAttacker": room.current_attacker,
                    "currentDefender": room.current_defender,
                },
            ),
        )
        self.timers.start(room.room_id, self.rules.turn_timeout_sec, self.handle_turn_timeout)
        await self.publish_game_state(room)
        await self._broadcast(
            room, make_event("startTimer", {"duration": int(self.rules.turn_timeout_sec * 1000)})
        )

    async def leave_room(self, room_id: str, player_id: str, conn: Connection) -> None:
        async with self._room(room_id) as room:
            player = self._require_player(room, player_id)
            if not self.presence.detach(player_id, conn):
                await self.publish_room_state(room)
                return
            if room.trump is not None:
                self._mark_disconnected(player)
                await self._commit_game(room, restart_timer=False)
                return
            room.players.remove(player)
            self.presence.forget(player_id)
            logger.info("%s left room %s", player.name, room_id)
            if not room.players:
                await self._teardown(room, "empty")
                return
            room.last_activity_at = datetime.utcnow()
            await self.store.save_room(room)
            await self.publish_room_state(room)

    async def mark_disconnected(self, room_id: str, player_id: str, conn: Optional[Connection] = None) -> None:
        """Leave-game, temporary disconnect and lost sockets all land here."""
        if conn is not None:
            self.presence.detach(player_id, conn)
        async with self._room(room_id) as room:
            player = self._require_player(room, player_id)
            if conn is None and self.presence.has_live(player_id):
                # a newer connection already took the seat back
                return
            self._mark_disconnected(player)
            logger.info("%s marked disconnected in room %s", player.name, room_id)
            if room.trump is not None:
                await self._commit_game(room, restart_timer=False)
                return
            room.last_activity_at = datetime.utcnow()
            await self.store.save_room(room)
            await self.publish_room_state(room)

    @staticmethod
    def _mark_disconnected(player: Player) -> None:
        if not player.disconnected:
            player.disconnected = True
            player.last_disconnected_at = datetime.utcnow()

    async def connection_lost(self, conn: Connection) -> None:
        player_id = self.presence.owner_of(conn)
        if player_id is None:
            return
        if not self.presence.detach(player_id, conn):
            return
        room_id = await self.store.find_player_room(player_id)
        if room_id is None:
            return
        try:
            await self.mark_disconnected(room_id, player_id)
        except GameError as exc:
            logger.info("Ignoring disconnect of %s: %s", player_id, exc.code)

    async def change_language(self, player_id: str, language: str) -> None:
        room_id = await self.store.find_player_room(player_id)
        if room_id is None:
            raise PlayerNotFound(player_id)
        async with self._room(room_id) as room:
            player = self._require_player(room, player_id)
            player.language = language
            await self.store.save_room(room)
            await self.presence.broadcast_to(player_id, make_event("languageChanged", {"language": language}))
            await self.publish_room_state(room)
            if room.trump is not None:
                await self.publish_game_state(room)

    async def request_room_state(self, room_id: str, conn: Connection) -> None:
        room = await self.store.get_room(room_id)
        if room is None:
            raise RoomNotFound(room_id)
        await send_safely(conn, make_event("updateRoom", self.room_state(room)))

    async def chat(self, room_id: str, player_id: str, message: str) -> None:
        room = await self.store.get_room(room_id)
        if room is None:
            raise RoomNotFound(room_id)
        player = self._require_player(room, player_id)
        await self._broadcast(room, make_event("chatMessage", {"playerName": player.name, "message": message}))

    async def expire_room(self, room_id: str) -> bool:
        async with self.store.lock(room_id):
            room = await self.store.get_room(room_id)
            if room is None:
                return False
            logger.info("Room %s expired after inactivity", room_id)
            await self._teardown(room, "expired")
            return True

    # ------------------------------------------------------------------
    # Game
    # ------------------------------------------------------------------
    async def apply_play(self, room_id: str, player_id: str, play: Play) -> None:
        async with self._room(room_id) as room:
            self._require_active(room)
            player = self._require_connected(room, player_id)
            card = play.card

            if isinstance(play, Attack):
                if player_id != room.current_attacker:
                    raise GameError("not_your_attack")
                if card not in player.hand:
                    raise GameError("card_not_in_hand")
                if len(room.table) >= self.rules.max_table_cards:
                    raise GameError("table_full")
                if not is_legal_attack(card, room.table):
                    raise GameError("illegal_attack")
                defender = room.player(room.current_defender)
                open_pairs = sum(1 for pair in room.table if pair.is_open)
                if defender is not None and open_pairs >= len(defender.hand):
                    raise GameError("defender_cannot_cover")
                room.table.append(TablePair(attack=card))
            else:
                if player_id != room.current_defender:
                    raise GameError("not_your_defense")
                if card not in player.hand:
                    raise GameError("card_not_in_hand")
                pair = room.first_open_pair()
                if pair is None:
                    raise GameError("nothing_to_defend")
                if not is_legal_defense(card, pair.attack, room.trump.suit):
                    raise GameError("illegal_defense")
                pair.defense = card

            player.hand.remove(card)
            logger.info(
                "Room %s: %s %s %s",
                room_id,
                player.name,
                "attacks with" if isinstance(play, Attack) else "defends with",
                card,
            )
            await self._commit_game(room)

    async def take_cards(self, room_id: str, player_id: str) -> None:
        async with self._room(room_id) as room:
            self._require_active(room)
            self._require_connected(room, player_id)
            if player_id != room.current_defender:
                raise GameError("not_defender")
            if room.first_open_pair() is None:
                raise GameError("nothing_to_take")
            await self._finish_round(room, taken=True, skip=True)

    async def end_turn(self, room_id: str, player_id: str) -> None:
        async with self._room(room_id) as room:
            self._require_active(room)
            self._require_connected(room, player_id)
            if player_id != room.current_defender:
                raise GameError("not_defender")
            if room.first_open_pair() is None:
                await self._finish_round(room, taken=False, skip=False)
            else:
                await self._finish_round(room, taken=True, skip=self.rules.failed_defense_skips)

    async def handle_turn_timeout(self, room_id: str, generation: int) -> None:
        try:
            async with self.store.lock(room_id):
                if not self.timers.is_current(room_id, generation):
                    return
                room = await self.store.get_room(room_id)
                if room is None or room.trump is None or room.game_ended:
                    return
                logger.info("Turn timed out in room %s, defender %s takes", room_id, room.current_defender)
                await self._broadcast(
                    room, make_event("turnTimeout", {"defender": room.current_defender})
                )
                await self._finish_round(room, taken=True, skip=True)
        except GameError as exc:
            logger.info("Turn timeout in room %s dropped: %s", room_id, exc.code)
        except SQLAlchemyError:
            logger.exception("Storage failure while handling turn timeout in room %s", room_id)

    async def _finish_round(self, room: Room, *, taken: bool, skip: bool) -> None:
        cards = room.table_cards()
        defender = room.player(room.current_defender)
        if taken and defender is not None:
            defender.hand.extend(cards)
        else:
            room.discard.extend(cards)
        room.table = []

        if len(room.connected_players()) >= 2:
            pivot = room.current_defender if taken and skip else room.current_attacker
            attacker = self._seat_after(room, pivot)
            room.current_attacker = attacker
            room.current_defender = self._seat_after(room, attacker)
            self._draw(room, [room.current_attacker, room.current_defender])
            logger.info(
                "Round over in room %s (%s): attacker %s, defender %s, deck %s",
                room.room_id,
                "taken" if taken else "defended",
                room.current_attacker,
                room.current_defender,
                len(room.deck),
            )
        await self._commit_game(room)


