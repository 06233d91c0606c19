from __future__ import annotations

import json
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional

from fastapi import WebSocket, WebSocketDisconnect
from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from starlette.websockets import WebSocketState

from durak.errors import GameError
from durak.schemas import (
    ChangeLanguageIntent,
    ChatIntent,
    CreateRoomIntent,
    JoinRoomIntent,
    PlayCardIntent,
    PlayerIntent,
    RoomIntent,
)
from durak.services.presence import Connection, PresenceRegistry, send_safely
from game import Attack, Defend, DurakEngine
from models import make_error

logger = logging.getLogger(__name__)


class WebSocketConnection:
    """Presence handle around one accepted Starlette websocket."""

    def __init__(self, ws: WebSocket):
        self.ws = ws
        self.id = uuid.uuid4().hex

    @property
    def alive(self) -> bool:
        return (
            self.ws.client_state == WebSocketState.CONNECTED
            and self.ws.application_state == WebSocketState.CONNECTED
        )

    async def send_json(self, message: Dict[str, Any]) -> None:
        try:
            await self.ws.send_json(message)
        except WebSocketDisconnect as exc:
            raise RuntimeError("websocket closed") from exc

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None:
        await self.ws.close(code=code, reason=reason)


Handler = Callable[[Connection, Dict[str, Any]], Awaitable[None]]


class SessionGateway:
    def __init__(self, engine: DurakEngine, presence: PresenceRegistry):
        self.engine = engine
        self.presence = presence
        self.handlers: Dict[str, Handler] = {
            "createRoom": self.create_room,
            "joinRoom": self.join_room,
            "ready": self.ready,
            "playCard": self.play_card,
            "takeCards": self.take_cards,
            "endTurn": self.end_turn,
            "leaveRoom": self.leave_room,
            "leaveGame": self.leave_game,
            "tempDisconnect": self.temp_disconnect,
            "reconnectPlayer": self.reconnect_player,
            "changeLanguage": self.change_language,
            "chatMessage": self.chat_message,
            "requestPlayerUpdate": self.request_player_update,
        }

    async def dispatch(self, conn: Connection, raw: str) -> None:
        try:
            data = json.loads(raw)
        except json.JSONDecodeError:
            await send_safely(conn, make_error("invalid_payload"))
            return
        if not isinstance(data, dict):
            await send_safely(conn, make_error("invalid_payload"))
            return

        kind = data.get("type")
        handler = self.handlers.get(kind) if isinstance(kind, str) else None
        if handler is None:
            logger.info("Unknown intent %r from connection %s", kind, conn.id)
            await send_safely(conn, make_error("unknown_intent"))
            return

        try:
            await handler(conn, data)
        except ValidationError as exc:
            logger.info("Invalid %s payload from %s: %s", kind, conn.id, exc.errors()[:1])
            await send_safely(conn, make_error("invalid_payload"))
        except GameError as exc:
            logger.info("Rejected %s from %s: %s", kind, conn.id, exc.code)
            await send_safely(conn, make_error(exc.code))
        except SQLAlchemyError:
            logger.exception("Storage failure while handling %s", kind)
            await send_safely(conn, make_error("server_error"))

    async def connection_closed(self, conn: Connection) -> None:
        try:
            await self.engine.connection_lost(conn)
        except SQLAlchemyError:
            logger.exception("Storage failure while handling disconnect of %s", conn.id)

    def _authorize(self, conn: Connection, player_id: str) -> None:
        if self.presence.owner_of(conn) != player_id:
            raise GameError("not_your_session")

    # ---------- intents ----------
    async def create_room(self, conn: Connection, data: Dict[str, Any]) -> None:
        intent = CreateRoomIntent.model_validate(data)
        if not intent.player_name:
            raise GameError("invalid_name")
        await self.engine.create_room(intent.player_name, intent.player_id, intent.language, conn)

    async def join_room(self, conn: Connection, data: Dict[str, Any]) -> None:
        intent = JoinRoomIntent.model_validate(data)
        if not intent.player_name:
            raise GameError("invalid_name")
        await self.engine.join_room(
            intent.room_id, intent.player_name, intent.player_id, intent.language, conn
        )

    async def ready(self, conn: Connection, data: Dict[str, Any]) -> None:
        intent = PlayerIntent.model_validate(data)
        self._authorize(conn, intent.player_id)
        await self.engine.set_ready(intent.room_id, intent.player_id)

    async def play_card(self, conn: Connection, data: Dict[str, Any]) -> None:
        intent = PlayCardIntent.model_validate(data)
        self._authorize(conn, intent.player_id)
        play = Attack(intent.card) if intent.role == "attack" else Defend(intent.card)
        await self.engine.apply_play(intent.room_id, intent.player_id, play)

    async def take_cards(self, conn: Connection, data: Dict[str, Any]) -> None:
        intent = PlayerIntent.model_validate(data)
        self._authorize(conn, intent.player_id)
        await self.engine.take_cards(intent.room_id, intent.player_id)

    async def end_turn(self, conn: Connection, data: Dict[str, Any]) -> None:
        intent = PlayerIntent.model_validate(data)
        self._authorize(conn, intent.player_id)
        await self.engine.end_turn(intent.room_id, intent.player_id)

    async def leave_room(self, conn: Connection, data: Dict[str, Any]) -> None:
        intent = PlayerIntent.model_validate(data)
        self._authorize(conn, intent.player_id)
        await self.engine.leave_room(intent.room_id, intent.player_id, conn)

    async def leave_game(self, conn: Connection, data: Dict[str, Any]) -> None:
        intent = PlayerIntent.model_validate(data)
        self._authorize(conn, intent.player_id)
        await self.engine.mark_disconnected(intent.room_id, intent.player_id, conn)

    async def temp_disconnect(self, conn: Connection, data: Dict[str, Any]) -> None:
        intent = PlayerIntent.model_validate(data)
        self._authorize(conn, intent.player_id)
        await self.engine.mark_disconnected(intent.room_id, intent.player_id, conn)

    async def reconnect_player(self, conn: Connection, data: Dict[str, Any]) -> None:
        intent = PlayerIntent.model_validate(data)
        await self.engine.reconnect(intent.room_id, intent.player_id, intent.player_name, conn)

    async def change_language(self, conn: Connection, data: Dict[str, Any]) -> None:
        intent = ChangeLanguageIntent.model_validate(data)
        self._authorize(conn, intent.player_id)
        await self.engine.change_language(intent.player_id, intent.language)

    async def chat_message(self, conn: Connection, data: Dict[str, Any]) -> None:
        intent = ChatIntent.model_validate(data)
        player_id = self.presence.owner_of(conn)
        if player_id is None:
            raise GameError("not_your_session")
        if not intent.message:
            return
        await self.engine.chat(intent.room_id, player_id, intent.message)

    async def request_player_update(self, conn: Connection, data: Dict[str, Any]) -> None:
        intent = RoomIntent.model_validate(data)
        await self.engine.request_room_state(intent.room_id, conn)
