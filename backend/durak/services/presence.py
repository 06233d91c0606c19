from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol

from models import make_error

logger = logging.getLogger(__name__)

TAKEOVER_CLOSE_CODE = 4001


class Connection(Protocol):
    id: str

    @property
    def alive(self) -> bool: ...

    async def send_json(self, message: Dict[str, Any]) -> None: ...

    async def close(self, code: int = 1000, reason: Optional[str] = None) -> None: ...


async def send_safely(conn: Connection, message: Dict[str, Any]) -> bool:
    if not conn.alive:
        return False
    try:
        await conn.send_json(message)
    except RuntimeError:
        # socket went away between the alive check and the write
        logger.debug("Dropping message to closed connection %s", conn.id)
        return False
    return True


class PresenceRegistry:
    """Routes durable player ids to their live connection handles."""

    def __init__(self):
        self._handles: Dict[str, Dict[str, Connection]] = {}
        self._owners: Dict[str, str] = {}
        self._disconnected_at: Dict[str, datetime] = {}

    async def attach(self, player_id: str, conn: Connection) -> None:
        handles = self._handles.setdefault(player_id, {})
        for other_id, other in list(handles.items()):
            if other_id == conn.id:
                continue
            handles.pop(other_id, None)
            self._owners.pop(other_id, None)
            if other.alive:
                logger.info("Connection %s takes over player %s from %s", conn.id, player_id, other_id)
                await send_safely(other, make_error("session_taken_over"))
                try:
                    await other.close(code=TAKEOVER_CLOSE_CODE, reason="session_taken_over")
                except RuntimeError:
                    pass
        previous_owner = self._owners.get(conn.id)
        if previous_owner is not None and previous_owner != player_id:
            self._handles.get(previous_owner, {}).pop(conn.id, None)
        handles[conn.id] = conn
        self._owners[conn.id] = player_id
        self._disconnected_at.pop(player_id, None)

    def detach(self, player_id: str, conn: Connection) -> bool:
        """Remove ``conn``; True when the player has no live handle left."""
        handles = self._handles.get(player_id, {})
        handles.pop(conn.id, None)
        if self._owners.get(conn.id) == player_id:
            self._owners.pop(conn.id, None)
        self._prune(player_id)
        if self.has_live(player_id):
            return False
        self._disconnected_at.setdefault(player_id, datetime.utcnow())
        return True

    def owner_of(self, conn: Connection) -> Optional[str]:
        return self._owners.get(conn.id)

    def has_live(self, player_id: str) -> bool:
        return any(c.alive for c in self._handles.get(player_id, {}).values())

    def handles(self, player_id: str) -> List[Connection]:
        return [c for c in self._handles.get(player_id, {}).values() if c.alive]

    def disconnected_at(self, player_id: str) -> Optional[datetime]:
        return self._disconnected_at.get(player_id)

    async def broadcast_to(self, player_id: str, event: Dict[str, Any]) -> None:
        for conn in list(self._handles.get(player_id, {}).values()):
            await send_safely(conn, event)

    def forget(self, player_id: str) -> None:
        for conn_id in self._handles.pop(player_id, {}):
            self._owners.pop(conn_id, None)
        self._disconnected_at.pop(player_id, None)

    def prune_dead(self) -> List[str]:
        """Drop dead handles; returns players whose last handle just went away."""
        gone = []
        for player_id in list(self._handles):
            had_handles = bool(self._handles[player_id])
            self._prune(player_id)
            if had_handles and not self._handles.get(player_id):
                self._disconnected_at.setdefault(player_id, datetime.utcnow())
                gone.append(player_id)
        return gone

    def _prune(self, player_id: str) -> None:
        handles = self._handles.get(player_id)
        if not handles:
            return
        for conn_id, conn in list(handles.items()):
            if not conn.alive:
                handles.pop(conn_id, None)
                self._owners.pop(conn_id, None)
