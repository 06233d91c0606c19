from __future__ import annotations

from typing import Optional


class GameError(ValueError):
    """An intent was rejected; ``code`` is what the client receives."""

    def __init__(self, code: str, message: Optional[str] = None):
        super().__init__(message or code)
        self.code = code


class NotFoundError(GameError):
    pass


class RoomNotFound(NotFoundError):
    def __init__(self, room_id: str):
        super().__init__("room_not_found", f"Room {room_id} does not exist")
        self.room_id = room_id


class PlayerNotFound(NotFoundError):
    def __init__(self, player_id: str):
        super().__init__("player_not_found", f"Player {player_id} is not seated here")
        self.player_id = player_id
