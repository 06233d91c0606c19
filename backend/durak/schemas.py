from __future__ import annotations

import re
import uuid
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from durak.settings import settings
from models import Card

UNSAFE_CHARS = re.compile(r"[^\w-]")
MAX_ID_LENGTH = 50
MAX_CHAT_LENGTH = 200


def sanitize_input(value) -> str:
    """Keep letters, digits, ``_`` and ``-``; cut to 50 chars."""
    if value is None:
        return ""
    return UNSAFE_CHARS.sub("", str(value).strip())[:MAX_ID_LENGTH]


def sanitize_language(value) -> str:
    lang = str(value or "").strip().lower()
    return lang if lang in settings.languages else "en"


class Intent(BaseModel):
    type: str

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class RoomIntent(Intent):
    room_id: str = Field(alias="roomId")

    @field_validator("room_id", mode="before")
    @classmethod
    def _clean_room_id(cls, value):
        return sanitize_input(value).lower()


class PlayerIntent(RoomIntent):
    player_id: str = Field(alias="playerId")
    player_name: str = Field(default="", alias="playerName")

    @field_validator("player_id", "player_name", mode="before")
    @classmethod
    def _clean_ids(cls, value):
        return sanitize_input(value)


class CreateRoomIntent(Intent):
    player_name: str = Field(alias="playerName")
    player_id: str = Field(default_factory=lambda: uuid.uuid4().hex, alias="playerId")
    language: str = "en"

    @field_validator("player_name", "player_id", mode="before")
    @classmethod
    def _clean_ids(cls, value):
        return sanitize_input(value)

    @field_validator("player_id")
    @classmethod
    def _fill_player_id(cls, value: str) -> str:
        return value or uuid.uuid4().hex

    @field_validator("language", mode="before")
    @classmethod
    def _clean_language(cls, value):
        return sanitize_language(value)


class JoinRoomIntent(CreateRoomIntent):
    room_id: str = Field(alias="roomId")

    @field_validator("room_id", mode="before")
    @classmethod
    def _clean_room_id(cls, value):
        return sanitize_input(value).lower()


class PlayCardIntent(PlayerIntent):
    card: Card
    role: Literal["attack", "defend"]


class ChangeLanguageIntent(Intent):
    player_id: str = Field(alias="playerId")
    language: str

    @field_validator("player_id", mode="before")
    @classmethod
    def _clean_player_id(cls, value):
        return sanitize_input(value)

    @field_validator("language", mode="before")
    @classmethod
    def _clean_language(cls, value):
        return sanitize_language(value)


class ChatIntent(RoomIntent):
    message: str

    @field_validator("message", mode="before")
    @classmethod
    def _clean_message(cls, value):
        return str(value or "").strip()[:MAX_CHAT_LENGTH]

