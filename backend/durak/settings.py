from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import List

from pydantic_settings import BaseSettings
from pydantic import Field

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    database_url: str = Field(default="sqlite+aiosqlite:///./durak.db", alias="DATABASE_URL")
    origin: str = Field(default="", alias="ORIGIN")
    reset_db_on_start: bool = Field(default=True, alias="RESET_DB_ON_START")
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")

    turn_timeout_sec: float = Field(default=30, alias="TURN_TIMEOUT_SEC")
    hand_size: int = Field(default=6, alias="HAND_SIZE")
    max_table_cards: int = Field(default=12, alias="MAX_TABLE_CARDS")
    max_players: int = Field(default=6, alias="MAX_PLAYERS")
    failed_defense_skips: bool = Field(default=True, alias="FAILED_DEFENSE_SKIPS")

    room_idle_timeout_sec: int = Field(default=3600, alias="ROOM_IDLE_TIMEOUT_SEC")
    housekeeping_interval_sec: int = Field(default=600, alias="HOUSEKEEPING_INTERVAL_SEC")

    languages: List[str] = Field(default_factory=lambda: ["en", "ru", "uk"], alias="LANGUAGES")

    class Config:
        env_file = ".env"
        extra = "ignore"
        populate_by_name = True

    def allowed_origins(self) -> List[str]:
        """
        Splits ORIGIN by commas, dropping blanks.
        Example: "https://durak.example, https://www.durak.example"
        """
        return ["http://localhost:5173"] + [x.strip() for x in self.origin.split(",") if x.strip()]

    def masked_database_url(self) -> str:
        scheme, sep, rest = self.database_url.partition("://")
        if "@" not in rest:
            return self.database_url
        return f"{scheme}{sep}***@{rest.split('@', 1)[1]}"

    def log_status(self) -> None:
        env_name = os.getenv("RENDER_SERVICE_NAME") or os.getenv("ENV", "unknown")
        logger.info(
            "Server settings: database=%s, turn_timeout=%ss, max_players=%s, failed_defense_skips=%s, env=%s",
            self.masked_database_url(),
            self.turn_timeout_sec,
            self.max_players,
            self.failed_defense_skips,
            env_name,
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
