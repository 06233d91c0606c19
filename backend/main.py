from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from fastapi import FastAPI, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware

from durak.api.rooms import router as rooms_router
from durak.database import AsyncSessionMaker, data_engine, init_db
from durak.services.housekeeping import run_housekeeping
from durak.services.presence import PresenceRegistry
from durak.services.store import RoomStore
from durak.settings import settings
from game import DurakEngine, RulesConfig
from gateway import SessionGateway, WebSocketConnection

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

# ---------- CORS with multiple origins ----------
ALLOWED_ORIGINS = settings.allowed_origins()

app = FastAPI()
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_methods=["*"],
    allow_headers=["*"],
    allow_credentials=True,
)

logger.info("CORS allow_origins: %s", ALLOWED_ORIGINS)

app.include_router(rooms_router)


@app.on_event("startup")
async def _startup() -> None:
    settings.log_status()
    try:
        await init_db(reset=settings.reset_db_on_start)
    except Exception:
        logger.critical("Database initialization failed for %s", settings.masked_database_url())
        raise

    presence = PresenceRegistry()
    store = RoomStore(AsyncSessionMaker)
    engine = DurakEngine(store, presence, rules=RulesConfig.from_settings(settings))
    app.state.presence = presence
    app.state.store = store
    app.state.engine = engine
    app.state.gateway = SessionGateway(engine, presence)
    app.state.housekeeping = asyncio.create_task(
        run_housekeeping(
            engine,
            settings.housekeeping_interval_sec,
            timedelta(seconds=settings.room_idle_timeout_sec),
        )
    )


@app.on_event("shutdown")
async def _shutdown() -> None:
    task = getattr(app.state, "housekeeping", None)
    if task is not None:
        task.cancel()
    engine = getattr(app.state, "engine", None)
    if engine is not None:
        engine.timers.cancel_all()
    await data_engine.dispose()
    logger.info("Server stopped")


# ---------- WS endpoint ----------
@app.websocket("/ws")
async def ws_session(ws: WebSocket):
    await ws.accept()
    gateway: SessionGateway = app.state.gateway
    conn = WebSocketConnection(ws)
    logger.debug("Connection %s opened", conn.id)
    try:
        while True:
            raw = await ws.receive_text()
            await gateway.dispatch(conn, raw)
    except (WebSocketDisconnect, RuntimeError):
        # RuntimeError: the socket was closed on our side by a session takeover
        logger.debug("Connection %s closed", conn.id)
    finally:
        await gateway.connection_closed(conn)
