import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from durak.schemas import sanitize_input
from game import DurakEngine
from models import RoomSnapshot

router = APIRouter()
logger = logging.getLogger(__name__)


def get_engine(request: Request) -> DurakEngine:
    return request.app.state.engine


@router.get("/room/{room_id}", response_model=RoomSnapshot, response_model_by_alias=True)
async def get_room(room_id: str, engine: DurakEngine = Depends(get_engine)) -> RoomSnapshot:
    # public view: hand sizes only, hands travel over the player's own socket
    room_id = sanitize_input(room_id).lower()
    room = await engine.store.get_room(room_id)
    if room is None:
        logger.info("Room %s requested but not found", room_id)
        raise HTTPException(status_code=404, detail="room_not_found")
    return engine.snapshot(room)
