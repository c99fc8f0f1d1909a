from fastapi import APIRouter, Depends, Request
from schemas.rooms import CreateRoomRequest, CreateRoomResponse, RoomDetailsResponse
from backend import RoomType
from broker import SessionBroker
from dependencies import get_broker
from errors import RoomNotFound
from logging_config import get_logger

logger = get_logger(__name__)

rooms_router = APIRouter(prefix="/rooms", tags=["rooms"])


def build_ws_url(request: Request) -> str:
    # Replace http/https with ws/wss
    base_url = str(request.base_url).rstrip('/')
    ws_base = base_url.replace("http://", "ws://").replace("https://", "wss://")
    return f"{ws_base}/ws"


async def create_room_response(broker: SessionBroker, room_type: RoomType, request: Request) -> CreateRoomResponse:
    client_host = request.client.host if request.client else "unknown"
    logger.info(f"Room creation request from {client_host}, type: {room_type.value}")
    room = await broker.create_room(room_type)
    return CreateRoomResponse(ws_url=build_ws_url(request), **room)


@rooms_router.post("/", response_model=CreateRoomResponse)
async def create_room(room: CreateRoomRequest, request: Request, broker: SessionBroker = Depends(get_broker)):
    return await create_room_response(broker, room.room_type, request)


@rooms_router.get("/{room_id}", response_model=RoomDetailsResponse)
async def get_room_details(room_id: str, broker: SessionBroker = Depends(get_broker)):
    """
    Get room details including the live roster.

    Returns:
    - room_id: Unique room identifier
    - room_type: refinement, retro or general
    - created_at: Room creation timestamp
    - active_participants: Connections currently in the room on this server
    - users: Their names and email addresses, in join order
    """
    details = await broker.room_details(room_id)
    if details is None:
        logger.warning(f"Room details failed: Room {room_id} not found")
        raise RoomNotFound()
    logger.info(f"Room details retrieved for {room_id}: {details['active_participants']} active")
    return RoomDetailsResponse(users=broker.roster(room_id), **details)
