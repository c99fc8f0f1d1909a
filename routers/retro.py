from fastapi import APIRouter, Depends, Request
from schemas.rooms import (
    ActionItemRequest,
    ActionItemResponse,
    CommentRequest,
    CommentResponse,
    CreateRoomResponse,
    JoinRoomRequest,
    JoinRoomResponse,
)
from backend import RoomType
from broker import SessionBroker
from dependencies import get_broker
from routers.rooms import create_room_response

retro_router = APIRouter(prefix="/retro", tags=["retro"])


@retro_router.post("/create/room", response_model=CreateRoomResponse)
async def create_retro_room(request: Request, broker: SessionBroker = Depends(get_broker)):
    return await create_room_response(broker, RoomType.RETRO, request)


@retro_router.post("/join/room", response_model=JoinRoomResponse)
async def join_retro_room(join: JoinRoomRequest, broker: SessionBroker = Depends(get_broker)):
    room_id = await broker.register_member(join.invite_code, join.name, join.email)
    return JoinRoomResponse(room_id=room_id)


@retro_router.post("/new/comment", response_model=CommentResponse)
async def new_comment(comment: CommentRequest, broker: SessionBroker = Depends(get_broker)):
    stored = await broker.broadcast_comment(comment.room_id, comment.comment)
    return CommentResponse(comment=stored)


@retro_router.post("/create/action", response_model=ActionItemResponse)
async def create_action(action: ActionItemRequest, broker: SessionBroker = Depends(get_broker)):
    created = await broker.create_action_item(action.room_id, action.user_name, action.description)
    return ActionItemResponse(**created)
