from typing import Optional
from fastapi import APIRouter, Depends, Request
from schemas.rooms import (
    CreateRoomResponse,
    JoinRoomRequest,
    JoinRoomResponse,
    PredictionsResponse,
    ResetSessionRequest,
    SubmitPredictionRequest,
    SuccessResponse,
)
from backend import RoomType
from broker import SessionBroker
from dependencies import get_broker
from routers.rooms import create_room_response
from logging_config import get_logger

logger = get_logger(__name__)

refinement_router = APIRouter(prefix="/refinement", tags=["refinement"])


@refinement_router.post("/create/room", response_model=CreateRoomResponse)
async def create_refinement_room(request: Request, broker: SessionBroker = Depends(get_broker)):
    return await create_room_response(broker, RoomType.REFINEMENT, request)


@refinement_router.post("/join/room", response_model=JoinRoomResponse)
async def join_refinement_room(join: JoinRoomRequest, broker: SessionBroker = Depends(get_broker)):
    room_id = await broker.register_member(join.invite_code, join.name, join.email)
    return JoinRoomResponse(room_id=room_id)


@refinement_router.post("/prediction/submit", response_model=SuccessResponse)
async def submit_prediction(prediction: SubmitPredictionRequest, broker: SessionBroker = Depends(get_broker)):
    await broker.submit_prediction(prediction.room_id, prediction.role, prediction.value, participant=prediction.email)
    return SuccessResponse(message="Prediction submitted")


@refinement_router.get("/get/predictions", response_model=PredictionsResponse)
async def get_predictions(room_id: Optional[str] = None, broker: SessionBroker = Depends(get_broker)):
    # Destructive read: the round's predictions are cleared once averaged
    predictions = await broker.get_and_clear_predictions(room_id)
    logger.info(f"Returned {len(predictions)} role averages for room {room_id}")
    return PredictionsResponse(predictions=predictions)


@refinement_router.post("/reset", response_model=SuccessResponse)
async def reset_session(reset: ResetSessionRequest, broker: SessionBroker = Depends(get_broker)):
    await broker.reset_session(reset.room_id)
    return SuccessResponse(message="Session reset")
