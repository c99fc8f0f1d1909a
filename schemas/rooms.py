from pydantic import BaseModel
from typing import Any, Optional, List
from backend import RoomType


class CreateRoomRequest(BaseModel):
    room_type: RoomType = RoomType.GENERAL

class CreateRoomResponse(BaseModel):
    success: bool = True
    room_id: str
    invite_code: str
    ws_url: str

class JoinRoomRequest(BaseModel):
    invite_code: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None

class JoinRoomResponse(BaseModel):
    success: bool = True
    room_id: str

class RoomDetailsResponse(BaseModel):
    success: bool = True
    room_id: str
    room_type: Optional[str]
    created_at: str
    active_participants: int
    users: List[dict] = []

class SubmitPredictionRequest(BaseModel):
    room_id: Optional[str] = None
    role: Optional[str] = None
    # Left untyped so non-numeric values reach the broker and fail as invalid predictions
    value: Any = None
    # Contact address of the submitter, the same identity a joined WebSocket connection predicts under
    email: Optional[str] = None

class PredictionAverage(BaseModel):
    role: str
    average: float

class PredictionsResponse(BaseModel):
    success: bool = True
    predictions: List[PredictionAverage]

class ResetSessionRequest(BaseModel):
    room_id: Optional[str] = None

class CommentRequest(BaseModel):
    room_id: Optional[str] = None
    comment: Optional[str] = None

class CommentResponse(BaseModel):
    success: bool = True
    comment: str

class ActionItemRequest(BaseModel):
    room_id: Optional[str] = None
    user_name: Optional[str] = None
    description: Optional[str] = None

class ActionItemResponse(BaseModel):
    success: bool = True
    room_id: str
    user_name: str
    description: str

class SuccessResponse(BaseModel):
    success: bool = True
    message: Optional[str] = None
