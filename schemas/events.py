from pydantic import BaseModel, ConfigDict
from typing import Any


class InboundEvent(BaseModel):
    """Envelope of a client frame. Fields besides `type` are read per event."""
    model_config = ConfigDict(extra="allow")

    type: Any = None

class JoinRoomEvent(BaseModel):
    invite_code: Any = None
    name: Any = None
    email: Any = None

class RoomEvent(BaseModel):
    room_id: Any = None

class SubmitPredictionEvent(RoomEvent):
    role: Any = None
    value: Any = None

class PostCommentEvent(RoomEvent):
    comment: Any = None

class CreateActionEvent(RoomEvent):
    user_name: Any = None
    description: Any = None


def error_event(message: str) -> dict:
    return {"type": "error", "message": message}
