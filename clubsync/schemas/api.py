"""
Request and response bodies for the local HTTP bridge.
"""
from typing import List, Optional

from pydantic import BaseModel, Field

from clubsync.schemas.message import Media, Message


class SendMessageRequest(BaseModel):
    body: Optional[str] = Field(default=None, max_length=4096)
    media: Optional[Media] = None
    reply_to_id: Optional[str] = None

    model_config = {
        "json_schema_extra": {
            "example": {"body": "hello", "reply_to_id": None}
        }
    }


class EditMessageRequest(BaseModel):
    body: str = Field(..., min_length=1, max_length=4096)


class ReactionRequest(BaseModel):
    symbol: str = Field(..., min_length=1, max_length=32)


class ThreadReplyRequest(BaseModel):
    body: Optional[str] = Field(default=None, max_length=4096)
    media: Optional[Media] = None


class CategoryRequest(BaseModel):
    category: str = Field(..., min_length=1, max_length=64)


class ForwardRequest(BaseModel):
    target_room_id: str = Field(..., min_length=1)


class DraftRequest(BaseModel):
    text: str = ""


class DraftResponse(BaseModel):
    room_id: str
    text: Optional[str] = None


class MessagesListResponse(BaseModel):
    room_id: str
    data: List[Message]
    total: int


class ConnectivityRequest(BaseModel):
    online: bool


class FlushResponse(BaseModel):
    delivered: int
    pending: int


class SyncStatusResponse(BaseModel):
    state: str
    online: bool
    pending: int
    delivery: str
    rooms: List[str]
    user_id: str


class HealthResponse(BaseModel):
    status: str
    checks: Optional[dict] = None


class ErrorResponse(BaseModel):
    detail: str
