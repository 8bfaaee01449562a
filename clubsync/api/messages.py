"""
Room endpoints: snapshots for renderers and message actions for UI handlers.

Authorization (moderator-only pin, author-only edit) is the caller's job;
these endpoints pass straight through to the session.
"""
from typing import Annotated, Optional

from fastapi import APIRouter, Depends, Query, status

from clubsync.api.dependencies import get_session
from clubsync.core.logging import get_logger
from clubsync.engine.session import ClubSession
from clubsync.schemas.api import (
    CategoryRequest,
    DraftRequest,
    DraftResponse,
    EditMessageRequest,
    ErrorResponse,
    ForwardRequest,
    MessagesListResponse,
    ReactionRequest,
    SendMessageRequest,
    ThreadReplyRequest,
)
from clubsync.schemas.message import Attachment, Message

logger = get_logger(__name__)

router = APIRouter(prefix="/rooms/{room_id}", tags=["Messages"])

Session = Annotated[ClubSession, Depends(get_session)]

ERROR_RESPONSES = {
    404: {"model": ErrorResponse, "description": "Message not found"},
    422: {"model": ErrorResponse, "description": "Operation rejected"},
}


@router.get(
    "/messages",
    response_model=MessagesListResponse,
    summary="Room snapshot",
    description="Messages pinned-first, then by creation time. Optional case-insensitive search."
)
async def list_messages(
    room_id: str,
    session: Session,
    q: Annotated[Optional[str], Query(description="Search body and sender name")] = None,
    include_deleted: Annotated[bool, Query(description="Include tombstoned messages")] = True,
) -> MessagesListResponse:
    await session.open_room(room_id)
    if q:
        data = session.search(room_id, q)
    else:
        data = session.snapshot(room_id, include_deleted=include_deleted)
    return MessagesListResponse(room_id=room_id, data=data, total=len(data))


@router.post(
    "/messages",
    response_model=Message,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
    summary="Send a message",
)
async def send_message(room_id: str, request: SendMessageRequest, session: Session) -> Message:
    return await session.send_message(
        room_id, body=request.body, media=request.media, reply_to_id=request.reply_to_id
    )


@router.get("/messages/{message_id}", response_model=Message, responses=ERROR_RESPONSES)
async def get_message(room_id: str, message_id: str, session: Session) -> Message:
    return session.get_message(room_id, message_id)


@router.put(
    "/messages/{message_id}",
    response_model=Message,
    responses={**ERROR_RESPONSES, 409: {"model": ErrorResponse, "description": "Rejected by server"}},
    summary="Edit a message",
)
async def edit_message(room_id: str, message_id: str, request: EditMessageRequest, session: Session) -> Message:
    return await session.edit_message(room_id, message_id, request.body)


@router.delete(
    "/messages/{message_id}",
    response_model=Message,
    responses={**ERROR_RESPONSES, 409: {"model": ErrorResponse, "description": "Rejected by server"}},
    summary="Delete (tombstone) a message",
)
async def delete_message(room_id: str, message_id: str, session: Session) -> Message:
    return await session.delete_message(room_id, message_id)


@router.post("/messages/{message_id}/reactions", response_model=Message, responses=ERROR_RESPONSES)
async def toggle_reaction(room_id: str, message_id: str, request: ReactionRequest, session: Session) -> Message:
    return await session.react(room_id, message_id, request.symbol)


@router.post("/messages/{message_id}/pin", response_model=Message, responses=ERROR_RESPONSES)
async def toggle_pin(room_id: str, message_id: str, session: Session) -> Message:
    return await session.toggle_pin(room_id, message_id)


@router.post("/messages/{message_id}/read", response_model=Message, responses=ERROR_RESPONSES)
async def mark_read(room_id: str, message_id: str, session: Session) -> Message:
    return await session.mark_read(room_id, message_id)


@router.post("/messages/{message_id}/thread", response_model=Message, responses=ERROR_RESPONSES)
async def reply_in_thread(room_id: str, message_id: str, request: ThreadReplyRequest, session: Session) -> Message:
    return await session.reply_in_thread(room_id, message_id, body=request.body, media=request.media)


@router.post("/messages/{message_id}/attachments", response_model=Message, responses=ERROR_RESPONSES)
async def add_attachment(room_id: str, message_id: str, attachment: Attachment, session: Session) -> Message:
    return await session.attach(room_id, message_id, attachment)


@router.post("/messages/{message_id}/categories", response_model=Message, responses=ERROR_RESPONSES)
async def add_category(room_id: str, message_id: str, request: CategoryRequest, session: Session) -> Message:
    return await session.categorize(room_id, message_id, request.category)


@router.post(
    "/messages/{message_id}/forward",
    response_model=Message,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def forward_message(room_id: str, message_id: str, request: ForwardRequest, session: Session) -> Message:
    return await session.forward_message(room_id, message_id, request.target_room_id)


@router.get("/draft", response_model=DraftResponse)
async def get_draft(room_id: str, session: Session) -> DraftResponse:
    return DraftResponse(room_id=room_id, text=session.load_draft(room_id))


@router.put("/draft", response_model=DraftResponse)
async def save_draft(room_id: str, request: DraftRequest, session: Session) -> DraftResponse:
    session.save_draft(room_id, request.text)
    return DraftResponse(room_id=room_id, text=session.load_draft(room_id))


@router.delete("/draft", status_code=status.HTTP_204_NO_CONTENT)
async def clear_draft(room_id: str, session: Session) -> None:
    session.clear_draft(room_id)
