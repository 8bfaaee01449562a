"""
Sync endpoints: channel status, queue flush and connectivity signals.
"""
from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException, status

from clubsync.api.dependencies import get_session
from clubsync.core.logging import get_logger
from clubsync.engine.session import ClubSession
from clubsync.schemas.api import ConnectivityRequest, FlushResponse, SyncStatusResponse

logger = get_logger(__name__)

router = APIRouter(prefix="/sync", tags=["Sync"])

Session = Annotated[ClubSession, Depends(get_session)]


@router.get("/status", response_model=SyncStatusResponse, summary="Channel and queue status")
async def sync_status(session: Session) -> SyncStatusResponse:
    return SyncStatusResponse(**session.status())


@router.post("/flush", response_model=FlushResponse, summary="Drain the offline queue now")
async def flush(session: Session) -> FlushResponse:
    delivered = await session.flush()
    return FlushResponse(delivered=delivered, pending=len(session.queue))


@router.post("/connectivity", response_model=SyncStatusResponse, summary="Host online/offline signal")
async def connectivity(request: ConnectivityRequest, session: Session) -> SyncStatusResponse:
    await session.set_connectivity(request.online)
    return SyncStatusResponse(**session.status())


@router.delete(
    "/queue/{op_id}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Retract a queued operation",
)
async def retract(op_id: str, session: Session) -> None:
    if not session.retract(op_id):
        raise HTTPException(status_code=404, detail="operation not queued")
