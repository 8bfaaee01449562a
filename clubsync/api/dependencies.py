"""
FastAPI dependencies.
"""
from fastapi import HTTPException, Request

from clubsync.engine.session import ClubSession


def get_session(request: Request) -> ClubSession:
    """The engine session the application was created with."""
    session = getattr(request.app.state, "session", None)
    if session is None:
        raise HTTPException(status_code=503, detail="session not initialised")
    return session
