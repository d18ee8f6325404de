"""
Dependency injection functions for FastAPI.
Provides the chat hub, database sessions and WebSocket authentication.
"""
from typing import Generator, Optional
from fastapi import Request, WebSocket
from sqlalchemy.orm import Session
from db.database import SessionLocal
from core.security import user_id_from_token
from realtime.entities import User
from realtime.hub import ChatHub
from realtime.stores import UserDirectory


def get_db() -> Generator[Session, None, None]:
    """
    Dependency that provides a database session.
    Automatically closes the session when request completes.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_hub(request: Request) -> ChatHub:
    """The process-wide hub built in the application lifespan."""
    return request.app.state.hub


def get_ws_hub(websocket: WebSocket) -> ChatHub:
    return websocket.app.state.hub


async def validate_websocket_token(token: Optional[str], users: UserDirectory) -> Optional[User]:
    """
    Validate a JWT for a WebSocket connection.

    Returns None instead of raising so the endpoint can close the connection
    with a specific code.

    Args:
        token: JWT from the ``token`` query parameter or ``authenticate`` frame
        users: user directory used to confirm the user exists

    Returns:
        User if the token is valid and the user exists, None otherwise
    """
    if not token:
        return None
    user_id = user_id_from_token(token)
    if user_id is None:
        return None
    return await users.find_by_id(user_id)
