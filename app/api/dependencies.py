"""
Dependency injection functions for FastAPI.
Provides database sessions, bearer-token authentication, the fan-out
connection manager and the store-access services.
"""
import logging
from typing import Generator, Optional
from fastapi import Depends, Request
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from starlette.requests import HTTPConnection

from api.websocket_manager import ConnectionManager
from core.audit_logger import audit_logger
from core.exceptions import UnauthenticatedError
from core.security import resolve_user_id
from db.database import SessionLocal
from db.models import User
from db.repository import Repository
from services import ConversationService, MessageService

logger = logging.getLogger(__name__)

security = HTTPBearer(auto_error=False)


def get_db() -> Generator[Session, None, None]:
    """
    Dependency that provides a database session.
    Automatically closes the session when request completes.

    Yields:
        Database session
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    db: Session = Depends(get_db)
) -> User:
    """
    Bearer JWT authentication dependency.

    Args:
        request: Incoming request (client address for the audit log)
        credentials: HTTP Bearer token from Authorization header
        db: Database session

    Returns:
        Authenticated User object

    Raises:
        UnauthenticatedError: Missing, invalid or expired token, or unknown user
    """
    client_ip = request.client.host if request.client else None

    if credentials is None:
        raise UnauthenticatedError("Missing bearer token")

    user_id = resolve_user_id(credentials.credentials)
    if not user_id:
        audit_logger.log_token_invalid(
            reason="undecodable or expired token",
            ip_address=client_ip,
            endpoint=request.url.path
        )
        raise UnauthenticatedError()

    user = Repository(db).get_user_by_id(user_id)
    if not user:
        audit_logger.log_token_invalid(
            reason=f"unknown user {user_id}",
            ip_address=client_ip,
            endpoint=request.url.path
        )
        raise UnauthenticatedError("User not found")

    return user


def get_connection_manager(connection: HTTPConnection) -> ConnectionManager:
    """The application's fan-out manager, created at startup."""
    return connection.app.state.connection_manager


def get_conversation_service(
    db: Session = Depends(get_db),
    broadcaster: ConnectionManager = Depends(get_connection_manager)
) -> ConversationService:
    return ConversationService(db, broadcaster)


def get_message_service(
    db: Session = Depends(get_db),
    broadcaster: ConnectionManager = Depends(get_connection_manager)
) -> MessageService:
    return MessageService(db, broadcaster)


def validate_websocket_token(token: str) -> Optional[str]:
    """
    Validate the JWT passed as query parameter to the WebSocket endpoint.

    Returns None instead of raising so the connection can be rejected with a
    close code.

    Args:
        token: JWT token from WebSocket query parameter

    Returns:
        User ID if the token is valid and the user exists, None otherwise
    """
    user_id = resolve_user_id(token)
    if not user_id:
        audit_logger.log_token_invalid(reason="invalid websocket token", endpoint="/ws")
        return None

    with SessionLocal() as db:
        if Repository(db).get_user_by_id(user_id) is None:
            return None

    return user_id


def is_websocket_participant(conversation_id: str, user_id: str) -> bool:
    """Participation check used when a WebSocket joins a conversation group."""
    with SessionLocal() as db:
        return Repository(db).is_conversation_participant(conversation_id, user_id)
