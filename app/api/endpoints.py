"""
API endpoint implementations.
Defines the REST endpoints for authentication, users, conversations and
messages, plus the WebSocket endpoint for real-time notifications.
"""
import logging
from datetime import datetime, timezone
from typing import List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from api.dependencies import (
    get_connection_manager, get_conversation_service, get_current_user, get_db,
    get_message_service, is_websocket_participant, validate_websocket_token
)
from api.metrics import websocket_messages_received_total
from api.schemas import (
    TokenRequest, TokenResponse, UserSummary,
    ConversationCreate, ConversationWithMessageCreate, ConversationUpdate,
    ConversationSummary, ConversationResponse, ConversationDetail, ConversationWithMessageResponse,
    MessageCreate, MessageResponse, MessageDigest, WSCommand, WSError
)
from api.websocket_manager import ConnectionManager
from core.audit_logger import audit_logger
from core.security import create_access_token, verify_password
from db.models import User
from db.repository import Repository
from services import ConversationService, MessageService

logger = logging.getLogger(__name__)

# Create routers
auth_router = APIRouter()
users_router = APIRouter()
conversations_router = APIRouter()
messages_router = APIRouter()
websocket_router = APIRouter()


def _utc_timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


# Authentication Endpoints
@auth_router.post("/token", response_model=TokenResponse, status_code=status.HTTP_200_OK)
def authenticate(request: TokenRequest, http_request: Request, db: Session = Depends(get_db)):
    """
    Exchange email and password for a bearer JWT.

    Example Request:
        ```json
        POST /auth/token
        {"email": "alex@example.com", "password": "password123"}
        ```

    Raises:
        HTTPException: 401 Unauthorized if the credentials are invalid
    """
    client_ip = http_request.client.host if http_request.client else None
    user = Repository(db).get_user_by_email(request.email)

    if not user or not user.password or not verify_password(request.password, user.password):
        audit_logger.log_auth_failure(email=request.email, reason="invalid credentials", ip_address=client_ip)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid email or password",
            headers={"WWW-Authenticate": "Bearer"}
        )

    token_data = create_access_token(user_id=user.id)
    audit_logger.log_auth_success(user_id=user.id, email=user.email, ip_address=client_ip)
    logger.info(f"User {user.email} authenticated successfully")

    expires_in = int((token_data["expires_at"] - token_data["issued_at"]).total_seconds())

    return TokenResponse(
        access_token=token_data["token"],
        token_type="Bearer",
        expires_in=expires_in,
        user_id=user.id
    )


# User Endpoints
@users_router.get("", response_model=List[UserSummary])
def list_users(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    """List every user (id, email, name), e.g. to pick conversation participants."""
    return [UserSummary.model_validate(user) for user in Repository(db).list_users()]


# Conversation Endpoints
@conversations_router.get("/all", response_model=List[ConversationSummary])
def list_conversations(
    current_user: User = Depends(get_current_user),
    service: ConversationService = Depends(get_conversation_service)
):
    """
    List the caller's conversations, most recently active first.

    Example Response:
        ```json
        [
            {
                "id": "4f1c...",
                "title": "Weekend plans",
                "last_message": "See you there!",
                "updated_at": "2024-05-04T18:22:31.120000"
            }
        ]
        ```
    """
    return service.list_conversations(current_user.id)


@conversations_router.get("/{conversation_id}", response_model=ConversationDetail)
def get_conversation(
    conversation_id: str,
    current_user: User = Depends(get_current_user),
    service: ConversationService = Depends(get_conversation_service)
):
    """Full conversation with participants and message history (participants only)."""
    conversation = service.get_conversation(current_user.id, conversation_id)
    return ConversationDetail.model_validate(conversation)


@conversations_router.post("", response_model=ConversationResponse, status_code=status.HTTP_201_CREATED)
def create_conversation(
    request: ConversationCreate,
    current_user: User = Depends(get_current_user),
    service: ConversationService = Depends(get_conversation_service)
):
    """
    Create a conversation authored by the caller.

    Example Request:
        ```json
        POST /conversation
        {"title": "Weekend plans", "participant_emails": ["blake@example.com"]}
        ```
    """
    conversation = service.create_conversation(
        author_id=current_user.id,
        participant_emails=request.participant_emails,
        title=request.title
    )
    return ConversationResponse.model_validate(conversation)


@conversations_router.post(
    "/with-message",
    response_model=ConversationWithMessageResponse,
    status_code=status.HTTP_201_CREATED
)
def create_conversation_with_message(
    request: ConversationWithMessageCreate,
    current_user: User = Depends(get_current_user),
    service: ConversationService = Depends(get_conversation_service)
):
    """
    Create a conversation and its first message atomically.

    Every participant connected over WebSocket receives a conversation.created
    event on their personal channel.
    """
    conversation, message = service.create_conversation_with_message(
        author_id=current_user.id,
        participant_emails=request.participant_emails,
        initial_message=request.initial_message,
        title=request.title
    )
    return ConversationWithMessageResponse(
        conversation=ConversationResponse.model_validate(conversation),
        message=MessageResponse.model_validate(message)
    )


@conversations_router.put("/{conversation_id}", response_model=ConversationResponse)
def update_conversation(
    conversation_id: str,
    request: ConversationUpdate,
    current_user: User = Depends(get_current_user),
    service: ConversationService = Depends(get_conversation_service)
):
    """Change title and/or participants (author only)."""
    conversation = service.update_conversation(current_user.id, conversation_id, request)
    return ConversationResponse.model_validate(conversation)


@conversations_router.delete("/{conversation_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_conversation(
    conversation_id: str,
    current_user: User = Depends(get_current_user),
    service: ConversationService = Depends(get_conversation_service)
):
    """Delete a conversation and all of its messages (author only)."""
    service.delete_conversation(current_user.id, conversation_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# Message Endpoints
@messages_router.get("/all", response_model=List[MessageDigest])
def list_messages(
    current_user: User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service)
):
    """Messages sent by the caller, newest first."""
    return [MessageDigest.model_validate(message) for message in service.list_messages(current_user.id)]


@messages_router.get("/{message_id}", response_model=MessageResponse)
def get_message(
    message_id: str,
    current_user: User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service)
):
    """One of the caller's own messages."""
    return MessageResponse.model_validate(service.get_message(current_user.id, message_id))


@messages_router.post("/{conversation_id}", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
def send_message(
    conversation_id: str,
    request: MessageCreate,
    current_user: User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service)
):
    """
    Send a message to a conversation the caller participates in.

    Example Request:
        ```json
        POST /message/4f1c...
        {"content": "Hello!"}
        ```

    WebSocket Notification:
        message.created is pushed to every connection that joined the
        conversation.
    """
    message = service.send_message(current_user.id, conversation_id, request.content)
    return MessageResponse.model_validate(message)


@messages_router.put("/{conversation_id}/message/{message_id}", response_model=MessageResponse)
def update_message(
    conversation_id: str,
    message_id: str,
    request: MessageCreate,
    current_user: User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service)
):
    """Edit one of the caller's messages."""
    message = service.update_message(current_user.id, conversation_id, message_id, request.content)
    return MessageResponse.model_validate(message)


@messages_router.delete("/{conversation_id}/message/{message_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_message(
    conversation_id: str,
    message_id: str,
    current_user: User = Depends(get_current_user),
    service: MessageService = Depends(get_message_service)
):
    """Delete one of the caller's messages."""
    service.delete_message(current_user.id, conversation_id, message_id)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


# WebSocket Endpoint
@websocket_router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    token: Optional[str] = Query(None, description="JWT access token for authentication"),
    manager: ConnectionManager = Depends(get_connection_manager)
):
    """
    WebSocket endpoint for real-time notifications.

    Connection Flow:
        1. Client connects with token: ws://api/ws?token={jwt}
        2. Server validates token and accepts/rejects connection
        3. Connection is subscribed to the user's personal channel
           (conversation.created events)
        4. Client joins conversations: {"action": "join", "conversation_id": "..."}
        5. Server pushes message.created / message.updated / message.deleted
        6. Server sends periodic pings, client answers {"action": "pong"}

    Frames (Server -> Client):
        {"type": <event>, "payload": {...}, "timestamp": "..."}
        plus connected, joined, left, ping and error frames

    Close Codes:
        - 4001: Authentication failed (invalid token)
        - 4002: Connection limit reached
    """
    user_id = await run_in_threadpool(validate_websocket_token, token) if token else None
    if not user_id:
        logger.warning("WebSocket authentication failed")
        await websocket.close(code=4001, reason="Authentication failed")
        return

    connected = await manager.connect(websocket, user_id)
    if not connected:
        logger.warning(f"Connection limit reached for user {user_id}")
        await websocket.close(code=4002, reason="Connection limit reached")
        return

    logger.info(f"WebSocket connection established for user {user_id}")
    manager.send_to_connection(websocket, {
        "type": "connected",
        "user_id": user_id,
        "timestamp": _utc_timestamp()
    })

    try:
        while True:
            data = await websocket.receive_text()

            try:
                command = WSCommand.model_validate_json(data)
            except PydanticValidationError:
                manager.send_to_connection(websocket, WSError(
                    error="Invalid message format",
                    code="INVALID_MESSAGE"
                ).model_dump())
                continue

            websocket_messages_received_total.labels(action=command.action, instance="api").inc()

            if command.action == "pong":
                await manager.update_heartbeat(websocket)
                continue

            if command.action not in ("join", "leave"):
                manager.send_to_connection(websocket, WSError(
                    error=f"Unknown action: {command.action}",
                    code="INVALID_ACTION"
                ).model_dump())
                continue

            if not command.conversation_id:
                manager.send_to_connection(websocket, WSError(
                    error="Missing conversation_id",
                    code="INVALID_MESSAGE"
                ).model_dump())
                continue

            if command.action == "join":
                allowed = await run_in_threadpool(is_websocket_participant, command.conversation_id, user_id)
                if not allowed:
                    audit_logger.log_authorization_denied(
                        user_id=user_id,
                        resource=f"conversation:{command.conversation_id}",
                        action="join",
                        reason="not a participant"
                    )
                    manager.send_to_connection(websocket, WSError(
                        error="You are not a participant in this conversation",
                        code="FORBIDDEN"
                    ).model_dump())
                    continue

                manager.join(websocket, command.conversation_id)
                ack_type = "joined"
            else:
                manager.leave(websocket, command.conversation_id)
                ack_type = "left"

            manager.send_to_connection(websocket, {
                "type": ack_type,
                "conversation_id": command.conversation_id,
                "timestamp": _utc_timestamp()
            })
            logger.info(f"User {user_id} {ack_type} conversation {command.conversation_id}")

    except WebSocketDisconnect:
        logger.info(f"User {user_id} disconnected from WebSocket")
    except Exception as e:
        logger.error(f"WebSocket error for user {user_id}: {e}")
    finally:
        manager.disconnect(websocket)
