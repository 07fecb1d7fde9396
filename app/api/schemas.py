"""
Pydantic schemas for request/response validation.
Defines all data transfer objects (DTOs) for the API and the payloads
carried by real-time events.
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, ConfigDict


# Authentication Schemas
class TokenRequest(BaseModel):
    """
    Login request.

    Example:
        ```json
        {"email": "alex@example.com", "password": "password123"}
        ```
    """
    email: str = Field(..., min_length=3, max_length=255, description="User email")
    password: str = Field(..., min_length=1, description="User password")


class TokenResponse(BaseModel):
    """
    Bearer token response.

    Example:
        ```json
        {
            "access_token": "eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9...",
            "token_type": "Bearer",
            "expires_in": 86400,
            "user_id": "4200ff7b-b6f4-4a20-849c-8435788f63fe"
        }
        ```
    """
    access_token: str = Field(..., description="JWT access token")
    token_type: str = Field("Bearer", description="Token type")
    expires_in: int = Field(..., description="Access token lifetime in seconds")
    user_id: str = Field(..., description="Authenticated user ID")


# User Schemas
class UserSummary(BaseModel):
    """Public identity of a user as embedded in conversations and messages."""
    id: str = Field(..., description="User identifier")
    email: str = Field(..., description="User email")
    name: str = Field(..., description="Display name")

    model_config = ConfigDict(from_attributes=True)


# Message Schemas
class MessageCreate(BaseModel):
    """Request schema for sending or editing a message."""
    content: str = Field(..., min_length=1, description="Message text content")


class MessageResponse(BaseModel):
    """
    Full message payload, returned by the API and carried by
    message.created / message.updated events.
    """
    id: str = Field(..., description="Message identifier")
    conversation_id: str = Field(..., description="Owning conversation ID")
    content: str = Field(..., description="Message text")
    created_at: datetime = Field(..., description="Creation timestamp (UTC)")
    updated_at: datetime = Field(..., description="Last edit timestamp (UTC)")
    sender: UserSummary = Field(..., description="Sender identity")

    model_config = ConfigDict(from_attributes=True)


class MessageDigest(BaseModel):
    """Reduced message entry used when listing a user's own messages."""
    conversation_id: str = Field(..., description="Owning conversation ID")
    content: str = Field(..., description="Message text")
    created_at: datetime = Field(..., description="Creation timestamp (UTC)")

    model_config = ConfigDict(from_attributes=True)


class MessageDeleted(BaseModel):
    """Payload of a message.deleted event: the identifier only."""
    id: str = Field(..., description="Deleted message identifier")


# Conversation Schemas
class ConversationCreate(BaseModel):
    """
    Request schema for creating a conversation.

    Emails that do not resolve to a user are ignored. The author is always a
    participant, whether or not their own email is listed.

    Example:
        ```json
        {
            "title": "Weekend plans",
            "participant_emails": ["blake@example.com", "casey@example.com"]
        }
        ```
    """
    title: Optional[str] = Field(None, max_length=255, description="Optional conversation title")
    participant_emails: List[str] = Field(default_factory=list, description="Emails of users to add")


class ConversationWithMessageCreate(ConversationCreate):
    """Request schema for creating a conversation together with its first message."""
    initial_message: str = Field(..., min_length=1, description="Content of the first message")


class ConversationUpdate(BaseModel):
    """
    Partial update of a conversation (author only).

    Unset fields are left untouched. Additions are applied before removals,
    so a user listed in both ends up removed. The author cannot be removed.

    Example:
        ```json
        {
            "title": "Renamed",
            "add_participant_emails": ["dana@example.com"],
            "remove_participant_emails": ["blake@example.com"]
        }
        ```
    """
    title: Optional[str] = Field(None, max_length=255, description="New title (empty string clears it)")
    add_participant_emails: List[str] = Field(default_factory=list, description="Emails of users to add")
    remove_participant_emails: List[str] = Field(default_factory=list, description="Emails of users to remove")


class ConversationSummary(BaseModel):
    """
    Conversation list entry, also the payload of conversation.created events.

    Attributes:
        id: Conversation identifier
        title: Conversation title (may be null)
        last_message: Content of the most recent message ("" if none)
        updated_at: Most recent message time, or creation time if no messages
    """
    id: str = Field(..., description="Conversation identifier")
    title: Optional[str] = Field(None, description="Conversation title")
    last_message: str = Field("", description="Most recent message content")
    updated_at: datetime = Field(..., description="Most recent activity timestamp (UTC)")


class ConversationResponse(BaseModel):
    """Conversation with author and participant identities."""
    id: str = Field(..., description="Conversation identifier")
    title: Optional[str] = Field(None, description="Conversation title")
    created_at: datetime = Field(..., description="Creation timestamp (UTC)")
    author: UserSummary = Field(..., description="Conversation author")
    participants: List[UserSummary] = Field(..., description="Conversation participants (author included)")

    model_config = ConfigDict(from_attributes=True)


class ConversationDetail(ConversationResponse):
    """Conversation with its full message history, oldest first."""
    messages: List[MessageResponse] = Field(default_factory=list, description="Messages ordered by creation time")


class ConversationWithMessageResponse(BaseModel):
    """Result of creating a conversation together with its first message."""
    conversation: ConversationResponse
    message: MessageResponse


# WebSocket Schemas
class WSCommand(BaseModel):
    """WebSocket command sent by the client (join, leave or pong)."""
    action: str = Field(..., description="Action type")
    conversation_id: Optional[str] = Field(None, description="Conversation ID for join/leave")


class WSError(BaseModel):
    """WebSocket event: Error notification."""
    type: str = Field(default="error", description="Event type")
    error: str = Field(..., description="Error message")
    code: Optional[str] = Field(None, description="Error code")


# Error Schemas
class ErrorResponse(BaseModel):
    """Standard error response schema."""
    detail: str
    error_code: Optional[str] = None
