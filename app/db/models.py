"""
SQLAlchemy ORM models for the chat database.
Defines all entities: User, Conversation (with its participants association
table) and Message.
"""
import uuid
from datetime import datetime, timezone
from sqlalchemy import Column, String, DateTime, ForeignKey, Text, Table
from sqlalchemy.orm import relationship
from db.database import Base


def generate_id() -> str:
    """Server-generated identifier for conversations and messages."""
    return str(uuid.uuid4())


def utcnow() -> datetime:
    """Naive UTC timestamp, comparable with values read back from any backend."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


# Many-to-many relationship between conversations and their participants
conversation_participants = Table(
    "conversation_participants",
    Base.metadata,
    Column("conversation_id", String(36), ForeignKey("conversations.id", ondelete="CASCADE"), primary_key=True),
    Column("user_id", String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True, index=True),
)


class User(Base):
    """User entity - created out of band, referenced but never mutated by the core."""
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=generate_id)
    email = Column(String(255), unique=True, nullable=False, index=True)
    name = Column(String(100), nullable=False)
    password = Column(String(100), nullable=True)  # bcrypt hash; only used by /auth/token
    created_at = Column(DateTime, default=utcnow, nullable=False)

    # Relationships
    authored_conversations = relationship("Conversation", back_populates="author")
    conversations = relationship(
        "Conversation",
        secondary=conversation_participants,
        back_populates="participants"
    )
    messages = relationship("Message", back_populates="sender")


class Conversation(Base):
    """Conversation entity - one author, a set of participants (author included)."""
    __tablename__ = "conversations"

    id = Column(String(36), primary_key=True, default=generate_id)
    title = Column(String(255), nullable=True)
    author_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)

    # Relationships
    author = relationship("User", back_populates="authored_conversations")
    participants = relationship(
        "User",
        secondary=conversation_participants,
        back_populates="conversations",
        order_by="User.email"
    )
    messages = relationship(
        "Message",
        back_populates="conversation",
        cascade="all, delete-orphan",
        order_by=lambda: [Message.created_at, Message.id]
    )

    def has_participant(self, user_id: str) -> bool:
        """Check whether a user belongs to this conversation's participant set."""
        return any(participant.id == user_id for participant in self.participants)


class Message(Base):
    """Message entity - owned by exactly one conversation, sent by one participant."""
    __tablename__ = "messages"

    id = Column(String(36), primary_key=True, default=generate_id)
    content = Column(Text, nullable=False)
    conversation_id = Column(
        String(36),
        ForeignKey("conversations.id", ondelete="CASCADE"),
        nullable=False,
        index=True
    )
    sender_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False, index=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    # Relationships
    conversation = relationship("Conversation", back_populates="messages")
    sender = relationship("User", back_populates="messages")
