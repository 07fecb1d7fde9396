"""
Repository layer for database operations.
Provides high-level query methods over users, conversations and messages.

Write methods only stage changes on the session; committing is left to the
caller so that multi-step operations share one transaction boundary.
"""
from typing import Dict, Iterable, List, Optional
from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload
from db.models import User, Conversation, Message


class Repository:
    """Repository class for database operations."""

    def __init__(self, db: Session):
        """
        Initialize repository with database session.

        Args:
            db: SQLAlchemy database session
        """
        self.db = db

    # User operations
    def create_user(self, email: str, name: str, password_hash: Optional[str] = None, user_id: Optional[str] = None) -> User:
        """Create a new user (seed data and tests; users are otherwise managed out of band)."""
        user = User(email=email, name=name, password=password_hash)
        if user_id is not None:
            user.id = user_id
        self.db.add(user)
        self.db.flush()
        return user

    def get_user_by_id(self, user_id: str) -> Optional[User]:
        """Get user by ID."""
        return self.db.query(User).filter(User.id == user_id).first()

    def get_user_by_email(self, email: str) -> Optional[User]:
        """Get user by email."""
        return self.db.query(User).filter(User.email == email).first()

    def get_users_by_emails(self, emails: Iterable[str]) -> List[User]:
        """
        Resolve a list of emails to users.

        Emails with no matching user are simply absent from the result.
        """
        emails = list(set(emails or []))
        if not emails:
            return []
        return self.db.query(User).filter(User.email.in_(emails)).all()

    def list_users(self) -> List[User]:
        """Get all users ordered by email."""
        return self.db.query(User).order_by(User.email).all()

    # Conversation operations
    def add_conversation(self, author: User, participants: Iterable[User], title: Optional[str] = None) -> Conversation:
        """Stage a new conversation with its author and participant links."""
        conversation = Conversation(title=title, author=author, participants=list(participants))
        self.db.add(conversation)
        self.db.flush()
        return conversation

    def get_conversation_by_id(self, conversation_id: str) -> Optional[Conversation]:
        """Get conversation by ID."""
        return self.db.query(Conversation).filter(Conversation.id == conversation_id).first()

    def get_conversation_detail(self, conversation_id: str) -> Optional[Conversation]:
        """Get conversation by ID with participants, author and messages (with senders) eagerly loaded."""
        return self.db.query(Conversation).options(
            selectinload(Conversation.participants),
            selectinload(Conversation.author),
            selectinload(Conversation.messages).selectinload(Message.sender)
        ).filter(Conversation.id == conversation_id).first()

    def get_user_conversations(self, user_id: str) -> List[Conversation]:
        """Get every conversation where the user is a participant."""
        return self.db.query(Conversation).filter(
            Conversation.participants.any(User.id == user_id)
        ).all()

    def is_conversation_participant(self, conversation_id: str, user_id: str) -> bool:
        """Check if user is a participant of conversation."""
        match = self.db.query(Conversation.id).filter(
            Conversation.id == conversation_id,
            Conversation.participants.any(User.id == user_id)
        ).first()
        return match is not None

    def delete_conversation(self, conversation: Conversation) -> None:
        """Stage deletion of a conversation; its messages are removed with it."""
        self.db.delete(conversation)

    # Message operations
    def add_message(self, conversation_id: str, sender_id: str, content: str) -> Message:
        """Stage a new message."""
        message = Message(conversation_id=conversation_id, sender_id=sender_id, content=content)
        self.db.add(message)
        self.db.flush()
        return message

    def get_message_by_id(self, message_id: str) -> Optional[Message]:
        """Get message by ID."""
        return self.db.query(Message).filter(Message.id == message_id).first()

    def get_last_messages(self, conversation_ids: Iterable[str]) -> Dict[str, Message]:
        """
        Get the most recent message of each conversation in a single query.

        Returns a mapping of conversation id to message; conversations without
        messages are absent.
        """
        conversation_ids = list(conversation_ids)
        if not conversation_ids:
            return {}

        ranked = self.db.query(
            Message.id.label("message_id"),
            func.row_number().over(
                partition_by=Message.conversation_id,
                order_by=[Message.created_at.desc(), Message.id.desc()]
            ).label("position")
        ).filter(Message.conversation_id.in_(conversation_ids)).subquery()

        latest = self.db.query(Message).join(
            ranked, Message.id == ranked.c.message_id
        ).filter(ranked.c.position == 1).all()
        return {message.conversation_id: message for message in latest}

    def get_messages_by_sender(self, sender_id: str) -> List[Message]:
        """Get all messages sent by a user, newest first."""
        return self.db.query(Message).filter(
            Message.sender_id == sender_id
        ).order_by(Message.created_at.desc(), Message.id.desc()).all()

    def delete_message(self, message: Message) -> None:
        """Stage deletion of a message."""
        self.db.delete(message)
