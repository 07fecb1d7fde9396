"""
Message store access.

Messages are scoped to their conversation and owned by their sender: only a
current participant may send, only the sender may read back, edit or delete.
Lookups that fail for either reason raise the same NotFoundOrForbiddenError.
"""
import logging
from typing import List

from api.metrics import messages_created_total
from api.schemas import MessageDeleted, MessageResponse
from api.websocket_manager import (
    EVENT_DELETE_MESSAGE, EVENT_NEW_MESSAGE, EVENT_UPDATE_MESSAGE, conversation_group
)
from core.audit_logger import audit_logger
from core.exceptions import ForbiddenError, NotFoundOrForbiddenError
from db.models import Message
from db.repository import Repository
from services.base import BaseService

logger = logging.getLogger(__name__)


class MessageService(BaseService):
    """Message operations scoped to an authenticated caller."""

    def __init__(self, db, broadcaster):
        super().__init__(db, broadcaster)
        self.repository = Repository(db)

    def list_messages(self, user_id: str) -> List[Message]:
        """All messages sent by the user, newest first."""
        return self.repository.get_messages_by_sender(user_id)

    def get_message(self, user_id: str, message_id: str) -> Message:
        """Return one of the caller's own messages."""
        return self._get_owned(user_id, message_id, action="read")

    def send_message(self, sender_id: str, conversation_id: str, content: str) -> Message:
        """
        Post a message into a conversation the sender participates in.

        Emits message.created with the full message to the conversation group.

        Raises:
            ValidationError: Empty content
            ForbiddenError: Sender is not a participant (or conversation does not exist)
        """
        self.require_content(content)

        if not self.repository.is_conversation_participant(conversation_id, sender_id):
            audit_logger.log_authorization_denied(
                user_id=sender_id,
                resource=f"conversation:{conversation_id}",
                action="send_message",
                reason="not a participant"
            )
            raise ForbiddenError("You are not a participant in this conversation")

        message = self.repository.add_message(
            conversation_id=conversation_id,
            sender_id=sender_id,
            content=content
        )
        self.commit()

        messages_created_total.labels(instance="api").inc()
        logger.info(f"Message {message.id} sent to conversation {conversation_id} by {sender_id}")

        self.publish(
            conversation_group(conversation_id),
            EVENT_NEW_MESSAGE,
            MessageResponse.model_validate(message)
        )
        return message

    def update_message(self, user_id: str, conversation_id: str, message_id: str, content: str) -> Message:
        """
        Edit the content of one of the caller's messages.

        Emits message.updated with the full message to the conversation group.
        """
        self.require_content(content)
        message = self._get_owned(user_id, message_id, action="update", conversation_id=conversation_id)

        message.content = content
        self.commit()
        logger.info(f"Message {message_id} updated by {user_id}")

        self.publish(
            conversation_group(conversation_id),
            EVENT_UPDATE_MESSAGE,
            MessageResponse.model_validate(message)
        )
        return message

    def delete_message(self, user_id: str, conversation_id: str, message_id: str) -> None:
        """
        Delete one of the caller's messages.

        Emits message.deleted carrying only the message id.
        """
        message = self._get_owned(user_id, message_id, action="delete", conversation_id=conversation_id)

        self.repository.delete_message(message)
        self.commit()
        logger.info(f"Message {message_id} deleted by {user_id}")

        self.publish(
            conversation_group(conversation_id),
            EVENT_DELETE_MESSAGE,
            MessageDeleted(id=message_id)
        )

    def _get_owned(self, user_id: str, message_id: str, action: str, conversation_id: str = None) -> Message:
        message = self.repository.get_message_by_id(message_id)
        if message is None:
            raise NotFoundOrForbiddenError()

        if message.sender_id != user_id or (conversation_id is not None and message.conversation_id != conversation_id):
            audit_logger.log_authorization_denied(
                user_id=user_id,
                resource=f"message:{message_id}",
                action=action,
                reason="not the sender or wrong conversation"
            )
            raise NotFoundOrForbiddenError()

        return message
