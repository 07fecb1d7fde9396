"""
Conversation store access.

Listing, reading, creating, updating and deleting conversations while
enforcing the participant/author rules:
- the author is always a participant
- only the author may change the title, change participants or delete
- any participant may read the conversation
"""
import logging
from typing import Iterable, List, Optional, Tuple

from api.metrics import conversations_created_total
from api.schemas import ConversationSummary, ConversationUpdate, MessageResponse
from api.websocket_manager import (
    EVENT_NEW_CONVERSATION, EVENT_NEW_MESSAGE, conversation_group, user_group
)
from core.audit_logger import audit_logger
from core.exceptions import ForbiddenError, NotFoundError
from db.models import Conversation, Message
from db.repository import Repository
from services.base import BaseService

logger = logging.getLogger(__name__)


class ConversationService(BaseService):
    """Conversation operations scoped to an authenticated caller."""

    def __init__(self, db, broadcaster):
        super().__init__(db, broadcaster)
        self.repository = Repository(db)

    def list_conversations(self, user_id: str) -> List[ConversationSummary]:
        """
        Summaries of every conversation the user participates in.

        Most recently active first; ties are broken by conversation id so the
        order is deterministic.
        """
        conversations = self.repository.get_user_conversations(user_id)
        last_messages = self.repository.get_last_messages([conversation.id for conversation in conversations])

        summaries = []
        for conversation in conversations:
            last = last_messages.get(conversation.id)
            summaries.append(ConversationSummary(
                id=conversation.id,
                title=conversation.title,
                last_message=last.content if last else "",
                updated_at=last.created_at if last else conversation.created_at
            ))

        summaries.sort(key=lambda summary: (summary.updated_at, summary.id), reverse=True)
        return summaries

    def get_conversation(self, user_id: str, conversation_id: str) -> Conversation:
        """
        Full conversation with participants, author and messages.

        Raises:
            NotFoundError: No such conversation
            ForbiddenError: Caller is not a participant
        """
        conversation = self.repository.get_conversation_detail(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")

        if not conversation.has_participant(user_id):
            audit_logger.log_authorization_denied(
                user_id=user_id,
                resource=f"conversation:{conversation_id}",
                action="read",
                reason="not a participant"
            )
            raise ForbiddenError("Not authorized to view this conversation")

        return conversation

    def _stage_conversation(self, author_id: str, participant_emails: Iterable[str], title: Optional[str]) -> Conversation:
        author = self.repository.get_user_by_id(author_id)
        if author is None:
            raise NotFoundError("User not found")

        participants = {author.id: author}
        for user in self.repository.get_users_by_emails(participant_emails):
            participants.setdefault(user.id, user)

        return self.repository.add_conversation(
            author=author,
            participants=participants.values(),
            title=title or None
        )

    def create_conversation(
        self,
        author_id: str,
        participant_emails: Iterable[str],
        title: Optional[str] = None
    ) -> Conversation:
        """
        Create a conversation authored by the caller.

        Emails that do not match a user are dropped; the author is always
        added. Conversation and participant links are committed together.
        """
        with self.atomic("create conversation"):
            conversation = self._stage_conversation(author_id, participant_emails, title)

        conversations_created_total.labels(with_message="false", instance="api").inc()
        logger.info(
            f"Conversation {conversation.id} created by {author_id} "
            f"({len(conversation.participants)} participants)"
        )
        return conversation

    def create_conversation_with_message(
        self,
        author_id: str,
        participant_emails: Iterable[str],
        initial_message: str,
        title: Optional[str] = None
    ) -> Tuple[Conversation, Message]:
        """
        Create a conversation and its first message in one transaction.

        Once committed, emits message.created to the conversation group and a
        conversation.created summary to every participant's personal group.
        """
        self.require_content(initial_message)

        with self.atomic("create conversation"):
            conversation = self._stage_conversation(author_id, participant_emails, title)
            message = self.repository.add_message(
                conversation_id=conversation.id,
                sender_id=author_id,
                content=initial_message
            )

        conversations_created_total.labels(with_message="true", instance="api").inc()
        logger.info(f"Conversation {conversation.id} created by {author_id} with initial message {message.id}")

        message_payload = MessageResponse.model_validate(message)
        summary = ConversationSummary(
            id=conversation.id,
            title=conversation.title,
            last_message=message.content,
            updated_at=message.created_at
        )

        self.publish(conversation_group(conversation.id), EVENT_NEW_MESSAGE, message_payload)
        for participant in conversation.participants:
            self.publish(user_group(participant.id), EVENT_NEW_CONVERSATION, summary)

        return conversation, message

    def update_conversation(self, user_id: str, conversation_id: str, patch: ConversationUpdate) -> Conversation:
        """
        Apply a title and/or participant change (author only).

        Additions are applied before removals, so a user in both lists ends
        up removed. The author is never removed. Once committed, removed
        users' connections stop receiving the conversation's events.

        Raises:
            NotFoundError: No such conversation
            ForbiddenError: Caller is not the author
        """
        removed_ids = set()
        with self.atomic("update conversation"):
            conversation = self._get_authored(user_id, conversation_id, action="update")

            additions = self.repository.get_users_by_emails(patch.add_participant_emails)
            removal_ids = {user.id for user in self.repository.get_users_by_emails(patch.remove_participant_emails)}
            removal_ids.discard(conversation.author_id)

            if patch.title is not None:
                conversation.title = patch.title or None

            if additions or removal_ids:
                participants = {participant.id: participant for participant in conversation.participants}
                for user in additions:
                    participants.setdefault(user.id, user)
                removed_ids = {removed_id for removed_id in removal_ids if participants.pop(removed_id, None) is not None}
                conversation.participants = list(participants.values())

        if removed_ids:
            self.revoke_subscriptions(conversation_id, removed_ids)

        logger.info(
            f"Conversation {conversation_id} updated by {user_id} "
            f"(+{len(additions)} / -{len(removed_ids)} participants)"
        )
        return conversation

    def delete_conversation(self, user_id: str, conversation_id: str) -> None:
        """
        Delete a conversation and all of its messages (author only).

        Raises:
            NotFoundError: No such conversation
            ForbiddenError: Caller is not the author
        """
        conversation = self._get_authored(user_id, conversation_id, action="delete")
        self.repository.delete_conversation(conversation)
        self.commit()
        self.revoke_subscriptions(conversation_id)
        logger.info(f"Conversation {conversation_id} deleted by {user_id}")

    def _get_authored(self, user_id: str, conversation_id: str, action: str) -> Conversation:
        conversation = self.repository.get_conversation_by_id(conversation_id)
        if conversation is None:
            raise NotFoundError("Conversation not found")

        if conversation.author_id != user_id:
            audit_logger.log_authorization_denied(
                user_id=user_id,
                resource=f"conversation:{conversation_id}",
                action=action,
                reason="not the author"
            )
            raise ForbiddenError(f"Not authorized to {action} this conversation")

        return conversation
