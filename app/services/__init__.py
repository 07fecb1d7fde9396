"""Services package initialization."""
from services.conversation_service import ConversationService
from services.message_service import MessageService

__all__ = ["ConversationService", "MessageService"]
