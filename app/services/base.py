"""
Shared plumbing for the store-access services: transaction boundaries,
post-commit event publication and input checks.
"""
import logging
from contextlib import contextmanager
from typing import Any, Iterable, Iterator, Optional
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from api.websocket_manager import ConnectionManager
from core.exceptions import BroadcasterNotReadyError, ConflictError, ValidationError

logger = logging.getLogger(__name__)


class BaseService:
    """
    Base class for services operating on one database session.

    Args:
        db: SQLAlchemy session scoped to the current request
        broadcaster: Connection manager used for real-time fan-out
    """

    def __init__(self, db: Session, broadcaster: ConnectionManager):
        self.db = db
        self.broadcaster = broadcaster

    @contextmanager
    def atomic(self, operation: str) -> Iterator[None]:
        """
        Run a multi-step write as a single all-or-nothing transaction.

        Commits when the block completes. Any failure rolls back every staged
        change; persistence failures surface as ConflictError, domain errors
        raised inside the block propagate unchanged.
        """
        try:
            yield
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Transaction failed during {operation}: {e}")
            raise ConflictError(f"Could not {operation}") from e
        except Exception:
            self.db.rollback()
            raise

    def commit(self) -> None:
        """Commit a single-step write; roll back and propagate on failure."""
        try:
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

    def publish(self, group: str, event: str, payload: Any) -> None:
        """
        Emit an event after a successful commit.

        Delivery problems are logged and swallowed so they never turn a
        committed mutation into a failure. An unstarted broadcaster is a
        configuration error and is raised.
        """
        try:
            self.broadcaster.emit(group, event, payload)
        except BroadcasterNotReadyError:
            raise
        except Exception as e:
            logger.error(f"Failed to emit {event} to {group}: {e}", exc_info=True)

    def revoke_subscriptions(self, conversation_id: str, user_ids: Optional[Iterable[str]] = None) -> None:
        """
        Stop fan-out for a conversation to users who lost access to it.

        Runs after commit; failures are logged and swallowed like publish().
        """
        try:
            self.broadcaster.evict(conversation_id, user_ids)
        except Exception as e:
            logger.error(f"Failed to evict subscribers of conversation {conversation_id}: {e}", exc_info=True)

    @staticmethod
    def require_content(content: str) -> str:
        """Reject empty or whitespace-only message content."""
        if content is None or not content.strip():
            raise ValidationError("Message content must not be empty")
        return content
