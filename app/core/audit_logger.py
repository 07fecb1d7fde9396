"""
Audit logging for security events.
Logs authentication failures, invalid tokens and authorization denials
for compliance and forensics.
"""
import logging
import json
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from enum import Enum

logger = logging.getLogger(__name__)


class AuditEventType(str, Enum):
    """Types of security audit events."""
    # Authentication events
    AUTH_SUCCESS = "auth_success"
    AUTH_FAILURE = "auth_failure"
    TOKEN_INVALID = "token_invalid"

    # Authorization events
    AUTHZ_DENIED = "authorization_denied"


class AuditLogger:
    """
    Security audit logger for compliance and forensics.

    All audit events are logged with:
    - Timestamp (ISO 8601)
    - Event type
    - User identifier
    - Source IP address (when known)
    - Additional context metadata
    """

    @staticmethod
    def log_event(
        event_type: AuditEventType,
        user_id: Optional[str] = None,
        ip_address: Optional[str] = None,
        success: bool = True,
        metadata: Optional[Dict[str, Any]] = None,
        error_message: Optional[str] = None
    ) -> None:
        """
        Log a security audit event.

        Args:
            event_type: Type of security event
            user_id: User identifier (if available)
            ip_address: Source IP address
            success: Whether the operation succeeded
            metadata: Additional context (e.g., resource, action)
            error_message: Error message for failed operations
        """
        audit_entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type.value,
            "success": success,
            "user_id": user_id,
            "ip_address": ip_address,
            "metadata": metadata or {},
            "error_message": error_message
        }

        log_level = logging.INFO if success else logging.WARNING
        logger.log(
            log_level,
            f"AUDIT: {event_type.value} | user={user_id} | ip={ip_address} | "
            f"success={success} | {json.dumps(audit_entry)}"
        )

    @staticmethod
    def log_auth_success(user_id: str, email: str, ip_address: Optional[str] = None) -> None:
        """Log successful authentication."""
        AuditLogger.log_event(
            event_type=AuditEventType.AUTH_SUCCESS,
            user_id=user_id,
            ip_address=ip_address,
            success=True,
            metadata={"email": email}
        )

    @staticmethod
    def log_auth_failure(email: Optional[str], reason: str, ip_address: Optional[str] = None) -> None:
        """Log failed authentication attempt."""
        AuditLogger.log_event(
            event_type=AuditEventType.AUTH_FAILURE,
            ip_address=ip_address,
            success=False,
            metadata={"email": email},
            error_message=reason
        )

    @staticmethod
    def log_token_invalid(reason: str, ip_address: Optional[str] = None, endpoint: Optional[str] = None) -> None:
        """Log invalid token usage attempt."""
        AuditLogger.log_event(
            event_type=AuditEventType.TOKEN_INVALID,
            ip_address=ip_address,
            success=False,
            metadata={"endpoint": endpoint},
            error_message=reason
        )

    @staticmethod
    def log_authorization_denied(user_id: str, resource: str, action: str, reason: str) -> None:
        """Log authorization denial."""
        AuditLogger.log_event(
            event_type=AuditEventType.AUTHZ_DENIED,
            user_id=user_id,
            success=False,
            metadata={"resource": resource, "action": action},
            error_message=reason
        )


# Global audit logger instance
audit_logger = AuditLogger()
