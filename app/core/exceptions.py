"""
Domain error kinds raised by the store-access services.

Every error carries a machine-readable code, a user-facing message and the
HTTP status it maps to, so the API layer can render all of them through a
single exception handler.
"""


class ChatError(Exception):
    """
    Base class for domain errors.

    Attributes:
        code: Stable machine-readable error code (e.g. "NOT_FOUND")
        message: User-facing error message
        http_status: Status code used when rendered over HTTP
    """
    code = "CHAT_ERROR"
    http_status = 400
    default_message = "Request could not be processed"

    def __init__(self, message: str = None):
        self.message = message or self.default_message
        super().__init__(self.message)


class UnauthenticatedError(ChatError):
    """No valid identity could be resolved for the caller."""
    code = "UNAUTHENTICATED"
    http_status = 401
    default_message = "Invalid or expired token"


class NotFoundError(ChatError):
    """Referenced entity does not exist."""
    code = "NOT_FOUND"
    http_status = 404
    default_message = "Not found"


class ForbiddenError(ChatError):
    """Entity exists but the caller lacks the required relationship."""
    code = "FORBIDDEN"
    http_status = 403
    default_message = "Not authorized"


class NotFoundOrForbiddenError(ChatError):
    """
    Message-level lookup failure.

    Raised both when the message does not exist and when the caller is not
    its sender; the message is fixed so the two cases present identically.
    """
    code = "NOT_FOUND_OR_FORBIDDEN"
    http_status = 404
    default_message = "Message not found or not authorized"

    def __init__(self):
        super().__init__(self.default_message)


class ValidationError(ChatError):
    """Malformed input, e.g. empty message content."""
    code = "VALIDATION_ERROR"
    http_status = 422
    default_message = "Invalid input"


class ConflictError(ChatError):
    """An atomic multi-step operation could not commit."""
    code = "CONFLICT"
    http_status = 409
    default_message = "The operation could not be committed"


class BroadcasterNotReadyError(RuntimeError):
    """Fan-out was used before the connection manager was started."""
