"""Exceptions for the Conversation feature."""
from typing import Any, Dict, Optional

from api.shared.exceptions import DatabaseError, NotFoundError


class ConversationNotFound(NotFoundError):
    """Raised when a conversation id does not resolve."""

    def __init__(self, conversation_id: str):
        super().__init__("Conversation", conversation_id)
        self.message = "Conversation not found"
        self.error_code = "CONVERSATION_NOT_FOUND"
        self.args = (self.message,)


class PersistenceFailure(DatabaseError):
    """Raised when a ledger write does not commit.

    ``message`` is safe to show to callers; the driver error stays in
    ``details["error"]``.
    """

    def __init__(self, operation: str, error: str, details: Optional[Dict[str, Any]] = None):
        error_details: Dict[str, Any] = {"operation": operation, "error": error}
        if details:
            error_details.update(details)
        super().__init__(f"Failed to {operation}", error_details)
        self.error_code = "PERSISTENCE_FAILURE"
