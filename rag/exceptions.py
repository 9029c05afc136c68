"""Exceptions raised by the query-time RAG pipeline."""
from typing import Any, Dict, Optional

from api.shared.exceptions import ExternalServiceError


class ProviderUnavailable(ExternalServiceError):
    """Raised when the embedding or generation provider cannot serve a request.

    The provider's own error text goes to ``details["error"]``, never into
    ``message``.
    """

    def __init__(
        self,
        provider: str,
        message: str,
        attempts: int = 1,
        details: Optional[Dict[str, Any]] = None,
        error: Optional[str] = None,
    ):
        error_details: Dict[str, Any] = {"provider": provider, "attempts": attempts}
        if error is not None:
            error_details["error"] = error
        if details:
            error_details.update(details)
        super().__init__(provider, message, error_details)
        self.error_code = "PROVIDER_UNAVAILABLE"
        self.provider = provider
        self.attempts = attempts


class IndexUnavailable(ExternalServiceError):
    """Raised when the similarity index backing store cannot be reached."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__("similarity index", message, details)
        self.error_code = "INDEX_UNAVAILABLE"
