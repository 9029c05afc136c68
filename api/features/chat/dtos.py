"""DTOs for the Chat feature."""
from typing import Any, Dict, Literal

from pydantic import Field, field_validator

from api.shared.dtos import BaseDTO


class StreamQueryRequest(BaseDTO):
    """Request DTO for a streamed query turn."""
    query: str = Field(..., min_length=1, max_length=4000, description="The user's question")
    conversation_id: str = Field(..., min_length=1, description="Conversation the turn belongs to")

    @field_validator("query")
    @classmethod
    def validate_query(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("Query cannot be empty")
        return v


class StreamEventDTO(BaseDTO):
    """One server-sent event of a query turn."""
    event: Literal["chunk", "complete", "error"] = Field(description="Event type")
    data: Dict[str, Any] = Field(default_factory=dict, description="Event payload")
