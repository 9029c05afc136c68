"""Conversation and message records returned by the repositories."""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from rag.models import Source


class ConversationStatus(str, Enum):
    ACTIVE = "active"
    CLOSED = "closed"


class MessageRole(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


class Conversation(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: UUID
    status: ConversationStatus = ConversationStatus.ACTIVE
    message_count: int = Field(default=0, ge=0)
    last_message_at: datetime
    created_at: datetime
    title: Optional[str] = None
    user_id: Optional[str] = None


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: UUID
    conversation_id: UUID
    role: MessageRole
    content: str
    sources: Optional[List[Source]] = None
    token_count: Optional[int] = None
    model: Optional[str] = None
    created_at: datetime
