"""Append-only record of query turns.

A turn writes its user message in ``begin_turn`` before any retrieval or
generation starts, and its assistant message in ``complete_turn`` only once
the answer stream has completed. A failed or cancelled turn therefore leaves
the user message as its only record.
"""
from __future__ import annotations

from typing import Optional, Sequence
from uuid import UUID

import structlog

from api.features.conversation.exceptions import ConversationNotFound, PersistenceFailure
from api.features.conversation.models import Conversation, Message, MessageRole
from api.features.conversation.repository import ConversationRepository
from api.shared.utils import parse_uuid
from rag.models import Source

logger = structlog.get_logger("rag.ledger")


class ConversationLedger:
    def __init__(self, repository: ConversationRepository):
        self.repository = repository

    async def begin_turn(self, conversation_id: str | UUID, query_text: str) -> Conversation:
        conv_id = parse_uuid(conversation_id)
        if conv_id is None:
            raise ConversationNotFound(str(conversation_id))

        conversation = await self.repository.get_conversation(conv_id)
        if conversation is None:
            logger.warning("Conversation not found", conversation_id=str(conv_id))
            raise ConversationNotFound(str(conv_id))

        try:
            conversation, message = await self.repository.append_message(
                conv_id, role=MessageRole.USER, content=query_text
            )
        except PersistenceFailure as e:
            logger.error(
                "Failed to record user message",
                conversation_id=str(conv_id),
                error=e.details.get("error", e.message),
            )
            raise

        logger.info(
            "Turn started",
            conversation_id=str(conv_id),
            message_id=str(message.id),
            message_count=conversation.message_count,
        )
        return conversation

    async def complete_turn(
        self,
        conversation_id: str | UUID,
        answer_text: str,
        sources: Sequence[Source] = (),
        model: Optional[str] = None,
    ) -> Message:
        conv_id = parse_uuid(conversation_id)
        if conv_id is None:
            raise ConversationNotFound(str(conversation_id))

        try:
            conversation, message = await self.repository.append_message(
                conv_id,
                role=MessageRole.ASSISTANT,
                content=answer_text,
                sources=list(sources) or None,
                model=model,
            )
        except PersistenceFailure as e:
            # The caller has already seen the streamed answer; it is not durable.
            logger.error(
                "Streamed answer was not recorded",
                conversation_id=str(conv_id),
                answer_length=len(answer_text),
                error=e.details.get("error", e.message),
            )
            raise

        logger.info(
            "Turn completed",
            conversation_id=str(conv_id),
            message_id=str(message.id),
            message_count=conversation.message_count,
            source_count=len(message.sources or []),
        )
        return message
