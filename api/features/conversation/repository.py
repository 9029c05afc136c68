"""Repositories for conversation persistence operations.

``append_message`` is the only write path for messages: the insert, the
message counter, the last-message timestamp and the auto-title are applied as
one atomic unit per call. Appends to one conversation are serialized;
appends to different conversations are not.
"""
from __future__ import annotations

import asyncio
import json
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from api.features.conversation.exceptions import ConversationNotFound, PersistenceFailure
from api.features.conversation.models import (
    Conversation,
    ConversationStatus,
    Message,
    MessageRole,
)
from api.shared.utils import estimate_token_count, truncate_snippet
from infra.resources import DatabaseResource
from rag.models import Source

TITLE_LENGTH = 50
TIMESTAMP_STEP = timedelta(microseconds=1)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def title_from(content: str) -> str:
    return truncate_snippet(content, TITLE_LENGTH)


def next_message_time(now: datetime, last_message_at: datetime) -> datetime:
    """Strictly after the previous message, even if the clock went backwards."""
    return max(now, last_message_at + TIMESTAMP_STEP)


class ConversationRepository(ABC):
    @abstractmethod
    async def create_conversation(
        self, *, title: Optional[str] = None, user_id: Optional[str] = None
    ) -> Conversation:
        ...

    @abstractmethod
    async def get_conversation(self, conversation_id: uuid.UUID) -> Optional[Conversation]:
        ...

    @abstractmethod
    async def append_message(
        self,
        conversation_id: uuid.UUID,
        *,
        role: MessageRole,
        content: str,
        sources: Optional[Sequence[Source]] = None,
        model: Optional[str] = None,
    ) -> tuple[Conversation, Message]:
        """Atomically insert a message and bump the conversation counters.

        Raises ``ConversationNotFound`` if the conversation vanished and
        ``PersistenceFailure`` if the write did not commit.
        """

    @abstractmethod
    async def list_messages(
        self, conversation_id: uuid.UUID, *, limit: Optional[int] = None
    ) -> List[Message]:
        """Messages in chronological order."""


class InMemoryConversationRepository(ConversationRepository):
    """Dict-backed store with one lock per conversation."""

    def __init__(self, clock: Callable[[], datetime] = utcnow):
        self._clock = clock
        self._conversations: Dict[uuid.UUID, Conversation] = {}
        self._messages: Dict[uuid.UUID, List[Message]] = {}
        self._locks: Dict[uuid.UUID, asyncio.Lock] = {}

    async def create_conversation(
        self, *, title: Optional[str] = None, user_id: Optional[str] = None
    ) -> Conversation:
        now = self._clock()
        conv = Conversation(
            id=uuid.uuid4(),
            title=title,
            user_id=user_id,
            created_at=now,
            last_message_at=now,
        )
        self._conversations[conv.id] = conv
        self._messages[conv.id] = []
        self._locks[conv.id] = asyncio.Lock()
        return conv

    async def get_conversation(self, conversation_id: uuid.UUID) -> Optional[Conversation]:
        return self._conversations.get(conversation_id)

    async def append_message(
        self,
        conversation_id: uuid.UUID,
        *,
        role: MessageRole,
        content: str,
        sources: Optional[Sequence[Source]] = None,
        model: Optional[str] = None,
    ) -> tuple[Conversation, Message]:
        lock = self._locks.get(conversation_id)
        if lock is None:
            raise ConversationNotFound(str(conversation_id))
        async with lock:
            conv = self._conversations[conversation_id]
            created_at = next_message_time(self._clock(), conv.last_message_at)
            message = Message(
                id=uuid.uuid4(),
                conversation_id=conversation_id,
                role=role,
                content=content,
                sources=list(sources) if sources else None,
                token_count=estimate_token_count(content),
                model=model,
                created_at=created_at,
            )
            updates: Dict[str, Any] = {
                "message_count": conv.message_count + 1,
                "last_message_at": created_at,
            }
            if role == MessageRole.USER and not conv.title:
                updates["title"] = title_from(content)
            updated = conv.model_copy(update=updates)

            self._messages[conversation_id].append(message)
            self._conversations[conversation_id] = updated
            return updated, message

    async def list_messages(
        self, conversation_id: uuid.UUID, *, limit: Optional[int] = None
    ) -> List[Message]:
        messages = list(self._messages.get(conversation_id, []))
        return messages[:limit] if limit is not None else messages


class PostgresConversationRepository(ConversationRepository):
    """Raw SQL via SQLAlchemy AsyncSession; one transaction per write."""

    def __init__(self, database: DatabaseResource, clock: Callable[[], datetime] = utcnow):
        self.database = database
        self._clock = clock

    async def create_conversation(
        self, *, title: Optional[str] = None, user_id: Optional[str] = None
    ) -> Conversation:
        sql = text(
            """
            INSERT INTO conversation (id, user_id, title, status, message_count)
            VALUES (:id, :user_id, :title, :status, 0)
            RETURNING id, user_id, title, status, message_count,
                      created_at, last_message_at
            """
        )
        params = {
            "id": uuid.uuid4(),
            "user_id": user_id,
            "title": title,
            "status": ConversationStatus.ACTIVE.value,
        }
        try:
            async with self.database.get_session() as session:
                async with session.begin():
                    res = await session.execute(sql, params)
                    row = res.mappings().one()
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceFailure("create conversation", str(e)) from e
        return _conversation_from_row(row)

    async def get_conversation(self, conversation_id: uuid.UUID) -> Optional[Conversation]:
        sql = text(
            """
            SELECT id, user_id, title, status, message_count,
                   created_at, last_message_at
            FROM conversation
            WHERE id = :id
            """
        )
        try:
            async with self.database.get_session() as session:
                res = await session.execute(sql, {"id": conversation_id})
                row = res.mappings().first()
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceFailure("load conversation", str(e)) from e
        return _conversation_from_row(row) if row else None

    async def append_message(
        self,
        conversation_id: uuid.UUID,
        *,
        role: MessageRole,
        content: str,
        sources: Optional[Sequence[Source]] = None,
        model: Optional[str] = None,
    ) -> tuple[Conversation, Message]:
        lock_sql = text(
            """
            SELECT last_message_at FROM conversation
            WHERE id = :id
            FOR UPDATE
            """
        )
        insert_sql = text(
            """
            INSERT INTO message
                (id, conversation_id, role, content, sources, token_count, model, created_at)
            VALUES
                (:id, :conversation_id, :role, :content, CAST(:sources AS jsonb),
                 :token_count, :model, :created_at)
            """
        )
        update_sql = text(
            """
            UPDATE conversation
            SET message_count = message_count + 1,
                last_message_at = :created_at,
                title = COALESCE(NULLIF(title, ''), :title)
            WHERE id = :id
            RETURNING id, user_id, title, status, message_count,
                      created_at, last_message_at
            """
        )
        source_list = list(sources) if sources else None
        message_id = uuid.uuid4()
        token_count = estimate_token_count(content)
        try:
            async with self.database.get_session() as session:
                async with session.begin():
                    res = await session.execute(lock_sql, {"id": conversation_id})
                    locked = res.mappings().first()
                    if locked is None:
                        raise ConversationNotFound(str(conversation_id))
                    created_at = next_message_time(self._clock(), locked["last_message_at"])
                    await session.execute(
                        insert_sql,
                        {
                            "id": message_id,
                            "conversation_id": conversation_id,
                            "role": role.value,
                            "content": content,
                            "sources": (
                                json.dumps([s.model_dump() for s in source_list])
                                if source_list
                                else None
                            ),
                            "token_count": token_count,
                            "model": model,
                            "created_at": created_at,
                        },
                    )
                    res = await session.execute(
                        update_sql,
                        {
                            "id": conversation_id,
                            "created_at": created_at,
                            "title": title_from(content) if role == MessageRole.USER else None,
                        },
                    )
                    row = res.mappings().one()
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceFailure(f"append {role.value} message", str(e)) from e

        message = Message(
            id=message_id,
            conversation_id=conversation_id,
            role=role,
            content=content,
            sources=source_list,
            token_count=token_count,
            model=model,
            created_at=created_at,
        )
        return _conversation_from_row(row), message

    async def list_messages(
        self, conversation_id: uuid.UUID, *, limit: Optional[int] = None
    ) -> List[Message]:
        sql = text(
            """
            SELECT id, conversation_id, role, content, sources, token_count, model, created_at
            FROM message
            WHERE conversation_id = :conversation_id
            ORDER BY created_at ASC, id ASC
            LIMIT :limit
            """
        )
        try:
            async with self.database.get_session() as session:
                res = await session.execute(
                    sql, {"conversation_id": conversation_id, "limit": limit}
                )
                rows = res.mappings().all()
        except (SQLAlchemyError, OSError) as e:
            raise PersistenceFailure("list messages", str(e)) from e
        return [_message_from_row(r) for r in rows]


def _conversation_from_row(row: Mapping[str, Any]) -> Conversation:
    return Conversation(
        id=row["id"],
        user_id=row["user_id"],
        title=row["title"],
        status=row["status"],
        message_count=row["message_count"],
        created_at=row["created_at"],
        last_message_at=row["last_message_at"],
    )


def _message_from_row(row: Mapping[str, Any]) -> Message:
    sources = row["sources"]
    if isinstance(sources, str):
        sources = json.loads(sources)
    return Message(
        id=row["id"],
        conversation_id=row["conversation_id"],
        role=row["role"],
        content=row["content"],
        sources=[Source(**s) for s in sources] if sources else None,
        token_count=row["token_count"],
        model=row["model"],
        created_at=row["created_at"],
    )
