"""Controller for the Chat feature."""
import json
from typing import AsyncIterator, Awaitable, Callable, Optional

import structlog

from api.features.chat.dtos import StreamEventDTO, StreamQueryRequest
from rag.pipeline.dispatcher import StreamEvent
from rag.pipeline.query_pipeline import QueryPipeline

logger = structlog.get_logger("rag.chat")


def format_sse(event: StreamEventDTO) -> bytes:
    payload = json.dumps(event.data, ensure_ascii=False)
    return f"event: {event.event}\ndata: {payload}\n\n".encode("utf-8")


class ChatController:
    """Controller translating query turns into server-sent events."""

    def __init__(self, query_pipeline: QueryPipeline):
        self.query_pipeline = query_pipeline

    async def events(
        self,
        request: StreamQueryRequest,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncIterator[StreamEvent]:
        async for event in self.query_pipeline.stream_query(
            request.query, request.conversation_id, is_disconnected=is_disconnected
        ):
            yield event

    async def stream_query(
        self,
        request: StreamQueryRequest,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncIterator[bytes]:
        logger.info("Streaming query", conversation_id=request.conversation_id)
        async for event in self.events(request, is_disconnected):
            yield format_sse(StreamEventDTO(event=event.type, data=event.data))
