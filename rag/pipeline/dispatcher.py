"""Ordered chunk delivery with exactly one terminal signal per turn."""
from __future__ import annotations

import asyncio
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Literal, Optional

import structlog

from api.shared.exceptions import ChatServiceException
from rag.pipeline.state import TurnState, TurnTracker

logger = structlog.get_logger("rag.dispatcher")

UNEXPECTED_ERROR_MESSAGE = "An unexpected error occurred"

EventType = Literal["chunk", "complete", "error"]


@dataclass(frozen=True)
class StreamEvent:
    type: EventType
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def chunk(cls, text: str) -> "StreamEvent":
        return cls("chunk", {"text": text})

    @classmethod
    def complete(cls, payload: Optional[Dict[str, Any]] = None) -> "StreamEvent":
        return cls("complete", dict(payload or {}))

    @classmethod
    def error(cls, message: str) -> "StreamEvent":
        return cls("error", {"message": message})

    @property
    def is_terminal(self) -> bool:
        return self.type != "chunk"


def user_message(error: BaseException) -> str:
    """Human-readable text for an error event."""
    if isinstance(error, ChatServiceException):
        return error.message
    return UNEXPECTED_ERROR_MESSAGE


class StreamDispatcher:
    """Relays chunks in production order and closes the turn.

    ``on_complete`` receives the concatenated answer once the chunk source is
    exhausted; its return value becomes the payload of the ``complete``
    event. If the caller goes away (``is_disconnected`` returns True, or the
    consumer closes or cancels this iterator) the chunk source is closed,
    which aborts any in-flight generation request, and no terminal event is
    produced.
    """

    async def dispatch(
        self,
        chunks: AsyncIterator[str],
        on_complete: Callable[[str], Awaitable[Optional[Dict[str, Any]]]],
        *,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
        tracker: Optional[TurnTracker] = None,
    ) -> AsyncIterator[StreamEvent]:
        tracker = tracker or TurnTracker.streaming("adhoc")
        parts: List[str] = []
        try:
            try:
                async with aclosing(chunks) as source:
                    async for chunk in source:
                        if is_disconnected is not None and await is_disconnected():
                            tracker.cancel()
                            logger.info(
                                "Caller disconnected, aborting stream",
                                turn_id=tracker.turn_id,
                                chunks_sent=len(parts),
                            )
                            return
                        parts.append(chunk)
                        yield StreamEvent.chunk(chunk)
            except asyncio.CancelledError:
                tracker.cancel()
                raise
            except Exception as e:
                tracker.fail()
                logger.error(
                    "Answer stream failed",
                    turn_id=tracker.turn_id,
                    chunks_sent=len(parts),
                    error=str(e),
                    details=getattr(e, "details", None),
                    exc_info=not isinstance(e, ChatServiceException),
                )
                yield StreamEvent.error(user_message(e))
                return

            tracker.advance(TurnState.COMPLETED)
            answer = "".join(parts)
            try:
                payload = await on_complete(answer)
            except Exception as e:
                logger.error(
                    "Completed answer could not be finalized",
                    turn_id=tracker.turn_id,
                    answer_length=len(answer),
                    error=str(e),
                    details=getattr(e, "details", None),
                    exc_info=not isinstance(e, ChatServiceException),
                )
                yield StreamEvent.error(user_message(e))
                return

            yield StreamEvent.complete(payload)
        finally:
            if not tracker.is_terminal:
                tracker.cancel()
                logger.info("Stream closed by caller", turn_id=tracker.turn_id)
