"""Query Pipeline: record turn → embed → search → synthesize → stream → record answer.

- The user message is persisted before any provider work starts
- Mode (strict/hybrid) is read from configuration once per turn
- Exactly one terminal event (complete or error) ends every turn the caller
  is still listening to
"""
from __future__ import annotations

import time
import uuid
from contextlib import aclosing
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import structlog

from api.features.conversation.ledger import ConversationLedger
from api.shared.exceptions import ChatServiceException
from core.settings import SETTINGS
from rag.embeddings.client import EmbeddingClient
from rag.models import SearchResult
from rag.pipeline.dispatcher import StreamDispatcher, StreamEvent, user_message
from rag.pipeline.state import ResponseMode, TurnState, TurnTracker
from rag.pipeline.synthesizer import AnswerSynthesizer
from rag.retrievers.similarity_index import SimilaritySearchIndex

logger = structlog.get_logger("rag.pipeline")


def configured_mode() -> str:
    return SETTINGS.RAG.RAG_MODE


class QueryPipeline:
    def __init__(
        self,
        *,
        ledger: ConversationLedger,
        embedding_client: EmbeddingClient,
        search_index: SimilaritySearchIndex,
        synthesizer: AnswerSynthesizer,
        dispatcher: Optional[StreamDispatcher] = None,
        top_k: int = SETTINGS.RAG.TOP_K,
        min_score: float = SETTINGS.RAG.MIN_SCORE,
        mode_source: Callable[[], str] = configured_mode,
    ):
        self.ledger = ledger
        self.embedding_client = embedding_client
        self.search_index = search_index
        self.synthesizer = synthesizer
        self.dispatcher = dispatcher or StreamDispatcher()
        self.top_k = top_k
        self.min_score = min_score
        self.mode_source = mode_source

    async def stream_query(
        self,
        query: str,
        conversation_id: str | uuid.UUID,
        *,
        is_disconnected: Optional[Callable[[], Awaitable[bool]]] = None,
    ) -> AsyncIterator[StreamEvent]:
        tracker = TurnTracker(str(uuid.uuid4()))
        log = logger.bind(turn_id=tracker.turn_id, conversation_id=str(conversation_id))
        mode = ResponseMode.parse(self.mode_source())
        start = time.time()

        try:
            await self.ledger.begin_turn(conversation_id, query)
            results = await self._retrieve(query, tracker)
        except ChatServiceException as e:
            tracker.fail()
            log.warning(
                "Turn aborted before streaming",
                error_code=e.error_code,
                error=e.message,
                details=e.details,
            )
            yield StreamEvent.error(user_message(e))
            return
        except Exception as e:
            tracker.fail()
            log.exception("Turn aborted before streaming", error=str(e))
            yield StreamEvent.error(user_message(e))
            return

        sources = self.synthesizer.citations(results)

        async def record_answer(answer: str) -> Dict[str, Any]:
            message = await self.ledger.complete_turn(
                conversation_id, answer, sources, model=self._model_for(results, mode)
            )
            return {
                "message_id": str(message.id),
                "sources": [s.model_dump() for s in sources],
            }

        chunks = self.synthesizer.synthesize(query, results, mode, tracker)
        events = self.dispatcher.dispatch(
            chunks, record_answer, is_disconnected=is_disconnected, tracker=tracker
        )
        async with aclosing(events) as stream:
            async for event in stream:
                yield event

        log.info(
            "Turn finished",
            state=tracker.state.value,
            mode=mode.value,
            result_count=len(results),
            processing_time_ms=int((time.time() - start) * 1000),
        )

    async def _retrieve(self, query: str, tracker: TurnTracker) -> List[SearchResult]:
        query_vector = await self.embedding_client.embed(query)
        tracker.advance(TurnState.EMBEDDED)
        results = await self.search_index.search(
            query_vector, top_k=self.top_k, min_score=self.min_score
        )
        tracker.advance(TurnState.SEARCHED)
        return results

    def _model_for(self, results: List[SearchResult], mode: ResponseMode) -> Optional[str]:
        if not results and mode == ResponseMode.STRICT:
            return None
        return self.synthesizer.model
