"""Mode-dependent answer synthesis.

Given the query and what the index returned, picks one of three branches:

- results found: a grounded-answer prefix, then generation over the context;
- no results, strict: the fixed apology, paced word by word, no generation;
- no results, hybrid: a disclaimer, a short pause, then context-free
  generation.

The output is an async iterator of chunks; the caller persists their
concatenation as the answer.
"""
from __future__ import annotations

import asyncio
from contextlib import aclosing
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Sequence

import structlog

from core.settings import SETTINGS
from rag.llm.chat_provider import GenerationProvider
from rag.models import SearchResult, Source
from rag.pipeline.state import ResponseMode, TurnState, TurnTracker
from rag.prompts.answer.final_answer import (
    GENERAL_SYSTEM_PROMPT,
    build_context,
    build_grounded_system_prompt,
    fixed_texts,
)

logger = structlog.get_logger("rag.synthesizer")


def split_paced_words(text: str) -> List[str]:
    """Split on single spaces, keeping each separator on the preceding word.

    ``"".join(split_paced_words(t)) == t`` for every ``t``.
    """
    words = text.split(" ")
    return [w + " " for w in words[:-1]] + [words[-1]]


class AnswerSynthesizer:
    def __init__(
        self,
        generator: GenerationProvider,
        *,
        language: str = SETTINGS.RAG.RESPONSE_LANGUAGE,
        strict_chunk_delay: float = SETTINGS.STREAM.STRICT_CHUNK_DELAY_MS / 1000,
        disclaimer_pause: float = SETTINGS.STREAM.DISCLAIMER_PAUSE_MS / 1000,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.generator = generator
        self.texts = fixed_texts(language)
        self.strict_chunk_delay = strict_chunk_delay
        self.disclaimer_pause = disclaimer_pause
        self._sleep = sleep

    @property
    def model(self) -> str:
        return self.generator.model

    @staticmethod
    def context_for(results: Sequence[SearchResult]) -> str:
        return build_context([r.content for r in results])

    @staticmethod
    def citations(results: Sequence[SearchResult]) -> List[Source]:
        return [Source.from_result(r) for r in results]

    async def synthesize(
        self,
        query: str,
        results: Sequence[SearchResult],
        mode: ResponseMode,
        tracker: Optional[TurnTracker] = None,
    ) -> AsyncIterator[str]:
        tracker = tracker or TurnTracker("adhoc")
        if tracker.state == TurnState.IDLE:
            # Standalone use: retrieval happened outside a tracked turn
            tracker.advance(TurnState.EMBEDDED)
            tracker.advance(TurnState.SEARCHED)

        if results:
            tracker.advance(TurnState.RESULTS_FOUND)
            branch = self._grounded(query, results, tracker)
        else:
            tracker.advance(TurnState.NO_RESULTS)
            if mode == ResponseMode.STRICT:
                branch = self._strict_apology(tracker)
            else:
                branch = self._general_knowledge(query, tracker)

        logger.info(
            "Synthesizing answer",
            turn_id=tracker.turn_id,
            mode=mode.value,
            branch=tracker.state.value,
            result_count=len(results),
        )
        async with aclosing(branch) as chunks:
            async for chunk in chunks:
                yield chunk

    async def _grounded(
        self, query: str, results: Sequence[SearchResult], tracker: TurnTracker
    ) -> AsyncIterator[str]:
        tracker.advance(TurnState.GENERATING)
        system_prompt = build_grounded_system_prompt(self.context_for(results))
        tracker.advance(TurnState.STREAMING)
        yield self.texts.grounded_prefix
        async with aclosing(self.generator.stream(system_prompt, query)) as deltas:
            async for delta in deltas:
                yield delta

    async def _strict_apology(self, tracker: TurnTracker) -> AsyncIterator[str]:
        tracker.advance(TurnState.GENERATING)
        tracker.advance(TurnState.STREAMING)
        for word in split_paced_words(self.texts.no_context_apology):
            yield word
            await self._sleep(self.strict_chunk_delay)

    async def _general_knowledge(self, query: str, tracker: TurnTracker) -> AsyncIterator[str]:
        tracker.advance(TurnState.GENERATING)
        tracker.advance(TurnState.STREAMING)
        yield self.texts.general_disclaimer
        await self._sleep(self.disclaimer_pause)
        async with aclosing(self.generator.stream(GENERAL_SYSTEM_PROMPT, query)) as deltas:
            async for delta in deltas:
                yield delta
