"""
Pytest configuration and shared fakes for the chat query test suite.

Configures:
- pytest-asyncio (auto mode, see pyproject.toml)
- scripted embedding/generation providers and an in-memory ledger
"""
from typing import AsyncIterator, Dict, List, Optional, Sequence

import httpx
import openai
import pytest

from api.features.conversation.ledger import ConversationLedger
from api.features.conversation.repository import InMemoryConversationRepository
from rag.embeddings.client import EmbeddingClient
from rag.exceptions import IndexUnavailable
from rag.models import SearchResult
from rag.pipeline.query_pipeline import QueryPipeline
from rag.pipeline.synthesizer import AnswerSynthesizer
from rag.retrievers.similarity_index import SimilaritySearchIndex

pytest_plugins = ["pytest_asyncio"]

DIMENSIONS = 3


def transient_error() -> openai.APIConnectionError:
    return openai.APIConnectionError(
        request=httpx.Request("POST", "https://api.openai.com/v1/embeddings")
    )


class FakeEmbeddingProvider:
    """Returns ``[index, 1, 0]`` for texts named ``t<index>``.

    ``failures`` is consumed one entry per call; an exception entry is raised
    instead of answering.
    """

    def __init__(self, failures: Sequence[Exception] = ()):
        self.failures = list(failures)
        self.calls: List[List[str]] = []

    @staticmethod
    def vector_for(text: str) -> List[float]:
        digits = "".join(ch for ch in text if ch.isdigit())
        return [float(digits or 0), 1.0, 0.0]

    async def aembed_documents(self, texts: List[str]) -> List[List[float]]:
        self.calls.append(list(texts))
        if self.failures:
            raise self.failures.pop(0)
        return [self.vector_for(t) for t in texts]


class ScriptedGenerator:
    """Generation provider yielding scripted deltas, optionally failing."""

    def __init__(
        self,
        deltas: Sequence[str] = ("Hello", " world", "."),
        fail_after: Optional[int] = None,
        error: Optional[Exception] = None,
        model: str = "fake-chat-model",
    ):
        self.deltas = list(deltas)
        self.fail_after = fail_after
        self.error = error
        self.model = model
        self.calls: List[Dict[str, str]] = []
        self.closed = False

    async def stream(self, system_prompt: str, user_prompt: str) -> AsyncIterator[str]:
        self.calls.append({"system": system_prompt, "user": user_prompt})
        try:
            for i, delta in enumerate(self.deltas):
                if self.fail_after is not None and i == self.fail_after:
                    raise self.error or RuntimeError("generation failed")
                yield delta
            if self.fail_after is not None and self.fail_after >= len(self.deltas):
                raise self.error or RuntimeError("generation failed")
        finally:
            self.closed = True


class StubSearchIndex(SimilaritySearchIndex):
    def __init__(self, results: Sequence[SearchResult] = (), unavailable: bool = False):
        self.results = list(results)
        self.unavailable = unavailable
        self.calls: List[Dict] = []

    async def search(self, query_vector, top_k=5, min_score=0.5):
        self.calls.append({"vector": list(query_vector), "top_k": top_k, "min_score": min_score})
        if self.unavailable:
            raise IndexUnavailable("connection refused")
        return list(self.results)


class SleepRecorder:
    def __init__(self):
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture
def embedding_provider() -> FakeEmbeddingProvider:
    return FakeEmbeddingProvider()


@pytest.fixture
def embedding_client(embedding_provider, sleep_recorder) -> EmbeddingClient:
    return EmbeddingClient(
        embedding_provider,
        batch_size=100,
        max_attempts=3,
        retry_delays=(2.0, 4.0, 8.0),
        dimensions=DIMENSIONS,
        sleep=sleep_recorder,
    )


@pytest.fixture
def repository() -> InMemoryConversationRepository:
    return InMemoryConversationRepository()


@pytest.fixture
def ledger(repository) -> ConversationLedger:
    return ConversationLedger(repository)


@pytest.fixture
async def conversation(repository):
    return await repository.create_conversation(user_id="user-1")


@pytest.fixture
def generator() -> ScriptedGenerator:
    return ScriptedGenerator()


def make_synthesizer(generator, sleep, language: str = "fi") -> AnswerSynthesizer:
    return AnswerSynthesizer(
        generator,
        language=language,
        strict_chunk_delay=0.05,
        disclaimer_pause=0.1,
        sleep=sleep,
    )


@pytest.fixture
def synthesizer(generator, sleep_recorder) -> AnswerSynthesizer:
    return make_synthesizer(generator, sleep_recorder)


def make_pipeline(
    *,
    ledger,
    embedding_client,
    search_index,
    synthesizer,
    mode: str = "hybrid",
    min_score: float = 0.5,
) -> QueryPipeline:
    return QueryPipeline(
        ledger=ledger,
        embedding_client=embedding_client,
        search_index=search_index,
        synthesizer=synthesizer,
        top_k=5,
        min_score=min_score,
        mode_source=lambda: mode,
    )


async def collect(events) -> list:
    return [event async for event in events]


def joined_chunks(events) -> str:
    return "".join(e.data["text"] for e in events if e.type == "chunk")
