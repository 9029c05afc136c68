"""Query embedding client with batch processing and bounded retries.

Wraps any provider exposing ``aembed_documents`` (LangChain's
``OpenAIEmbeddings`` by default). The provider's own SDK retries are disabled
so that the retry schedule here is the only one in effect.
"""
from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, List, Optional, Protocol, Sequence

import openai
import structlog
from langchain_openai import OpenAIEmbeddings

from core.settings import SETTINGS
from rag.exceptions import ProviderUnavailable

logger = structlog.get_logger("rag.embeddings")

Vector = List[float]

_TRANSIENT_ERRORS = (
    openai.APIConnectionError,
    openai.RateLimitError,
    openai.InternalServerError,
    ConnectionError,
    TimeoutError,
    asyncio.TimeoutError,
)


class EmbeddingProvider(Protocol):
    async def aembed_documents(self, texts: List[str]) -> List[Vector]: ...


def is_transient(error: BaseException) -> bool:
    """Connection problems, timeouts, 429s and 5xx responses are worth retrying."""
    if isinstance(error, _TRANSIENT_ERRORS):
        return True
    if isinstance(error, openai.APIStatusError):
        return error.status_code == 429 or error.status_code >= 500
    return False


def build_openai_embeddings() -> OpenAIEmbeddings:
    return OpenAIEmbeddings(
        model=SETTINGS.OPENAI.EMBEDDING_MODEL,
        api_key=SETTINGS.OPENAI.OPENAI_API_KEY.get_secret_value() or None,
        max_retries=0,
        request_timeout=SETTINGS.OPENAI.REQUEST_TIMEOUT,
    )


class EmbeddingClient:
    """Converts text to fixed-dimension vectors, preserving input order."""

    provider_name = "embedding"

    def __init__(
        self,
        provider: EmbeddingProvider,
        *,
        batch_size: int = SETTINGS.EMBEDDING.EMBED_BATCH_SIZE,
        max_attempts: int = SETTINGS.EMBEDDING.EMBED_MAX_ATTEMPTS,
        retry_delays: Sequence[float] = tuple(SETTINGS.EMBEDDING.EMBED_RETRY_DELAYS),
        dimensions: Optional[int] = SETTINGS.EMBEDDING.EMBED_DIMENSIONS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        if max_attempts < 1:
            raise ValueError("max_attempts must be positive")
        self.provider = provider
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.retry_delays = list(retry_delays)
        self.dimensions = dimensions
        self._sleep = sleep

    async def embed(self, text: str) -> Vector:
        vectors = await self.embed_batch([text])
        return vectors[0]

    async def embed_batch(self, texts: Sequence[str]) -> List[Vector]:
        """Embed ``texts`` in consecutive batches of at most ``batch_size``.

        Returns exactly one vector per input, in input order. Raises
        ``ProviderUnavailable`` if any batch cannot be embedded; nothing is
        returned for the batches that did succeed.
        """
        texts = list(texts)
        if not texts:
            return []

        total_batches = (len(texts) + self.batch_size - 1) // self.batch_size
        vectors: List[Vector] = []
        for batch_no, start in enumerate(range(0, len(texts), self.batch_size), 1):
            batch = texts[start : start + self.batch_size]
            vectors.extend(await self._embed_with_retry(batch))
            logger.debug(
                "Processed embedding batch",
                batch=batch_no,
                total_batches=total_batches,
                batch_size=len(batch),
            )

        logger.info("Generated embeddings", count=len(vectors))
        return vectors

    async def _embed_with_retry(self, batch: List[str]) -> List[Vector]:
        for attempt in range(1, self.max_attempts + 1):
            try:
                vectors = await self.provider.aembed_documents(batch)
            except Exception as e:
                if not is_transient(e):
                    logger.error(
                        "Embedding request failed permanently",
                        attempt=attempt,
                        error=str(e),
                    )
                    raise ProviderUnavailable(
                        self.provider_name,
                        "embedding request rejected",
                        attempts=attempt,
                        details={"transient": False},
                        error=str(e),
                    ) from e
                if attempt == self.max_attempts:
                    logger.error(
                        "Embedding generation failed after all retries",
                        attempts=attempt,
                        error=str(e),
                    )
                    raise ProviderUnavailable(
                        self.provider_name,
                        f"failed to get embeddings after {attempt} attempts",
                        attempts=attempt,
                        details={"transient": True},
                        error=str(e),
                    ) from e

                delay = self._delay_for(attempt)
                logger.warning(
                    "Embedding generation failed, retrying",
                    attempt=attempt,
                    max_attempts=self.max_attempts,
                    delay=delay,
                    error=str(e),
                )
                await self._sleep(delay)
                continue

            self._check_vectors(batch, vectors, attempt)
            return vectors

        raise ProviderUnavailable(self.provider_name, "no embedding attempts were made")

    def _delay_for(self, attempt: int) -> float:
        if not self.retry_delays:
            return 0.0
        return self.retry_delays[min(attempt - 1, len(self.retry_delays) - 1)]

    def _check_vectors(self, batch: List[str], vectors: List[Vector], attempt: int) -> None:
        if len(vectors) != len(batch):
            raise ProviderUnavailable(
                self.provider_name,
                f"provider returned {len(vectors)} vectors for {len(batch)} inputs",
                attempts=attempt,
                details={"transient": False},
            )
        if self.dimensions is None:
            return
        for vector in vectors:
            if len(vector) != self.dimensions:
                raise ProviderUnavailable(
                    self.provider_name,
                    f"expected {self.dimensions}-dimensional vectors, got {len(vector)}",
                    attempts=attempt,
                    details={"transient": False},
                )
