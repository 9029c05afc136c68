"""Similarity search over the indexed corpus.

Scores are cosine similarities (``1 - cosine distance``) clamped to [0, 1].
Both backends return at most ``top_k`` results at or above ``min_score``,
best first, with equal scores kept in corpus insertion order.
"""
from __future__ import annotations

import math
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable, List, Sequence, Tuple

import structlog
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from core.settings import SETTINGS
from infra.resources import DatabaseResource
from rag.exceptions import IndexUnavailable
from rag.models import SearchResult

logger = structlog.get_logger("rag.retrievers")


def clamp_score(score: float) -> float:
    return max(0.0, min(1.0, float(score)))


def rank_results(
    candidates: Iterable[SearchResult], top_k: int, min_score: float
) -> List[SearchResult]:
    """Threshold, sort by score descending (stable), and truncate."""
    kept = [c for c in candidates if c.score >= min_score]
    kept.sort(key=lambda c: c.score, reverse=True)
    return kept[:top_k]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    if len(a) != len(b):
        raise ValueError(f"dimension mismatch: {len(a)} != {len(b)}")
    dot = sum(x * y for x, y in zip(a, b))
    norm_a = math.sqrt(sum(x * x for x in a))
    norm_b = math.sqrt(sum(y * y for y in b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0
    return dot / (norm_a * norm_b)


class SimilaritySearchIndex(ABC):
    @abstractmethod
    async def search(
        self,
        query_vector: Sequence[float],
        top_k: int = SETTINGS.RAG.TOP_K,
        min_score: float = SETTINGS.RAG.MIN_SCORE,
    ) -> List[SearchResult]:
        """Return the best passages for ``query_vector``; empty means no grounding."""


class PgVectorSearchIndex(SimilaritySearchIndex):
    """Cosine search over the ingestion pipeline's ``document_chunks`` table.

    Only chunks that carry an embedding and belong to an ``active`` document
    are considered. The tables are owned by ingestion; this class only reads.
    """

    _SEARCH_SQL = text(
        """
        SELECT content, source_url, score
        FROM (
            SELECT
                c.content AS content,
                d.url AS source_url,
                1 - (c.embedding <=> CAST(:embedding AS vector)) AS score,
                c.created_at AS created_at,
                c.chunk_index AS chunk_index
            FROM document_chunks c
            JOIN documents d ON d.id = c.document_id
            WHERE c.embedding IS NOT NULL AND d.status = 'active'
        ) scored
        WHERE score >= :min_score
        ORDER BY score DESC, created_at ASC, chunk_index ASC
        LIMIT :top_k
        """
    )

    def __init__(self, database: DatabaseResource):
        self.database = database

    async def search(
        self,
        query_vector: Sequence[float],
        top_k: int = SETTINGS.RAG.TOP_K,
        min_score: float = SETTINGS.RAG.MIN_SCORE,
    ) -> List[SearchResult]:
        logger.info("Searching for similar chunks", top_k=top_k, min_score=min_score)
        params = {
            "embedding": _to_pgvector_literal(query_vector),
            "min_score": min_score,
            "top_k": top_k,
        }
        try:
            async with self.database.get_session() as session:
                res = await session.execute(self._SEARCH_SQL, params)
                rows = res.mappings().all()
        except (SQLAlchemyError, OSError, RuntimeError) as e:
            logger.error("Vector search failed", error=str(e))
            raise IndexUnavailable("vector search failed", {"error": str(e)}) from e

        results = rank_results(
            (
                SearchResult(
                    content=r["content"],
                    source_url=r["source_url"] or "",
                    score=clamp_score(r["score"]),
                )
                for r in rows
            ),
            top_k,
            min_score,
        )
        logger.info("Vector search finished", count=len(results), min_score=min_score)
        return results


@dataclass(frozen=True)
class IndexedPassage:
    content: str
    source_url: str
    vector: Tuple[float, ...]


class InMemorySearchIndex(SimilaritySearchIndex):
    """Insertion-ordered, in-process corpus for local development and tests."""

    def __init__(self, passages: Iterable[IndexedPassage] = ()):
        self._passages: List[IndexedPassage] = list(passages)

    def add(self, content: str, vector: Sequence[float], source_url: str = "") -> None:
        self._passages.append(IndexedPassage(content, source_url, tuple(vector)))

    def __len__(self) -> int:
        return len(self._passages)

    async def search(
        self,
        query_vector: Sequence[float],
        top_k: int = SETTINGS.RAG.TOP_K,
        min_score: float = SETTINGS.RAG.MIN_SCORE,
    ) -> List[SearchResult]:
        try:
            scored = [
                SearchResult(
                    content=p.content,
                    source_url=p.source_url,
                    score=clamp_score(cosine_similarity(query_vector, p.vector)),
                )
                for p in self._passages
            ]
        except ValueError as e:
            raise IndexUnavailable("query vector does not match the index", {"error": str(e)}) from e
        return rank_results(scored, top_k, min_score)


def _to_pgvector_literal(vector: Sequence[float]) -> str:
    return "[" + ",".join(repr(float(v)) for v in vector) + "]"
