"""Transient retrieval records shared by the pipeline stages."""
from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field

from api.shared.utils import truncate_snippet

SNIPPET_LENGTH = 100


class SearchResult(BaseModel):
    """One passage returned by the similarity index for a single query."""

    model_config = ConfigDict(frozen=True)

    content: str
    source_url: str = ""
    score: float = Field(ge=0.0, le=1.0)


class Source(BaseModel):
    """Citation form of a SearchResult, as persisted on assistant messages."""

    model_config = ConfigDict(frozen=True)

    url: str
    content: str
    relevance_score: float

    @classmethod
    def from_result(cls, result: SearchResult) -> "Source":
        return cls(
            url=result.source_url,
            content=truncate_snippet(result.content, SNIPPET_LENGTH),
            relevance_score=result.score,
        )
