"""Streaming generation provider backed by LangChain's ChatOpenAI."""
from __future__ import annotations

from typing import AsyncIterator, Optional, Protocol

import structlog
from langchain_core.messages import HumanMessage, SystemMessage
from langchain_openai import ChatOpenAI

from core.settings import SETTINGS
from rag.exceptions import ProviderUnavailable

logger = structlog.get_logger("rag.llm")


class GenerationProvider(Protocol):
    model: str

    def stream(self, system_prompt: str, user_prompt: str) -> AsyncIterator[str]:
        """Yield text deltas; raise ``ProviderUnavailable`` on provider errors."""
        ...


class OpenAIChatProvider:
    """Streams chat completions; closing the iterator aborts the HTTP stream."""

    def __init__(
        self,
        *,
        model: str = SETTINGS.OPENAI.CHAT_MODEL,
        temperature: float = SETTINGS.OPENAI.TEMPERATURE,
        max_tokens: int = SETTINGS.OPENAI.MAX_TOKENS,
        llm: Optional[ChatOpenAI] = None,
    ):
        self.model = model
        self.llm = llm or ChatOpenAI(
            model=model,
            temperature=temperature,
            max_tokens=max_tokens,
            api_key=SETTINGS.OPENAI.OPENAI_API_KEY.get_secret_value() or None,
            timeout=SETTINGS.OPENAI.REQUEST_TIMEOUT,
            max_retries=SETTINGS.OPENAI.GENERATION_MAX_RETRIES,
            streaming=True,
        )

    async def stream(self, system_prompt: str, user_prompt: str) -> AsyncIterator[str]:
        messages = [SystemMessage(content=system_prompt), HumanMessage(content=user_prompt)]
        try:
            async for chunk in self.llm.astream(messages):
                content = chunk.content
                if isinstance(content, str) and content:
                    yield content
        except ProviderUnavailable:
            raise
        except Exception as e:
            logger.error("Chat completion stream failed", model=self.model, error=str(e))
            raise ProviderUnavailable(
                "generation", "answer stream failed", details={"model": self.model}, error=str(e)
            ) from e
