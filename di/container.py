from __future__ import annotations

from dependency_injector import containers, providers

from api.features.conversation.ledger import ConversationLedger
from api.features.conversation.repository import (
    InMemoryConversationRepository,
    PostgresConversationRepository,
)
from core.settings import SETTINGS
from infra.resources import DatabaseResource
from rag.embeddings.client import EmbeddingClient, build_openai_embeddings
from rag.llm.chat_provider import OpenAIChatProvider
from rag.pipeline.dispatcher import StreamDispatcher
from rag.pipeline.synthesizer import AnswerSynthesizer
from rag.retrievers.similarity_index import InMemorySearchIndex, PgVectorSearchIndex


class InfrastructureContainer(containers.DeclarativeContainer):
    # Database
    database = providers.Singleton(
        DatabaseResource,
        database_url=str(SETTINGS.DATABASE.DATABASE_URL),
    )


class ServiceContainer(containers.DeclarativeContainer):
    """Application services - depends on infrastructure."""

    infrastructure = providers.DependenciesContainer()

    # Providers (network-bound)
    embeddings_provider = providers.Singleton(build_openai_embeddings)
    generation_provider = providers.Singleton(OpenAIChatProvider)

    embedding_client = providers.Singleton(
        EmbeddingClient,
        provider=embeddings_provider,
    )

    search_index = providers.Selector(
        lambda: SETTINGS.RAG.INDEX_BACKEND,
        pgvector=providers.Singleton(
            PgVectorSearchIndex, database=infrastructure.database
        ),
        memory=providers.Singleton(InMemorySearchIndex),
    )

    conversation_repository = providers.Selector(
        lambda: SETTINGS.RAG.LEDGER_BACKEND,
        postgres=providers.Singleton(
            PostgresConversationRepository, database=infrastructure.database
        ),
        memory=providers.Singleton(InMemoryConversationRepository),
    )

    ledger = providers.Singleton(
        ConversationLedger,
        repository=conversation_repository,
    )

    synthesizer = providers.Singleton(
        AnswerSynthesizer,
        generator=generation_provider,
    )

    dispatcher = providers.Singleton(StreamDispatcher)

    # Query pipeline (RAG orchestrator)
    query_pipeline = providers.Factory(
        "rag.pipeline.query_pipeline.QueryPipeline",
        ledger=ledger,
        embedding_client=embedding_client,
        search_index=search_index,
        synthesizer=synthesizer,
        dispatcher=dispatcher,
    )


class ControllerContainer(containers.DeclarativeContainer):
    """Controller-specific dependencies."""

    services = providers.DependenciesContainer()

    chat_controller = providers.Factory(
        "api.features.chat.controller.ChatController",
        query_pipeline=services.query_pipeline,
    )


class ApplicationContainer(containers.DeclarativeContainer):
    """Main application container composing all sub-containers."""

    wiring_config = containers.WiringConfiguration(
        modules=[
            "api.main",
            "api.features.chat.router",
        ]
    )

    infrastructure = providers.Container(InfrastructureContainer)
    services = providers.Container(ServiceContainer, infrastructure=infrastructure)
    controllers = providers.Container(ControllerContainer, services=services)
