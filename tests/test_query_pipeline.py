import uuid

import pytest

from api.features.conversation.exceptions import PersistenceFailure
from api.features.conversation.ledger import ConversationLedger
from api.features.conversation.models import MessageRole
from api.features.conversation.repository import InMemoryConversationRepository
from rag.embeddings.client import EmbeddingClient
from rag.models import SearchResult
from rag.pipeline.dispatcher import StreamEvent
from rag.prompts.answer.final_answer import FIXED_TEXTS, GENERAL_SYSTEM_PROMPT
from tests.conftest import (
    DIMENSIONS,
    FakeEmbeddingProvider,
    ScriptedGenerator,
    StubSearchIndex,
    collect,
    joined_chunks,
    make_pipeline,
    make_synthesizer,
    transient_error,
)

FI = FIXED_TEXTS["fi"]

RESULTS = [
    SearchResult(content="c1", source_url="https://example.com/1", score=0.9),
    SearchResult(content="c2", source_url="https://example.com/2", score=0.7),
    SearchResult(content="c3", source_url="https://example.com/3", score=0.6),
]


def _assert_single_terminal_last(events):
    terminal = [e for e in events if e.is_terminal]
    assert len(terminal) == 1
    assert events[-1].is_terminal


@pytest.fixture
def pipeline_for(ledger, embedding_client, generator, sleep_recorder):
    def build(results=(), mode="hybrid", index=None, gen=None, client=None):
        return make_pipeline(
            ledger=ledger,
            embedding_client=client or embedding_client,
            search_index=index or StubSearchIndex(results),
            synthesizer=make_synthesizer(gen or generator, sleep_recorder),
            mode=mode,
        )

    return build


async def test_strict_mode_without_results_streams_and_records_apology(
    pipeline_for, repository, conversation, generator
):
    pipeline = pipeline_for(mode="strict")

    events = await collect(pipeline.stream_query("What is the capital?", str(conversation.id)))

    _assert_single_terminal_last(events)
    assert events[-1].type == "complete"
    assert joined_chunks(events) == FI.no_context_apology
    assert events[-1].data["sources"] == []
    assert generator.calls == []

    messages = await repository.list_messages(conversation.id)
    assert [m.role for m in messages] == [MessageRole.USER, MessageRole.ASSISTANT]
    assert messages[1].content == FI.no_context_apology
    assert messages[1].sources is None
    assert messages[1].model is None
    assert str(messages[1].id) == events[-1].data["message_id"]


async def test_hybrid_mode_without_results_answers_from_general_knowledge(
    pipeline_for, repository, conversation, generator
):
    generator.deltas = ["Rust is ", "a language."]
    pipeline = pipeline_for(mode="hybrid")

    events = await collect(pipeline.stream_query("what is rust?", str(conversation.id)))

    chunks = [e.data["text"] for e in events if e.type == "chunk"]
    assert chunks[0] == FI.general_disclaimer
    assert "".join(chunks[1:]) == "Rust is a language."
    assert events[-1].type == "complete"
    assert generator.calls[0]["system"] == GENERAL_SYSTEM_PROMPT

    assistant = (await repository.list_messages(conversation.id))[-1]
    assert assistant.content == FI.general_disclaimer + "Rust is a language."
    assert assistant.model == generator.model


async def test_grounded_answer_with_sources(pipeline_for, repository, conversation, generator):
    pipeline = pipeline_for(results=RESULTS, mode="hybrid")

    events = await collect(pipeline.stream_query("q", str(conversation.id)))

    chunks = [e.data["text"] for e in events if e.type == "chunk"]
    assert chunks[0] == FI.grounded_prefix
    assert "c1\n\nc2\n\nc3" in generator.calls[0]["system"]

    complete = events[-1]
    assert complete.type == "complete"
    assert [s["url"] for s in complete.data["sources"]] == [
        "https://example.com/1",
        "https://example.com/2",
        "https://example.com/3",
    ]
    assert [s["relevance_score"] for s in complete.data["sources"]] == [0.9, 0.7, 0.6]

    assistant = (await repository.list_messages(conversation.id))[-1]
    assert assistant.content == joined_chunks(events)
    assert [s.url for s in assistant.sources] == [s["url"] for s in complete.data["sources"]]


async def test_search_uses_configured_limits(ledger, embedding_client, generator, sleep_recorder, conversation):
    index = StubSearchIndex()
    pipeline = make_pipeline(
        ledger=ledger,
        embedding_client=embedding_client,
        search_index=index,
        synthesizer=make_synthesizer(generator, sleep_recorder),
        min_score=0.42,
    )

    await collect(pipeline.stream_query("q1", str(conversation.id)))

    assert index.calls == [{"vector": [1.0, 1.0, 0.0], "top_k": 5, "min_score": 0.42}]


async def test_repeated_queries_append_in_order(pipeline_for, repository, conversation):
    pipeline = pipeline_for(mode="strict")

    await collect(pipeline.stream_query("same question", str(conversation.id)))
    first = await repository.get_conversation(conversation.id)
    await collect(pipeline.stream_query("same question", str(conversation.id)))
    second = await repository.get_conversation(conversation.id)

    messages = await repository.list_messages(conversation.id)
    assert [m.role for m in messages] == [
        MessageRole.USER,
        MessageRole.ASSISTANT,
        MessageRole.USER,
        MessageRole.ASSISTANT,
    ]
    assert first.message_count == 2
    assert second.message_count == 4
    assert [m.created_at for m in messages] == sorted(m.created_at for m in messages)


async def test_unknown_conversation_yields_single_error(
    pipeline_for, repository, embedding_provider, generator
):
    missing = uuid.uuid4()
    pipeline = pipeline_for(mode="strict")

    events = await collect(pipeline.stream_query("hello", str(missing)))

    assert [e.type for e in events] == ["error"]
    assert events[0].data == {"message": "Conversation not found"}
    assert embedding_provider.calls == []
    assert generator.calls == []
    assert await repository.list_messages(missing) == []


async def test_embedding_failure_keeps_user_message(
    ledger, repository, conversation, sleep_recorder, generator
):
    provider = FakeEmbeddingProvider(failures=[transient_error() for _ in range(3)])
    client = EmbeddingClient(
        provider, max_attempts=3, retry_delays=(2.0, 4.0), dimensions=DIMENSIONS,
        sleep=sleep_recorder,
    )
    pipeline = make_pipeline(
        ledger=ledger,
        embedding_client=client,
        search_index=StubSearchIndex(RESULTS),
        synthesizer=make_synthesizer(generator, sleep_recorder),
    )

    events = await collect(pipeline.stream_query("q", str(conversation.id)))

    assert [e.type for e in events] == ["error"]
    assert len(provider.calls) == 3
    assert generator.calls == []
    messages = await repository.list_messages(conversation.id)
    assert [m.role for m in messages] == [MessageRole.USER]
    assert (await repository.get_conversation(conversation.id)).message_count == 1


async def test_index_failure_yields_error(pipeline_for, repository, conversation, generator):
    pipeline = pipeline_for(index=StubSearchIndex(unavailable=True))

    events = await collect(pipeline.stream_query("q", str(conversation.id)))

    assert [e.type for e in events] == ["error"]
    assert generator.calls == []
    assert len(await repository.list_messages(conversation.id)) == 1


async def test_generation_failure_mid_stream(pipeline_for, repository, conversation):
    failing = ScriptedGenerator(deltas=["one ", "two ", "three"], fail_after=2)
    pipeline = pipeline_for(results=RESULTS, gen=failing)

    events = await collect(pipeline.stream_query("q", str(conversation.id)))

    assert [e.type for e in events] == ["chunk", "chunk", "chunk", "error"]
    _assert_single_terminal_last(events)
    messages = await repository.list_messages(conversation.id)
    assert [m.role for m in messages] == [MessageRole.USER]
    assert (await repository.get_conversation(conversation.id)).message_count == 1


async def test_user_message_failure_stops_before_embedding(embedding_client, embedding_provider, generator, sleep_recorder):
    class BrokenRepository(InMemoryConversationRepository):
        async def append_message(self, conversation_id, **kwargs):
            raise PersistenceFailure("append user message", "connection reset")

    repository = BrokenRepository()
    conv = await repository.create_conversation()
    pipeline = make_pipeline(
        ledger=ConversationLedger(repository),
        embedding_client=embedding_client,
        search_index=StubSearchIndex(RESULTS),
        synthesizer=make_synthesizer(generator, sleep_recorder),
    )

    events = await collect(pipeline.stream_query("q", str(conv.id)))

    assert [e.type for e in events] == ["error"]
    assert embedding_provider.calls == []


async def test_answer_record_failure_ends_with_error(
    embedding_client, generator, sleep_recorder
):
    class AnswerlessRepository(InMemoryConversationRepository):
        async def append_message(self, conversation_id, *, role, **kwargs):
            if role == MessageRole.ASSISTANT:
                raise PersistenceFailure("append assistant message", "disk full")
            return await super().append_message(conversation_id, role=role, **kwargs)

    repository = AnswerlessRepository()
    conv = await repository.create_conversation()
    pipeline = make_pipeline(
        ledger=ConversationLedger(repository),
        embedding_client=embedding_client,
        search_index=StubSearchIndex(RESULTS),
        synthesizer=make_synthesizer(generator, sleep_recorder),
    )

    events = await collect(pipeline.stream_query("q", str(conv.id)))

    assert events[-1].type == "error"
    assert [e.type for e in events[:-1]] == ["chunk"] * (len(events) - 1)
    _assert_single_terminal_last(events)


async def test_disconnect_aborts_generation_and_records_nothing(
    pipeline_for, repository, conversation
):
    gen = ScriptedGenerator(deltas=["a", "b", "c", "d"])
    pipeline = pipeline_for(results=RESULTS, gen=gen)
    sent = []

    async def is_disconnected():
        return len(sent) >= 2

    events = []
    async for event in pipeline.stream_query(
        "q", str(conversation.id), is_disconnected=is_disconnected
    ):
        events.append(event)
        sent.append(event)

    assert all(e.type == "chunk" for e in events)
    assert gen.closed
    messages = await repository.list_messages(conversation.id)
    assert [m.role for m in messages] == [MessageRole.USER]


async def test_closing_the_stream_aborts_generation(pipeline_for, repository, conversation):
    gen = ScriptedGenerator(deltas=["a", "b", "c"])
    pipeline = pipeline_for(results=RESULTS, gen=gen)

    stream = pipeline.stream_query("q", str(conversation.id))
    await stream.__anext__()
    await stream.__anext__()
    await stream.aclose()

    assert gen.closed
    assert len(await repository.list_messages(conversation.id)) == 1


async def test_mode_is_read_for_each_query(
    ledger, embedding_client, generator, sleep_recorder, repository, conversation
):
    modes = iter(["strict", "hybrid"])
    pipeline = make_pipeline(
        ledger=ledger,
        embedding_client=embedding_client,
        search_index=StubSearchIndex(),
        synthesizer=make_synthesizer(generator, sleep_recorder),
    )
    pipeline.mode_source = lambda: next(modes)

    strict_events = await collect(pipeline.stream_query("q", str(conversation.id)))
    hybrid_events = await collect(pipeline.stream_query("q", str(conversation.id)))

    assert joined_chunks(strict_events) == FI.no_context_apology
    assert joined_chunks(hybrid_events).startswith(FI.general_disclaimer)
    assert len(generator.calls) == 1


async def test_error_event_does_not_leak_provider_text(
    ledger, conversation, sleep_recorder, generator
):
    provider = FakeEmbeddingProvider(
        failures=[ValueError("Invalid API key sk-live-123 for org-abc")]
    )
    client = EmbeddingClient(provider, dimensions=DIMENSIONS, sleep=sleep_recorder)
    pipeline = make_pipeline(
        ledger=ledger,
        embedding_client=client,
        search_index=StubSearchIndex(RESULTS),
        synthesizer=make_synthesizer(generator, sleep_recorder),
    )

    events = await collect(pipeline.stream_query("q", str(conversation.id)))

    assert events == [StreamEvent.error("embedding service error: embedding request rejected")]
    assert "sk-live" not in events[0].data["message"]
