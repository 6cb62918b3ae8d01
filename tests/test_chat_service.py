from __future__ import annotations

import asyncio

import pytest
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from chatrelay.core import (
    ModelUnavailableError,
    NotFoundError,
    ProviderBadResponseError,
    ValidationError,
)
from chatrelay.core.metrics import metrics
from chatrelay.db.models import ApiUsage, Conversation, Message, User
from chatrelay.db.repositories import DEFAULT_TITLE, create_conversation, create_message
from chatrelay.providers import ChatResponse, ProviderType, StreamEvent
from chatrelay.services import chat_service as chat_service_module
from chatrelay.services.chat_service import CHAT_ENDPOINT, STREAM_ENDPOINT, clean_title
from tests.support import ScriptedProviders, collect, delta, frame_types


def count(session_factory, model, *criteria) -> int:
    with session_factory() as s:
        return s.execute(select(func.count()).select_from(model).where(*criteria)).scalar_one()


def assistant_messages(session_factory, conversation_id: str) -> list[Message]:
    with session_factory() as s:
        stmt = select(Message).where(
            Message.conversation_id == conversation_id, Message.role == "assistant"
        )
        return list(s.execute(stmt).scalars().all())


# prepare


def test_prepare_rejects_blank_message(make_service, db_session, catalog) -> None:
    service = make_service(ScriptedProviders())
    for message in (None, "", "   \n"):
        with pytest.raises(ValidationError):
            service.prepare(db_session, user=catalog["alice"], message=message)
    assert count(service.session_factory, Conversation) == 0


def test_prepare_new_conversation_uses_default_model(make_service, db_session, catalog) -> None:
    service = make_service(ScriptedProviders())
    chat = service.prepare(db_session, user=catalog["alice"], message="2+2?")

    assert chat.is_new_conversation is True
    assert chat.model_identifier == "claude-sonnet-4"
    assert chat.provider_name == "openrouter"
    assert chat.provider_display_name == "OpenRouter"
    assert [(m.role, m.content) for m in chat.messages] == [("user", "2+2?")]
    with service.session_factory() as s:
        conversation = s.get(Conversation, chat.conversation_id)
        assert conversation.title == DEFAULT_TITLE
        assert [m.role for m in conversation.messages] == ["user"]


def test_prepare_model_resolution_order(make_service, db_session, catalog) -> None:
    service = make_service(ScriptedProviders())
    models = catalog["models"]

    explicit = service.prepare(
        db_session, user=catalog["bob"], message="hi", model_id=models["mistral"].id
    )
    assert explicit.model_id == models["mistral"].id

    preferred = service.prepare(db_session, user=catalog["bob"], message="hi")
    assert preferred.model_id == models["flash"].id
    assert preferred.provider_name == "gemini"

    unknown = service.prepare(db_session, user=catalog["alice"], message="hi", model_id="nope")
    assert unknown.model_identifier == "claude-sonnet-4"


def test_prepare_falls_back_to_any_active_model(make_service, db_session, catalog) -> None:
    service = make_service(ScriptedProviders(), default_model_identifier="missing")
    chat = service.prepare(db_session, user=catalog["alice"], message="hi")
    assert chat.model_id in {m.id for m in catalog["models"].values()}


def test_prepare_without_models_creates_nothing(make_service, db_session) -> None:
    user = User(email="carol@example.com")
    db_session.add(user)
    db_session.commit()
    service = make_service(ScriptedProviders())

    with pytest.raises(ModelUnavailableError):
        service.prepare(db_session, user=user, message="hi")
    assert count(service.session_factory, Conversation) == 0
    assert count(service.session_factory, Message) == 0


def test_prepare_unknown_or_foreign_conversation(make_service, db_session, catalog) -> None:
    service = make_service(ScriptedProviders())
    bobs = create_conversation(db_session, catalog["bob"].id)

    with pytest.raises(NotFoundError):
        service.prepare(db_session, user=catalog["alice"], message="hi", conversation_id="missing")
    with pytest.raises(NotFoundError):
        service.prepare(db_session, user=catalog["alice"], message="hi", conversation_id=bobs.id)


def test_prepare_existing_conversation_includes_recent_history(
    make_service, db_session, catalog
) -> None:
    service = make_service(ScriptedProviders(), context_message_limit=2)
    conversation = create_conversation(db_session, catalog["alice"].id, "Math")
    create_message(db_session, conversation.id, "user", "1+1?")
    create_message(db_session, conversation.id, "assistant", "2")
    create_message(db_session, conversation.id, "user", "and 2+2?")
    create_message(db_session, conversation.id, "assistant", "4")

    chat = service.prepare(
        db_session, user=catalog["alice"], message="3+3?", conversation_id=conversation.id
    )

    assert chat.is_new_conversation is False
    assert chat.conversation_id == conversation.id
    assert [m.content for m in chat.messages] == ["and 2+2?", "4", "3+3?"]


# stream_chat


@pytest.mark.asyncio
async def test_stream_success_frames_and_persistence(make_service, db_session, catalog) -> None:
    providers = ScriptedProviders([delta("2+2"), delta(" = 4"), StreamEvent.done()])
    service = make_service(providers)
    chat = service.prepare(db_session, user=catalog["alice"], message="2+2?")

    frames = await collect(service.stream_chat(chat))

    assert frame_types(frames) == ["start", "content", "content", "complete", "done", "[DONE]"]
    start, first, second, complete, done = frames[:5]
    assert start["conversation_id"] == chat.conversation_id
    assert start["model"] == "Claude Sonnet 4"
    assert start["provider"] == "OpenRouter"
    assert start["stream_id"]
    assert (first["delta"], first["content"]) == ("2+2", "2+2")
    assert (second["delta"], second["content"]) == (" = 4", "2+2 = 4")
    assert complete["total_tokens"] == 3
    assert complete["cost"] == pytest.approx(0.000033)
    assert done["conversation_id"] == chat.conversation_id
    assert done["usage"] == {
        "input_tokens": 1,
        "output_tokens": 2,
        "total_tokens": 3,
        "cost": pytest.approx(0.000033),
        "model": "Claude Sonnet 4",
        "provider": "OpenRouter",
    }

    assert providers.stream_calls[0]["provider"] == "openrouter"
    assert providers.stream_calls[0]["model"] == "claude-sonnet-4"

    saved = assistant_messages(service.session_factory, chat.conversation_id)
    assert len(saved) == 1
    assert saved[0].content == "2+2 = 4"
    assert (saved[0].input_tokens, saved[0].output_tokens, saved[0].tokens) == (1, 2, 3)
    assert saved[0].model_id == chat.model_id

    with service.session_factory() as s:
        usage = s.execute(select(ApiUsage)).scalars().one()
        assert usage.endpoint == STREAM_ENDPOINT
        assert usage.user_id == catalog["alice"].id
        assert usage.total_tokens == 3
    assert len(service.streams) == 0


@pytest.mark.asyncio
async def test_cumulative_content_events_replace_accumulated(
    make_service, db_session, catalog
) -> None:
    providers = ScriptedProviders(
        [StreamEvent.text(content="Hel"), StreamEvent.text(content="Hello"), StreamEvent.done()]
    )
    service = make_service(providers)
    chat = service.prepare(db_session, user=catalog["alice"], message="greet")

    frames = await collect(service.stream_chat(chat))

    contents = [f["content"] for f in frames if isinstance(f, dict) and f["type"] == "content"]
    assert contents == ["Hel", "Hello"]
    assert assistant_messages(service.session_factory, chat.conversation_id)[0].content == "Hello"


@pytest.mark.asyncio
async def test_cumulative_content_overwrites_accumulated_deltas(
    make_service, db_session, catalog
) -> None:
    providers = ScriptedProviders(
        [
            delta("Hello"),
            delta(" world"),
            StreamEvent.text(content="Hello world!"),
            StreamEvent.done(),
        ]
    )
    service = make_service(providers)
    chat = service.prepare(db_session, user=catalog["alice"], message="greet")

    frames = await collect(service.stream_chat(chat))

    contents = [f["content"] for f in frames if isinstance(f, dict) and f["type"] == "content"]
    assert contents == ["Hello", "Hello world", "Hello world!"]
    saved = assistant_messages(service.session_factory, chat.conversation_id)
    assert [m.content for m in saved] == ["Hello world!"]


@pytest.mark.asyncio
async def test_upstream_start_event_does_not_duplicate_start_frame(
    make_service, db_session, catalog
) -> None:
    providers = ScriptedProviders(
        [StreamEvent.start(model="upstream"), delta("4"), StreamEvent.done()]
    )
    service = make_service(providers)
    chat = service.prepare(db_session, user=catalog["alice"], message="2+2?")

    frames = await collect(service.stream_chat(chat))

    assert frame_types(frames) == ["start", "content", "complete", "done", "[DONE]"]
    assert frames[0]["model"] == "Claude Sonnet 4"


@pytest.mark.asyncio
async def test_missing_output_price_still_persists(make_service, db_session, catalog) -> None:
    service = make_service(ScriptedProviders([delta("ok"), StreamEvent.done()]))
    chat = service.prepare(
        db_session, user=catalog["alice"], message="abcd", model_id=catalog["models"]["mistral"].id
    )

    frames = await collect(service.stream_chat(chat))

    assert frame_types(frames)[-2:] == ["done", "[DONE]"]
    assert frames[-2]["usage"]["cost"] == pytest.approx(0.0000001)


@pytest.mark.parametrize(
    ("script", "message"),
    [
        ([delta("half"), StreamEvent.failed("Provider unavailable")], "Provider unavailable"),
        ([delta("half")], "Stream ended without completing"),
        ([StreamEvent.done()], "Stream completed without content"),
        ([delta("   "), StreamEvent.done()], "Stream completed without content"),
    ],
)
@pytest.mark.asyncio
async def test_unverified_streams_are_not_persisted(
    make_service, db_session, catalog, script, message
) -> None:
    service = make_service(ScriptedProviders(script))
    chat = service.prepare(db_session, user=catalog["alice"], message="2+2?")
    failed_before = metrics.snapshot()["counters"]["streams_failed_total"]

    frames = await collect(service.stream_chat(chat))

    assert frame_types(frames)[-2:] == ["error", "[DONE]"]
    assert frames[-2]["error"] == message
    assert frames[-2]["code"] == "E4003"
    assert "complete" not in frame_types(frames)
    assert "done" not in frame_types(frames)
    assert assistant_messages(service.session_factory, chat.conversation_id) == []
    assert count(service.session_factory, ApiUsage) == 0
    assert metrics.snapshot()["counters"]["streams_failed_total"] == failed_before + 1
    assert count(
        service.session_factory,
        Message,
        Message.conversation_id == chat.conversation_id,
        Message.role == "user",
    ) == 1


@pytest.mark.asyncio
async def test_unexpected_exception_becomes_generic_error(
    make_service, db_session, catalog
) -> None:
    service = make_service(ScriptedProviders([delta("a"), RuntimeError("kaboom")]))
    chat = service.prepare(db_session, user=catalog["alice"], message="2+2?")

    frames = await collect(service.stream_chat(chat))

    assert frame_types(frames) == ["start", "content", "error", "[DONE]"]
    assert frames[2]["error"] == "An unexpected error occurred"
    assert "kaboom" not in str(frames)


@pytest.mark.asyncio
async def test_persistence_failure_sends_error_instead_of_done(
    make_service, db_session, catalog, monkeypatch
) -> None:
    def broken(*args, **kwargs):
        raise SQLAlchemyError("disk I/O error")

    monkeypatch.setattr(chat_service_module, "persist_exchange", broken)
    service = make_service(ScriptedProviders([delta("4"), StreamEvent.done()]))
    chat = service.prepare(db_session, user=catalog["alice"], message="2+2?")

    frames = await collect(service.stream_chat(chat))

    assert frame_types(frames) == ["start", "content", "complete", "error", "[DONE]"]
    assert frames[3]["error"] == "Database write failed after stream completion"
    assert frames[3]["code"] == "E5003"
    assert assistant_messages(service.session_factory, chat.conversation_id) == []


@pytest.mark.asyncio
async def test_client_disconnect_stops_relay_without_persisting(
    make_service, db_session, catalog
) -> None:
    providers = ScriptedProviders([delta("a"), delta("b"), delta("c"), StreamEvent.done()])
    service = make_service(providers)
    chat = service.prepare(db_session, user=catalog["alice"], message="2+2?")
    checks = {"count": 0}

    async def is_disconnected() -> bool:
        checks["count"] += 1
        return checks["count"] >= 2

    frames = await collect(service.stream_chat(chat, is_disconnected=is_disconnected))

    assert frame_types(frames) == ["start", "content", "content", "error", "[DONE]"]
    assert frames[3]["error"] == "Client disconnected before the stream completed"
    assert providers.stream_closed is True
    assert assistant_messages(service.session_factory, chat.conversation_id) == []


@pytest.mark.asyncio
async def test_cancel_stops_stream_promptly(make_service, db_session, catalog) -> None:
    providers = ScriptedProviders([delta("a"), 30.0, delta("never"), StreamEvent.done()])
    service = make_service(providers)
    chat = service.prepare(db_session, user=catalog["alice"], message="2+2?")
    cancelled_before = metrics.snapshot()["counters"]["streams_cancelled_total"]

    stream = service.stream_chat(chat, stream_id="stream-1")
    start = await stream.__anext__()
    first = await stream.__anext__()
    assert '"type":"start"' in start
    assert '"delta":"a"' in first

    assert await service.cancel_stream("stream-1", catalog["bob"].id) is False
    assert await service.cancel_stream("stream-1", catalog["alice"].id) is True

    rest = await asyncio.wait_for(collect(stream), timeout=5)

    assert frame_types(rest) == ["error", "[DONE]"]
    assert rest[0]["error"] == "Stream cancelled"
    assert providers.stream_closed is True
    assert len(service.streams) == 0
    assert assistant_messages(service.session_factory, chat.conversation_id) == []
    assert metrics.snapshot()["counters"]["streams_cancelled_total"] == cancelled_before + 1


@pytest.mark.asyncio
async def test_stream_drained_from_another_task(make_service, db_session, catalog) -> None:
    service = make_service(ScriptedProviders([delta("a"), StreamEvent.done()]))
    chat = service.prepare(db_session, user=catalog["alice"], message="2+2?")
    completed_before = metrics.snapshot()["counters"].get("streams_completed_total", 0)

    stream = service.stream_chat(chat, stream_id="stream-2")
    start = await stream.__anext__()
    assert '"type":"start"' in start

    rest = await asyncio.create_task(collect(stream))

    assert frame_types(rest) == ["content", "complete", "done", "[DONE]"]
    assert len(service.streams) == 0
    assert "stream_duration_seconds" in metrics.snapshot()["counters"]
    assert metrics.snapshot()["counters"]["streams_completed_total"] == completed_before + 1
    assert [m.content for m in assistant_messages(service.session_factory, chat.conversation_id)] == [
        "a"
    ]


@pytest.mark.asyncio
async def test_cancel_unknown_stream(make_service) -> None:
    service = make_service(ScriptedProviders())
    assert await service.cancel_stream("nope", "someone") is False


@pytest.mark.asyncio
async def test_idle_upstream_sends_keepalive_pings(make_service, db_session, catalog) -> None:
    providers = ScriptedProviders([0.2, delta("4"), StreamEvent.done()])
    service = make_service(providers, sse_ping_interval_seconds=0.02)
    chat = service.prepare(db_session, user=catalog["alice"], message="2+2?")

    frames = await collect(service.stream_chat(chat))

    types = frame_types(frames)
    assert types[0] == "start"
    assert ":ping" in types
    assert types.index(":ping") < types.index("content")
    assert types[-2:] == ["done", "[DONE]"]
    assert assistant_messages(service.session_factory, chat.conversation_id)[0].content == "4"


@pytest.mark.asyncio
async def test_no_pings_when_interval_disabled(make_service, db_session, catalog) -> None:
    service = make_service(ScriptedProviders([0.05, delta("4"), StreamEvent.done()]))
    chat = service.prepare(db_session, user=catalog["alice"], message="2+2?")

    frames = await collect(service.stream_chat(chat))

    assert ":ping" not in frame_types(frames)


# titles


@pytest.mark.asyncio
async def test_new_conversation_gets_generated_title(make_service, db_session, catalog) -> None:
    providers = ScriptedProviders(
        [delta("4"), StreamEvent.done()],
        chat_response=ChatResponse(
            content='  "Simple Arithmetic Question"  ',
            model="claude-sonnet-4",
            provider=ProviderType.OPENROUTER,
        ),
    )
    service = make_service(providers, title_generation_enabled=True)
    chat = service.prepare(db_session, user=catalog["alice"], message="2+2?")

    frames = await collect(service.stream_chat(chat))
    assert frame_types(frames)[-2:] == ["done", "[DONE]"]

    await asyncio.gather(*service.background_tasks)

    call = providers.chat_calls[0]
    assert [m.role for m in call["messages"]] == ["system", "user"]
    assert call["messages"][1].content == "2+2?"
    with service.session_factory() as s:
        assert s.get(Conversation, chat.conversation_id).title == "Simple Arithmetic Question"


@pytest.mark.asyncio
async def test_existing_conversation_is_not_retitled(make_service, db_session, catalog) -> None:
    providers = ScriptedProviders(
        [delta("4"), StreamEvent.done()],
        chat_response=ChatResponse(content="Other", model="m", provider=ProviderType.OPENROUTER),
    )
    service = make_service(providers, title_generation_enabled=True)
    conversation = create_conversation(db_session, catalog["alice"].id, "Math")
    chat = service.prepare(
        db_session, user=catalog["alice"], message="2+2?", conversation_id=conversation.id
    )

    await collect(service.stream_chat(chat))

    assert service.background_tasks == set()
    assert providers.chat_calls == []


@pytest.mark.asyncio
async def test_title_failure_is_contained(make_service, db_session, catalog) -> None:
    providers = ScriptedProviders(
        [delta("4"), StreamEvent.done()], chat_response=RuntimeError("upstream down")
    )
    service = make_service(providers, title_generation_enabled=True)
    chat = service.prepare(db_session, user=catalog["alice"], message="2+2?")
    failures_before = metrics.snapshot()["counters"]["title_generation_failures_total"]

    frames = await collect(service.stream_chat(chat))
    await asyncio.gather(*service.background_tasks)

    assert frame_types(frames)[-2:] == ["done", "[DONE]"]
    assert metrics.snapshot()["counters"]["title_generation_failures_total"] == failures_before + 1
    with service.session_factory() as s:
        assert s.get(Conversation, chat.conversation_id).title == DEFAULT_TITLE


@pytest.mark.asyncio
async def test_shutdown_cancels_pending_title_tasks(make_service, db_session, catalog) -> None:
    service = make_service(ScriptedProviders(), title_generation_enabled=True)
    chat = service.prepare(db_session, user=catalog["alice"], message="2+2?")

    async def slow_chat(*args, **kwargs):
        await asyncio.sleep(30)

    service.providers.chat = slow_chat
    task = service.schedule_title(chat)
    await asyncio.sleep(0)

    await service.shutdown()

    assert task.cancelled()
    assert service.background_tasks == set()


def test_schedule_title_disabled(make_service, db_session, catalog) -> None:
    service = make_service(ScriptedProviders())
    chat = service.prepare(db_session, user=catalog["alice"], message="2+2?")
    assert service.schedule_title(chat) is None


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ('"Quick Math"', "Quick Math"),
        ("  'Quoted'  ", "Quoted"),
        ("`code`", "code"),
        ("x" * 80, "x" * 50),
        ("", ""),
    ],
)
def test_clean_title(raw: str, expected: str) -> None:
    assert clean_title(raw) == expected


# chat_once


@pytest.mark.asyncio
async def test_chat_once_persists_with_reported_usage(make_service, db_session, catalog) -> None:
    providers = ScriptedProviders(
        chat_response=ChatResponse(
            content="4",
            model="claude-sonnet-4",
            provider=ProviderType.OPENROUTER,
            input_tokens=10,
            output_tokens=2,
            total_tokens=12,
        )
    )
    service = make_service(providers)
    chat = service.prepare(db_session, user=catalog["alice"], message="2+2?")

    result = await service.chat_once(chat)

    assert result["conversation_id"] == chat.conversation_id
    assert result["message"]["content"] == "4"
    assert result["message"]["role"] == "assistant"
    assert result["message"]["tokens"] == 12
    assert result["usage"]["cost"] == pytest.approx(10 / 1000 * 0.003 + 2 / 1000 * 0.015)

    saved = assistant_messages(service.session_factory, chat.conversation_id)
    assert [m.id for m in saved] == [result["message"]["id"]]
    with service.session_factory() as s:
        assert s.execute(select(ApiUsage.endpoint)).scalar_one() == CHAT_ENDPOINT


@pytest.mark.asyncio
async def test_chat_once_rejects_empty_response(make_service, db_session, catalog) -> None:
    service = make_service(ScriptedProviders())
    chat = service.prepare(db_session, user=catalog["alice"], message="2+2?")

    with pytest.raises(ProviderBadResponseError):
        await service.chat_once(chat)
    assert assistant_messages(service.session_factory, chat.conversation_id) == []
