import asyncio

import pytest

from conftest import FakeProvider, RecordingTransport, make_pipeline
from chat.pipeline import State
from domain.schemas import ChatInput, GroundingMetadata, GroundingSupport, Resource, SourceChunk, UsageCounts


def _input(message="Xin chào", **kw):
    return ChatInput(conversation_id="c1", message=message, **kw)


def test_stream_success_event_order_and_persistence(storage):
    provider = FakeProvider(chunks=["Chào", " bạn", "!"])
    pipeline = make_pipeline(storage, provider)
    transport = RecordingTransport(provider=provider)

    outcome = asyncio.run(pipeline.stream("u1", _input(), transport))

    assert outcome.status == "success"
    assert outcome.state == State.COMPLETE
    assert transport.names() == [
        "message_saved",
        "stream_start",
        "stream_chunk",
        "stream_chunk",
        "stream_chunk",
        "stream_end",
        "message_complete",
    ]
    chunks = [d["chunk"] for e, d in transport.events if e == "stream_chunk"]
    assert chunks == ["Chào", " bạn", "!"]

    msgs = storage.messages["c1"]
    assert [m.role for m in msgs] == ["user", "assistant"]
    assert msgs[1].content == "Chào bạn!"
    assert transport.events[-1][1]["message"]["message_id"] == msgs[1].message_id
    assert "c1" in storage.touched

    assert len(storage.usage) == 1
    rec = storage.usage[0]
    assert rec.status == "success"
    assert rec.total_tokens == 15
    assert rec.message_id == msgs[1].message_id
    assert rec.metadata["streaming"] is True


def test_stream_relays_each_chunk_before_reading_next(storage):
    provider = FakeProvider(chunks=["a", "b", "c", "d"])
    transport = RecordingTransport(provider=provider)

    asyncio.run(make_pipeline(storage, provider).stream("u1", _input(), transport))

    sent = [n for (e, _), n in zip(transport.events, transport.yielded_at_send) if e == "stream_chunk"]
    assert sent == [1, 2, 3, 4]


def test_stream_failure_after_three_chunks(storage):
    provider = FakeProvider(chunks=["one ", "two ", "three ", "four"], fail_after=3)
    transport = RecordingTransport()

    outcome = asyncio.run(make_pipeline(storage, provider).stream("u1", _input(), transport))

    assert outcome.status == "error"
    assert outcome.state == State.FAILED
    assert transport.names().count("stream_chunk") == 3
    assert transport.names()[-1] == "error"
    assert "message_complete" not in transport.names()

    msgs = storage.messages["c1"]
    assert [m.role for m in msgs] == ["user", "assistant"]
    # không bao giờ lưu text dở dang
    assert "one two three" not in msgs[1].content
    assert msgs[1].metadata["error"] is True

    assert len(storage.usage) == 1
    assert storage.usage[0].status == "error"
    assert "upstream exploded" in storage.usage[0].error_message


def test_too_many_urls_rejected_before_provider_call(storage):
    for i in range(21):
        storage.attach_resource("c1", Resource(resource_id=f"r{i}", resource_type="url", url=f"https://x.example/{i}"))
    provider = FakeProvider()
    transport = RecordingTransport()

    outcome = asyncio.run(make_pipeline(storage, provider).stream("u1", _input(), transport))

    assert outcome.status == "rejected"
    assert outcome.error.code == "too_many_urls"
    assert transport.names() == ["error"]
    assert provider.requests == []
    assert storage.usage == []
    assert storage.messages["c1"] == []


def test_unknown_conversation_rejected(storage):
    provider = FakeProvider()
    transport = RecordingTransport()

    outcome = asyncio.run(make_pipeline(storage, provider).stream("someone-else", _input(), transport))

    assert outcome.status == "rejected"
    assert outcome.error.code == "conversation_not_found"
    assert provider.requests == []


def test_stream_timeout_fails_run(storage):
    provider = FakeProvider(chunks=["slow"], delay=0.5)
    transport = RecordingTransport()

    outcome = asyncio.run(make_pipeline(storage, provider, timeout_sec=0.05).stream("u1", _input(), transport))

    assert outcome.status == "error"
    assert outcome.error.code == "provider_timeout"
    assert transport.names()[-1] == "error"
    assert len(storage.usage) == 1 and storage.usage[0].status == "error"


def test_client_disconnect_stops_provider(storage):
    provider = FakeProvider(chunks=["a", "b", "c", "d", "e"])
    # message_saved, stream_start, 1 chunk rồi client đi
    transport = RecordingTransport(close_after=3, provider=provider)

    outcome = asyncio.run(make_pipeline(storage, provider).stream("u1", _input(), transport))

    assert outcome.status == "error"
    assert outcome.error.code == "client_disconnected"
    assert provider.stream_closed is True
    assert provider.yielded < len(provider.chunks)

    msgs = storage.messages["c1"]
    assert [m.role for m in msgs] == ["user", "assistant"]
    assert msgs[1].metadata["error_code"] == "client_disconnected"
    assert [r.status for r in storage.usage] == ["error"]


def test_grounded_answer_is_annotated_before_persisting(storage):
    text = "Lúa tăng giá."
    grounding = GroundingMetadata(
        supports=[GroundingSupport(segment_end_byte=len(text.encode("utf-8")), chunk_indices=[0])],
        chunks=[SourceChunk(index=0, uri="https://news.example/lua", title="Tin lúa")],
    )
    provider = FakeProvider(chunks=["Lúa ", "tăng giá."], grounding=grounding)
    transport = RecordingTransport()

    asyncio.run(make_pipeline(storage, provider).stream("u1", _input(), transport))

    content = storage.messages["c1"][1].content
    assert content.startswith("Lúa tăng giá.[[1]](https://news.example/lua)")
    assert content.endswith("**Sources:**\n1. [Tin lúa](https://news.example/lua)")
    assert transport.events[-1][1]["message"]["content"] == content


def test_send_success_with_cost(storage):
    usage = UsageCounts(prompt_tokens=1000, completion_tokens=1000, total_tokens=2000)
    provider = FakeProvider(chunks=["ok"], usage=usage)

    outcome = asyncio.run(make_pipeline(storage, provider).send("u1", _input()))

    assert outcome.status == "success"
    assert outcome.assistant_message.content == "ok"
    assert abs(outcome.cost_estimate - 0.000375) < 1e-12
    assert storage.usage[0].metadata["streaming"] is False


def test_send_provider_error_persists_notice(storage):
    provider = FakeProvider(fail_after=0)

    outcome = asyncio.run(make_pipeline(storage, provider).send("u1", _input()))

    assert outcome.status == "error"
    assert outcome.error.code == "provider_error"
    assert outcome.assistant_message.metadata["error"] is True
    assert [m.role for m in storage.messages["c1"]] == ["user", "assistant"]
    assert [r.status for r in storage.usage] == ["error"]


def test_history_sent_to_provider_excludes_current_message(storage):
    provider = FakeProvider()
    pipeline = make_pipeline(storage, provider)

    asyncio.run(pipeline.send("u1", _input("câu 1")))
    asyncio.run(pipeline.send("u1", _input("câu 2")))

    second = provider.requests[1]
    assert [t.role for t in second.history] == ["user", "model"]
    assert second.history[0].parts[0].text == "câu 1"
    assert second.current_message.parts[0].text == "câu 2"


def test_storage_failure_while_finalizing_records_error_usage(storage):
    original = storage.persist_message

    async def flaky_persist(conversation_id, role, content, metadata=None):
        if role == "assistant":
            raise ConnectionError("disk full")
        return await original(conversation_id, role, content, metadata)

    storage.persist_message = flaky_persist
    transport = RecordingTransport()

    outcome = asyncio.run(make_pipeline(storage, FakeProvider()).stream("u1", _input(), transport))

    assert outcome.status == "error"
    assert outcome.error.code == "storage_error"
    assert [m.role for m in storage.messages["c1"]] == ["user"]
    assert [r.status for r in storage.usage] == ["error"]
    assert transport.names()[-1] == "error"


def test_cancelled_stream_still_records_assistant_notice_and_usage(storage):
    provider = FakeProvider(chunks=["a", "b", "c", "d", "e"], delay=0.05)
    transport = RecordingTransport()

    async def run():
        task = asyncio.create_task(make_pipeline(storage, provider).stream("u1", _input(), transport))
        await asyncio.sleep(0.12)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(run())

    msgs = storage.messages["c1"]
    assert [m.role for m in msgs] == ["user", "assistant"]
    assert msgs[1].metadata["error_code"] == "cancelled"
    assert [r.status for r in storage.usage] == ["error"]
    assert provider.stream_closed is True


def test_cancelled_send_still_records_assistant_notice_and_usage(storage):
    provider = FakeProvider(chunks=["ok"], delay=0.5)

    async def run():
        task = asyncio.create_task(make_pipeline(storage, provider).send("u1", _input()))
        await asyncio.sleep(0.05)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    asyncio.run(run())

    assert [m.role for m in storage.messages["c1"]] == ["user", "assistant"]
    assert storage.messages["c1"][1].metadata["error"] is True
    assert [r.status for r in storage.usage] == ["error"]


def test_citation_counter_counts_sources_with_uri(storage):
    from prometheus_client import REGISTRY

    grounding = GroundingMetadata(
        supports=[],
        chunks=[SourceChunk(index=0, uri="https://a"), SourceChunk(index=1, uri=None), SourceChunk(index=2, uri="https://c")],
    )
    provider = FakeProvider(chunks=["x"], grounding=grounding)

    def value():
        return REGISTRY.get_sample_value("chat_citation_sources_total", {"kind": "rest"}) or 0.0

    before = value()
    asyncio.run(make_pipeline(storage, provider).send("u1", _input()))
    assert value() - before == 2
