import asyncio

import pytest

from completion_gateway.config.settings import Settings
from completion_gateway.core.credentials import StaticCredentialSource
from completion_gateway.core.errors import ThreadAccessError
from completion_gateway.core.identity import AuthenticatedCaller
from completion_gateway.models.openai import ChatMessage, CompletionRecord, CompletionRequest
from completion_gateway.providers.base import ProviderError
from completion_gateway.records.store import InMemoryCompletionStore, RecordWriteError
from completion_gateway.services.completion_service import CompletionService
from completion_gateway.threads.store import InMemoryConversationStore

CALLER = AuthenticatedCaller(id="user-1", email="user-1@example.com")


class FailingRecordSink:
    def __init__(self) -> None:
        self.attempts = 0

    def write(self, record: CompletionRecord) -> str:
        self.attempts += 1
        raise RecordWriteError("disk full")

    def get(self, record_id: str) -> CompletionRecord | None:
        return None


def _service(
    records=None,
    conversations: InMemoryConversationStore | None = None,
    **settings_overrides: object,
) -> CompletionService:
    settings = Settings(
        **{
            "openai_api_key": None,
            "default_model": None,
            "mock_response_delay_s": 0,
            "mock_chunk_delay_s": 0,
            "metrics_enabled": False,
            **settings_overrides,
        }
    )
    return CompletionService(
        settings=settings,
        record_sink=records if records is not None else InMemoryCompletionStore(),
        conversation_store=conversations or InMemoryConversationStore(),
        credentials=StaticCredentialSource(),
    )


def _request(content: str = "hello", **overrides: object) -> CompletionRequest:
    fields: dict[str, object] = {
        "model": "gpt-4o",
        "messages": [ChatMessage(role="user", content=content)],
    }
    fields.update(overrides)
    return CompletionRequest(**fields)


def test_create_completion_writes_success_record() -> None:
    records = InMemoryCompletionStore()
    service = _service(records)

    result = asyncio.run(
        service.create_completion(_request(temperature=0.3, stop=["\n"]), CALLER)
    )

    assert result.response.id.startswith("chatcmpl-")
    assert result.record.id is not None
    stored = records.get(result.record.id)
    assert stored is not None
    assert stored.succeeded
    assert stored.user_id == "user-1"
    assert stored.provider == "mock"
    assert stored.model == "gpt-4o"
    assert stored.temperature == 0.3
    assert stored.stop == ["\n"]
    assert stored.stream is False
    assert stored.response["id"] == result.response.id
    assert stored.usage == result.response.usage
    assert stored.finish_reason == "stop"


def test_completion_ids_are_unique_per_call() -> None:
    service = _service()

    async def run():
        return await asyncio.gather(
            service.create_completion(_request("same"), CALLER),
            service.create_completion(_request("same"), CALLER),
        )

    first, second = asyncio.run(run())
    assert first.response.id != second.response.id
    assert first.record.id != second.record.id


def test_default_model_applies_when_request_has_none() -> None:
    service = _service(default_model="gpt-4o-mini")
    result = asyncio.run(service.create_completion(_request(model=None), CALLER))
    assert result.response.model == "gpt-4o-mini"
    assert result.record.model == "gpt-4o-mini"


def test_provider_failure_writes_failure_record_and_reraises() -> None:
    records = InMemoryCompletionStore()
    service = _service(records)

    with pytest.raises(ProviderError) as exc_info:
        asyncio.run(service.create_completion(_request(model="error-500"), CALLER))

    assert exc_info.value.status_code == 500
    [record] = records.all()
    assert not record.succeeded
    assert record.completed_at is None
    assert record.error == "Provider returned 500"
    assert record.response["error"]["code"] == "provider_error"
    assert record.response["error"]["status_code"] == 500
    assert record.usage is None


def test_record_write_failure_does_not_mask_success() -> None:
    sink = FailingRecordSink()
    service = _service(sink)

    result = asyncio.run(service.create_completion(_request(), CALLER))

    assert sink.attempts == 1
    assert result.response.content
    assert result.record.id is None


def test_record_write_failure_does_not_mask_provider_error() -> None:
    service = _service(FailingRecordSink())
    with pytest.raises(ProviderError, match="rate limit"):
        asyncio.run(service.create_completion(_request(model="error-429"), CALLER))


def test_thread_integration_appends_exchange() -> None:
    conversations = InMemoryConversationStore()
    thread_ref = conversations.create_thread(owner_id="user-1")
    service = _service(conversations=conversations)

    result = asyncio.run(
        service.create_completion(_request("what is new?", thread_ref=thread_ref), CALLER)
    )

    messages = conversations.messages(thread_ref)
    assert [m.role for _, m in messages] == ["user", "assistant"]
    user_message = messages[0][1]
    assert user_message.content == "what is new?"
    assert user_message.author_id == "user-1"
    assert user_message.metadata == {"source": "completion", "completion_request": True}

    assistant_id, assistant_message = messages[1]
    assert assistant_message.content == result.response.content
    assert assistant_message.metadata["completion_id"] == result.response.id
    assert assistant_message.metadata["finish_reason"] == "stop"
    assert result.record.message_id == assistant_id
    assert result.record.thread_ref == thread_ref


def test_thread_integration_appends_latest_user_message_before_trailing_system() -> None:
    conversations = InMemoryConversationStore()
    thread_ref = conversations.create_thread(owner_id="user-1")
    service = _service(conversations=conversations)
    request = _request(
        thread_id=thread_ref,
        messages=[
            ChatMessage(role="user", content="question"),
            ChatMessage(role="system", content="be brief"),
        ],
    )

    asyncio.run(service.create_completion(request, CALLER))

    entries = [m for _, m in conversations.messages(thread_ref)]
    assert [m.role for m in entries] == ["user", "assistant"]
    assert entries[0].content == "question"


def test_thread_integration_skips_user_append_without_user_message() -> None:
    conversations = InMemoryConversationStore()
    thread_ref = conversations.create_thread(owner_id="user-1")
    service = _service(conversations=conversations)
    request = _request(
        thread_id=thread_ref,
        messages=[ChatMessage(role="system", content="you are terse")],
    )

    asyncio.run(service.create_completion(request, CALLER))
    assert [m.role for _, m in conversations.messages(thread_ref)] == ["assistant"]


@pytest.mark.parametrize("owner", [None, "someone-else"])
def test_thread_access_denied_leaves_no_success_record(owner: str | None) -> None:
    conversations = InMemoryConversationStore()
    thread_ref = "thread-404"
    if owner:
        conversations.create_thread(owner_id=owner, thread_ref=thread_ref)
    records = InMemoryCompletionStore()
    service = _service(records, conversations)

    with pytest.raises(ThreadAccessError) as exc_info:
        asyncio.run(service.create_completion(_request(thread_ref=thread_ref), CALLER))

    assert exc_info.value.status_code == 404
    assert exc_info.value.code == "thread_not_found"
    assert conversations.messages(thread_ref) == []
    assert all(not record.succeeded for record in records.all())
    assert all(record.message_id is None for record in records.all())


def test_streaming_completion_stamps_gateway_id_and_persists() -> None:
    records = InMemoryCompletionStore()
    service = _service(records)
    request = _request("stream it")

    async def run():
        return [chunk async for chunk in service.create_streaming_completion(request, CALLER)]

    chunks = asyncio.run(run())
    non_streaming = asyncio.run(service.create_completion(request, CALLER))

    assert len({chunk.id for chunk in chunks}) == 1
    assert chunks[0].id.startswith("chatcmpl-")
    assert chunks[-1].is_terminal
    assert sum(1 for chunk in chunks if chunk.is_terminal) == 1
    content = "".join(chunk.delta.content or "" for chunk in chunks)
    assert content == non_streaming.response.content

    streamed = [record for record in records.all() if record.stream]
    assert len(streamed) == 1
    assert streamed[0].succeeded
    assert streamed[0].response["id"] == chunks[0].id
    assert streamed[0].response["choices"][0]["message"]["content"] == content


def test_streaming_completion_not_persisted_when_disabled() -> None:
    records = InMemoryCompletionStore()
    service = _service(records, persist_streaming_completions=False)

    async def run():
        return [chunk async for chunk in service.create_streaming_completion(_request(), CALLER)]

    asyncio.run(run())
    assert records.all() == []


def test_streaming_provider_error_records_failure() -> None:
    records = InMemoryCompletionStore()
    service = _service(records)

    async def run():
        return [
            chunk
            async for chunk in service.create_streaming_completion(
                _request(model="error-503"), CALLER
            )
        ]

    with pytest.raises(ProviderError):
        asyncio.run(run())
    [record] = records.all()
    assert record.stream is True
    assert record.completed_at is None
    assert record.response["error"]["status_code"] == 503


def test_abandoned_stream_records_failure() -> None:
    records = InMemoryCompletionStore()
    service = _service(records)

    async def run() -> None:
        stream = service.create_streaming_completion(_request("long answer please"), CALLER)
        first = await anext(stream)
        assert first.delta.content
        await stream.aclose()

    asyncio.run(run())
    [record] = records.all()
    assert record.error is not None
    assert record.response["error"]["code"] == "stream_abandoned"


def test_get_available_models_follows_default_selection() -> None:
    assert any(m.model_id == "gpt-4o" for m in _service().get_available_models())
    workflow_models = _service(default_model="wf/Researcher").get_available_models()
    assert [m.provider_family for m in workflow_models] == ["workflow"]


def test_get_completion_is_owner_scoped() -> None:
    records = InMemoryCompletionStore()
    service = _service(records)
    result = asyncio.run(service.create_completion(_request(), CALLER))
    assert result.record.id is not None

    assert service.get_completion(result.record.id, CALLER) is not None
    assert service.get_completion(result.record.id, AuthenticatedCaller(id="intruder")) is None
    assert service.get_completion("missing", CALLER) is None
