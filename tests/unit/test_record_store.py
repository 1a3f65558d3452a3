import json
from datetime import UTC, datetime
from pathlib import Path

import pytest

from completion_gateway.models.openai import ChatMessage, CompletionRecord, Usage
from completion_gateway.records.store import (
    InMemoryCompletionStore,
    JsonlCompletionStore,
    RecordWriteError,
)


def _record(**overrides: object) -> CompletionRecord:
    fields: dict[str, object] = {
        "request_id": "req-1",
        "user_id": "user-1",
        "model": "gpt-4o",
        "provider": "mock",
        "messages": [ChatMessage(role="user", content="hello")],
        "response": {"id": "chatcmpl-1"},
        "usage": Usage(prompt_tokens=2, completion_tokens=3, total_tokens=5),
        "finish_reason": "stop",
        "created_at": datetime(2026, 1, 1, tzinfo=UTC),
        "completed_at": datetime(2026, 1, 1, 0, 0, 1, tzinfo=UTC),
    }
    fields.update(overrides)
    return CompletionRecord(**fields)


def test_jsonl_store_appends_and_reads_back(tmp_path: Path) -> None:
    path = tmp_path / "nested" / "records.jsonl"
    store = JsonlCompletionStore(path)

    first_id = store.write(_record())
    second_id = store.write(_record(request_id="req-2"))

    assert first_id != second_id
    rows = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert [row["id"] for row in rows] == [first_id, second_id]

    loaded = store.get(second_id)
    assert loaded is not None
    assert loaded.request_id == "req-2"
    assert loaded.usage == Usage(prompt_tokens=2, completion_tokens=3, total_tokens=5)
    assert store.get("unknown") is None


def test_jsonl_store_reads_records_written_before_startup(tmp_path: Path) -> None:
    path = tmp_path / "records.jsonl"
    writer = JsonlCompletionStore(path)
    first_id = writer.write(_record(request_id="req-1"))
    second_id = writer.write(_record(request_id="req-2"))

    reader = JsonlCompletionStore(path)
    loaded = reader.get(second_id)
    assert loaded is not None
    assert loaded.request_id == "req-2"
    first = reader.get(first_id)
    assert first is not None
    assert first.request_id == "req-1"


def test_jsonl_store_indexes_lines_appended_by_another_writer(tmp_path: Path) -> None:
    path = tmp_path / "records.jsonl"
    reader = JsonlCompletionStore(path)
    own_id = reader.write(_record(request_id="req-own"))
    assert reader.get("later") is None

    other = JsonlCompletionStore(path)
    other_id = other.write(_record(id="later", request_id="req-other"))
    newest_id = reader.write(_record(request_id="req-newest"))

    for record_id, request_id in [
        (other_id, "req-other"),
        (own_id, "req-own"),
        (newest_id, "req-newest"),
    ]:
        loaded = reader.get(record_id)
        assert loaded is not None
        assert loaded.request_id == request_id


def test_jsonl_store_skips_malformed_and_partial_lines(tmp_path: Path) -> None:
    path = tmp_path / "records.jsonl"
    store = JsonlCompletionStore(path)
    with path.open("a", encoding="utf-8") as handle:
        handle.write("{not json\n\n")
    record_id = store.write(_record())
    with path.open("a", encoding="utf-8") as handle:
        handle.write('{"id": "torn"')

    fresh = JsonlCompletionStore(path)
    assert fresh.get("torn") is None
    loaded = fresh.get(record_id)
    assert loaded is not None
    assert loaded.id == record_id


def test_jsonl_store_keeps_explicit_id(tmp_path: Path) -> None:
    store = JsonlCompletionStore(tmp_path / "records.jsonl")
    assert store.write(_record(id="rec-1")) == "rec-1"


def test_jsonl_store_rejects_failure_with_completion_time(tmp_path: Path) -> None:
    path = tmp_path / "records.jsonl"
    store = JsonlCompletionStore(path)

    with pytest.raises(RecordWriteError):
        store.write(_record(error="Provider returned 500"))
    assert not path.exists()


def test_jsonl_store_get_without_file(tmp_path: Path) -> None:
    assert JsonlCompletionStore(tmp_path / "absent.jsonl").get("x") is None


def test_jsonl_store_wraps_os_errors(tmp_path: Path) -> None:
    blocker = tmp_path / "blocker"
    blocker.write_text("not a directory", encoding="utf-8")
    store = JsonlCompletionStore(blocker / "records.jsonl")

    with pytest.raises(RecordWriteError, match="Failed to append record"):
        store.write(_record())


def test_in_memory_store_rejects_duplicate_ids() -> None:
    store = InMemoryCompletionStore()
    store.write(_record(id="rec-1"))
    with pytest.raises(RecordWriteError):
        store.write(_record(id="rec-1"))
    assert [record.id for record in store.all()] == ["rec-1"]
