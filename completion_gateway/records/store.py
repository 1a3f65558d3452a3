import json
import threading
from pathlib import Path
from typing import Any, BinaryIO, Protocol
from uuid import uuid4

from jsonschema import ValidationError, validate
from pydantic import ValidationError as ModelValidationError

from completion_gateway.models.openai import CompletionRecord

RECORD_SCHEMA: dict[str, Any] = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": [
        "id",
        "request_id",
        "user_id",
        "model",
        "provider",
        "messages",
        "stream",
        "response",
        "created_at",
    ],
    "properties": {
        "id": {"type": "string", "minLength": 1},
        "request_id": {"type": "string", "minLength": 1},
        "user_id": {"type": "string", "minLength": 1},
        "thread_ref": {"type": ["string", "null"]},
        "message_id": {"type": ["string", "null"]},
        "model": {"type": "string", "minLength": 1},
        "provider": {"type": "string"},
        "messages": {"type": "array", "minItems": 1},
        "stream": {"type": "boolean"},
        "response": {"type": "object"},
        "usage": {
            "type": ["object", "null"],
            "properties": {
                "prompt_tokens": {"type": "integer", "minimum": 0},
                "completion_tokens": {"type": "integer", "minimum": 0},
                "total_tokens": {"type": "integer", "minimum": 0},
            },
        },
        "error": {"type": ["string", "null"]},
        "created_at": {"type": "string"},
        "completed_at": {"type": ["string", "null"]},
    },
    "allOf": [
        {
            "if": {"properties": {"error": {"type": "string"}}, "required": ["error"]},
            "then": {"properties": {"completed_at": {"type": "null"}}},
        }
    ],
}


class RecordWriteError(Exception):
    """Raised when a completion record cannot be persisted."""


class CompletionRecordSink(Protocol):
    def write(self, record: CompletionRecord) -> str:
        """Persist ``record`` and return its identifier."""

    def get(self, record_id: str) -> CompletionRecord | None:
        """Return the stored record or None."""


class JsonlCompletionStore:
    """Append-only JSON lines store for completion records.

    Lookups go through an in-memory map of record id to byte offset. Lines
    appended by other writers are indexed lazily on the first miss.
    """

    def __init__(self, path: Path):
        self._path = path
        self._lock = threading.Lock()
        self._offsets: dict[str, int] = {}
        self._indexed_to = 0

    def write(self, record: CompletionRecord) -> str:
        record_id = record.id or str(uuid4())
        payload = record.model_copy(update={"id": record_id}).model_dump(mode="json")

        try:
            validate(instance=payload, schema=RECORD_SCHEMA)
        except ValidationError as exc:
            raise RecordWriteError(exc.message) from exc

        line = (json.dumps(payload, ensure_ascii=True) + "\n").encode("utf-8")
        try:
            with self._lock:
                self._path.parent.mkdir(parents=True, exist_ok=True)
                with self._path.open("ab") as file_handle:
                    offset = file_handle.tell()
                    file_handle.write(line)
                if offset == self._indexed_to:
                    self._indexed_to = offset + len(line)
                self._offsets.setdefault(record_id, offset)
        except OSError as exc:
            raise RecordWriteError(f"Failed to append record: {exc}") from exc
        return record_id

    def get(self, record_id: str) -> CompletionRecord | None:
        with self._lock:
            if not self._path.exists():
                return None
            with self._path.open("rb") as file_handle:
                if record_id not in self._offsets:
                    self._index_from(file_handle)
                offset = self._offsets.get(record_id)
                if offset is None:
                    return None
                file_handle.seek(offset)
                parsed = _parse_line(file_handle.readline())

        if parsed is None or parsed.get("id") != record_id:
            return None
        try:
            return CompletionRecord.model_validate(parsed)
        except ModelValidationError:
            return None

    def _index_from(self, file_handle: BinaryIO) -> None:
        file_handle.seek(self._indexed_to)
        while True:
            offset = file_handle.tell()
            raw = file_handle.readline()
            # A line without its newline is still being written.
            if not raw.endswith(b"\n"):
                return
            self._indexed_to = file_handle.tell()
            parsed = _parse_line(raw)
            if parsed is not None and isinstance(parsed.get("id"), str):
                self._offsets.setdefault(parsed["id"], offset)


def _parse_line(raw: bytes) -> dict[str, Any] | None:
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return None
    return parsed if isinstance(parsed, dict) else None


class InMemoryCompletionStore:
    def __init__(self) -> None:
        self._records: dict[str, CompletionRecord] = {}

    def write(self, record: CompletionRecord) -> str:
        record_id = record.id or str(uuid4())
        if record_id in self._records:
            raise RecordWriteError(f"Record {record_id} already written")
        self._records[record_id] = record.model_copy(update={"id": record_id})
        return record_id

    def get(self, record_id: str) -> CompletionRecord | None:
        return self._records.get(record_id)

    def all(self) -> list[CompletionRecord]:
        return list(self._records.values())
