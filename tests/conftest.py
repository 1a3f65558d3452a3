from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from completion_gateway.config.settings import clear_settings_cache
from completion_gateway.main import create_app


@pytest.fixture
def client(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> TestClient:
    monkeypatch.setenv("CGW_API_KEYS", "test-key")
    monkeypatch.setenv("CGW_RECORDS_PATH", str(tmp_path / "records.jsonl"))
    monkeypatch.setenv("CGW_MOCK_RESPONSE_DELAY_S", "0")
    monkeypatch.setenv("CGW_MOCK_CHUNK_DELAY_S", "0")
    monkeypatch.delenv("CGW_OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("CGW_DEFAULT_MODEL", raising=False)
    monkeypatch.delenv("DEFAULT_AI_MODEL", raising=False)
    clear_settings_cache()
    app = create_app()
    return TestClient(app)


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {
        "Authorization": "Bearer test-key",
        "x-cgw-user-id": "user-1",
    }
