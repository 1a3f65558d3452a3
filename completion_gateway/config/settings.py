from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="CGW_", case_sensitive=False, populate_by_name=True
    )

    env: str = "dev"
    api_keys: str = Field(default="dev-key", description="Comma separated API keys")
    log_level: str = "INFO"
    default_model: str | None = Field(
        default=None,
        validation_alias=AliasChoices("CGW_DEFAULT_MODEL", "DEFAULT_AI_MODEL"),
        description="Model used when a request does not name one",
    )

    # Direct (OpenAI-compatible) provider
    openai_api_key: str | None = None
    openai_base_url: str = "https://api.openai.com/v1"
    openai_timeout_s: float = 60.0

    # Workflow provider
    workflow_base_url: str = "http://localhost:4500"
    workflow_name: str = "chat_workflow"
    workflow_model_prefix: str = "wf/"
    workflow_default_agent: str = "SimpleAgent"
    workflow_timeout_s: float = 30.0
    workflow_response_timeout_s: float = 120.0

    # Mock provider
    mock_response_delay_s: float = 0.5
    mock_chunk_delay_s: float = 0.05

    records_path: Path = Path("artifacts/completions/records.jsonl")
    persist_streaming_completions: bool = True
    metrics_enabled: bool = True

    @property
    def api_key_set(self) -> set[str]:
        return {item.strip() for item in self.api_keys.split(",") if item.strip()}

    @property
    def workflow_model_prefix_normalized(self) -> str:
        prefix = self.workflow_model_prefix.strip()
        if prefix and not prefix.endswith("/"):
            prefix = f"{prefix}/"
        return prefix


@lru_cache
def get_settings() -> Settings:
    return Settings()


def clear_settings_cache() -> None:
    get_settings.cache_clear()
