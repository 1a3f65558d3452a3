"""Model identifier to provider routing."""

from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal

import httpx

from completion_gateway.config.settings import Settings
from completion_gateway.core.credentials import CredentialSource
from completion_gateway.providers.base import CompletionProvider
from completion_gateway.providers.catalog import FALLBACK_MODEL
from completion_gateway.providers.http_openai import HTTPOpenAIProvider
from completion_gateway.providers.mock import MockProvider
from completion_gateway.providers.workflow import WorkflowProvider, agent_name_from_model
from completion_gateway.providers.workflow_events import WorkflowEventHub

ProviderName = Literal["mock", "openai", "workflow"]


@dataclass(frozen=True)
class ProviderSelection:
    name: ProviderName
    provider: CompletionProvider
    model: str
    agent_name: str | None = None


@dataclass
class ProviderSet:
    """Provider instances shared by every request of one gateway."""

    mock: MockProvider
    workflow: WorkflowProvider
    direct_factory: Callable[[str], HTTPOpenAIProvider]
    _direct: dict[str, HTTPOpenAIProvider] = field(default_factory=dict)

    def direct(self, api_key: str) -> HTTPOpenAIProvider:
        provider = self._direct.get(api_key)
        if provider is None:
            provider = self.direct_factory(api_key)
            self._direct = {api_key: provider}
        return provider


def build_providers(
    settings: Settings, transport: httpx.AsyncBaseTransport | None = None
) -> ProviderSet:
    events = WorkflowEventHub(
        base_url=settings.workflow_base_url,
        workflow_name=settings.workflow_name,
        connect_timeout_s=settings.workflow_timeout_s,
        transport=transport,
    )
    return ProviderSet(
        mock=MockProvider(
            response_delay_s=settings.mock_response_delay_s,
            chunk_delay_s=settings.mock_chunk_delay_s,
        ),
        workflow=WorkflowProvider(
            base_url=settings.workflow_base_url,
            events=events,
            workflow_name=settings.workflow_name,
            model_prefix=settings.workflow_model_prefix_normalized,
            default_agent=settings.workflow_default_agent,
            timeout_s=settings.workflow_timeout_s,
            response_timeout_s=settings.workflow_response_timeout_s,
            transport=transport,
        ),
        direct_factory=lambda api_key: HTTPOpenAIProvider(
            base_url=settings.openai_base_url,
            api_key=api_key,
            timeout_s=settings.openai_timeout_s,
            transport=transport,
        ),
    )


def resolve_model(requested: str | None, settings: Settings) -> str:
    for candidate in (requested, settings.default_model):
        if candidate and candidate.strip():
            return candidate.strip()
    return FALLBACK_MODEL


def select_provider(
    model: str,
    settings: Settings,
    credentials: CredentialSource,
    providers: ProviderSet,
) -> ProviderSelection:
    """Route ``model`` to a provider; never fails, the mock is the fallback."""
    prefix = settings.workflow_model_prefix_normalized
    if prefix and model.startswith(prefix):
        return ProviderSelection(
            name="workflow",
            provider=providers.workflow,
            model=model,
            agent_name=agent_name_from_model(model, prefix, settings.workflow_default_agent),
        )

    api_key = credentials.get("openai")
    if api_key:
        return ProviderSelection(name="openai", provider=providers.direct(api_key), model=model)

    return ProviderSelection(name="mock", provider=providers.mock, model=model)
