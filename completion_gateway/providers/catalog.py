"""Static table of the models the gateway knows how to serve."""

from dataclasses import dataclass
from typing import Literal

ProviderFamily = Literal["openai", "workflow", "local"]

FALLBACK_MODEL = "gpt-4o"


@dataclass(frozen=True)
class ProviderDescriptor:
    model_id: str
    display_name: str
    description: str
    provider_family: ProviderFamily
    max_tokens: int
    supports_streaming: bool
    is_default: bool = False


DEFAULT_MODELS: tuple[ProviderDescriptor, ...] = (
    ProviderDescriptor(
        model_id="gpt-4o",
        display_name="GPT-4o",
        description="Multimodal flagship model, cheaper and faster than GPT-4 Turbo",
        provider_family="openai",
        max_tokens=128_000,
        supports_streaming=True,
        is_default=True,
    ),
    ProviderDescriptor(
        model_id="gpt-4o-mini",
        display_name="GPT-4o Mini",
        description="Small model for fast, lightweight tasks",
        provider_family="openai",
        max_tokens=128_000,
        supports_streaming=True,
    ),
    ProviderDescriptor(
        model_id="gpt-4-turbo",
        display_name="GPT-4 Turbo",
        description="Previous generation flagship model with vision capabilities",
        provider_family="openai",
        max_tokens=128_000,
        supports_streaming=True,
    ),
    ProviderDescriptor(
        model_id="gpt-4",
        display_name="GPT-4",
        description="Previous generation flagship model for complex reasoning",
        provider_family="openai",
        max_tokens=8_192,
        supports_streaming=True,
    ),
    ProviderDescriptor(
        model_id="gpt-3.5-turbo",
        display_name="GPT-3.5 Turbo",
        description="Fast model for most conversational tasks",
        provider_family="openai",
        max_tokens=16_385,
        supports_streaming=True,
    ),
    ProviderDescriptor(
        model_id="o1",
        display_name="o1",
        description="Reasoning model for complex problems",
        provider_family="openai",
        max_tokens=200_000,
        supports_streaming=False,
    ),
    ProviderDescriptor(
        model_id="o1-mini",
        display_name="o1 Mini",
        description="Faster reasoning model for coding, math, and science tasks",
        provider_family="openai",
        max_tokens=65_536,
        supports_streaming=False,
    ),
    ProviderDescriptor(
        model_id="o1-pro",
        display_name="o1 Pro",
        description="Reasoning model for research-level tasks",
        provider_family="openai",
        max_tokens=200_000,
        supports_streaming=False,
    ),
    ProviderDescriptor(
        model_id="o3-mini",
        display_name="o3 Mini",
        description="Latest generation reasoning model (preview)",
        provider_family="openai",
        max_tokens=200_000,
        supports_streaming=False,
    ),
)


def workflow_models(prefix: str, default_agent: str) -> list[ProviderDescriptor]:
    return [
        ProviderDescriptor(
            model_id=f"{prefix}{default_agent}",
            display_name=f"Workflow {default_agent}",
            description="Agent executed by the asynchronous workflow system",
            provider_family="workflow",
            max_tokens=4_096,
            supports_streaming=True,
        )
    ]


def models_for_family(family: ProviderFamily) -> list[ProviderDescriptor]:
    return [model for model in DEFAULT_MODELS if model.provider_family == family]
