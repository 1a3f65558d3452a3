from typing import Protocol

from completion_gateway.config.settings import Settings


class CredentialSource(Protocol):
    def get(self, provider_name: str) -> str | None:
        """Return the secret configured for ``provider_name``, if any."""


class SettingsCredentialSource:
    """Credential lookup backed by the process settings."""

    def __init__(self, settings: Settings):
        self._settings = settings

    def get(self, provider_name: str) -> str | None:
        if provider_name == "openai":
            key = (self._settings.openai_api_key or "").strip()
            return key or None
        return None


class StaticCredentialSource:
    def __init__(self, secrets: dict[str, str] | None = None):
        self._secrets = dict(secrets or {})

    def get(self, provider_name: str) -> str | None:
        return self._secrets.get(provider_name) or None
