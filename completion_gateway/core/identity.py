from dataclasses import dataclass


@dataclass(frozen=True)
class AuthenticatedCaller:
    """Identity of the caller as established by the auth layer."""

    id: str
    email: str | None = None
    role: str = "user"
