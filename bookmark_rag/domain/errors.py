"""Domain errors (typed) for the bookmark RAG core.

One error family for the application layer; adapters translate third-party
exceptions into these at the boundary.
"""

from dataclasses import dataclass
from enum import Enum


class DomainError(Exception):
    """Base class for domain-specific errors."""


class ValidationError(DomainError):
    """Invalid input/domain state."""


class ConfigurationError(DomainError):
    """Adapter or backend is misconfigured (unknown backend, missing module)."""


class RepositoryError(DomainError):
    """Storage collaborator failed."""


class AnalysisUnavailable(DomainError):
    """Query understanding call failed or timed out.

    Recoverable: callers fall back to a degraded intent.
    """


class EmbeddingError(DomainError):
    """Embedding backend failed for a whole batch or is misconfigured."""


@dataclass(frozen=True)
class EmbeddingBatchFailure(DomainError):
    """Items that could not be embedded after all attempts."""

    items: tuple[str, ...]
    reason: str = ""

    def __str__(self) -> str:
        ids = ", ".join(self.items)
        return f"embedding failed for {len(self.items)} item(s) [{ids}]: {self.reason}"


class TransportErrorKind(str, Enum):
    NETWORK_UNAVAILABLE = "network_unavailable"
    AUTH_INVALID = "auth_invalid"
    RATE_LIMITED = "rate_limited"
    PROVIDER_ERROR = "provider_error"

    @property
    def retryable(self) -> bool:
        return self in (TransportErrorKind.NETWORK_UNAVAILABLE, TransportErrorKind.RATE_LIMITED)


_HINTS = {
    TransportErrorKind.NETWORK_UNAVAILABLE: "Network unavailable. Check your connection and try again.",
    TransportErrorKind.RATE_LIMITED: "Rate limited. Please wait a moment and try again.",
    TransportErrorKind.AUTH_INVALID: "API key missing or invalid. Fix the key in your configuration.",
    TransportErrorKind.PROVIDER_ERROR: "The model provider returned an error. Try again later.",
}


@dataclass(frozen=True)
class StreamTransportError(DomainError):
    """Language-model call failed; ``kind`` tells transient from configuration problems."""

    kind: TransportErrorKind
    message: str = ""

    @property
    def retryable(self) -> bool:
        return self.kind.retryable

    @property
    def user_message(self) -> str:
        hint = _HINTS[self.kind]
        return f"{hint} ({self.message})" if self.message else hint

    def __str__(self) -> str:
        return f"{self.kind.value}: {self.message}"
