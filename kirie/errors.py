"""Exception types shared across the backend."""

from __future__ import annotations


class KirieError(Exception):
    """Base class for errors that map onto the `{success: false}` envelope."""

    status_code = 500


class ValidationError(KirieError):
    """A required request field is missing, empty or unreadable."""

    status_code = 400


class ConfigurationError(KirieError):
    """The deployment's style or provider configuration is unusable."""

    status_code = 400


class ProviderError(KirieError):
    """An external provider failed; the message is safe to log and return."""

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: int | None = None,
        retryable: bool = True,
    ) -> None:
        super().__init__(f"{provider}: {message}")
        self.provider = provider
        self.upstream_status = status_code
        self.retryable = retryable


class GenerationError(KirieError):
    """Every attempt, including the fallback chain, failed."""

    status_code = 500

    def __init__(self, message: str, attempts: int, errors: list[ProviderError]) -> None:
        super().__init__(message)
        self.attempts = attempts
        self.errors = errors
