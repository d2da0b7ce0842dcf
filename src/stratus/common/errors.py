"""Error types shared by Stratus components."""

from __future__ import annotations


class UpstreamError(RuntimeError):
    """Raised when a call to an external service (GitHub, SSM, DigitalOcean) fails."""


class CredentialError(UpstreamError):
    """Raised when any link of the GitHub credential chain cannot be obtained."""


class SecretStoreError(UpstreamError):
    """Raised when the secret store rejects a read or write."""


class ProviderError(UpstreamError):
    """Raised when the compute provider rejects a create, delete or list call."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class InvalidRunnerInput(ValueError):
    """Raised when event fields fail the runner naming rules."""
