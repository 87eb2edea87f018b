from __future__ import annotations


class LedgerSyncError(Exception):
    """Base error for LedgerSync."""


class ProviderConfigError(LedgerSyncError):
    """Missing or invalid provider configuration."""


class CryptoError(LedgerSyncError):
    """Credential ciphertext could not be produced or opened; never retried."""


class AuthenticationError(LedgerSyncError):
    """Credential expired or revoked upstream; the user must reconnect."""


class TransientUpstreamError(LedgerSyncError):
    """Rate limit, 5xx or network failure; safe to retry with backoff."""

    def __init__(
        self,
        message: str,
        *,
        retry_after: float | None = None,
        correlation_id: str | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.retry_after = retry_after
        self.correlation_id = correlation_id
        self.status_code = status_code


class ValidationError(LedgerSyncError):
    """Malformed input rejected before it is persisted."""


class NotFoundError(LedgerSyncError):
    """Unknown tenant, connection or remote resource."""


class TerminalFailure(LedgerSyncError):
    """Retry budget exhausted; the event is dead-lettered with its cause."""


class IntegrationUnavailableError(TransientUpstreamError):
    """Circuit breaker is open for an external integration."""
