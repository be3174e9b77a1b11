"""Sync error taxonomy.

Every error raised out of a sync operation carries the provider, the local
bug id and the external id (when known) so callers can render an actionable
message.
"""

from typing import Any, Dict, Optional


class SyncError(Exception):
    """Base class for sync failures"""

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        provider: Optional[str] = None,
        bug_id: Optional[str] = None,
        external_id: Optional[str] = None,
    ):
        super().__init__(message)
        self.message = message
        self.provider = provider
        self.bug_id = bug_id
        self.external_id = external_id

    def with_context(
        self,
        *,
        provider: Optional[str] = None,
        bug_id: Optional[str] = None,
        external_id: Optional[str] = None,
    ) -> "SyncError":
        """Fill in context fields the raiser did not know; existing values win."""
        self.provider = self.provider or provider
        self.bug_id = self.bug_id or bug_id
        self.external_id = self.external_id or external_id
        return self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "provider": self.provider,
            "bug_id": self.bug_id,
            "external_id": self.external_id,
            "retryable": self.retryable,
        }

    def __str__(self) -> str:
        parts = [self.message]
        ctx = [
            f"{k}={v}"
            for k, v in (
                ("provider", self.provider),
                ("bug_id", self.bug_id),
                ("external_id", self.external_id),
            )
            if v
        ]
        if ctx:
            parts.append(f"({', '.join(ctx)})")
        return " ".join(parts)


class IntegrationNotConfigured(SyncError):
    """Not connected, inactive, direction not allowed, or target selectors missing."""


class TokenInvalid(SyncError):
    """The stored grant can no longer produce a token; the user must reconnect."""


class ProviderApiError(SyncError):
    """The provider rejected the request (4xx). Surfaced verbatim, never retried."""

    def __init__(self, message: str, *, status_code: int, body: Any = None, **ctx):
        super().__init__(message, **ctx)
        self.status_code = status_code
        self.body = body

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["status_code"] = self.status_code
        data["provider_response"] = self.body
        return data


class ProviderUnavailable(SyncError):
    """Network error, timeout, throttling or 5xx. Safe for the caller to retry."""

    retryable = True


class MappingIncomplete(SyncError):
    """Only raised for unmapped update statuses when strict_status_mapping is on."""


class BugNotFound(SyncError):
    """The bug store has no snapshot for the requested bug."""


class SyncCancelled(SyncError):
    """The operation was aborted before any provider call was sent."""


class OAuthGrantError(Exception):
    """The provider's token endpoint rejected the grant (revoked, expired, invalid)."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class LinkNotRecorded(SyncError):
    """The external item was created but its link could not be stored.

    The item carries the sync marker, so reconciliation can back-fill the
    link; pushing again before that would create a second item.
    """


class InvalidStateTransition(Exception):
    """Raised when an integration is moved along an edge the lifecycle forbids."""

    def __init__(self, current, requested):
        super().__init__(f"Cannot move integration from {current.value} to {requested.value}")
        self.current = current
        self.requested = requested
