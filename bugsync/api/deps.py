"""Shared API dependencies and error translation"""

from fastapi import HTTPException

from bugsync.models.enums import ProviderType
from bugsync.services.collaborators import AuditSink, BugStore, LoggingAuditSink
from bugsync.services.errors import (
    BugNotFound,
    IntegrationNotConfigured,
    InvalidStateTransition,
    MappingIncomplete,
    ProviderApiError,
    ProviderUnavailable,
    SyncCancelled,
    SyncError,
    TokenInvalid,
)

_STATUS_CODES = (
    (IntegrationNotConfigured, 409),
    (TokenInvalid, 401),
    (BugNotFound, 404),
    (ProviderApiError, 502),
    (ProviderUnavailable, 503),
    (SyncCancelled, 409),
    (MappingIncomplete, 409),
)


def get_bug_store() -> BugStore:
    """Host applications override this with app.dependency_overrides."""
    raise HTTPException(status_code=501, detail="No bug store is configured for this deployment")


def get_audit_sink() -> AuditSink:
    return LoggingAuditSink()


def parse_provider(provider: str) -> ProviderType:
    try:
        return ProviderType(provider)
    except ValueError:
        raise HTTPException(status_code=404, detail=f"Unknown provider '{provider}'")


def http_error(e: Exception) -> HTTPException:
    if isinstance(e, SyncError):
        for cls, status_code in _STATUS_CODES:
            if isinstance(e, cls):
                return HTTPException(status_code=status_code, detail=e.to_dict())
        return HTTPException(status_code=500, detail=e.to_dict())
    if isinstance(e, InvalidStateTransition):
        return HTTPException(status_code=409, detail=str(e))
    if isinstance(e, ValueError):
        return HTTPException(status_code=422, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))
