"""Sync endpoints"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from bugsync.api.deps import get_audit_sink, get_bug_store, http_error, parse_provider
from bugsync.models.base import get_db
from bugsync.models.enums import ProviderType
from bugsync.models.sync_log import SyncLog, SyncStatus
from bugsync.services.collaborators import AuditSink, BugStore
from bugsync.services.errors import SyncError
from bugsync.services.ledger import ExternalIdLedger
from bugsync.services.reconciliation import ReconciliationService
from bugsync.services.sync_coordinator import SyncCoordinator

router = APIRouter(prefix="/api/tenants/{tenant_id}/sync", tags=["sync"])


class PushRequest(BaseModel):
    bug_id: str
    provider: ProviderType


class PullRequest(BaseModel):
    provider: ProviderType
    external_id: str
    target_project_id: Optional[str] = None


class ReconcileRequest(BaseModel):
    provider: ProviderType


class LinkResponse(BaseModel):
    id: int
    bug_id: str
    provider_type: str
    external_id: str
    external_url: Optional[str] = None
    created_at: datetime
    last_synced_at: Optional[datetime] = None

    class Config:
        from_attributes = True
        use_enum_values = True


class SyncLogResponse(BaseModel):
    id: int
    provider_type: str
    bug_id: Optional[str] = None
    external_id: Optional[str] = None
    status: str
    operation: str
    action: Optional[str] = None
    message: Optional[str] = None
    created_at: datetime

    class Config:
        from_attributes = True
        use_enum_values = True


@router.post("/push")
def push_bug(
    tenant_id: str,
    body: PushRequest,
    db: Session = Depends(get_db),
    bug_store: BugStore = Depends(get_bug_store),
    audit_sink: AuditSink = Depends(get_audit_sink),
) -> Dict[str, Any]:
    """Create or update the external item for a bug"""
    coordinator = SyncCoordinator(db, bug_store, audit_sink)
    try:
        return coordinator.push(tenant_id, body.bug_id, body.provider).to_dict()
    except SyncError as e:
        raise http_error(e)


@router.post("/pull")
def pull_item(
    tenant_id: str,
    body: PullRequest,
    db: Session = Depends(get_db),
    bug_store: BugStore = Depends(get_bug_store),
    audit_sink: AuditSink = Depends(get_audit_sink),
) -> Dict[str, Any]:
    """Import an external item's current state into the bug store"""
    coordinator = SyncCoordinator(db, bug_store, audit_sink)
    try:
        return coordinator.pull(
            tenant_id, body.provider, body.external_id, body.target_project_id
        ).to_dict()
    except SyncError as e:
        raise http_error(e)


@router.post("/reconcile")
def reconcile(
    tenant_id: str,
    body: ReconcileRequest,
    db: Session = Depends(get_db),
    bug_store: BugStore = Depends(get_bug_store),
) -> Dict[str, Any]:
    """Back-fill missing links from the sync markers of recent items (non-destructive)"""
    try:
        return ReconciliationService(db, bug_store=bug_store).reconcile(tenant_id, body.provider)
    except SyncError as e:
        raise http_error(e)


@router.get("/links", response_model=List[LinkResponse])
def list_links(
    tenant_id: str,
    provider: Optional[str] = None,
    limit: int = 100,
    db: Session = Depends(get_db),
):
    """List bug <-> external item links"""
    provider_type = parse_provider(provider) if provider else None
    return ExternalIdLedger(db).list_for_tenant(tenant_id, provider_type, limit=limit)


@router.get("/logs", response_model=List[SyncLogResponse])
def list_sync_logs(
    tenant_id: str,
    provider: Optional[str] = None,
    bug_id: Optional[str] = None,
    status: Optional[SyncStatus] = None,
    limit: int = 100,
    db: Session = Depends(get_db),
):
    """List sync logs, newest first"""
    query = db.query(SyncLog).filter(SyncLog.tenant_id == tenant_id)
    if provider:
        query = query.filter(SyncLog.provider_type == parse_provider(provider))
    if bug_id:
        query = query.filter(SyncLog.bug_id == bug_id)
    if status:
        query = query.filter(SyncLog.status == status)
    return query.order_by(SyncLog.created_at.desc(), SyncLog.id.desc()).limit(limit).all()
