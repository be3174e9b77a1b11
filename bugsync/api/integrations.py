"""Integration management endpoints"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from bugsync.api.deps import http_error, parse_provider
from bugsync.models.base import get_db
from bugsync.models.enums import SyncDirection
from bugsync.services.errors import InvalidStateTransition, SyncError
from bugsync.services.integration_service import IntegrationService

router = APIRouter(prefix="/api/tenants/{tenant_id}/integrations", tags=["integrations"])
oauth_router = APIRouter(prefix="/api/oauth", tags=["integrations"])


class IntegrationResponse(BaseModel):
    """Integration as exposed to clients; credentials are never included."""
    id: int
    tenant_id: str
    provider_type: str
    state: str
    is_active: bool
    sync_direction: str
    identity_label: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    provider_config: Dict[str, Any] = Field(default_factory=dict, validation_alias="provider_config_data")
    field_mapping: Dict[str, Any] = Field(default_factory=dict, validation_alias="field_mapping_data")
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True
        use_enum_values = True


class AuthorizationResponse(BaseModel):
    authorization_url: str


class StaticTokenRequest(BaseModel):
    token: str


class ConfigureRequest(BaseModel):
    provider_config: Dict[str, Any] = Field(default_factory=dict)
    sync_direction: Optional[SyncDirection] = None


class MappingRequest(BaseModel):
    status_to_external: Dict[str, str] = Field(default_factory=dict)
    status_from_external: Dict[str, str] = Field(default_factory=dict)
    severity_to_external: Dict[str, str] = Field(default_factory=dict)
    severity_from_external: Dict[str, str] = Field(default_factory=dict)


class ActiveRequest(BaseModel):
    is_active: bool


class ConnectionCheckResponse(BaseModel):
    ok: bool
    identity_label: Optional[str] = None
    error: Optional[str] = None

    class Config:
        from_attributes = True


class RefResponse(BaseModel):
    id: str
    name: str

    class Config:
        from_attributes = True


class ItemResponse(BaseModel):
    external_id: str
    title: str
    description: str = ""
    status: Optional[str] = None
    priority: Optional[str] = None
    labels: List[str] = Field(default_factory=list)
    url: Optional[str] = None
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class CommentRequest(BaseModel):
    text: str = Field(min_length=1)


class CommentResponse(BaseModel):
    id: str
    external_id: str

    class Config:
        from_attributes = True


def _call(fn, *args, **kwargs):
    try:
        return fn(*args, **kwargs)
    except (SyncError, InvalidStateTransition, ValueError) as e:
        raise http_error(e)


@router.get("/", response_model=List[IntegrationResponse])
def list_integrations(tenant_id: str, db: Session = Depends(get_db)):
    """List a tenant's integrations"""
    return IntegrationService(db).list_integrations(tenant_id)


@router.get("/{provider}", response_model=IntegrationResponse)
def get_integration(tenant_id: str, provider: str, db: Session = Depends(get_db)):
    """Get one integration"""
    return _call(IntegrationService(db).get, tenant_id, parse_provider(provider))


@router.post("/{provider}/authorize", response_model=AuthorizationResponse)
def start_authorization(tenant_id: str, provider: str, db: Session = Depends(get_db)):
    """Begin connecting: returns the provider consent URL"""
    url = _call(IntegrationService(db).authorization_url, tenant_id, parse_provider(provider))
    return AuthorizationResponse(authorization_url=url)


@router.post("/{provider}/token", response_model=IntegrationResponse)
def connect_with_token(
    tenant_id: str, provider: str, body: StaticTokenRequest, db: Session = Depends(get_db)
):
    """Connect a provider using a user-issued token (Trello)"""
    return _call(
        IntegrationService(db).connect_static_token, tenant_id, parse_provider(provider), body.token
    )


@router.put("/{provider}/config", response_model=IntegrationResponse)
def configure_integration(
    tenant_id: str, provider: str, body: ConfigureRequest, db: Session = Depends(get_db)
):
    """Set target selectors and sync direction"""
    return _call(
        IntegrationService(db).configure,
        tenant_id,
        parse_provider(provider),
        provider_config=body.provider_config,
        sync_direction=body.sync_direction,
    )


@router.put("/{provider}/mapping", response_model=IntegrationResponse)
def update_mapping(tenant_id: str, provider: str, body: MappingRequest, db: Session = Depends(get_db)):
    """Replace the status/severity mapping (version is bumped)"""
    return _call(
        IntegrationService(db).update_mapping, tenant_id, parse_provider(provider), body.model_dump()
    )


@router.put("/{provider}/active", response_model=IntegrationResponse)
def set_active(tenant_id: str, provider: str, body: ActiveRequest, db: Session = Depends(get_db)):
    """Enable or pause syncing"""
    return _call(IntegrationService(db).set_active, tenant_id, parse_provider(provider), body.is_active)


@router.post("/{provider}/test", response_model=ConnectionCheckResponse)
def test_integration(tenant_id: str, provider: str, db: Session = Depends(get_db)):
    """Test the stored credentials"""
    return IntegrationService(db).test_connection(tenant_id, parse_provider(provider))


@router.delete("/{provider}")
def disconnect_integration(tenant_id: str, provider: str, db: Session = Depends(get_db)):
    """Disconnect: credentials are deleted, links are kept"""
    if not IntegrationService(db).disconnect(tenant_id, parse_provider(provider)):
        raise HTTPException(status_code=404, detail="Integration not found")
    return {"message": "Integration disconnected"}


@router.get("/{provider}/projects", response_model=List[RefResponse])
def list_projects(tenant_id: str, provider: str, db: Session = Depends(get_db)):
    return _call(IntegrationService(db).list_projects, tenant_id, parse_provider(provider))


@router.get("/{provider}/projects/{project_id}/categories", response_model=List[RefResponse])
def list_categories(tenant_id: str, provider: str, project_id: str, db: Session = Depends(get_db)):
    return _call(IntegrationService(db).list_categories, tenant_id, parse_provider(provider), project_id)


@router.get("/{provider}/projects/{project_id}/statuses", response_model=List[RefResponse])
def list_statuses(tenant_id: str, provider: str, project_id: str, db: Session = Depends(get_db)):
    return _call(IntegrationService(db).list_statuses, tenant_id, parse_provider(provider), project_id)


@router.get("/{provider}/priorities", response_model=List[RefResponse])
def list_priorities(tenant_id: str, provider: str, db: Session = Depends(get_db)):
    return _call(IntegrationService(db).list_priorities, tenant_id, parse_provider(provider))


@router.get("/{provider}/organizations", response_model=List[RefResponse])
def list_organizations(tenant_id: str, provider: str, db: Session = Depends(get_db)):
    """Organizations reachable with the stored grant (Azure DevOps)"""
    return _call(IntegrationService(db).list_organizations, tenant_id, parse_provider(provider))


@router.get("/{provider}/search", response_model=List[ItemResponse])
def search_issues(
    tenant_id: str,
    provider: str,
    jql: str,
    limit: int = 50,
    db: Session = Depends(get_db),
):
    """Search issues with JQL (Jira)"""
    return _call(IntegrationService(db).search_issues, tenant_id, parse_provider(provider), jql, limit)


@router.post("/{provider}/items/{external_id}/comments", response_model=CommentResponse)
def add_comment(
    tenant_id: str,
    provider: str,
    external_id: str,
    body: CommentRequest,
    db: Session = Depends(get_db),
):
    """Post a comment on an external item"""
    return _call(
        IntegrationService(db).add_comment, tenant_id, parse_provider(provider), external_id, body.text
    )


@oauth_router.get("/{provider}/callback", response_model=IntegrationResponse)
def oauth_callback(provider: str, code: str, state: str, db: Session = Depends(get_db)):
    """OAuth redirect target"""
    return _call(IntegrationService(db).complete_oauth, parse_provider(provider), code, state)
