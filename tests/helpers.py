"""Shared fakes for the test suite"""

import json
from typing import Any, Dict, List, Optional

import httpx
from cryptography.fernet import Fernet
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from bugsync.models.base import init_db
from bugsync.models.enums import IntegrationState, ProviderType, SyncDirection
from bugsync.models.integration import Integration
from bugsync.services.collaborators import BugSnapshot
from bugsync.services.crypto import TokenCipher
from bugsync.services.providers.base import (
    CategoryRef,
    CommentRef,
    ConnectionCheck,
    CreatedItem,
    ProjectRef,
    UpdateOutcome,
)

JIRA_CONFIG = {
    "cloud_id": "cloud-1",
    "site_url": "https://acme.atlassian.net",
    "project_key": "BUG",
    "issue_type_id": "10001",
}
TRELLO_CONFIG = {"board_id": "board-1"}
ADO_CONFIG = {"organization": "acme", "project": "Web", "work_item_type": "Bug"}

CONFIGS = {
    ProviderType.JIRA: JIRA_CONFIG,
    ProviderType.TRELLO: TRELLO_CONFIG,
    ProviderType.AZURE_DEVOPS: ADO_CONFIG,
}


def make_engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    return engine


def make_file_engine(path):
    """File-backed engine for tests that use one session per thread."""
    engine = create_engine(f"sqlite:///{path}", connect_args={"check_same_thread": False})
    init_db(engine)
    return engine


def make_session(engine=None):
    engine = engine or make_engine()
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)()


def make_cipher() -> TokenCipher:
    return TokenCipher(Fernet.generate_key().decode())


def add_integration(
    db,
    cipher: TokenCipher,
    *,
    tenant_id: str = "tenant-1",
    provider_type: ProviderType = ProviderType.JIRA,
    config: Optional[Dict[str, Any]] = None,
    mapping: Optional[Dict[str, Any]] = None,
    state: IntegrationState = IntegrationState.CONNECTED,
    access_token: Optional[str] = "access-1",
    refresh_token: Optional[str] = "refresh-1",
    expires_at=None,
    direction: SyncDirection = SyncDirection.BOTH,
    is_active: bool = True,
) -> Integration:
    integration = Integration(
        tenant_id=tenant_id,
        provider_type=provider_type,
        state=state,
        is_active=is_active,
        sync_direction=direction,
        encrypted_access_token=cipher.encrypt_optional(access_token),
        encrypted_refresh_token=cipher.encrypt_optional(refresh_token),
        token_expires_at=expires_at,
        provider_config_data=dict(CONFIGS[provider_type] if config is None else config),
        field_mapping_data=dict(mapping or {}),
    )
    db.add(integration)
    db.commit()
    db.refresh(integration)
    return integration


class FakeBugStore:
    def __init__(self, snapshots: Optional[Dict[str, BugSnapshot]] = None):
        self.snapshots = dict(snapshots or {})
        self.updates: List[tuple] = []
        self.created: List[tuple] = []

    def put(self, bug_id, title="Login fails", description="Steps", status="OPEN", severity="HIGH"):
        self.snapshots[bug_id] = BugSnapshot(
            bug_id=bug_id, title=title, description=description, status=status, severity=severity
        )

    def get_bug_snapshot(self, bug_id):
        return self.snapshots.get(bug_id)

    def apply_external_update(self, bug_id, fields):
        self.updates.append((bug_id, dict(fields)))

    def create_bug(self, project_id, fields):
        bug_id = f"bug-new-{len(self.created) + 1}"
        self.created.append((project_id, dict(fields)))
        return bug_id


class RecordingAuditSink:
    def __init__(self):
        self.events = []

    def emit(self, bug_id, action, details):
        self.events.append((bug_id, action, details))


class FailingAuditSink:
    def emit(self, bug_id, action, details):
        raise RuntimeError("audit backend down")


class FakeAdapter:
    """In-memory adapter recording every call."""

    def __init__(self, *, status_on_create=False, next_ids=("EXT-1", "EXT-2", "EXT-3"), items=None):
        self.status_on_create = status_on_create
        self.created = []
        self.updated = []
        self.items = dict(items or {})
        self.search_result = []
        self.searched_since = None
        self.queries = []
        self.comments = []
        self._ids = list(next_ids)
        self.apply_status = True
        self.update_error = None
        self.closed = 0

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.closed += 1

    def close(self):
        self.closed += 1

    def list_projects(self):
        return [ProjectRef(id="BUG", name="Bugs")]

    def list_categories(self, project_id):
        return [CategoryRef(id="10001", name="Bug")]

    def list_statuses(self, project_id):
        return [CategoryRef(id="10000", name="To Do"), CategoryRef(id="10002", name="Done")]

    def list_priorities(self):
        return [CategoryRef(id="2", name="High"), CategoryRef(id="3", name="Medium")]

    def create_item(self, draft):
        self.created.append(draft)
        external_id = self._ids.pop(0)
        return CreatedItem(external_id=external_id, url=f"https://tracker.example/{external_id}")

    def update_item(self, external_id, patch):
        if self.update_error is not None:
            raise self.update_error
        self.updated.append((external_id, patch))
        requested = patch.status is not None
        return UpdateOutcome(
            fields_updated=patch.has_field_changes(),
            status_requested=requested,
            status_applied=requested and self.apply_status,
        )

    def get_item(self, external_id):
        return self.items[external_id]

    def search_recent_items(self, since):
        self.searched_since = since
        return list(self.search_result)

    def search_issues(self, jql, limit=None):
        self.queries.append((jql, limit))
        return list(self.search_result)

    def list_organizations(self):
        return [ProjectRef(id="acme", name="acme")]

    def add_comment(self, external_id, text):
        self.comments.append((external_id, text))
        return CommentRef(id=f"c-{len(self.comments)}", external_id=external_id)

    def test_connection(self):
        return ConnectionCheck(ok=True, identity_label="Jane Doe")


def adapter_factory(adapter, calls=None):
    """Factory handing out `adapter`; records (provider_type, token, config) in `calls`."""

    def factory(provider_type, token, config, **kwargs):
        if calls is not None:
            calls.append((provider_type, token, config))
        return adapter

    return factory


class FakeAuthClient:
    def __init__(
        self, *, refresh_result=None, refresh_error=None, exchange_result=None, exchange_error=None, check=None
    ):
        self.refresh_result = refresh_result
        self.refresh_error = refresh_error
        self.exchange_result = exchange_result
        self.exchange_error = exchange_error
        self.check = check or ConnectionCheck(ok=True, identity_label="Trello User")
        self.refresh_calls = []
        self.exchanged = []
        self.closed = 0

    def authorization_url(self, state):
        return f"https://auth.example/authorize?state={state}"

    def exchange_code(self, code):
        self.exchanged.append(code)
        if self.exchange_error is not None:
            raise self.exchange_error
        return self.exchange_result

    def refresh(self, refresh_token):
        self.refresh_calls.append(refresh_token)
        if self.refresh_error is not None:
            raise self.refresh_error
        return self.refresh_result

    def validate_static_token(self, token):
        return self.check

    def close(self):
        self.closed += 1


class MockProvider:
    """Routes httpx.MockTransport requests by (method, path).

    Each route holds a queue of responses; the last one repeats. An
    exception instance in the queue is raised instead of answered.
    """

    def __init__(self):
        self.routes: Dict[tuple, list] = {}
        self.requests: List[Any] = []

    def add(self, method, path, json=None, status=200, headers=None):
        self.routes.setdefault((method, path), []).append((status, json, headers))
        return self

    def fail(self, method, path, exc):
        self.routes.setdefault((method, path), []).append(exc)
        return self

    def __call__(self, request):
        self.requests.append(request)
        queue = self.routes.get((request.method, request.url.path))
        if not queue:
            return httpx.Response(404, json={"error": f"no route for {request.method} {request.url.path}"})
        entry = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(entry, Exception):
            raise entry
        status, body, headers = entry
        return httpx.Response(status, json=body, headers=headers)

    def transport(self):
        return httpx.MockTransport(self)

    def sent(self, method, path):
        return [r for r in self.requests if r.method == method and r.url.path == path]

    @staticmethod
    def body(request):
        return json.loads(request.content.decode("utf-8"))
