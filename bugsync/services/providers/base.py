"""Provider adapter contract and shared HTTP plumbing"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

import httpx

from bugsync.config import settings
from bugsync.models.enums import ProviderType
from bugsync.services.errors import (
    OAuthGrantError,
    ProviderApiError,
    ProviderUnavailable,
)
from bugsync.services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ProjectRef:
    id: str
    name: str


@dataclass(frozen=True)
class CategoryRef:
    """Issue type, board list, work item type, status or priority."""
    id: str
    name: str


@dataclass(frozen=True)
class ItemDraft:
    title: str
    description: Optional[str] = None
    priority: Optional[str] = None
    labels: Sequence[str] = ()
    # Provider status value; required by list-membership providers on create.
    status: Optional[str] = None


@dataclass(frozen=True)
class ItemPatch:
    """Partial update. None means 'leave untouched on the provider side'."""
    title: Optional[str] = None
    description: Optional[str] = None
    priority: Optional[str] = None
    status: Optional[str] = None
    # Every priority value the tenant maps to; lets label-based providers
    # swap the old priority label for the new one without touching others.
    known_priorities: Sequence[str] = ()

    def has_field_changes(self) -> bool:
        return any(v is not None for v in (self.title, self.description, self.priority))


@dataclass(frozen=True)
class CreatedItem:
    external_id: str
    url: Optional[str] = None


@dataclass(frozen=True)
class UpdateOutcome:
    fields_updated: bool = False
    status_requested: bool = False
    status_applied: bool = False


@dataclass(frozen=True)
class ExternalItem:
    external_id: str
    title: str
    description: str = ""
    status: Optional[str] = None
    priority: Optional[str] = None
    labels: Sequence[str] = ()
    url: Optional[str] = None
    created_at: Optional[datetime] = None
    raw: Dict[str, Any] = field(default_factory=dict, compare=False, repr=False)


@dataclass(frozen=True)
class CommentRef:
    id: str
    external_id: str


@dataclass(frozen=True)
class ConnectionCheck:
    ok: bool
    identity_label: Optional[str] = None
    error: Optional[str] = None


@dataclass(frozen=True)
class TokenSet:
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None  # UTC tz-naive; None = never expires
    # Provider-specific values learned during the handshake (e.g. Jira cloud id).
    extra: Dict[str, Any] = field(default_factory=dict)


def utcnow() -> datetime:
    """UTC 'now' as tz-naive datetime (consistent with DB storage)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def expires_in_to_datetime(expires_in: Optional[Any], now: Optional[datetime] = None) -> Optional[datetime]:
    if expires_in in (None, ""):
        return None
    return (now or utcnow()) + timedelta(seconds=int(expires_in))


def _response_body(resp: httpx.Response) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text


class _HttpMixin:
    """httpx request wrapper that maps failures onto the sync error taxonomy.

    No retries: a blind retry of a create could duplicate the external item.
    """

    provider_type: ProviderType
    http: httpx.Client
    rate_limiter: Optional[RateLimiter] = None

    def _request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        data: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        provider = self.provider_type.value
        if self.rate_limiter is not None:
            self.rate_limiter.acquire()
        try:
            resp = self.http.request(
                method, url, params=params, json=json, data=data, headers=headers
            )
        except httpx.TimeoutException as e:
            logger.error(f"{provider} {method} {url} timed out: {e}")
            raise ProviderUnavailable(f"{provider} request timed out", provider=provider) from e
        except httpx.TransportError as e:
            logger.error(f"{provider} {method} {url} failed: {e}")
            raise ProviderUnavailable(f"{provider} is unreachable: {e}", provider=provider) from e

        if resp.status_code == 429 or resp.status_code >= 500:
            logger.error(f"{provider} {method} {url} returned {resp.status_code}")
            raise ProviderUnavailable(
                f"{provider} returned HTTP {resp.status_code}", provider=provider
            )
        if resp.status_code >= 400:
            body = _response_body(resp)
            logger.error(f"{provider} {method} {url} rejected ({resp.status_code}): {body}")
            raise ProviderApiError(
                f"{provider} rejected the request (HTTP {resp.status_code})",
                status_code=resp.status_code,
                body=body,
                provider=provider,
            )
        return resp

    def _get_json(self, url: str, **kwargs) -> Any:
        resp = self._request("GET", url, **kwargs)
        return resp.json() if resp.content else None


class ProviderAdapter(_HttpMixin, ABC):
    """Capability contract every provider implements.

    An adapter is bound to one access token and one typed provider config.
    Paged endpoints are fully materialized before returning.
    """

    provider_type: ProviderType
    # Whether create_item honours ItemDraft.status. Providers that model status
    # as a workflow step create items in their initial state instead.
    status_on_create: bool = False

    def __init__(
        self,
        access_token: str,
        config,
        *,
        timeout: Optional[float] = None,
        rate_limiter: Optional[RateLimiter] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sync_label: Optional[str] = None,
    ):
        self.access_token = access_token
        self.config = config
        self.sync_label = sync_label if sync_label is not None else settings.sync_label
        self.http = httpx.Client(
            timeout=timeout if timeout is not None else settings.provider_timeout_seconds,
            transport=transport,
            headers=self._auth_headers(),
            params=self._auth_params(),
        )
        self.rate_limiter = rate_limiter or RateLimiter(
            settings.rate_limit_per_second, settings.rate_limit_burst
        )

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    def close(self) -> None:
        self.http.close()

    def _auth_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
        }

    def _auth_params(self) -> Dict[str, str]:
        return {}

    @abstractmethod
    def list_projects(self) -> List[ProjectRef]:
        """Projects / boards / projects visible to the token."""

    @abstractmethod
    def list_categories(self, project_id: str) -> List[CategoryRef]:
        """Issue types / board lists / work item types for a project."""

    @abstractmethod
    def list_statuses(self, project_id: str) -> List[CategoryRef]:
        """Status vocabulary (values usable in status mappings)."""

    @abstractmethod
    def list_priorities(self) -> List[CategoryRef]:
        """Priority vocabulary (values usable in severity mappings)."""

    @abstractmethod
    def create_item(self, draft: ItemDraft) -> CreatedItem:
        """Create an item in the configured target."""

    @abstractmethod
    def update_item(self, external_id: str, patch: ItemPatch) -> UpdateOutcome:
        """Apply field changes first, then the status change if one is valid."""

    @abstractmethod
    def get_item(self, external_id: str) -> ExternalItem:
        """Fetch one item with plain-text description."""

    @abstractmethod
    def search_recent_items(self, since: datetime) -> List[ExternalItem]:
        """Items in the configured target carrying the sync label, created after `since`."""

    @abstractmethod
    def add_comment(self, external_id: str, text: str) -> CommentRef:
        """Post a plain-text comment on an item."""

    @abstractmethod
    def test_connection(self) -> ConnectionCheck:
        """Identify the account behind the token. Never raises."""

    def _skip_status(self, external_id: str, status: str, reason: str) -> None:
        logger.warning(
            f"Skipping status change of {self.provider_type.value} item {external_id} "
            f"to '{status}': {reason}"
        )


class OAuthClient(_HttpMixin):
    """Token endpoint client for one provider.

    Grant rejections (400/401/403) become OAuthGrantError; transport failures
    and 5xx stay ProviderUnavailable so callers never mistake an outage for
    a revoked grant.
    """

    def __init__(
        self,
        *,
        timeout: Optional[float] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.http = httpx.Client(
            timeout=timeout if timeout is not None else settings.provider_timeout_seconds,
            transport=transport,
        )
        self.transport = transport

    def close(self) -> None:
        self.http.close()

    def redirect_uri(self) -> str:
        return f"{settings.app_url.rstrip('/')}/api/oauth/{self.provider_type.value}/callback"

    def _token_request(self, url: str, **kwargs) -> Dict[str, Any]:
        try:
            resp = self._request("POST", url, **kwargs)
        except ProviderApiError as e:
            if e.status_code in (400, 401, 403):
                raise OAuthGrantError(
                    f"{self.provider_type.value} token endpoint rejected the grant: {e.body}",
                    status_code=e.status_code,
                ) from e
            raise
        return resp.json()

    def authorization_url(self, state: str) -> str:
        raise NotImplementedError

    def exchange_code(self, code: str) -> TokenSet:
        raise NotImplementedError

    def refresh(self, refresh_token: str) -> TokenSet:
        raise NotImplementedError

    def validate_static_token(self, token: str) -> ConnectionCheck:
        raise NotImplementedError
