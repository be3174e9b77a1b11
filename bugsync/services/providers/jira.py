"""Jira Cloud adapter (REST v3 through the api.atlassian.com gateway)"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from bugsync.config import settings
from bugsync.models.enums import ProviderType
from bugsync.services.errors import ProviderApiError, ProviderUnavailable
from bugsync.services.providers.base import (
    CategoryRef,
    CommentRef,
    ConnectionCheck,
    CreatedItem,
    ExternalItem,
    ItemDraft,
    ItemPatch,
    OAuthClient,
    ProjectRef,
    ProviderAdapter,
    TokenSet,
    UpdateOutcome,
    expires_in_to_datetime,
)
from bugsync.services.providers.richtext import adf_to_text, text_to_adf

logger = logging.getLogger(__name__)

AUTH_BASE = "https://auth.atlassian.com"
API_GATEWAY = "https://api.atlassian.com"
SCOPES = (
    "read:jira-user",
    "read:jira-work",
    "write:jira-work",
    "manage:jira-project",
    "manage:jira-configuration",
    "offline_access",
)
_ITEM_FIELDS = "summary,description,status,priority,labels,created"
PAGE_SIZE = 50


def _parse_jira_datetime(value: Optional[str]) -> Optional[datetime]:
    """Jira timestamps look like 2024-01-31T10:15:00.000+0000."""
    if not value:
        return None
    for fmt in ("%Y-%m-%dT%H:%M:%S.%f%z", "%Y-%m-%dT%H:%M:%S%z"):
        try:
            parsed = datetime.strptime(value, fmt)
        except ValueError:
            continue
        return parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return None


class JiraAdapter(ProviderAdapter):
    provider_type = ProviderType.JIRA

    @property
    def base_url(self) -> str:
        return f"{API_GATEWAY}/ex/jira/{self.config.cloud_id}/rest/api/3"

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _browse_url(self, key: str) -> Optional[str]:
        site = (self.config.site_url or "").rstrip("/")
        return f"{site}/browse/{key}" if site else None

    # Discovery

    def list_projects(self) -> List[ProjectRef]:
        projects: List[ProjectRef] = []
        start_at = 0
        while True:
            data = self._get_json(
                self._url("/project/search"),
                params={"startAt": start_at, "maxResults": PAGE_SIZE},
            ) or {}
            values = data.get("values", [])
            for p in values:
                projects.append(ProjectRef(id=p["key"], name=p.get("name", p["key"])))
            if data.get("isLast", True) or not values:
                break
            start_at += len(values)
        return projects

    def _project_issue_types(self, project_id: str) -> List[Dict[str, Any]]:
        return self._get_json(self._url(f"/project/{project_id}/statuses")) or []

    def list_categories(self, project_id: str) -> List[CategoryRef]:
        try:
            types = self._project_issue_types(project_id)
        except ProviderApiError as e:
            if e.status_code != 404:
                raise
            logger.warning(f"Project statuses unavailable for {project_id}; listing global issue types")
            types = self._get_json(self._url("/issuetype")) or []
        return [
            CategoryRef(id=str(t["id"]), name=t.get("name", str(t["id"])))
            for t in types
            if not t.get("subtask")
        ]

    def list_statuses(self, project_id: str) -> List[CategoryRef]:
        seen: Dict[str, CategoryRef] = {}
        for issue_type in self._project_issue_types(project_id):
            for s in issue_type.get("statuses", []):
                sid = str(s["id"])
                seen.setdefault(sid, CategoryRef(id=sid, name=s.get("name", sid)))
        return list(seen.values())

    def list_priorities(self) -> List[CategoryRef]:
        return [
            CategoryRef(id=str(p["id"]), name=p.get("name", str(p["id"])))
            for p in self._get_json(self._url("/priority")) or []
        ]

    # Items

    def create_item(self, draft: ItemDraft) -> CreatedItem:
        labels = list(draft.labels)
        if self.sync_label and self.sync_label not in labels:
            labels.append(self.sync_label)

        fields: Dict[str, Any] = {
            "project": {"key": self.config.project_key},
            "issuetype": {"id": self.config.issue_type_id},
            "summary": draft.title,
            "labels": labels,
        }
        if draft.description:
            fields["description"] = text_to_adf(draft.description)
        if draft.priority:
            fields["priority"] = {"id": draft.priority}

        resp = self._request("POST", self._url("/issue"), json={"fields": fields})
        data = resp.json()
        key = data["key"]
        logger.info(f"Created Jira issue {key} in project {self.config.project_key}")
        return CreatedItem(external_id=key, url=self._browse_url(key))

    def update_item(self, external_id: str, patch: ItemPatch) -> UpdateOutcome:
        fields: Dict[str, Any] = {}
        if patch.title is not None:
            fields["summary"] = patch.title
        if patch.description is not None:
            fields["description"] = text_to_adf(patch.description)
        if patch.priority is not None:
            fields["priority"] = {"id": patch.priority}
        if fields:
            self._request("PUT", self._url(f"/issue/{external_id}"), json={"fields": fields})
            logger.info(f"Updated Jira issue {external_id} fields: {sorted(fields)}")

        applied = False
        if patch.status is not None:
            applied = self._transition(external_id, patch.status)
        return UpdateOutcome(
            fields_updated=bool(fields),
            status_requested=patch.status is not None,
            status_applied=applied,
        )

    def _transition(self, key: str, status_id: str) -> bool:
        data = self._get_json(self._url(f"/issue/{key}/transitions")) or {}
        for t in data.get("transitions", []):
            target = t.get("to") or {}
            if str(target.get("id")) == str(status_id):
                self._request(
                    "POST",
                    self._url(f"/issue/{key}/transitions"),
                    json={"transition": {"id": t["id"]}},
                )
                logger.info(f"Transitioned Jira issue {key} to status {status_id}")
                return True

        current = self._get_json(self._url(f"/issue/{key}"), params={"fields": "status"}) or {}
        current_id = ((current.get("fields") or {}).get("status") or {}).get("id")
        if str(current_id) == str(status_id):
            logger.debug(f"Jira issue {key} already in status {status_id}")
            return True
        self._skip_status(key, status_id, "no workflow transition leads there")
        return False

    def _to_item(self, issue: Dict[str, Any]) -> ExternalItem:
        fields = issue.get("fields") or {}
        key = issue.get("key") or str(issue.get("id"))
        return ExternalItem(
            external_id=key,
            title=fields.get("summary") or "",
            description=adf_to_text(fields.get("description")),
            status=str((fields.get("status") or {}).get("id")) if fields.get("status") else None,
            priority=str((fields.get("priority") or {}).get("id")) if fields.get("priority") else None,
            labels=tuple(fields.get("labels") or ()),
            url=self._browse_url(key),
            created_at=_parse_jira_datetime(fields.get("created")),
            raw=issue,
        )

    def get_item(self, external_id: str) -> ExternalItem:
        issue = self._get_json(
            self._url(f"/issue/{external_id}"), params={"fields": _ITEM_FIELDS}
        )
        return self._to_item(issue)

    def search_recent_items(self, since: datetime) -> List[ExternalItem]:
        jql = (
            f'project = "{self.config.project_key}" AND labels = "{self.sync_label}" '
            f'AND created >= "{since.strftime("%Y/%m/%d %H:%M")}" ORDER BY created ASC'
        )
        return self.search_issues(jql)

    def search_issues(self, jql: str, limit: Optional[int] = None) -> List[ExternalItem]:
        """Run a JQL query; pages until the results or `limit` run out."""
        items: List[ExternalItem] = []
        if limit is not None and limit <= 0:
            return items
        next_token: Optional[str] = None
        while True:
            page_size = PAGE_SIZE if limit is None else min(PAGE_SIZE, limit - len(items))
            body: Dict[str, Any] = {
                "jql": jql,
                "fields": _ITEM_FIELDS.split(","),
                "maxResults": page_size,
            }
            if next_token:
                body["nextPageToken"] = next_token
            data = self._request("POST", self._url("/search/jql"), json=body).json()
            items.extend(self._to_item(issue) for issue in data.get("issues", []))
            next_token = data.get("nextPageToken")
            if data.get("isLast", True) or not next_token:
                break
            if limit is not None and len(items) >= limit:
                break
        return items if limit is None else items[:limit]

    def add_comment(self, external_id: str, text: str) -> CommentRef:
        data = self._request(
            "POST", self._url(f"/issue/{external_id}/comment"), json={"body": text_to_adf(text)}
        ).json()
        logger.info(f"Commented on Jira issue {external_id}")
        return CommentRef(id=str(data["id"]), external_id=external_id)

    def test_connection(self) -> ConnectionCheck:
        try:
            me = self._get_json(self._url("/myself")) or {}
        except (ProviderApiError, ProviderUnavailable) as e:
            return ConnectionCheck(ok=False, error=e.message)
        return ConnectionCheck(ok=True, identity_label=me.get("displayName") or me.get("emailAddress"))


class JiraOAuth(OAuthClient):
    """Atlassian OAuth 2.0 (3LO)."""

    provider_type = ProviderType.JIRA

    def authorization_url(self, state: str) -> str:
        params = {
            "audience": "api.atlassian.com",
            "client_id": settings.jira_client_id,
            "scope": " ".join(SCOPES),
            "redirect_uri": self.redirect_uri(),
            "state": state,
            "response_type": "code",
            "prompt": "consent",
        }
        return f"{AUTH_BASE}/authorize?{urlencode(params)}"

    def _token_set(self, data: Dict[str, Any]) -> TokenSet:
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expires_in_to_datetime(data.get("expires_in")),
        )

    def exchange_code(self, code: str) -> TokenSet:
        data = self._token_request(
            f"{AUTH_BASE}/oauth/token",
            json={
                "grant_type": "authorization_code",
                "client_id": settings.jira_client_id,
                "client_secret": settings.jira_client_secret,
                "code": code,
                "redirect_uri": self.redirect_uri(),
            },
        )
        tokens = self._token_set(data)
        site = self._accessible_resource(tokens.access_token)
        tokens.extra.update(site)
        return tokens

    def _accessible_resource(self, access_token: str) -> Dict[str, Optional[str]]:
        resources = self._get_json(
            f"{API_GATEWAY}/oauth/token/accessible-resources",
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
        ) or []
        if not resources:
            raise ProviderApiError(
                "No Jira site is accessible with this grant",
                status_code=403,
                body=resources,
                provider=self.provider_type.value,
            )
        first = resources[0]
        return {"cloud_id": first.get("id"), "site_url": first.get("url")}

    def refresh(self, refresh_token: str) -> TokenSet:
        data = self._token_request(
            f"{AUTH_BASE}/oauth/token",
            json={
                "grant_type": "refresh_token",
                "client_id": settings.jira_client_id,
                "client_secret": settings.jira_client_secret,
                "refresh_token": refresh_token,
            },
        )
        return self._token_set(data)
