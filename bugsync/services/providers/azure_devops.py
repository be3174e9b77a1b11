"""Azure DevOps Boards adapter (work item tracking REST API)"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import quote, urlencode

from bugsync.config import settings
from bugsync.models.enums import ProviderType
from bugsync.services.errors import IntegrationNotConfigured, ProviderApiError, ProviderUnavailable
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
from bugsync.services.providers.richtext import html_to_text, text_to_html

logger = logging.getLogger(__name__)

API_BASE = "https://dev.azure.com"
VSSPS_BASE = "https://app.vssps.visualstudio.com"
API_VERSION = "7.1"
# The work item comments API is still versioned as a preview.
COMMENTS_API_VERSION = "7.1-preview.4"
SCOPES = "vso.work_write vso.project"
JSON_PATCH = "application/json-patch+json"
# Work item batch reads accept at most 200 ids.
BATCH_SIZE = 200

FIELD_TITLE = "System.Title"
FIELD_DESCRIPTION = "System.Description"
FIELD_STATE = "System.State"
FIELD_TAGS = "System.Tags"
FIELD_CREATED = "System.CreatedDate"
FIELD_PRIORITY = "Microsoft.VSTS.Common.Priority"
_ITEM_FIELDS = [FIELD_TITLE, FIELD_DESCRIPTION, FIELD_STATE, FIELD_TAGS, FIELD_CREATED, FIELD_PRIORITY]

# Microsoft.VSTS.Common.Priority is a fixed 1 (highest) .. 4 (lowest) scale.
PRIORITIES = (("1", "1 - Critical"), ("2", "2 - High"), ("3", "3 - Medium"), ("4", "4 - Low"))
PRIORITY_VALUES = tuple(pid for pid, _ in PRIORITIES)


def _parse_ado_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def _split_tags(value: Optional[str]) -> List[str]:
    return [t.strip() for t in (value or "").split(";") if t.strip()]


class AzureDevOpsAdapter(ProviderAdapter):
    provider_type = ProviderType.AZURE_DEVOPS

    @property
    def org_url(self) -> str:
        return f"{API_BASE}/{self.config.organization}"

    def _url(self, path: str) -> str:
        return f"{self.org_url}{path}"

    def _project_url(self, path: str, project: Optional[str] = None) -> str:
        return self._url(f"/{quote(project or self.config.project)}{path}")

    def _params(self, **extra) -> Dict[str, Any]:
        params = {"api-version": API_VERSION}
        params.update(extra)
        return params

    def _priority_value(self, value: str) -> int:
        if str(value) not in PRIORITY_VALUES:
            raise IntegrationNotConfigured(
                f"Severity mapping value '{value}' is not an Azure DevOps priority "
                f"({', '.join(PRIORITY_VALUES)})",
                provider=self.provider_type.value,
            )
        return int(value)

    def _patch(self, url: str, ops: List[Dict[str, Any]], method: str = "PATCH"):
        return self._request(method, url, params=self._params(), json=ops, headers={"Content-Type": JSON_PATCH})

    # Discovery

    def list_projects(self) -> List[ProjectRef]:
        projects: List[ProjectRef] = []
        continuation: Optional[str] = None
        while True:
            params = self._params(**{"$top": 100})
            if continuation:
                params["continuationToken"] = continuation
            resp = self._request("GET", self._url("/_apis/projects"), params=params)
            for p in resp.json().get("value", []):
                projects.append(ProjectRef(id=p["name"], name=p["name"]))
            continuation = resp.headers.get("x-ms-continuationtoken")
            if not continuation:
                break
        return projects

    def list_categories(self, project_id: str) -> List[CategoryRef]:
        data = self._get_json(
            self._project_url("/_apis/wit/workitemtypes", project_id), params=self._params()
        ) or {}
        return [
            CategoryRef(id=t["name"], name=t["name"])
            for t in data.get("value", [])
            if not t.get("isDisabled")
        ]

    def _states(self, project: Optional[str] = None) -> List[Dict[str, Any]]:
        wit = quote(self.config.work_item_type)
        data = self._get_json(
            self._project_url(f"/_apis/wit/workitemtypes/{wit}/states", project),
            params=self._params(),
        ) or {}
        return data.get("value", [])

    def list_statuses(self, project_id: str) -> List[CategoryRef]:
        return [CategoryRef(id=s["name"], name=s["name"]) for s in self._states(project_id)]

    def list_priorities(self) -> List[CategoryRef]:
        return [CategoryRef(id=pid, name=name) for pid, name in PRIORITIES]

    # Items

    def create_item(self, draft: ItemDraft) -> CreatedItem:
        ops = [{"op": "add", "path": f"/fields/{FIELD_TITLE}", "value": draft.title}]
        if draft.description:
            ops.append({"op": "add", "path": f"/fields/{FIELD_DESCRIPTION}", "value": text_to_html(draft.description)})
        if draft.priority:
            ops.append({"op": "add", "path": f"/fields/{FIELD_PRIORITY}", "value": self._priority_value(draft.priority)})
        tags = [t for t in (self.sync_label, *draft.labels) if t]
        if tags:
            ops.append({"op": "add", "path": f"/fields/{FIELD_TAGS}", "value": "; ".join(tags)})

        wit = quote(self.config.work_item_type)
        resp = self._patch(self._project_url(f"/_apis/wit/workitems/${wit}"), ops, method="POST")
        data = resp.json()
        item_id = str(data["id"])
        logger.info(f"Created Azure DevOps work item {item_id} in {self.config.project}")
        return CreatedItem(external_id=item_id, url=self._html_url(data))

    @staticmethod
    def _html_url(data: Dict[str, Any]) -> Optional[str]:
        return ((data.get("_links") or {}).get("html") or {}).get("href")

    def update_item(self, external_id: str, patch: ItemPatch) -> UpdateOutcome:
        ops = []
        if patch.title is not None:
            ops.append({"op": "add", "path": f"/fields/{FIELD_TITLE}", "value": patch.title})
        if patch.description is not None:
            ops.append({"op": "add", "path": f"/fields/{FIELD_DESCRIPTION}", "value": text_to_html(patch.description)})
        if patch.priority is not None:
            ops.append({"op": "add", "path": f"/fields/{FIELD_PRIORITY}", "value": self._priority_value(patch.priority)})
        item_url = self._url(f"/_apis/wit/workitems/{external_id}")
        if ops:
            self._patch(item_url, ops)
            logger.info(f"Updated Azure DevOps work item {external_id} ({len(ops)} fields)")

        applied = False
        if patch.status is not None:
            applied = self._change_state(external_id, patch.status)
        return UpdateOutcome(
            fields_updated=bool(ops),
            status_requested=patch.status is not None,
            status_applied=applied,
        )

    def _change_state(self, external_id: str, state: str) -> bool:
        valid = {s["name"] for s in self._states()}
        if state not in valid:
            self._skip_status(external_id, state, f"not a state of {self.config.work_item_type}")
            return False
        try:
            self._patch(
                self._url(f"/_apis/wit/workitems/{external_id}"),
                [{"op": "add", "path": f"/fields/{FIELD_STATE}", "value": state}],
            )
        except ProviderApiError as e:
            # Process rules can forbid a particular state-to-state move.
            if e.status_code != 400:
                raise
            self._skip_status(external_id, state, f"rejected by process rules: {e.body}")
            return False
        logger.info(f"Moved Azure DevOps work item {external_id} to state {state}")
        return True

    def _to_item(self, data: Dict[str, Any]) -> ExternalItem:
        fields = data.get("fields") or {}
        priority = fields.get(FIELD_PRIORITY)
        return ExternalItem(
            external_id=str(data["id"]),
            title=fields.get(FIELD_TITLE) or "",
            description=html_to_text(fields.get(FIELD_DESCRIPTION)),
            status=fields.get(FIELD_STATE),
            priority=str(priority) if priority is not None else None,
            labels=tuple(_split_tags(fields.get(FIELD_TAGS))),
            url=self._html_url(data),
            created_at=_parse_ado_datetime(fields.get(FIELD_CREATED)),
            raw=data,
        )

    def get_item(self, external_id: str) -> ExternalItem:
        data = self._get_json(
            self._url(f"/_apis/wit/workitems/{external_id}"),
            params=self._params(**{"$expand": "all"}),
        )
        return self._to_item(data)

    def search_recent_items(self, since: datetime) -> List[ExternalItem]:
        label = (self.sync_label or "").replace("'", "''")
        project = self.config.project.replace("'", "''")
        query = (
            "SELECT [System.Id] FROM WorkItems "
            f"WHERE [System.TeamProject] = '{project}' "
            f"AND [System.WorkItemType] = '{self.config.work_item_type}' "
            f"AND [System.Tags] CONTAINS '{label}' "
            f"AND [System.CreatedDate] >= '{since.strftime('%Y-%m-%d')}' "
            "ORDER BY [System.CreatedDate] ASC"
        )
        resp = self._request(
            "POST", self._project_url("/_apis/wit/wiql"), params=self._params(), json={"query": query}
        )
        ids = [str(w["id"]) for w in resp.json().get("workItems", [])]

        items: List[ExternalItem] = []
        for start in range(0, len(ids), BATCH_SIZE):
            batch = ids[start:start + BATCH_SIZE]
            data = self._get_json(
                self._url("/_apis/wit/workitems"),
                params=self._params(ids=",".join(batch), fields=",".join(_ITEM_FIELDS)),
            ) or {}
            for w in data.get("value", []):
                item = self._to_item(w)
                # WIQL date filters are day-granular.
                if item.created_at is None or item.created_at >= since:
                    items.append(item)
        return items

    def add_comment(self, external_id: str, text: str) -> CommentRef:
        data = self._request(
            "POST",
            self._project_url(f"/_apis/wit/workItems/{external_id}/comments"),
            params={"api-version": COMMENTS_API_VERSION},
            json={"text": text_to_html(text)},
        ).json()
        logger.info(f"Commented on Azure DevOps work item {external_id}")
        return CommentRef(id=str(data["id"]), external_id=external_id)

    def _profile(self) -> Dict[str, Any]:
        return self._get_json(
            f"{VSSPS_BASE}/_apis/profile/profiles/me", params={"api-version": API_VERSION}
        ) or {}

    def list_organizations(self) -> List[ProjectRef]:
        """Organizations the token's user belongs to. Needs no organization selector."""
        member_id = self._profile().get("id")
        if not member_id:
            raise ProviderApiError(
                "Azure DevOps profile has no member id",
                status_code=403,
                provider=self.provider_type.value,
            )
        data = self._get_json(
            f"{VSSPS_BASE}/_apis/accounts",
            params={"memberId": member_id, "api-version": API_VERSION},
        ) or {}
        return [
            ProjectRef(id=a["accountName"], name=a["accountName"])
            for a in data.get("value", [])
        ]

    def test_connection(self) -> ConnectionCheck:
        try:
            me = self._profile()
        except (ProviderApiError, ProviderUnavailable) as e:
            return ConnectionCheck(ok=False, error=e.message)
        return ConnectionCheck(ok=True, identity_label=me.get("displayName") or me.get("emailAddress"))


class AzureDevOpsOAuth(OAuthClient):
    """Azure DevOps OAuth 2.0 with a JWT-bearer client assertion."""

    provider_type = ProviderType.AZURE_DEVOPS

    def authorization_url(self, state: str) -> str:
        params = {
            "client_id": settings.azure_devops_client_id,
            "response_type": "Assertion",
            "state": state,
            "scope": SCOPES,
            "redirect_uri": self.redirect_uri(),
        }
        return f"{VSSPS_BASE}/oauth2/authorize?{urlencode(params)}"

    def _token_call(self, grant_type: str, assertion: str) -> TokenSet:
        data = self._token_request(
            f"{VSSPS_BASE}/oauth2/token",
            data={
                "client_assertion_type": "urn:ietf:params:oauth:client-assertion-type:jwt-bearer",
                "client_assertion": settings.azure_devops_client_secret,
                "grant_type": grant_type,
                "assertion": assertion,
                "redirect_uri": self.redirect_uri(),
            },
        )
        return TokenSet(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=expires_in_to_datetime(data.get("expires_in")),
        )

    def exchange_code(self, code: str) -> TokenSet:
        return self._token_call("urn:ietf:params:oauth:grant-type:jwt-bearer", code)

    def refresh(self, refresh_token: str) -> TokenSet:
        return self._token_call("refresh_token", refresh_token)
