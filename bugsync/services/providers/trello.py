"""Trello adapter.

Trello has no workflow: a card's status is the board list it sits in and
its priority is a board label. Authentication is the app key plus a
user-issued token, both sent as query parameters.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode

from bugsync.config import settings
from bugsync.models.enums import ProviderType
from bugsync.services.errors import (
    IntegrationNotConfigured,
    ProviderApiError,
    ProviderUnavailable,
)
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
)

logger = logging.getLogger(__name__)

API_BASE = "https://api.trello.com/1"
AUTHORIZE_URL = "https://trello.com/1/authorize"
_CARD_FIELDS = "name,desc,idList,idLabels,shortUrl,idBoard,closed"


def card_created_at(card_id: str) -> Optional[datetime]:
    """Trello ids are Mongo ObjectIds; the first 8 hex digits are the creation time."""
    try:
        ts = int(card_id[:8], 16)
    except (TypeError, ValueError):
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).replace(tzinfo=None)


class TrelloAdapter(ProviderAdapter):
    provider_type = ProviderType.TRELLO
    status_on_create = True

    def _auth_headers(self) -> Dict[str, str]:
        return {"Accept": "application/json"}

    def _auth_params(self) -> Dict[str, str]:
        return {"key": settings.trello_api_key, "token": self.access_token}

    def _url(self, path: str) -> str:
        return f"{API_BASE}{path}"

    def list_projects(self) -> List[ProjectRef]:
        boards = self._get_json(
            self._url("/members/me/boards"),
            params={"filter": "open", "fields": "name,url,closed"},
        ) or []
        return [ProjectRef(id=b["id"], name=b.get("name", b["id"])) for b in boards]

    def _open_lists(self, board_id: str) -> List[Dict[str, Any]]:
        return self._get_json(
            self._url(f"/boards/{board_id}/lists"), params={"filter": "open"}
        ) or []

    def list_categories(self, project_id: str) -> List[CategoryRef]:
        return [CategoryRef(id=l["id"], name=l.get("name", l["id"])) for l in self._open_lists(project_id)]

    def list_statuses(self, project_id: str) -> List[CategoryRef]:
        return self.list_categories(project_id)

    def list_priorities(self) -> List[CategoryRef]:
        labels = self._get_json(self._url(f"/boards/{self.config.board_id}/labels")) or []
        return [
            CategoryRef(id=lb["id"], name=lb.get("name") or lb.get("color") or lb["id"])
            for lb in labels
        ]

    def create_item(self, draft: ItemDraft) -> CreatedItem:
        if not draft.status:
            raise IntegrationNotConfigured(
                "Trello cards need a target list; map the OPEN status to a board list",
                provider=self.provider_type.value,
            )
        label_ids = [lid for lid in (draft.priority, self.config.sync_label_id) if lid]
        label_ids.extend(lid for lid in draft.labels if lid not in label_ids)
        body: Dict[str, Any] = {
            "name": draft.title,
            "desc": draft.description or "",
            "idList": draft.status,
            "pos": "bottom",
        }
        if label_ids:
            body["idLabels"] = ",".join(label_ids)
        card = self._request("POST", self._url("/cards"), json=body).json()
        logger.info(f"Created Trello card {card['id']} in list {draft.status}")
        return CreatedItem(external_id=card["id"], url=card.get("shortUrl") or card.get("url"))

    def update_item(self, external_id: str, patch: ItemPatch) -> UpdateOutcome:
        body: Dict[str, Any] = {}
        if patch.title is not None:
            body["name"] = patch.title
        if patch.description is not None:
            body["desc"] = patch.description
        if patch.priority is not None:
            current = self._get_json(
                self._url(f"/cards/{external_id}"), params={"fields": "idLabels"}
            ) or {}
            known = set(patch.known_priorities)
            labels = [
                lid for lid in current.get("idLabels", [])
                if lid not in known or lid == patch.priority
            ]
            if patch.priority not in labels:
                labels.append(patch.priority)
            body["idLabels"] = ",".join(labels)
        if body:
            self._request("PUT", self._url(f"/cards/{external_id}"), json=body)
            logger.info(f"Updated Trello card {external_id} fields: {sorted(body)}")

        applied = False
        if patch.status is not None:
            applied = self._move(external_id, patch.status)
        return UpdateOutcome(
            fields_updated=bool(body),
            status_requested=patch.status is not None,
            status_applied=applied,
        )

    def _move(self, card_id: str, list_id: str) -> bool:
        open_ids = {l["id"] for l in self._open_lists(self.config.board_id)}
        if list_id not in open_ids:
            self._skip_status(card_id, list_id, f"not an open list on board {self.config.board_id}")
            return False
        self._request("PUT", self._url(f"/cards/{card_id}"), json={"idList": list_id})
        logger.info(f"Moved Trello card {card_id} to list {list_id}")
        return True

    def _to_item(self, card: Dict[str, Any]) -> ExternalItem:
        return ExternalItem(
            external_id=card["id"],
            title=card.get("name") or "",
            description=card.get("desc") or "",
            status=card.get("idList"),
            # Priority is one of the labels; the coordinator resolves which.
            priority=None,
            labels=tuple(card.get("idLabels") or ()),
            url=card.get("shortUrl") or card.get("url"),
            created_at=card_created_at(card["id"]),
            raw=card,
        )

    def get_item(self, external_id: str) -> ExternalItem:
        card = self._get_json(self._url(f"/cards/{external_id}"), params={"fields": _CARD_FIELDS})
        return self._to_item(card)

    def search_recent_items(self, since: datetime) -> List[ExternalItem]:
        cards = self._get_json(
            self._url(f"/boards/{self.config.board_id}/cards"),
            params={"filter": "open", "fields": _CARD_FIELDS},
        ) or []
        label_id = self.config.sync_label_id
        items = []
        for card in cards:
            created = card_created_at(card["id"])
            if created is not None and created < since:
                continue
            if label_id and label_id not in (card.get("idLabels") or []):
                continue
            items.append(self._to_item(card))
        return items

    def add_comment(self, external_id: str, text: str) -> CommentRef:
        action = self._request(
            "POST", self._url(f"/cards/{external_id}/actions/comments"), json={"text": text}
        ).json()
        logger.info(f"Commented on Trello card {external_id}")
        return CommentRef(id=action["id"], external_id=external_id)

    def test_connection(self) -> ConnectionCheck:
        try:
            me = self._get_json(self._url("/members/me"), params={"fields": "fullName,username"}) or {}
        except (ProviderApiError, ProviderUnavailable) as e:
            return ConnectionCheck(ok=False, error=e.message)
        return ConnectionCheck(ok=True, identity_label=me.get("fullName") or me.get("username"))


class TrelloAuth(OAuthClient):
    """Trello issues non-expiring user tokens; there is nothing to refresh."""

    provider_type = ProviderType.TRELLO

    def authorization_url(self, state: str) -> str:
        params = {
            "expiration": "never",
            "name": "BugSync",
            "scope": "read,write",
            "response_type": "token",
            "key": settings.trello_api_key,
            "return_url": self.redirect_uri(),
            "callback_method": "fragment",
        }
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    def validate_static_token(self, token: str) -> ConnectionCheck:
        with TrelloAdapter(token, None, transport=self.transport) as adapter:
            return adapter.test_connection()

    def static_token_set(self, token: str) -> TokenSet:
        return TokenSet(access_token=token, refresh_token=None, expires_at=None)
