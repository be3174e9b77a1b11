"""Integration lifecycle: connect, configure, map, test, disconnect"""

import json
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from bugsync.config import settings
from bugsync.models.enums import IntegrationState, ProviderType, SyncDirection
from bugsync.models.integration import Integration
from bugsync.models.provider_config import parse_field_mapping, parse_provider_config
from bugsync.models.sync_log import SyncOperation
from bugsync.services.connector import USABLE_STATES, ProviderConnector
from bugsync.services.crypto import TokenCipher
from bugsync.services.errors import (
    IntegrationNotConfigured,
    OAuthGrantError,
    SyncError,
    TokenInvalid,
)
from bugsync.services.providers.azure_devops import PRIORITY_VALUES as ADO_PRIORITY_VALUES
from bugsync.services.providers.base import (
    CategoryRef,
    CommentRef,
    ConnectionCheck,
    ExternalItem,
    ProjectRef,
    ProviderAdapter,
    TokenSet,
)
from bugsync.services.providers.registry import OAUTH_PROVIDERS

logger = logging.getLogger(__name__)


class IntegrationService:
    """Service for managing a tenant's integrations"""

    def __init__(
        self,
        db: Session,
        cipher: Optional[TokenCipher] = None,
        *,
        connector: Optional[ProviderConnector] = None,
    ):
        self.db = db
        self.connector = connector or ProviderConnector(db, cipher)

    @property
    def cipher(self) -> TokenCipher:
        return self.connector.cipher

    def list_integrations(self, tenant_id: str) -> List[Integration]:
        return (
            self.db.query(Integration)
            .filter(Integration.tenant_id == tenant_id)
            .order_by(Integration.provider_type)
            .all()
        )

    def get(self, tenant_id: str, provider_type: ProviderType) -> Integration:
        return self.connector.load(tenant_id, provider_type)

    def _get_or_new(self, tenant_id: str, provider_type: ProviderType) -> Integration:
        integration = self.connector.find(tenant_id, provider_type)
        if integration is None:
            integration = Integration(
                tenant_id=tenant_id,
                provider_type=ProviderType(provider_type),
                provider_config_data={},
                field_mapping_data={},
            )
            self.db.add(integration)
        return integration

    # Connecting

    def _state_token(self, tenant_id: str, provider_type: ProviderType) -> str:
        return self.cipher.encrypt(json.dumps({"tenant_id": tenant_id, "provider": provider_type.value}))

    def _read_state(self, state: str) -> Dict[str, str]:
        raw = self.cipher.verify(state or "", settings.oauth_state_ttl_seconds)
        if raw is None:
            raise TokenInvalid("OAuth state is invalid or has expired; start the connection again")
        try:
            data = json.loads(raw)
            return {"tenant_id": str(data["tenant_id"]), "provider": str(data["provider"])}
        except (ValueError, KeyError, TypeError):
            raise TokenInvalid("OAuth state is malformed; start the connection again")

    def authorization_url(self, tenant_id: str, provider_type: ProviderType) -> str:
        """Start a connection: move the integration to CONNECTING and return the consent URL."""
        provider_type = ProviderType(provider_type)
        integration = self._get_or_new(tenant_id, provider_type)
        if integration.state != IntegrationState.CONNECTING:
            integration.move_to(IntegrationState.CONNECTING)
        self.db.commit()

        client = self.connector.auth_client(provider_type)
        try:
            url = client.authorization_url(self._state_token(tenant_id, provider_type))
        finally:
            client.close()
        logger.info(f"Started {provider_type.value} connection for tenant {tenant_id}")
        return url

    def complete_oauth(self, provider_type: ProviderType, code: str, state: str) -> Integration:
        """Finish the OAuth redirect: exchange the code and store the tokens."""
        provider_type = ProviderType(provider_type)
        if provider_type not in OAUTH_PROVIDERS:
            raise IntegrationNotConfigured(
                f"{provider_type.value} does not use an OAuth redirect", provider=provider_type.value
            )
        data = self._read_state(state)
        if data["provider"] != provider_type.value:
            raise TokenInvalid("OAuth state was issued for another provider", provider=provider_type.value)
        tenant_id = data["tenant_id"]

        client = self.connector.auth_client(provider_type)
        try:
            tokens = client.exchange_code(code)
        except OAuthGrantError as e:
            logger.error(f"{provider_type.value} code exchange failed for tenant {tenant_id}: {e}")
            raise TokenInvalid(
                f"{provider_type.value} rejected the authorization code", provider=provider_type.value
            ) from e
        finally:
            client.close()

        integration = self._get_or_new(tenant_id, provider_type)
        if tokens.extra:
            merged = integration.provider_config.model_dump(exclude={"provider"})
            merged.update({k: v for k, v in tokens.extra.items() if k in merged and v})
            integration.provider_config = parse_provider_config(provider_type, merged)
        return self._store(integration, tokens)

    def connect_static_token(self, tenant_id: str, provider_type: ProviderType, token: str) -> Integration:
        """Connect a provider that issues user-pasted tokens (Trello)."""
        provider_type = ProviderType(provider_type)
        if provider_type in OAUTH_PROVIDERS:
            raise IntegrationNotConfigured(
                f"{provider_type.value} connects through OAuth", provider=provider_type.value
            )
        client = self.connector.auth_client(provider_type)
        try:
            check = client.validate_static_token(token)
        finally:
            client.close()
        if not check.ok:
            raise TokenInvalid(
                f"The {provider_type.value} token was rejected: {check.error}", provider=provider_type.value
            )
        integration = self._get_or_new(tenant_id, provider_type)
        integration.identity_label = check.identity_label
        return self._store(integration, TokenSet(access_token=token))

    def _store(self, integration: Integration, tokens: TokenSet) -> Integration:
        self.connector.token_vault().store_tokens(integration, tokens)
        self.db.refresh(integration)
        if not integration.identity_label:
            check = self.test_connection(integration.tenant_id, integration.provider_type)
            if not check.ok:
                logger.warning(
                    f"Connected {integration.provider_type.value} for tenant {integration.tenant_id} "
                    f"but the identity lookup failed: {check.error}"
                )
        logger.info(f"Connected {integration.provider_type.value} for tenant {integration.tenant_id}")
        return integration

    # Configuration

    def configure(
        self,
        tenant_id: str,
        provider_type: ProviderType,
        provider_config: Optional[Dict[str, Any]] = None,
        sync_direction: Optional[SyncDirection] = None,
    ) -> Integration:
        """Merge target selectors into the stored config (values from OAuth are kept)."""
        integration = self.get(tenant_id, provider_type)
        if provider_config:
            merged = integration.provider_config.model_dump(exclude={"provider"})
            merged.update({k: v for k, v in provider_config.items() if k != "provider"})
            integration.provider_config = parse_provider_config(integration.provider_type, merged)
        if sync_direction is not None:
            integration.sync_direction = SyncDirection(sync_direction)
        self.db.commit()
        self.db.refresh(integration)
        return integration

    def update_mapping(
        self, tenant_id: str, provider_type: ProviderType, mapping: Dict[str, Any]
    ) -> Integration:
        """Replace the field mapping; the version is bumped on every replacement."""
        integration = self.get(tenant_id, provider_type)
        new_mapping = parse_field_mapping(mapping)
        if integration.provider_type == ProviderType.AZURE_DEVOPS:
            bad = sorted(v for v in new_mapping.severity_to_external.values() if v not in ADO_PRIORITY_VALUES)
            if bad:
                raise ValueError(
                    f"Azure DevOps priorities are {', '.join(ADO_PRIORITY_VALUES)}; got {', '.join(bad)}"
                )
        new_mapping.version = integration.field_mapping.version + 1
        integration.field_mapping = new_mapping
        self.db.commit()
        self.db.refresh(integration)
        logger.info(
            f"Updated {integration.provider_type.value} mapping for tenant {tenant_id} "
            f"to v{new_mapping.version}"
        )
        return integration

    def set_active(self, tenant_id: str, provider_type: ProviderType, active: bool) -> Integration:
        integration = self.get(tenant_id, provider_type)
        integration.is_active = bool(active)
        self.db.commit()
        self.db.refresh(integration)
        return integration

    def test_connection(self, tenant_id: str, provider_type: ProviderType) -> ConnectionCheck:
        """Check the stored credentials against the provider. Never raises."""
        try:
            integration = self.get(tenant_id, provider_type)
            with self.connector.open(integration) as adapter:
                check = adapter.test_connection()
        except SyncError as e:
            return ConnectionCheck(ok=False, error=e.message)
        if check.ok and check.identity_label and check.identity_label != integration.identity_label:
            integration.identity_label = check.identity_label
            self.db.commit()
        return check

    def disconnect(self, tenant_id: str, provider_type: ProviderType) -> bool:
        """Delete the integration and its credentials. ExternalLinks are kept."""
        integration = self.connector.find(tenant_id, provider_type)
        if integration is None:
            return False
        self.connector.token_vault().discard(integration)
        integration.move_to(IntegrationState.DISCONNECTED)
        self.db.delete(integration)
        self.db.commit()
        logger.info(f"Disconnected {ProviderType(provider_type).value} for tenant {tenant_id}")
        return True

    # Discovery

    def _discovery_adapter(self, tenant_id: str, provider_type: ProviderType) -> ProviderAdapter:
        integration = self.get(tenant_id, provider_type)
        if integration.state == IntegrationState.TOKEN_REVOKED:
            raise TokenInvalid(
                f"The {integration.provider_type.value} authorization was revoked; reconnect the integration",
                provider=integration.provider_type.value,
            )
        if integration.state not in USABLE_STATES:
            raise IntegrationNotConfigured(
                f"Connect {integration.provider_type.value} before browsing it",
                provider=integration.provider_type.value,
            )
        return self.connector.open(integration)

    def list_projects(self, tenant_id: str, provider_type: ProviderType) -> List[ProjectRef]:
        with self._discovery_adapter(tenant_id, provider_type) as adapter:
            return adapter.list_projects()

    def list_categories(self, tenant_id: str, provider_type: ProviderType, project_id: str) -> List[CategoryRef]:
        with self._discovery_adapter(tenant_id, provider_type) as adapter:
            return adapter.list_categories(project_id)

    def list_statuses(self, tenant_id: str, provider_type: ProviderType, project_id: str) -> List[CategoryRef]:
        with self._discovery_adapter(tenant_id, provider_type) as adapter:
            return adapter.list_statuses(project_id)

    def list_priorities(self, tenant_id: str, provider_type: ProviderType) -> List[CategoryRef]:
        with self._discovery_adapter(tenant_id, provider_type) as adapter:
            return adapter.list_priorities()

    def list_organizations(self, tenant_id: str, provider_type: ProviderType) -> List[ProjectRef]:
        """Azure DevOps organizations visible to the stored grant, for picking `organization`."""
        provider_type = ProviderType(provider_type)
        if provider_type != ProviderType.AZURE_DEVOPS:
            raise IntegrationNotConfigured(
                f"{provider_type.value} has no organization selector", provider=provider_type.value
            )
        with self._discovery_adapter(tenant_id, provider_type) as adapter:
            return adapter.list_organizations()

    # Comments and search

    def add_comment(
        self, tenant_id: str, provider_type: ProviderType, external_id: str, text: str
    ) -> CommentRef:
        """Post a comment on an external item; needs a push-capable, fully configured integration."""
        integration = self.connector.load_ready(tenant_id, provider_type, SyncOperation.PUSH)
        with self.connector.open(integration) as adapter:
            comment = adapter.add_comment(str(external_id), text)
        logger.info(
            f"Added comment {comment.id} to {integration.provider_type.value} item {external_id} "
            f"for tenant {tenant_id}"
        )
        return comment

    def search_issues(
        self, tenant_id: str, provider_type: ProviderType, jql: str, limit: int = 50
    ) -> List[ExternalItem]:
        """JQL passthrough; only Jira has a query language worth exposing."""
        provider_type = ProviderType(provider_type)
        if provider_type != ProviderType.JIRA:
            raise IntegrationNotConfigured(
                f"{provider_type.value} does not support JQL search", provider=provider_type.value
            )
        with self._discovery_adapter(tenant_id, provider_type) as adapter:
            return adapter.search_issues(jql, limit=limit)
