"""Resolving a tenant's integration into a ready-to-use provider adapter"""

import logging
from typing import Callable, Optional

import httpx
from sqlalchemy.orm import Session

from bugsync.models.enums import IntegrationState, ProviderType
from bugsync.models.integration import Integration
from bugsync.models.sync_log import SyncOperation
from bugsync.services.crypto import TokenCipher, get_cipher
from bugsync.services.errors import IntegrationNotConfigured, TokenInvalid
from bugsync.services.providers.base import OAuthClient, ProviderAdapter
from bugsync.services.providers.registry import build_adapter, build_auth_client
from bugsync.services.token_vault import TokenVault

logger = logging.getLogger(__name__)

USABLE_STATES = (IntegrationState.CONNECTED, IntegrationState.TOKEN_EXPIRED)

AdapterFactory = Callable[..., ProviderAdapter]


class ProviderConnector:
    """Loads integrations, checks readiness and opens adapters.

    Every open() uses a fresh TokenVault, so a token is cached for exactly
    one logical operation.
    """

    def __init__(
        self,
        db: Session,
        cipher: Optional[TokenCipher] = None,
        *,
        adapter_factory: Optional[AdapterFactory] = None,
        auth_client_factory: Optional[Callable[..., OAuthClient]] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.db = db
        self._cipher = cipher
        self.adapter_factory = adapter_factory or build_adapter
        self.auth_client_factory = auth_client_factory or build_auth_client
        self.transport = transport

    @property
    def cipher(self) -> TokenCipher:
        if self._cipher is None:
            self._cipher = get_cipher()
        return self._cipher

    def find(self, tenant_id: str, provider_type: ProviderType) -> Optional[Integration]:
        return self.db.query(Integration).filter(
            Integration.tenant_id == tenant_id,
            Integration.provider_type == ProviderType(provider_type),
        ).first()

    def load(self, tenant_id: str, provider_type: ProviderType) -> Integration:
        integration = self.find(tenant_id, provider_type)
        if integration is None:
            raise IntegrationNotConfigured(
                f"No {ProviderType(provider_type).value} integration for tenant {tenant_id}",
                provider=ProviderType(provider_type).value,
            )
        return integration

    def load_ready(
        self, tenant_id: str, provider_type: ProviderType, operation: SyncOperation
    ) -> Integration:
        """Load an integration that can serve `operation` right now."""
        integration = self.load(tenant_id, provider_type)
        provider = integration.provider_type.value
        if not integration.is_active:
            raise IntegrationNotConfigured(f"The {provider} integration is inactive", provider=provider)
        if integration.state == IntegrationState.TOKEN_REVOKED:
            raise TokenInvalid(
                f"The {provider} authorization was revoked; reconnect the integration", provider=provider
            )
        if integration.state not in USABLE_STATES:
            state = integration.state.value if integration.state else "unconfigured"
            raise IntegrationNotConfigured(
                f"The {provider} integration is not connected (state: {state})", provider=provider
            )
        direction = integration.sync_direction
        if operation == SyncOperation.PUSH and not direction.allows_push():
            raise IntegrationNotConfigured(f"The {provider} integration does not allow push", provider=provider)
        if operation == SyncOperation.PULL and not direction.allows_pull():
            raise IntegrationNotConfigured(f"The {provider} integration does not allow pull", provider=provider)
        missing = integration.provider_config.missing_selectors()
        if missing:
            raise IntegrationNotConfigured(
                f"Finish {provider} setup; missing: {', '.join(missing)}", provider=provider
            )
        return integration

    def token_vault(self) -> TokenVault:
        return TokenVault(self.db, self.cipher, auth_client_factory=self.auth_client)

    def auth_client(self, provider_type: ProviderType) -> OAuthClient:
        if self.transport is not None:
            return self.auth_client_factory(provider_type, transport=self.transport)
        return self.auth_client_factory(provider_type)

    def open(self, integration: Integration, config=None) -> ProviderAdapter:
        """Adapter bound to a token valid beyond the refresh buffer.

        Raises TokenInvalid when the grant is gone, ProviderUnavailable when
        the refresh could not reach the provider.
        """
        provider_type = integration.provider_type
        token = self.token_vault().get_valid_access_token(integration.tenant_id, provider_type)
        if token is None:
            raise TokenInvalid(
                f"The {provider_type.value} authorization is no longer valid; reconnect the integration",
                provider=provider_type.value,
            )
        config = config if config is not None else integration.provider_config
        if self.transport is not None:
            return self.adapter_factory(provider_type, token, config, transport=self.transport)
        return self.adapter_factory(provider_type, token, config)
