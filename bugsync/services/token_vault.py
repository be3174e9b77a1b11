"""Access tokens with transparent refresh"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional, Tuple

from sqlalchemy.orm import Session

from bugsync.config import settings
from bugsync.models.enums import ALLOWED_STATE_TRANSITIONS, IntegrationState, ProviderType
from bugsync.models.integration import Integration
from bugsync.services.crypto import TokenCipher, get_cipher
from bugsync.services.errors import OAuthGrantError, ProviderUnavailable
from bugsync.services.providers.base import OAuthClient, TokenSet, utcnow
from bugsync.services.providers.registry import build_auth_client

logger = logging.getLogger(__name__)


class TokenVault:
    """Hands out access tokens that stay valid for at least the refresh buffer.

    One vault per logical operation: tokens are cached per
    (tenant, provider) for the vault's lifetime. Concurrent refreshes from
    different vaults are last-writer-wins on the integration row.
    """

    def __init__(
        self,
        db: Session,
        cipher: Optional[TokenCipher] = None,
        *,
        auth_client_factory: Callable[[ProviderType], OAuthClient] = build_auth_client,
        clock: Callable[[], datetime] = utcnow,
        buffer_seconds: Optional[int] = None,
    ):
        self.db = db
        self.cipher = cipher or get_cipher()
        self.auth_client_factory = auth_client_factory
        self.clock = clock
        self.buffer = timedelta(
            seconds=settings.token_refresh_buffer_seconds if buffer_seconds is None else buffer_seconds
        )
        self._cache: Dict[Tuple[str, ProviderType], str] = {}

    def _integration(self, tenant_id: str, provider_type: ProviderType) -> Optional[Integration]:
        return self.db.query(Integration).filter(
            Integration.tenant_id == tenant_id,
            Integration.provider_type == provider_type,
        ).first()

    def _fresh(self, expires_at: Optional[datetime]) -> bool:
        return expires_at is None or expires_at > self.clock() + self.buffer

    def get_valid_access_token(self, tenant_id: str, provider_type: ProviderType) -> Optional[str]:
        """Return a token that expires more than the buffer from now, or None.

        None means the grant is gone (no credentials, no refresh token, or the
        provider rejected the refresh); the integration is then TOKEN_REVOKED.
        A transient refresh failure raises ProviderUnavailable instead and
        leaves the integration in TOKEN_EXPIRED.
        """
        provider_type = ProviderType(provider_type)
        key = (tenant_id, provider_type)
        if key in self._cache:
            return self._cache[key]

        integration = self._integration(tenant_id, provider_type)
        if integration is None or not integration.has_credentials:
            return None

        if self._fresh(integration.token_expires_at):
            token = self.cipher.decrypt(integration.encrypted_access_token)
            self._cache[key] = token
            return token

        token = self._refresh(integration)
        if token is not None:
            self._cache[key] = token
        return token

    def _refresh(self, integration: Integration) -> Optional[str]:
        provider = integration.provider_type.value
        refresh_token = self.cipher.decrypt_optional(integration.encrypted_refresh_token)
        if not refresh_token:
            logger.warning(
                f"{provider} token for tenant {integration.tenant_id} expired and no refresh token is stored"
            )
            self._mark(integration, IntegrationState.TOKEN_REVOKED)
            return None

        self._mark(integration, IntegrationState.TOKEN_EXPIRED)
        client = self.auth_client_factory(integration.provider_type)
        try:
            tokens = client.refresh(refresh_token)
        except OAuthGrantError as e:
            logger.error(
                f"{provider} refresh rejected for tenant {integration.tenant_id} "
                f"(HTTP {e.status_code}); re-authentication required"
            )
            self._mark(integration, IntegrationState.TOKEN_REVOKED)
            return None
        except ProviderUnavailable:
            logger.error(f"{provider} token refresh failed transiently for tenant {integration.tenant_id}")
            raise
        finally:
            client.close()

        self.store_tokens(integration, tokens)
        logger.info(f"Refreshed {provider} token for tenant {integration.tenant_id}")
        if not self._fresh(tokens.expires_at):
            logger.warning(f"{provider} issued a token that expires within the refresh buffer")
            return None
        return tokens.access_token

    def _mark(self, integration: Integration, state: IntegrationState) -> None:
        current = integration.state or IntegrationState.UNCONFIGURED
        if current == state or state not in ALLOWED_STATE_TRANSITIONS.get(current, set()):
            return
        integration.move_to(state)
        self.db.commit()

    def store_tokens(self, integration: Integration, tokens: TokenSet) -> None:
        """Persist a token set in one commit. A missing refresh token keeps the old one."""
        integration.encrypted_access_token = self.cipher.encrypt(tokens.access_token)
        if tokens.refresh_token:
            integration.encrypted_refresh_token = self.cipher.encrypt(tokens.refresh_token)
        integration.token_expires_at = tokens.expires_at
        integration.move_to(IntegrationState.CONNECTED)
        self.db.commit()
        if self._fresh(tokens.expires_at):
            self._cache[(integration.tenant_id, integration.provider_type)] = tokens.access_token

    def discard(self, integration: Integration) -> None:
        """Forget credentials (caller deletes or re-authenticates the row)."""
        integration.encrypted_access_token = None
        integration.encrypted_refresh_token = None
        integration.token_expires_at = None
        self._cache.pop((integration.tenant_id, integration.provider_type), None)
