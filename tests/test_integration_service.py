import logging
import unittest
from datetime import datetime, timedelta
from unittest.mock import patch
from urllib.parse import parse_qs, urlparse

from bugsync.config import settings
from bugsync.models.enums import IntegrationState, ProviderType, SyncDirection
from bugsync.models.integration import Integration
from bugsync.services.connector import ProviderConnector
from bugsync.services.errors import IntegrationNotConfigured, OAuthGrantError, TokenInvalid
from bugsync.services.integration_service import IntegrationService
from bugsync.services.ledger import ExternalIdLedger
from bugsync.services.providers.base import ConnectionCheck, TokenSet
from helpers import (
    FakeAdapter,
    FakeAuthClient,
    adapter_factory,
    add_integration,
    make_cipher,
    make_session,
)

logging.disable(logging.CRITICAL)


class IntegrationServiceTests(unittest.TestCase):
    def setUp(self):
        self.db = make_session()
        self.cipher = make_cipher()
        self.adapter = FakeAdapter()
        self.auth = FakeAuthClient(
            exchange_result=TokenSet(
                access_token="jira-access",
                refresh_token="jira-refresh",
                expires_at=datetime.utcnow() + timedelta(hours=1),
                extra={"cloud_id": "cloud-9", "site_url": "https://team.atlassian.net"},
            )
        )
        self.connector = ProviderConnector(
            self.db,
            self.cipher,
            adapter_factory=adapter_factory(self.adapter),
            auth_client_factory=lambda provider_type: self.auth,
        )
        self.service = IntegrationService(self.db, connector=self.connector)

    def tearDown(self):
        self.db.close()

    def _state_from(self, url):
        return parse_qs(urlparse(url).query)["state"][0]

    # OAuth

    def test_authorize_moves_to_connecting(self):
        url = self.service.authorization_url("tenant-1", ProviderType.JIRA)

        integration = self.service.get("tenant-1", ProviderType.JIRA)
        self.assertEqual(integration.state, IntegrationState.CONNECTING)
        self.assertTrue(self._state_from(url))
        self.assertEqual(self.auth.closed, 1)

    def test_complete_oauth_stores_encrypted_tokens_and_site(self):
        state = self._state_from(self.service.authorization_url("tenant-1", ProviderType.JIRA))

        integration = self.service.complete_oauth(ProviderType.JIRA, "the-code", state)

        self.assertEqual(self.auth.exchanged, ["the-code"])
        self.assertEqual(integration.state, IntegrationState.CONNECTED)
        self.assertNotEqual(integration.encrypted_access_token, "jira-access")
        self.assertEqual(self.cipher.decrypt(integration.encrypted_access_token), "jira-access")
        self.assertEqual(self.cipher.decrypt(integration.encrypted_refresh_token), "jira-refresh")
        config = integration.provider_config
        self.assertEqual(config.cloud_id, "cloud-9")
        self.assertEqual(config.site_url, "https://team.atlassian.net")
        self.assertEqual(integration.identity_label, "Jane Doe")

    def test_reconnect_after_expiry(self):
        add_integration(self.db, self.cipher, state=IntegrationState.TOKEN_EXPIRED)
        state = self._state_from(self.service.authorization_url("tenant-1", ProviderType.JIRA))
        integration = self.service.complete_oauth(ProviderType.JIRA, "code", state)
        self.assertEqual(integration.state, IntegrationState.CONNECTED)
        # Selectors chosen before the reconnect survive it.
        self.assertEqual(integration.provider_config.project_key, "BUG")

    def test_tampered_state(self):
        with self.assertRaises(TokenInvalid):
            self.service.complete_oauth(ProviderType.JIRA, "code", "not-a-state")
        self.assertEqual(self.auth.exchanged, [])

    def test_state_for_another_provider(self):
        url = self.service.authorization_url("tenant-1", ProviderType.AZURE_DEVOPS)
        with self.assertRaises(TokenInvalid):
            self.service.complete_oauth(ProviderType.JIRA, "code", self._state_from(url))

    def test_expired_state(self):
        state = self._state_from(self.service.authorization_url("tenant-1", ProviderType.JIRA))
        with patch.object(settings, "oauth_state_ttl_seconds", -1):
            with self.assertRaises(TokenInvalid):
                self.service.complete_oauth(ProviderType.JIRA, "code", state)

    def test_rejected_code(self):
        self.auth.exchange_error = OAuthGrantError("bad code", 400)
        state = self._state_from(self.service.authorization_url("tenant-1", ProviderType.JIRA))

        with self.assertRaises(TokenInvalid):
            self.service.complete_oauth(ProviderType.JIRA, "code", state)

        self.assertEqual(self.service.get("tenant-1", ProviderType.JIRA).state, IntegrationState.CONNECTING)

    def test_trello_has_no_oauth_callback(self):
        with self.assertRaises(IntegrationNotConfigured):
            self.service.complete_oauth(ProviderType.TRELLO, "code", "state")

    # Static tokens

    def test_connect_trello_token(self):
        integration = self.service.connect_static_token("tenant-1", ProviderType.TRELLO, "user-token")

        self.assertEqual(integration.state, IntegrationState.CONNECTED)
        self.assertEqual(integration.identity_label, "Trello User")
        self.assertIsNone(integration.token_expires_at)
        self.assertIsNone(integration.encrypted_refresh_token)
        self.assertEqual(self.cipher.decrypt(integration.encrypted_access_token), "user-token")

    def test_rejected_trello_token_stores_nothing(self):
        self.auth.check = ConnectionCheck(ok=False, error="invalid token")

        with self.assertRaises(TokenInvalid):
            self.service.connect_static_token("tenant-1", ProviderType.TRELLO, "bad")

        self.assertEqual(self.db.query(Integration).count(), 0)

    def test_oauth_provider_refuses_static_token(self):
        with self.assertRaises(IntegrationNotConfigured):
            self.service.connect_static_token("tenant-1", ProviderType.JIRA, "token")

    # Configuration

    def test_configure_merges_selectors(self):
        add_integration(self.db, self.cipher)

        integration = self.service.configure(
            "tenant-1",
            ProviderType.JIRA,
            provider_config={"project_key": "WEB", "provider": "trello"},
            sync_direction=SyncDirection.PUSH,
        )

        config = integration.provider_config
        self.assertEqual(config.project_key, "WEB")
        self.assertEqual(config.cloud_id, "cloud-1")
        self.assertEqual(integration.sync_direction, SyncDirection.PUSH)

    def test_configure_unknown_integration(self):
        with self.assertRaises(IntegrationNotConfigured):
            self.service.configure("tenant-1", ProviderType.JIRA, provider_config={"project_key": "X"})

    def test_mapping_version_bumps_on_every_update(self):
        add_integration(self.db, self.cipher)

        self.service.update_mapping("tenant-1", ProviderType.JIRA, {"status_to_external": {"OPEN": "10000"}})
        integration = self.service.update_mapping(
            "tenant-1", ProviderType.JIRA, {"severity_to_external": {"HIGH": "2"}, "version": 99}
        )

        mapping = integration.field_mapping
        self.assertEqual(mapping.version, 3)
        self.assertEqual(mapping.status_to_external, {})
        self.assertEqual(mapping.severity_to_external, {"HIGH": "2"})

    def test_set_active(self):
        add_integration(self.db, self.cipher)
        self.assertFalse(self.service.set_active("tenant-1", ProviderType.JIRA, False).is_active)

    # Connection test

    def test_connection_test_refreshes_identity(self):
        integration = add_integration(self.db, self.cipher)

        check = self.service.test_connection("tenant-1", ProviderType.JIRA)

        self.assertTrue(check.ok)
        self.db.refresh(integration)
        self.assertEqual(integration.identity_label, "Jane Doe")

    def test_connection_test_never_raises(self):
        add_integration(
            self.db, self.cipher, refresh_token=None, expires_at=datetime.utcnow() - timedelta(hours=1)
        )

        check = self.service.test_connection("tenant-1", ProviderType.JIRA)

        self.assertFalse(check.ok)
        self.assertIn("reconnect", check.error)
        self.assertFalse(self.service.test_connection("tenant-2", ProviderType.JIRA).ok)

    # Disconnect and discovery

    def test_disconnect_deletes_credentials_but_keeps_links(self):
        add_integration(self.db, self.cipher)
        ExternalIdLedger(self.db).record("tenant-1", "bug-1", ProviderType.JIRA, "BUG-1")

        self.assertTrue(self.service.disconnect("tenant-1", ProviderType.JIRA))

        self.assertEqual(self.db.query(Integration).count(), 0)
        self.assertIsNotNone(ExternalIdLedger(self.db).find_by_bug("bug-1", ProviderType.JIRA))
        self.assertFalse(self.service.disconnect("tenant-1", ProviderType.JIRA))

    def test_discovery(self):
        add_integration(self.db, self.cipher)
        self.assertEqual([p.id for p in self.service.list_projects("tenant-1", ProviderType.JIRA)], ["BUG"])
        self.assertEqual(
            [s.id for s in self.service.list_statuses("tenant-1", ProviderType.JIRA, "BUG")],
            ["10000", "10002"],
        )
        self.assertEqual(self.adapter.closed, 2)

    def test_discovery_requires_connection(self):
        self.service.authorization_url("tenant-1", ProviderType.JIRA)
        with self.assertRaises(IntegrationNotConfigured):
            self.service.list_projects("tenant-1", ProviderType.JIRA)

    def test_discovery_after_revocation_asks_to_reconnect(self):
        add_integration(self.db, self.cipher, state=IntegrationState.TOKEN_REVOKED)
        for _ in range(2):
            with self.assertRaises(TokenInvalid):
                self.service.list_projects("tenant-1", ProviderType.JIRA)

    def test_organizations_only_for_azure_devops(self):
        add_integration(self.db, self.cipher)
        add_integration(self.db, self.cipher, provider_type=ProviderType.AZURE_DEVOPS)

        with self.assertRaises(IntegrationNotConfigured):
            self.service.list_organizations("tenant-1", ProviderType.JIRA)
        orgs = self.service.list_organizations("tenant-1", ProviderType.AZURE_DEVOPS)

        self.assertEqual([o.id for o in orgs], ["acme"])
        self.assertEqual(self.adapter.closed, 1)

    # Mapping validation

    def test_mapping_rejects_unknown_internal_values(self):
        add_integration(self.db, self.cipher)
        with self.assertRaises(ValueError):
            self.service.update_mapping("tenant-1", ProviderType.JIRA, {"severity_to_external": {"high": "2"}})
        self.assertEqual(self.service.get("tenant-1", ProviderType.JIRA).field_mapping.version, 1)

    def test_azure_devops_priorities_must_be_numeric(self):
        add_integration(self.db, self.cipher, provider_type=ProviderType.AZURE_DEVOPS)

        with self.assertRaises(ValueError) as ctx:
            self.service.update_mapping(
                "tenant-1", ProviderType.AZURE_DEVOPS, {"severity_to_external": {"MEDIUM": "Medium"}}
            )
        self.assertIn("Medium", str(ctx.exception))

        integration = self.service.update_mapping(
            "tenant-1", ProviderType.AZURE_DEVOPS, {"severity_to_external": {"MEDIUM": "3"}}
        )
        self.assertEqual(integration.field_mapping.severity_to_external, {"MEDIUM": "3"})

    # Comments and search

    def test_add_comment(self):
        add_integration(self.db, self.cipher)

        comment = self.service.add_comment("tenant-1", ProviderType.JIRA, "BUG-1", "Retest please")

        self.assertEqual(comment.external_id, "BUG-1")
        self.assertEqual(self.adapter.comments, [("BUG-1", "Retest please")])

    def test_add_comment_needs_push_direction(self):
        add_integration(self.db, self.cipher, direction=SyncDirection.PULL)
        with self.assertRaises(IntegrationNotConfigured):
            self.service.add_comment("tenant-1", ProviderType.JIRA, "BUG-1", "Retest please")
        self.assertEqual(self.adapter.comments, [])

    def test_search_issues_is_jira_only(self):
        add_integration(self.db, self.cipher)
        add_integration(self.db, self.cipher, provider_type=ProviderType.TRELLO)

        self.service.search_issues("tenant-1", ProviderType.JIRA, "project = BUG", limit=10)

        self.assertEqual(self.adapter.queries, [("project = BUG", 10)])
        with self.assertRaises(IntegrationNotConfigured):
            self.service.search_issues("tenant-1", ProviderType.TRELLO, "project = BUG")
