import unittest

from pydantic import ValidationError

from bugsync.models.enums import IntegrationState, ProviderType, SyncDirection
from bugsync.models.integration import Integration
from bugsync.models.provider_config import (
    AzureDevOpsConfig,
    JiraConfig,
    TrelloConfig,
    empty_provider_config,
    parse_field_mapping,
    parse_provider_config,
)
from bugsync.services.errors import InvalidStateTransition


class ProviderConfigTests(unittest.TestCase):
    def test_parses_into_provider_specific_class(self):
        config = parse_provider_config(ProviderType.JIRA, {"cloud_id": "c", "project_key": "BUG"})
        self.assertIsInstance(config, JiraConfig)
        self.assertEqual(config.project_key, "BUG")
        self.assertEqual(config.missing_selectors(), ["issue_type_id"])

    def test_discriminator_comes_from_provider_type(self):
        # A stray discriminator in stored JSON cannot switch the config class.
        config = parse_provider_config(ProviderType.TRELLO, {"provider": "jira", "board_id": "b1"})
        self.assertIsInstance(config, TrelloConfig)
        self.assertEqual(config.missing_selectors(), [])

    def test_unknown_keys_ignored(self):
        config = parse_provider_config(ProviderType.AZURE_DEVOPS, {"organization": "acme", "color": "red"})
        self.assertIsInstance(config, AzureDevOpsConfig)
        self.assertEqual(config.missing_selectors(), ["project", "work_item_type"])

    def test_wrong_types_rejected(self):
        with self.assertRaises(ValidationError):
            parse_provider_config(ProviderType.TRELLO, {"board_id": ["not", "a", "string"]})

    def test_empty_config_per_provider(self):
        self.assertIsInstance(empty_provider_config(ProviderType.AZURE_DEVOPS), AzureDevOpsConfig)
        self.assertEqual(empty_provider_config("trello").missing_selectors(), ["board_id"])

    def test_field_mapping_defaults(self):
        mapping = parse_field_mapping(None)
        self.assertEqual(mapping.version, 1)
        self.assertEqual(mapping.forward("status"), {})

    def test_field_mapping_keys_must_be_internal_values(self):
        for raw in (
            {"status_to_external": {"open": "10000"}},
            {"status_from_external": {"Done": "FINISHED"}},
            {"severity_to_external": {"URGENT": "1"}},
            {"severity_from_external": {"P1": "high"}},
        ):
            with self.subTest(raw=raw):
                with self.assertRaises(ValidationError):
                    parse_field_mapping(raw)

    def test_field_mapping_accepts_every_internal_value(self):
        mapping = parse_field_mapping({
            "status_to_external": {"OPEN": "a", "WONT_FIX": "b"},
            "status_from_external": {"Done": "CLOSED"},
            "severity_to_external": {"CRITICAL": "1"},
            "severity_from_external": {"P4": "LOW"},
        })
        self.assertEqual(mapping.status_from_external, {"Done": "CLOSED"})


class IntegrationModelTests(unittest.TestCase):
    def _integration(self, state):
        return Integration(
            tenant_id="t",
            provider_type=ProviderType.JIRA,
            state=state,
            sync_direction=SyncDirection.BOTH,
            provider_config_data={"cloud_id": "c"},
            field_mapping_data={},
        )

    def test_provider_config_property_round_trips_through_json_column(self):
        integration = self._integration(IntegrationState.CONNECTED)
        config = integration.provider_config
        config.project_key = "WEB"
        integration.provider_config = config
        self.assertEqual(integration.provider_config_data["project_key"], "WEB")
        self.assertNotIn("provider", integration.provider_config_data)

    def test_allowed_transitions(self):
        integration = self._integration(IntegrationState.CONNECTED)
        integration.move_to(IntegrationState.TOKEN_EXPIRED)
        integration.move_to(IntegrationState.CONNECTED)
        integration.move_to(IntegrationState.TOKEN_REVOKED)
        integration.move_to(IntegrationState.CONNECTING)
        self.assertEqual(integration.state, IntegrationState.CONNECTING)

    def test_new_row_starts_from_unconfigured(self):
        integration = self._integration(None)
        integration.move_to(IntegrationState.CONNECTING)
        self.assertEqual(integration.state, IntegrationState.CONNECTING)

    def test_illegal_transition_raises(self):
        integration = self._integration(IntegrationState.CONNECTING)
        with self.assertRaises(InvalidStateTransition) as ctx:
            integration.move_to(IntegrationState.TOKEN_EXPIRED)
        self.assertEqual(ctx.exception.current, IntegrationState.CONNECTING)
        self.assertEqual(integration.state, IntegrationState.CONNECTING)

    def test_disconnected_only_restarts_via_connecting(self):
        integration = self._integration(IntegrationState.DISCONNECTED)
        with self.assertRaises(InvalidStateTransition):
            integration.move_to(IntegrationState.CONNECTED)
        integration.move_to(IntegrationState.CONNECTING)

    def test_sync_direction_helpers(self):
        self.assertTrue(SyncDirection.BOTH.allows_push())
        self.assertTrue(SyncDirection.BOTH.allows_pull())
        self.assertFalse(SyncDirection.PULL.allows_push())
        self.assertFalse(SyncDirection.PUSH.allows_pull())
