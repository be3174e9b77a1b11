"""Provider lookup: one adapter class and one auth client per ProviderType."""

from typing import Dict, Optional, Type

import httpx

from bugsync.models.enums import ProviderType
from bugsync.services.providers.azure_devops import AzureDevOpsAdapter, AzureDevOpsOAuth
from bugsync.services.providers.base import OAuthClient, ProviderAdapter
from bugsync.services.providers.jira import JiraAdapter, JiraOAuth
from bugsync.services.providers.trello import TrelloAdapter, TrelloAuth

_ADAPTERS: Dict[ProviderType, Type[ProviderAdapter]] = {}
_AUTH_CLIENTS: Dict[ProviderType, Type[OAuthClient]] = {}


def register(provider_type: ProviderType, adapter: Type[ProviderAdapter], auth: Type[OAuthClient]) -> None:
    _ADAPTERS[ProviderType(provider_type)] = adapter
    _AUTH_CLIENTS[ProviderType(provider_type)] = auth


register(ProviderType.JIRA, JiraAdapter, JiraOAuth)
register(ProviderType.TRELLO, TrelloAdapter, TrelloAuth)
register(ProviderType.AZURE_DEVOPS, AzureDevOpsAdapter, AzureDevOpsOAuth)

# Providers whose grant comes from an OAuth redirect; the rest take a pasted token.
OAUTH_PROVIDERS = frozenset({ProviderType.JIRA, ProviderType.AZURE_DEVOPS})


def adapter_class(provider_type: ProviderType) -> Type[ProviderAdapter]:
    try:
        return _ADAPTERS[ProviderType(provider_type)]
    except KeyError:
        raise ValueError(f"No adapter registered for {provider_type}")


def build_adapter(
    provider_type: ProviderType,
    access_token: str,
    config,
    *,
    transport: Optional[httpx.BaseTransport] = None,
) -> ProviderAdapter:
    return adapter_class(provider_type)(access_token, config, transport=transport)


def build_auth_client(
    provider_type: ProviderType,
    *,
    transport: Optional[httpx.BaseTransport] = None,
) -> OAuthClient:
    try:
        cls = _AUTH_CLIENTS[ProviderType(provider_type)]
    except KeyError:
        raise ValueError(f"No auth client registered for {provider_type}")
    return cls(transport=transport)
