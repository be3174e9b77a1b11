"""Provider adapters"""

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
from bugsync.services.providers.registry import (
    OAUTH_PROVIDERS,
    build_adapter,
    build_auth_client,
)

__all__ = [
    "CategoryRef",
    "CommentRef",
    "ConnectionCheck",
    "CreatedItem",
    "ExternalItem",
    "ItemDraft",
    "ItemPatch",
    "OAuthClient",
    "ProjectRef",
    "ProviderAdapter",
    "TokenSet",
    "UpdateOutcome",
    "OAUTH_PROVIDERS",
    "build_adapter",
    "build_auth_client",
]
