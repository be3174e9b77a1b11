"""Typed provider configuration and field mapping.

Both are stored as JSON columns on Integration and validated here once, when
an integration is loaded, instead of being cast at every use site.
"""

from typing import ClassVar, Dict, Iterable, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, Field, TypeAdapter, field_validator
from typing_extensions import Annotated

from bugsync.models.enums import BugSeverity, BugStatus, ProviderType


class _BaseProviderConfig(BaseModel):
    model_config = {"extra": "ignore"}

    # Names of the selectors a push needs; checked by missing_selectors().
    required_selectors: ClassVar[Tuple[str, ...]] = ()

    def missing_selectors(self) -> List[str]:
        return [name for name in self.required_selectors if not getattr(self, name)]


class JiraConfig(_BaseProviderConfig):
    provider: Literal["jira"] = "jira"
    # Filled by the OAuth handshake (accessible-resources lookup).
    cloud_id: Optional[str] = None
    site_url: Optional[str] = None
    # Filled by configuration.
    project_key: Optional[str] = None
    issue_type_id: Optional[str] = None

    required_selectors = ("cloud_id", "project_key", "issue_type_id")


class TrelloConfig(_BaseProviderConfig):
    provider: Literal["trello"] = "trello"
    board_id: Optional[str] = None
    # Board label attached to created cards so reconciliation can find them.
    sync_label_id: Optional[str] = None

    required_selectors = ("board_id",)


class AzureDevOpsConfig(_BaseProviderConfig):
    provider: Literal["azure_devops"] = "azure_devops"
    organization: Optional[str] = None
    project: Optional[str] = None
    work_item_type: Optional[str] = None

    required_selectors = ("organization", "project", "work_item_type")


ProviderConfig = Annotated[
    Union[JiraConfig, TrelloConfig, AzureDevOpsConfig],
    Field(discriminator="provider"),
]

_provider_config_adapter = TypeAdapter(ProviderConfig)

_CONFIG_CLASSES = {
    ProviderType.JIRA: JiraConfig,
    ProviderType.TRELLO: TrelloConfig,
    ProviderType.AZURE_DEVOPS: AzureDevOpsConfig,
}


def parse_provider_config(provider_type: ProviderType, raw: Optional[dict]):
    """Validate stored JSON into the config class for `provider_type`.

    The discriminator is forced from the integration's provider type so a
    row can never carry another provider's selectors.
    """
    data = dict(raw or {})
    data["provider"] = ProviderType(provider_type).value
    return _provider_config_adapter.validate_python(data)


def empty_provider_config(provider_type: ProviderType):
    return _CONFIG_CLASSES[ProviderType(provider_type)]()


def _check_internal(values: Iterable[str], enum_cls, kind: str) -> None:
    known = {member.value for member in enum_cls}
    unknown = sorted(v for v in values if v not in known)
    if unknown:
        raise ValueError(
            f"Unknown {kind} value(s) {', '.join(unknown)}; expected one of {', '.join(sorted(known))}"
        )


class FieldMapping(BaseModel):
    """Per-tenant vocabulary tables for one provider.

    Forward tables are keyed by internal enum values. A reverse table left
    empty is derived by inverting its forward table.
    """

    model_config = {"extra": "ignore"}

    version: int = 1
    status_to_external: Dict[str, str] = Field(default_factory=dict)
    status_from_external: Dict[str, str] = Field(default_factory=dict)
    severity_to_external: Dict[str, str] = Field(default_factory=dict)
    severity_from_external: Dict[str, str] = Field(default_factory=dict)

    @field_validator("status_to_external")
    @classmethod
    def _status_keys(cls, table: Dict[str, str]) -> Dict[str, str]:
        _check_internal(table.keys(), BugStatus, "status")
        return table

    @field_validator("status_from_external")
    @classmethod
    def _status_values(cls, table: Dict[str, str]) -> Dict[str, str]:
        _check_internal(table.values(), BugStatus, "status")
        return table

    @field_validator("severity_to_external")
    @classmethod
    def _severity_keys(cls, table: Dict[str, str]) -> Dict[str, str]:
        _check_internal(table.keys(), BugSeverity, "severity")
        return table

    @field_validator("severity_from_external")
    @classmethod
    def _severity_values(cls, table: Dict[str, str]) -> Dict[str, str]:
        _check_internal(table.values(), BugSeverity, "severity")
        return table

    def forward(self, kind: str) -> Dict[str, str]:
        return self.status_to_external if kind == "status" else self.severity_to_external

    def reverse(self, kind: str) -> Dict[str, str]:
        explicit = self.status_from_external if kind == "status" else self.severity_from_external
        if explicit:
            return explicit
        inverted: Dict[str, str] = {}
        for internal, external in self.forward(kind).items():
            # First internal value wins when several map to the same external value.
            inverted.setdefault(str(external), internal)
        return inverted


def parse_field_mapping(raw: Optional[dict]) -> FieldMapping:
    return FieldMapping.model_validate(raw or {})
