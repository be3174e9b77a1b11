"""Integration model"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Enum,
    Integer,
    String,
    Text,
    UniqueConstraint,
)

from bugsync.models.base import Base
from bugsync.models.enums import (
    ALLOWED_STATE_TRANSITIONS,
    IntegrationState,
    ProviderType,
    SyncDirection,
)
from bugsync.models.provider_config import (
    FieldMapping,
    parse_field_mapping,
    parse_provider_config,
)
from bugsync.services.errors import InvalidStateTransition


class Integration(Base):
    """One tenant's connection to one external tracker"""

    __tablename__ = "integrations"
    __table_args__ = (
        # Exactly one integration per (tenant, provider type).
        UniqueConstraint("tenant_id", "provider_type", name="uq_integrations_tenant_provider"),
    )

    id = Column(Integer, primary_key=True, index=True)
    tenant_id = Column(String, nullable=False, index=True)
    provider_type = Column(Enum(ProviderType), nullable=False)

    is_active = Column(Boolean, default=True, nullable=False)
    state = Column(Enum(IntegrationState), default=IntegrationState.CONNECTING, nullable=False)
    sync_direction = Column(Enum(SyncDirection), default=SyncDirection.BOTH, nullable=False)

    # Credentials (Fernet ciphertext; never exposed by read APIs)
    encrypted_access_token = Column(Text, nullable=True)
    encrypted_refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime, nullable=True)  # UTC tz-naive; NULL = never expires

    # Display name of the connected account (from the connection test)
    identity_label = Column(String, nullable=True)

    provider_config_data = Column("provider_config", JSON, nullable=False, default=dict)
    field_mapping_data = Column("field_mapping", JSON, nullable=False, default=dict)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    @property
    def provider_config(self):
        return parse_provider_config(self.provider_type, self.provider_config_data)

    @provider_config.setter
    def provider_config(self, config) -> None:
        self.provider_config_data = config.model_dump(exclude={"provider"})

    @property
    def field_mapping(self) -> FieldMapping:
        return parse_field_mapping(self.field_mapping_data)

    @field_mapping.setter
    def field_mapping(self, mapping: FieldMapping) -> None:
        self.field_mapping_data = mapping.model_dump()

    @property
    def has_credentials(self) -> bool:
        return bool(self.encrypted_access_token)

    def move_to(self, new_state: IntegrationState) -> None:
        current = self.state or IntegrationState.UNCONFIGURED
        if new_state not in ALLOWED_STATE_TRANSITIONS.get(current, set()):
            raise InvalidStateTransition(current, new_state)
        self.state = new_state

    def __repr__(self):
        return f"<Integration(tenant='{self.tenant_id}', provider={self.provider_type}, state={self.state})>"
