"""External link model"""
from sqlalchemy import Column, Integer, String, DateTime, Enum, UniqueConstraint
from datetime import datetime, timezone
from bugsync.models.base import Base
from bugsync.models.enums import ProviderType


def utcnow() -> datetime:
    """UTC 'now' as tz-naive datetime."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class ExternalLink(Base):
    """Association between a local bug and the item mirroring it on one provider"""

    __tablename__ = "external_links"
    __table_args__ = (
        UniqueConstraint("bug_id", "provider_type", name="uq_external_links_bug_provider"),
        UniqueConstraint(
            "tenant_id",
            "provider_type",
            "external_id",
            name="uq_external_links_tenant_provider_external",
        ),
    )

    id = Column(Integer, primary_key=True, index=True)

    tenant_id = Column(String, nullable=False, index=True)
    bug_id = Column(String, nullable=False, index=True)
    provider_type = Column(Enum(ProviderType), nullable=False)

    # Provider-assigned identifier (issue key, card id, work item id), kept opaque.
    external_id = Column(String, nullable=False)
    external_url = Column(String, nullable=True)

    created_at = Column(DateTime, default=utcnow)
    last_synced_at = Column(DateTime, default=utcnow)

    def __repr__(self):
        return f"<ExternalLink(bug={self.bug_id}, provider={self.provider_type}, external={self.external_id})>"
