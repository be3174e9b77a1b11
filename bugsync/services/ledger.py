"""ExternalIdLedger: bug <-> external item associations"""

import logging
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bugsync.models.enums import ProviderType
from bugsync.models.external_link import ExternalLink, utcnow

logger = logging.getLogger(__name__)


class ExternalIdLedger:
    """Persistent lookup of which external item mirrors which bug.

    At most one link per (bug, provider) and per (tenant, provider,
    external id); both are enforced by unique constraints, so a racing
    writer loses with an IntegrityError and gets the winner back.
    """

    def __init__(self, db: Session):
        self.db = db

    def find_by_bug(self, bug_id: str, provider_type: ProviderType) -> Optional[ExternalLink]:
        return self.db.query(ExternalLink).filter(
            ExternalLink.bug_id == str(bug_id),
            ExternalLink.provider_type == ProviderType(provider_type),
        ).first()

    def find_by_external(
        self, tenant_id: str, provider_type: ProviderType, external_id: str
    ) -> Optional[ExternalLink]:
        return self.db.query(ExternalLink).filter(
            ExternalLink.tenant_id == tenant_id,
            ExternalLink.provider_type == ProviderType(provider_type),
            ExternalLink.external_id == str(external_id),
        ).first()

    def list_for_tenant(
        self, tenant_id: str, provider_type: Optional[ProviderType] = None, limit: int = 100
    ) -> List[ExternalLink]:
        query = self.db.query(ExternalLink).filter(ExternalLink.tenant_id == tenant_id)
        if provider_type is not None:
            query = query.filter(ExternalLink.provider_type == ProviderType(provider_type))
        return query.order_by(ExternalLink.created_at.desc()).limit(limit).all()

    def record(
        self,
        tenant_id: str,
        bug_id: str,
        provider_type: ProviderType,
        external_id: str,
        external_url: Optional[str] = None,
    ) -> ExternalLink:
        """Insert a link; on a unique-constraint race return the existing one."""
        provider_type = ProviderType(provider_type)
        link = ExternalLink(
            tenant_id=tenant_id,
            bug_id=str(bug_id),
            provider_type=provider_type,
            external_id=str(external_id),
            external_url=external_url,
        )
        self.db.add(link)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            existing = self.find_by_bug(bug_id, provider_type) or self.find_by_external(
                tenant_id, provider_type, external_id
            )
            if existing is None:
                raise
            if existing.external_id != str(external_id) or existing.bug_id != str(bug_id):
                logger.warning(
                    f"Concurrent link for bug {bug_id} on {provider_type.value}: kept "
                    f"{existing.bug_id}->{existing.external_id}, dropped {bug_id}->{external_id}"
                )
            return existing
        self.db.refresh(link)
        return link

    def touch(self, link: ExternalLink, external_url: Optional[str] = None) -> ExternalLink:
        link.last_synced_at = utcnow()
        if external_url:
            link.external_url = external_url
        self.db.commit()
        return link
