"""Back-fill ExternalLinks for external items whose link write was lost"""

import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from bugsync.config import settings
from bugsync.models.enums import ProviderType
from bugsync.models.sync_log import SyncOperation, SyncStatus
from bugsync.services.collaborators import BugStore
from bugsync.services.connector import ProviderConnector
from bugsync.services.errors import SyncError
from bugsync.services.ledger import ExternalIdLedger
from bugsync.services.locks import KeyedLock, sync_locks
from bugsync.services.providers.base import ExternalItem, utcnow
from bugsync.services.sync_coordinator import bug_lock_key, write_sync_log
from bugsync.services.sync_marker import parse_marker

logger = logging.getLogger(__name__)


class ReconciliationService:
    """Rebuild missing links by scanning the sync marker of recently created items.

    Safe by default:
    - Only creates missing links.
    - If a conflicting link already exists for either side, it is left
      untouched and reported.
    """

    def __init__(
        self,
        db: Session,
        *,
        connector: Optional[ProviderConnector] = None,
        bug_store: Optional[BugStore] = None,
        lookback_hours: Optional[int] = None,
        locks: Optional[KeyedLock] = None,
    ):
        self.db = db
        self.locks = locks or sync_locks
        self.connector = connector or ProviderConnector(db)
        self.ledger = ExternalIdLedger(db)
        # Without a bug store, markers are trusted as long as the tenant matches.
        self.bug_store = bug_store
        self.lookback = timedelta(
            hours=settings.reconcile_lookback_hours if lookback_hours is None else lookback_hours
        )

    def reconcile(self, tenant_id: str, provider_type: ProviderType) -> Dict[str, Any]:
        provider_type = ProviderType(provider_type)
        stats: Dict[str, Any] = {
            "scanned": 0,
            "linked": 0,
            "skipped_existing": 0,
            "skipped_unmarked": 0,
            "conflicts": [],
        }
        try:
            integration = self.connector.load_ready(tenant_id, provider_type, SyncOperation.PUSH)
            since = utcnow() - self.lookback
            with self.connector.open(integration) as adapter:
                items = adapter.search_recent_items(since)
        except SyncError as e:
            e.with_context(provider=provider_type.value)
            logger.error(f"Reconciliation failed for tenant {tenant_id} on {provider_type.value}: {e}")
            write_sync_log(
                self.db,
                tenant_id=tenant_id,
                provider_type=provider_type,
                operation=SyncOperation.RECONCILE,
                status=SyncStatus.FAILED,
                message=e.message,
                details=e.to_dict(),
            )
            raise

        for item in items:
            stats["scanned"] += 1
            marker = parse_marker(item.description)
            if marker is None or marker["tenant_id"] != tenant_id:
                stats["skipped_unmarked"] += 1
                continue
            bug_id = marker["bug_id"]
            with self.locks.hold(bug_lock_key(tenant_id, bug_id, provider_type)):
                self._link_item(stats, tenant_id, provider_type, bug_id, item)

        logger.info(f"Reconciliation for tenant {tenant_id} on {provider_type.value}: {stats}")
        return stats

    def _link_item(
        self,
        stats: Dict[str, Any],
        tenant_id: str,
        provider_type: ProviderType,
        bug_id: str,
        item: ExternalItem,
    ) -> None:
        by_external = self.ledger.find_by_external(tenant_id, provider_type, item.external_id)
        if by_external is not None:
            if by_external.bug_id == bug_id:
                stats["skipped_existing"] += 1
            else:
                self._conflict(stats, item.external_id, bug_id, f"item already linked to bug {by_external.bug_id}")
            return

        by_bug = self.ledger.find_by_bug(bug_id, provider_type)
        if by_bug is not None:
            # Typically a duplicate created by a retried push; keep the existing link.
            self._conflict(stats, item.external_id, bug_id, f"bug already linked to {by_bug.external_id}")
            return

        if self.bug_store is not None and self.bug_store.get_bug_snapshot(bug_id) is None:
            self._conflict(stats, item.external_id, bug_id, "bug no longer exists")
            return

        self.ledger.record(tenant_id, bug_id, provider_type, item.external_id, item.url)
        stats["linked"] += 1
        logger.info(f"Back-filled link bug {bug_id} -> {provider_type.value} item {item.external_id}")
        write_sync_log(
            self.db,
            tenant_id=tenant_id,
            provider_type=provider_type,
            operation=SyncOperation.RECONCILE,
            status=SyncStatus.SUCCESS,
            action="linked",
            message=f"Linked orphaned item {item.external_id}",
            bug_id=bug_id,
            external_id=item.external_id,
        )

    def _conflict(self, stats: Dict[str, Any], external_id: str, bug_id: str, reason: str) -> None:
        logger.warning(f"Reconciliation conflict for item {external_id} / bug {bug_id}: {reason}")
        stats["conflicts"].append({"external_id": external_id, "bug_id": bug_id, "reason": reason})
