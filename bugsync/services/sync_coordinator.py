"""Push/pull orchestration between the bug store and external trackers"""

import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from bugsync.config import settings
from bugsync.models.enums import ProviderType
from bugsync.models.provider_config import FieldMapping
from bugsync.models.sync_log import SyncLog, SyncOperation, SyncStatus
from bugsync.services.collaborators import (
    AUDIT_ACTION,
    AuditSink,
    BugStore,
    LoggingAuditSink,
)
from bugsync.services.connector import ProviderConnector
from bugsync.services.errors import (
    BugNotFound,
    IntegrationNotConfigured,
    LinkNotRecorded,
    MappingIncomplete,
    SyncCancelled,
    SyncError,
)
from bugsync.services.field_mapper import Direction, FieldMapper, Kind
from bugsync.services.ledger import ExternalIdLedger
from bugsync.services.locks import KeyedLock, sync_locks
from bugsync.services.providers.base import ExternalItem, ItemDraft, ItemPatch, ProviderAdapter
from bugsync.services.sync_marker import append_marker, build_marker, parse_marker, strip_marker

logger = logging.getLogger(__name__)


@dataclass
class SyncResult:
    action: str  # created | updated
    bug_id: str
    provider: str
    external_id: str
    external_url: Optional[str] = None
    # None when no status change was requested.
    status_applied: Optional[bool] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class PullResult:
    action: str  # created | updated
    bug_id: str
    provider: str
    external_id: str
    fields: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def write_sync_log(
    db: Session,
    *,
    tenant_id: str,
    provider_type: ProviderType,
    operation: SyncOperation,
    status: SyncStatus,
    message: str = "",
    action: Optional[str] = None,
    bug_id: Optional[str] = None,
    external_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> None:
    """Record a sync outcome. A failing log write never masks the outcome itself."""
    log = SyncLog(
        tenant_id=tenant_id,
        provider_type=provider_type,
        operation=operation,
        status=status,
        action=action,
        message=message,
        bug_id=bug_id,
        external_id=external_id,
        details=json.dumps(details, default=str) if details else None,
    )
    try:
        db.add(log)
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.error(f"Failed to write sync log ({operation.value} {status.value}): {e}")


def bug_lock_key(tenant_id: str, bug_id: str, provider_type: ProviderType) -> tuple:
    """Lock shared by every push and pull touching one bug on one provider."""
    return ("bug", tenant_id, str(bug_id), ProviderType(provider_type))


def item_lock_key(tenant_id: str, provider_type: ProviderType, external_id: str) -> tuple:
    return ("item", tenant_id, ProviderType(provider_type), str(external_id))


class SyncCoordinator:
    """Pushes bugs out to one provider and pulls external items back in.

    A push and a pull of the same (tenant, bug, provider) never overlap.
    Pulls additionally serialize on (tenant, provider, external id) so an
    unlinked item is imported once. Pulls take the item lock before the bug
    lock and pushes only take the bug lock, so the two cannot deadlock. The
    ledger's unique constraints cover concurrent processes.
    """

    def __init__(
        self,
        db: Session,
        bug_store: BugStore,
        audit_sink: Optional[AuditSink] = None,
        *,
        connector: Optional[ProviderConnector] = None,
        locks: Optional[KeyedLock] = None,
        strict_status_mapping: Optional[bool] = None,
    ):
        self.db = db
        self.bug_store = bug_store
        self.audit_sink = audit_sink or LoggingAuditSink()
        self.connector = connector or ProviderConnector(db)
        self.ledger = ExternalIdLedger(db)
        self.locks = locks or sync_locks
        self.strict_status_mapping = (
            settings.strict_status_mapping if strict_status_mapping is None else strict_status_mapping
        )

    @staticmethod
    def _check_cancel(cancel: Optional[threading.Event]) -> None:
        if cancel is not None and cancel.is_set():
            raise SyncCancelled("Sync cancelled before contacting the provider")

    # Push

    def push(
        self,
        tenant_id: str,
        bug_id: str,
        provider_type: ProviderType,
        cancel: Optional[threading.Event] = None,
    ) -> SyncResult:
        """Create or update the external item mirroring a bug."""
        provider_type = ProviderType(provider_type)
        bug_id = str(bug_id)
        with self.locks.hold(bug_lock_key(tenant_id, bug_id, provider_type)):
            external_id = None
            try:
                integration = self.connector.load_ready(tenant_id, provider_type, SyncOperation.PUSH)
                mapping = integration.field_mapping

                snapshot = self.bug_store.get_bug_snapshot(bug_id)
                if snapshot is None:
                    raise BugNotFound(f"Bug {bug_id} does not exist")

                priority = FieldMapper.translate(
                    Direction.TO_EXTERNAL, Kind.SEVERITY, mapping, snapshot.severity
                )
                status = FieldMapper.lookup(Direction.TO_EXTERNAL, Kind.STATUS, mapping, snapshot.status)
                description = append_marker(
                    snapshot.description, build_marker(tenant_id=tenant_id, bug_id=bug_id)
                )

                link = self.ledger.find_by_bug(bug_id, provider_type)
                if link is not None:
                    external_id = link.external_id
                    if status is None:
                        self._unmapped_status(snapshot.status, mapping)

                self._check_cancel(cancel)
                with self.connector.open(integration) as adapter:
                    if link is not None:
                        patch = ItemPatch(
                            title=snapshot.title,
                            description=description,
                            priority=priority,
                            status=status,
                            known_priorities=tuple(mapping.severity_to_external.values()),
                        )
                        outcome = adapter.update_item(link.external_id, patch)
                        self.ledger.touch(link)
                        result = SyncResult(
                            action="updated",
                            bug_id=bug_id,
                            provider=provider_type.value,
                            external_id=link.external_id,
                            external_url=link.external_url,
                            status_applied=outcome.status_applied if outcome.status_requested else None,
                        )
                    else:
                        result = self._create(
                            adapter, tenant_id, bug_id, provider_type, mapping,
                            snapshot.title, description, priority, status, snapshot.status,
                        )
                        external_id = result.external_id
            except SyncError as e:
                e.with_context(provider=provider_type.value, bug_id=bug_id, external_id=external_id)
                write_sync_log(
                    self.db,
                    tenant_id=tenant_id,
                    provider_type=provider_type,
                    operation=SyncOperation.PUSH,
                    status=SyncStatus.FAILED,
                    message=e.message,
                    bug_id=bug_id,
                    external_id=e.external_id,
                    details=e.to_dict(),
                )
                raise

        self._emit_audit(result)
        write_sync_log(
            self.db,
            tenant_id=tenant_id,
            provider_type=provider_type,
            operation=SyncOperation.PUSH,
            status=SyncStatus.SUCCESS,
            action=result.action,
            message=f"{result.action.capitalize()} {provider_type.value} item {result.external_id}",
            bug_id=bug_id,
            external_id=result.external_id,
            details=result.to_dict(),
        )
        logger.info(f"Pushed bug {bug_id} to {provider_type.value} item {result.external_id} ({result.action})")
        return result

    def _unmapped_status(self, status: str, mapping: FieldMapping) -> None:
        if self.strict_status_mapping:
            raise MappingIncomplete(f"Status {status} has no mapping (mapping v{mapping.version})")
        logger.warning(
            f"Status {status} has no mapping (mapping v{mapping.version}); "
            "leaving the external status unchanged"
        )

    def _create(
        self,
        adapter: ProviderAdapter,
        tenant_id: str,
        bug_id: str,
        provider_type: ProviderType,
        mapping: FieldMapping,
        title: str,
        description: str,
        priority: Optional[str],
        status: Optional[str],
        internal_status: str,
    ) -> SyncResult:
        create_status = None
        if adapter.status_on_create:
            create_status = status or FieldMapper.translate(
                Direction.TO_EXTERNAL, Kind.STATUS, mapping, internal_status
            )
            if create_status is None:
                raise IntegrationNotConfigured(
                    f"Cannot place a new {provider_type.value} item: neither {internal_status} "
                    "nor OPEN is mapped to a status"
                )

        created = adapter.create_item(
            ItemDraft(title=title, description=description, priority=priority, status=create_status)
        )
        # The item exists from here on; only the link write stands between us
        # and an orphan (reconciliation back-fills it from the marker).
        link = self._record_link(tenant_id, bug_id, provider_type, created.external_id, created.url)

        status_applied = create_status is not None if adapter.status_on_create else None
        if not adapter.status_on_create and status is not None:
            status_applied = self._apply_initial_status(adapter, created.external_id, status)

        return SyncResult(
            action="created",
            bug_id=bug_id,
            provider=provider_type.value,
            external_id=link.external_id,
            external_url=link.external_url,
            status_applied=status_applied,
        )

    def _record_link(
        self,
        tenant_id: str,
        bug_id: str,
        provider_type: ProviderType,
        external_id: str,
        external_url: Optional[str],
    ):
        try:
            return self.ledger.record(tenant_id, bug_id, provider_type, external_id, external_url)
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(
                f"{provider_type.value} item {external_id} exists but its link to bug {bug_id} "
                f"was not stored: {e}"
            )
            raise LinkNotRecorded(
                f"{provider_type.value} item {external_id} was created but could not be linked "
                f"to bug {bug_id}; run reconciliation before pushing again",
                provider=provider_type.value,
                bug_id=bug_id,
                external_id=external_id,
            ) from e

    @staticmethod
    def _apply_initial_status(adapter: ProviderAdapter, external_id: str, status: str) -> bool:
        """Workflow providers create items in their initial state; move them afterwards."""
        try:
            return adapter.update_item(external_id, ItemPatch(status=status)).status_applied
        except SyncError as e:
            logger.warning(f"Created {external_id} but could not set its status to {status}: {e}")
            return False

    def _emit_audit(self, result: SyncResult) -> None:
        try:
            self.audit_sink.emit(
                result.bug_id,
                AUDIT_ACTION,
                {
                    "provider": result.provider,
                    "external_id": result.external_id,
                    "external_url": result.external_url,
                    "action": result.action,
                },
            )
        except Exception as e:
            logger.error(f"Audit emit failed for bug {result.bug_id}: {e}")

    # Pull

    def pull(
        self,
        tenant_id: str,
        provider_type: ProviderType,
        external_id: str,
        target_project_id: Optional[str] = None,
        cancel: Optional[threading.Event] = None,
    ) -> PullResult:
        """Bring an external item's state into the bug store. External truth wins."""
        provider_type = ProviderType(provider_type)
        external_id = str(external_id)
        with self.locks.hold(item_lock_key(tenant_id, provider_type, external_id)):
            bug_id = None
            try:
                integration = self.connector.load_ready(tenant_id, provider_type, SyncOperation.PULL)
                mapping = integration.field_mapping
                link = self.ledger.find_by_external(tenant_id, provider_type, external_id)
                if link is not None:
                    bug_id = link.bug_id
                    with self.locks.hold(bug_lock_key(tenant_id, bug_id, provider_type)):
                        item = self._fetch(integration, external_id, cancel)
                        fields = self.pulled_fields(item, mapping)
                        self._apply_linked(link, item, fields)
                    action = "updated"
                else:
                    item = self._fetch(integration, external_id, cancel)
                    fields = self.pulled_fields(item, mapping)
                    link = self._relink_from_marker(tenant_id, provider_type, item, fields)
                    if link is not None:
                        bug_id = link.bug_id
                        action = "updated"
                    else:
                        if not target_project_id:
                            raise IntegrationNotConfigured(
                                f"{provider_type.value} item {external_id} is not linked to a bug "
                                "and no target project was given"
                            )
                        bug_id = str(self.bug_store.create_bug(target_project_id, fields))
                        self._record_link(tenant_id, bug_id, provider_type, external_id, item.url)
                        action = "created"
            except SyncError as e:
                e.with_context(provider=provider_type.value, bug_id=bug_id, external_id=external_id)
                write_sync_log(
                    self.db,
                    tenant_id=tenant_id,
                    provider_type=provider_type,
                    operation=SyncOperation.PULL,
                    status=SyncStatus.FAILED,
                    message=e.message,
                    bug_id=bug_id,
                    external_id=external_id,
                    details=e.to_dict(),
                )
                raise

        result = PullResult(
            action=action,
            bug_id=bug_id,
            provider=provider_type.value,
            external_id=external_id,
            fields=fields,
        )
        write_sync_log(
            self.db,
            tenant_id=tenant_id,
            provider_type=provider_type,
            operation=SyncOperation.PULL,
            status=SyncStatus.SUCCESS,
            action=action,
            message=f"Pulled {provider_type.value} item {external_id} into bug {bug_id} ({action})",
            bug_id=bug_id,
            external_id=external_id,
        )
        logger.info(f"Pulled {provider_type.value} item {external_id} into bug {bug_id} ({action})")
        return result

    @staticmethod
    def pulled_fields(item: ExternalItem, mapping: FieldMapping) -> Dict[str, Any]:
        """Bug store payload derived only from the item and the mapping."""
        return {
            "title": item.title,
            "description": strip_marker(item.description),
            "status": FieldMapper.translate(Direction.FROM_EXTERNAL, Kind.STATUS, mapping, item.status),
            "severity": SyncCoordinator._pulled_severity(item, mapping),
        }

    @staticmethod
    def _pulled_severity(item: ExternalItem, mapping: FieldMapping) -> str:
        if item.priority is not None:
            return FieldMapper.translate(Direction.FROM_EXTERNAL, Kind.SEVERITY, mapping, item.priority)
        # Label-based priority: first label the mapping knows wins.
        for label in item.labels:
            severity = FieldMapper.lookup(Direction.FROM_EXTERNAL, Kind.SEVERITY, mapping, label)
            if severity is not None:
                return severity
        return FieldMapper.translate(Direction.FROM_EXTERNAL, Kind.SEVERITY, mapping, None)

    def _fetch(self, integration, external_id: str, cancel: Optional[threading.Event]) -> ExternalItem:
        self._check_cancel(cancel)
        with self.connector.open(integration) as adapter:
            return adapter.get_item(external_id)

    def _apply_linked(self, link, item: ExternalItem, fields: Dict[str, Any]) -> None:
        self.bug_store.apply_external_update(link.bug_id, fields)
        self.ledger.touch(link, item.url)

    def _relink_from_marker(
        self,
        tenant_id: str,
        provider_type: ProviderType,
        item: ExternalItem,
        fields: Dict[str, Any],
    ):
        """Link an orphaned item back to the bug its sync marker names.

        Returns the link, or None when the marker is missing, belongs to
        another tenant, or names a bug that is gone or linked to another item.
        """
        marker = parse_marker(item.description)
        if marker is None or marker["tenant_id"] != tenant_id:
            return None
        bug_id = marker["bug_id"]
        with self.locks.hold(bug_lock_key(tenant_id, bug_id, provider_type)):
            existing = self.ledger.find_by_bug(bug_id, provider_type)
            if existing is not None:
                # A push may have linked this very item while we waited.
                if existing.external_id != str(item.external_id):
                    return None
                self._apply_linked(existing, item, fields)
                return existing
            if self.bug_store.get_bug_snapshot(bug_id) is None:
                return None
            logger.info(f"Relinking orphaned {provider_type.value} item {item.external_id} to bug {bug_id}")
            link = self._record_link(tenant_id, bug_id, provider_type, item.external_id, item.url)
            if link.external_id != str(item.external_id):
                return None
            self._apply_linked(link, item, fields)
            return link
