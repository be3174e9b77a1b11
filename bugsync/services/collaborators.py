"""Interfaces the sync engine consumes from the host application."""

import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

from typing_extensions import Protocol

logger = logging.getLogger(__name__)

AUDIT_ACTION = "SYNCED_TO_EXTERNAL"


@dataclass(frozen=True)
class BugSnapshot:
    """The bug fields a push reads. status/severity are internal enum values."""
    bug_id: str
    title: str
    description: Optional[str]
    status: str
    severity: str


class BugStore(Protocol):
    def get_bug_snapshot(self, bug_id: str) -> Optional[BugSnapshot]:
        ...

    def apply_external_update(self, bug_id: str, fields: Dict[str, Any]) -> None:
        ...

    def create_bug(self, project_id: str, fields: Dict[str, Any]) -> str:
        """Create a bug from pulled fields and return its id."""
        ...


class AuditSink(Protocol):
    def emit(self, bug_id: str, action: str, details: Dict[str, Any]) -> None:
        ...


class LoggingAuditSink:
    """Default audit sink: writes audit events to the application log."""

    def emit(self, bug_id: str, action: str, details: Dict[str, Any]) -> None:
        logger.info(f"Audit {action} for bug {bug_id}: {details}")
