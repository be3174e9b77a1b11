"""Background scheduler for periodic reconciliation"""

import logging
from typing import Callable, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

from bugsync.config import settings
from bugsync.models import Integration
from bugsync.models.base import SessionLocal
from bugsync.models.enums import ProviderType
from bugsync.services.collaborators import BugStore
from bugsync.services.connector import USABLE_STATES
from bugsync.services.errors import SyncError
from bugsync.services.reconciliation import ReconciliationService

logger = logging.getLogger(__name__)

JOB_ID = "reconcile_all"


class ReconciliationScheduler:
    """Runs link reconciliation for every active integration on an interval"""

    def __init__(self, session_factory=SessionLocal):
        self.scheduler = BackgroundScheduler()
        self.session_factory = session_factory
        # Host applications may plug in a bug store so orphan bugs are verified.
        self.bug_store_factory: Optional[Callable[[], BugStore]] = None

    def start(self):
        """Start the scheduler"""
        if not settings.reconcile_enabled:
            logger.info("Reconciliation disabled; scheduler not started")
            return
        self.scheduler.start()
        self.scheduler.add_job(
            func=self.run_once,
            trigger=IntervalTrigger(minutes=settings.reconcile_interval_minutes),
            id=JOB_ID,
            replace_existing=True,
        )
        logger.info(
            f"Reconciliation scheduler started (every {settings.reconcile_interval_minutes} minutes)"
        )

    def stop(self):
        """Stop the scheduler"""
        if self.scheduler.running:
            self.scheduler.shutdown()
            logger.info("Reconciliation scheduler stopped")

    def run_once(self) -> int:
        """Reconcile every active, connected integration. Returns how many ran cleanly."""
        db = self.session_factory()
        try:
            targets = [
                (i.tenant_id, i.provider_type)
                for i in db.query(Integration).filter(Integration.is_active == True).all()  # noqa: E712
                if i.state in USABLE_STATES and i.sync_direction.allows_push()
            ]
            succeeded = 0
            for tenant_id, provider_type in targets:
                if self._reconcile(db, tenant_id, provider_type):
                    succeeded += 1
            return succeeded
        finally:
            db.close()

    def _reconcile(self, db, tenant_id: str, provider_type: ProviderType) -> bool:
        bug_store = self.bug_store_factory() if self.bug_store_factory else None
        try:
            result = ReconciliationService(db, bug_store=bug_store).reconcile(tenant_id, provider_type)
            logger.info(f"Scheduled reconciliation for {tenant_id}/{provider_type.value}: {result}")
            return True
        except SyncError as e:
            logger.error(f"Scheduled reconciliation failed for {tenant_id}/{provider_type.value}: {e}")
        except Exception as e:
            db.rollback()
            logger.error(f"Scheduled reconciliation crashed for {tenant_id}/{provider_type.value}: {e}")
        return False


# Global scheduler instance
scheduler = ReconciliationScheduler()
