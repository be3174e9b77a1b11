"""Sync log model"""
from sqlalchemy import Column, Integer, String, DateTime, Text, Enum
from datetime import datetime
import enum
from bugsync.models.base import Base
from bugsync.models.enums import ProviderType


class SyncStatus(str, enum.Enum):
    """Sync status enumeration"""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class SyncOperation(str, enum.Enum):
    """Sync operation enumeration"""
    PUSH = "push"
    PULL = "pull"
    RECONCILE = "reconcile"


class SyncLog(Base):
    """Log of sync operations"""

    __tablename__ = "sync_logs"

    id = Column(Integer, primary_key=True, index=True)

    tenant_id = Column(String, nullable=False, index=True)
    provider_type = Column(Enum(ProviderType), nullable=False)

    # Item information
    bug_id = Column(String, nullable=True, index=True)
    external_id = Column(String, nullable=True)

    # Sync details
    status = Column(Enum(SyncStatus), nullable=False)
    operation = Column(Enum(SyncOperation), nullable=False)
    action = Column(String, nullable=True)  # created / updated / linked
    message = Column(Text, nullable=True)
    details = Column(Text, nullable=True)  # JSON or additional details

    # Timestamp
    created_at = Column(DateTime, default=datetime.utcnow, index=True)

    def __repr__(self):
        return f"<SyncLog(status={self.status}, operation={self.operation})>"
