"""Database models"""

from bugsync.models.base import Base
from bugsync.models.external_link import ExternalLink
from bugsync.models.integration import Integration
from bugsync.models.sync_log import SyncLog

__all__ = [
    "Base",
    "Integration",
    "ExternalLink",
    "SyncLog",
]
