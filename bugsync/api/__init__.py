"""API routes"""

from bugsync.api import integrations, sync

__all__ = ["integrations", "sync"]
