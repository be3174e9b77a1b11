"""Enumerations shared by models and services"""
import enum


class ProviderType(str, enum.Enum):
    """External tracker kinds (one integration per tenant and kind)"""
    JIRA = "jira"  # issue tracker, workflow transitions
    TRELLO = "trello"  # kanban board, status is list membership
    AZURE_DEVOPS = "azure_devops"  # work-item tracker, state field


class SyncDirection(str, enum.Enum):
    """Which operations an integration permits"""
    PUSH = "push"
    PULL = "pull"
    BOTH = "both"

    def allows_push(self) -> bool:
        return self in (SyncDirection.PUSH, SyncDirection.BOTH)

    def allows_pull(self) -> bool:
        return self in (SyncDirection.PULL, SyncDirection.BOTH)


class IntegrationState(str, enum.Enum):
    """Integration lifecycle.

    UNCONFIGURED has no row and DISCONNECTED deletes the row; both exist so
    the state machine reads completely.
    """
    UNCONFIGURED = "unconfigured"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    TOKEN_EXPIRED = "token_expired"
    TOKEN_REVOKED = "token_revoked"
    DISCONNECTED = "disconnected"


ALLOWED_STATE_TRANSITIONS = {
    IntegrationState.UNCONFIGURED: {IntegrationState.CONNECTING, IntegrationState.CONNECTED},
    IntegrationState.CONNECTING: {
        IntegrationState.CONNECTING,
        IntegrationState.CONNECTED,
        IntegrationState.DISCONNECTED,
    },
    IntegrationState.CONNECTED: {
        IntegrationState.CONNECTING,
        IntegrationState.CONNECTED,
        IntegrationState.TOKEN_EXPIRED,
        IntegrationState.TOKEN_REVOKED,
        IntegrationState.DISCONNECTED,
    },
    IntegrationState.TOKEN_EXPIRED: {
        IntegrationState.CONNECTING,
        IntegrationState.TOKEN_EXPIRED,
        IntegrationState.CONNECTED,
        IntegrationState.TOKEN_REVOKED,
        IntegrationState.DISCONNECTED,
    },
    IntegrationState.TOKEN_REVOKED: {
        IntegrationState.CONNECTING,
        IntegrationState.CONNECTED,
        IntegrationState.DISCONNECTED,
    },
    IntegrationState.DISCONNECTED: {IntegrationState.CONNECTING},
}


class BugStatus(str, enum.Enum):
    OPEN = "OPEN"
    IN_PROGRESS = "IN_PROGRESS"
    IN_REVIEW = "IN_REVIEW"
    RESOLVED = "RESOLVED"
    CLOSED = "CLOSED"
    REOPENED = "REOPENED"
    WONT_FIX = "WONT_FIX"


class BugSeverity(str, enum.Enum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"
