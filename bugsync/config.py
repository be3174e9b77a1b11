"""Application configuration"""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """Application settings"""

    # Database
    database_url: str = "sqlite:///./bugsync.db"

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    # Public base URL of this service; OAuth redirect URIs are derived from it.
    app_url: str = "http://localhost:8000"

    # Logging
    log_level: str = "INFO"

    # Credentials at rest. Must be a urlsafe-base64 Fernet key
    # (see cryptography.fernet.Fernet.generate_key()).
    encryption_key: str = ""

    # Provider apps
    jira_client_id: str = ""
    jira_client_secret: str = ""
    azure_devops_client_id: str = ""
    # Azure DevOps uses the app's client secret as a JWT-bearer client assertion.
    azure_devops_client_secret: str = ""
    trello_api_key: str = ""

    # Provider calls
    provider_timeout_seconds: float = 10.0
    rate_limit_per_second: float = 5.0
    rate_limit_burst: int = 10

    # Tokens are refreshed when they expire within this many seconds.
    token_refresh_buffer_seconds: int = 300
    oauth_state_ttl_seconds: int = 600

    # Sync
    # Label/tag attached to every item we create; reconciliation searches for it.
    sync_label: str = "bugsync"
    # When true, pushing a status with no mapping raises MappingIncomplete
    # instead of skipping the status change.
    strict_status_mapping: bool = False

    # Reconciliation (back-fills ExternalLinks for orphaned external items)
    reconcile_enabled: bool = True
    reconcile_interval_minutes: int = 30
    reconcile_lookback_hours: int = 24

    class Config:
        env_file = ".env"
        case_sensitive = False


settings = Settings()
