"""Database base configuration"""
from sqlalchemy import create_engine
from sqlalchemy.ext.declarative import declarative_base
from sqlalchemy.orm import sessionmaker
from bugsync.config import settings

engine = create_engine(
    settings.database_url,
    connect_args={"check_same_thread": False} if "sqlite" in settings.database_url else {},
)

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_db():
    """Get database session"""
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _ensure_unique_indexes(bind=None):
    """
    Best-effort schema hardening:
    Older databases may predate the table-level unique constraints; the sync
    engine relies on them to reject duplicate links and integrations.

    We use UNIQUE INDEXes because they are the most portable (and SQLite-friendly).
    """
    bind = bind or engine
    with bind.begin() as conn:
        # If tables don't exist yet, nothing to do.
        if bind.dialect.name == "sqlite":
            tables = {
                row[0]
                for row in conn.exec_driver_sql(
                    "SELECT name FROM sqlite_master WHERE type='table'"
                ).fetchall()
            }
            if not {"integrations", "external_links"} <= tables:
                return

        stmts = [
            "CREATE UNIQUE INDEX IF NOT EXISTS uq_integrations_tenant_provider "
            "ON integrations(tenant_id, provider_type)",
            "CREATE UNIQUE INDEX IF NOT EXISTS uq_external_links_bug_provider "
            "ON external_links(bug_id, provider_type)",
            "CREATE UNIQUE INDEX IF NOT EXISTS uq_external_links_tenant_provider_external "
            "ON external_links(tenant_id, provider_type, external_id)",
        ]
        for sql in stmts:
            try:
                conn.exec_driver_sql(sql)
            except Exception:
                # Some dialects may not support IF NOT EXISTS; try without it.
                try:
                    conn.exec_driver_sql(sql.replace(" IF NOT EXISTS", ""))
                except Exception:
                    # Best-effort only; do not block app startup.
                    pass


def init_db(bind=None):
    """Initialize database"""
    # Ensure all models are imported so SQLAlchemy metadata is populated.
    import bugsync.models  # noqa: F401  (import for side-effects)

    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    _ensure_unique_indexes(bind)
