"""Main FastAPI application"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from bugsync.api import integrations, sync
from bugsync.config import settings
from bugsync.models.base import init_db
from bugsync.scheduler import scheduler

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.log_level.upper()),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan events"""
    # Startup
    logger.info("Starting BugSync service")
    init_db()
    scheduler.start()
    yield
    # Shutdown
    logger.info("Stopping BugSync service")
    scheduler.stop()


app = FastAPI(
    title="BugSync",
    description="Synchronize bugs with Jira, Trello and Azure DevOps",
    version="1.0.0",
    lifespan=lifespan,
)

# Include API routers
app.include_router(integrations.router)
app.include_router(integrations.oauth_router)
app.include_router(sync.router)


@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {"status": "healthy", "service": "BugSync"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "bugsync.main:app",
        host=settings.host,
        port=settings.port,
        reload=False,
        log_level=settings.log_level.lower(),
    )
