"""
FastAPI application entry point.
"""

from fastapi import FastAPI

from errorwatch.api import errors
from errorwatch.config import settings
from errorwatch.services.database import Database
from errorwatch.services.error_reporting import ErrorReportingService
from errorwatch.services.error_store import MySQLErrorReportStore
from errorwatch.services.issue_dispatcher import IssueDispatcher
from errorwatch.services.redis_client import RedisClient
from errorwatch.services.settings_store import ProjectSettingsStore
from errorwatch.utils.logging import setup_logging, get_logger

# Configure structured logging
setup_logging(settings.log_level)

logger = get_logger(__name__)

app = FastAPI(
    title="errorwatch",
    description="Error deduplication and automated issue lifecycle for web analytics projects",
    version="0.1.0"
)


@app.get("/health")
async def health_check():
    """Health check endpoint for container orchestration."""
    return {"status": "healthy", "version": "0.1.0"}


app.include_router(errors.router)
app.include_router(errors.project_router)


@app.on_event("startup")
async def startup_event():
    """Initialize services on application startup."""
    logger.info("Starting errorwatch API")

    database = Database()
    await database.initialize()

    redis_client = RedisClient()
    await redis_client.initialize()

    app.state.database = database
    app.state.redis_client = redis_client
    app.state.error_reporting = ErrorReportingService(
        error_store=MySQLErrorReportStore(database),
        settings_store=ProjectSettingsStore(database),
    )
    app.state.dispatcher = IssueDispatcher(
        redis_client,
        recurrence_cooldown_seconds=settings.recurrence_cooldown_seconds
    )
    logger.info("Services initialized")


@app.on_event("shutdown")
async def shutdown_event():
    """Cleanup services on application shutdown."""
    logger.info("Shutting down errorwatch API")

    dispatcher = getattr(app.state, "dispatcher", None)
    if dispatcher:
        await dispatcher.drain()

    redis_client = getattr(app.state, "redis_client", None)
    if redis_client:
        await redis_client.close()

    database = getattr(app.state, "database", None)
    if database:
        await database.close()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
