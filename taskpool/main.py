"""FastAPI application."""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI

from taskpool.api.tasks import router as tasks_router
from taskpool.core.auth import verify_api_key
from taskpool.core.config import settings
from taskpool.core.logging import configure_logging
from taskpool.services import BackgroundManager, OpencodeClient

logger = logging.getLogger(__name__)


def create_app(client: OpencodeClient | None = None) -> FastAPI:
    """Build the API around a background manager.

    Args:
        client: Execution server client (defaults to one built from settings)
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging()
        opencode = client or OpencodeClient()
        manager = BackgroundManager(
            transport=opencode,
            session_store=opencode,
            toast_sink=opencode,
            config=settings.background_task_config(),
        )
        app.state.manager = manager
        logger.info(f"Background manager ready (execution server {settings.opencode_url})")
        try:
            yield
        finally:
            manager.shutdown()
            await opencode.close()

    app = FastAPI(
        title="Taskpool API",
        description="Concurrency-limited scheduler for background agent sessions",
        version="0.1.0",
        lifespan=lifespan,
    )
    app.include_router(tasks_router, prefix="/v1", tags=["tasks"])

    @app.get("/health")
    async def health_check(api_key: str = Depends(verify_api_key)):
        """Health check endpoint."""
        manager = app.state.manager
        return {"status": "healthy", "running_tasks": len(manager.get_running_tasks())}

    return app


app = create_app()
