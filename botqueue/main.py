from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from botqueue.config.logging import get_logger, setup_logging
from botqueue.config.settings import settings
from botqueue.v1.core.exceptions import (
    BotQueueException,
    RequestContextMiddleware,
    bot_queue_exception_handler,
    general_exception_handler,
    http_exception_handler,
)
from botqueue.v1.healthz import router as health_router
from botqueue.v1.infra.jobs.routes import router as queues_router
from botqueue.v1.infra.jobs.service import JobSystem

logger = get_logger(__name__)


def create_app(job_system: JobSystem | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""

    # Initialize structured logging
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        system = job_system or JobSystem.from_settings(settings)
        app.state.job_system = system

        try:
            await system.startup()
            if settings.init_scheduled_jobs_on_startup:
                await system.scheduler.initialize_scheduled_jobs()
            if settings.run_workers_on_startup:
                system.start_workers()

            yield
        finally:
            await system.close()

    app = FastAPI(
        title=settings.app_name,
        description="Durable background job queues and scheduling for chat bots",
        version=settings.version,
        debug=settings.debug,
        lifespan=lifespan,
        # All endpoints will be under /v1/ prefix
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
    )

    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    app.add_exception_handler(BotQueueException, bot_queue_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(queues_router, prefix="/v1")

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "botqueue.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )
