from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from reportflow.api.router import router as api_router
from reportflow.bootstrap import bootstrap
from reportflow.core.config import settings
from reportflow.core.logging import RequestContextMiddleware, get_logger, log_event
from reportflow.worker.celery_app import celery_app

logger = get_logger(__name__)


def create_app() -> FastAPI:
    @asynccontextmanager
    async def lifespan(_: FastAPI):
        bootstrap()
        log_event(
            logger,
            "app.startup",
            environment=settings.environment,
            storage_backend=settings.storage_backend,
            tasks_eager=bool(celery_app.conf.task_always_eager),
        )
        yield

    app = FastAPI(
        title="Reportflow",
        version="0.1.0",
        description="Report amount extraction with approval and payment-proof workflow.",
        lifespan=lifespan,
    )
    app.add_middleware(RequestContextMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        # Credentialed CORS needs explicit origins.
        allow_credentials="*" not in settings.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
        expose_headers=["x-request-id"],
    )
    app.include_router(api_router)
    return app


app = create_app()
