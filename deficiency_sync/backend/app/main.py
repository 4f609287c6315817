# backend/app/main.py
from __future__ import annotations

from fastapi import FastAPI

from .config import settings
from .logging_config import configure_logging
from .middleware.request_id import RequestIDMiddleware
from .middleware.structured_logging import StructuredLoggingMiddleware
from .routers.health import router as health_router
from .routers.trello import router as trello_router

API_PREFIX = "/api"


def create_app() -> FastAPI:
    configure_logging()

    app = FastAPI(title="Deficiency Sync", version=settings.app_version)

    # Added last runs first: request id must be set before the request is logged
    app.add_middleware(StructuredLoggingMiddleware)
    app.add_middleware(RequestIDMiddleware)

    app.include_router(health_router, prefix=API_PREFIX)
    app.include_router(trello_router, prefix=API_PREFIX)
    return app


app = create_app()
