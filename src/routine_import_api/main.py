"""Main FastAPI application."""
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from routine_import_api.api.routes import internal_router, router
from routine_import_api.config import settings

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    app = FastAPI(title="Routine Import API")

    # Browser editor origins
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/health")
    def health():
        """Health check endpoint."""
        return {"ok": True}

    app.include_router(router)
    app.include_router(internal_router)
    logger.info("Routine import API ready (%s)", settings.ENVIRONMENT)
    return app


app = create_app()
