"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from haarface.api.routes import router
from haarface.config import get_settings
from haarface.ml.inference import DetectionPool
from haarface.ml.model_manager import CascadeManager

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting haarface (cascade=%s, max_concurrent=%s, scan_workers=%s, canny=%s)",
        settings.cascade_name,
        settings.max_concurrent,
        settings.scan_workers or "auto",
        settings.do_canny_pruning,
    )

    app.state.detection_pool = DetectionPool(settings)
    cascade_manager = CascadeManager(settings)
    app.state.cascade_manager = cascade_manager

    # Fail at startup rather than on the first request if the cascade is unusable.
    cascade_manager.get_cascade()

    logger.info("haarface ready")
    yield

    logger.info("Shutting down haarface")
    app.state.detection_pool.shutdown()
    cascade_manager.shutdown()
    logger.info("haarface shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="haarface",
        description="Haar cascade face detection API",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()
