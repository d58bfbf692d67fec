"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from functools import partial
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tmclassifier.api.routes import router
from tmclassifier.config import get_settings
from tmclassifier.errors import ClassifierError
from tmclassifier.ml.image_classifier import CustomClassifier, load
from tmclassifier.ml.inference import InferencePool

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load the model on startup, dispose it on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting tmclassifier (device=%s, max_concurrent=%s, model=%s, metadata=%s)",
        settings.device,
        settings.max_concurrent,
        settings.model_path,
        settings.metadata_path,
    )

    inference_pool = InferencePool(settings)
    app.state.inference_pool = inference_pool

    classifier: CustomClassifier | None = None
    if settings.model_path:
        try:
            classifier = await inference_pool.run(
                partial(load, settings=settings), settings.model_path, settings.metadata_path
            )
        except ClassifierError:
            logger.exception("Failed to load model %s", settings.model_path)
            inference_pool.shutdown()
            raise
    else:
        logger.warning("TMCLASSIFIER_MODEL_PATH is not set; prediction endpoints will return 503")
    app.state.classifier = classifier

    logger.info("tmclassifier ready")
    yield

    logger.info("Shutting down tmclassifier")
    if classifier is not None:
        classifier.dispose()
    app.state.classifier = None
    inference_pool.shutdown()
    logger.info("tmclassifier shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="tmclassifier",
        description="Image classification API for exported MobileNet-based models",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the app on the configured host and port."""
    settings = get_settings()
    logger.info("Starting tmclassifier server at http://%s:%d", settings.host, settings.port)
    uvicorn.run(
        "tmclassifier.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    run()
