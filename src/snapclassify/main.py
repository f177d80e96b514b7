"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from snapclassify.api.routes import router
from snapclassify.config import Settings, get_settings
from snapclassify.errors import ModelLoadError
from snapclassify.ml.inference import InferencePool
from snapclassify.ml.model_manager import OnnxModelManager
from snapclassify.session import ClassificationSession

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, settings: Settings) -> None:
    """Load the classifier and attach pool, manager and session to ``app.state``.

    A classifier that fails to load leaves the service running: the session
    starts with the load error and reports the model as unavailable.
    """
    app.state.settings = settings
    model_manager = OnnxModelManager(settings)
    app.state.model_manager = model_manager

    classifier = None
    load_error = None
    try:
        classifier = model_manager.load_classifier(settings.classifier_model)
    except (KeyError, ModelLoadError) as exc:
        # str(KeyError) quotes its message.
        reason = exc.args[0] if isinstance(exc, KeyError) else str(exc)
        load_error = f"Error loading model: {reason}"
        logger.error("Classifier %s unavailable: %s", settings.classifier_model, reason)

    inference_pool = InferencePool(settings)
    app.state.inference_pool = inference_pool
    app.state.classifier = classifier
    app.state.session = ClassificationSession(classifier, inference_pool, load_error=load_error)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting SnapClassify (device=%s, workers=%s, model=%s)",
        settings.device,
        settings.inference_workers,
        settings.classifier_model,
    )

    init_state(app, settings)

    logger.info("SnapClassify ready")
    yield

    logger.info("Shutting down SnapClassify")
    app.state.session.set_image(None)
    app.state.inference_pool.shutdown()
    app.state.model_manager.shutdown()
    logger.info("SnapClassify shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="SnapClassify",
        description="Pick a photo, get the top label and its confidence",
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


def run() -> None:
    """Console entry point: serve the app with uvicorn."""
    settings = get_settings()
    uvicorn.run(
        "snapclassify.main:app",
        host=settings.host,
        port=settings.port,
        log_level=settings.log_level.lower(),
    )
