"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from healthysnacks.api.routes import router
from healthysnacks.classification import ClassificationAdapter
from healthysnacks.config import get_settings
from healthysnacks.ml.inference import InferencePool
from healthysnacks.ml.model_manager import OnnxModelManager
from healthysnacks.ml.pipeline import PipelineStartupError, build_pipeline

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: load the model on startup, clean up on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting HealthySnacks (device=%s, max_concurrent=%s, model=%s, crop_scale=%s)",
        settings.device,
        settings.max_concurrent,
        settings.model_name,
        settings.crop_scale_mode,
    )

    model_manager = OnnxModelManager(settings)
    try:
        pipeline = build_pipeline(settings, model_manager)
    except PipelineStartupError:
        logger.critical("Cannot start without a classification model")
        raise

    app.state.model_manager = model_manager
    inference_pool = InferencePool(settings)
    app.state.inference_pool = inference_pool
    app.state.adapter = ClassificationAdapter(pipeline, inference_pool, settings.confidence_threshold)

    logger.info("HealthySnacks ready")
    yield

    logger.info("Shutting down HealthySnacks")
    inference_pool.shutdown()
    model_manager.shutdown()
    logger.info("HealthySnacks shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="HealthySnacks",
        description="On-device snack photo classification API",
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
