"""
FastAPI application entry point.

This module initializes and configures the FastAPI application.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Callable

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.orm import Session

from retrainer.api.routes import router
from retrainer.core.config import settings
from retrainer.core.database import SessionLocal, init_db
from retrainer.services.asset_storage import ConsolidatedStorage
from retrainer.services.model_runtime import TrainFunction
from retrainer.services.training_service import TrainingService
from retrainer.workers.periodic_trainer import PeriodicTrainer, SubjectProvider
from retrainer.workers.scheduler import TrainingScheduler

# Configure logging
logging.basicConfig(
    level=logging.DEBUG if settings.debug else logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)

logger = logging.getLogger(__name__)

SHUTDOWN_WAIT_SECONDS = 60.0


def create_app(
    train_fn: TrainFunction | None = None,
    subject_provider: SubjectProvider | None = None,
    storage: ConsolidatedStorage | None = None,
    db_session_factory: Callable[[], Session] | None = None,
    init_database: bool = True,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        train_fn: Training function for manual and periodic jobs. Without
            it, training requests are answered with 503.
        subject_provider: Returns the subjects considered by the periodic
            cycle. Periodic training needs both this and ``train_fn``.
        storage: Storage to use instead of one built from settings.
        db_session_factory: Session factory for cooldown and job history
            persistence; defaults to SessionLocal.
        init_database: Create tables on the configured engine at startup.

    Returns:
        FastAPI: Configured FastAPI application instance.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        """
        Application lifespan manager.

        Builds the storage, scheduler and periodic trainer on startup and
        drains them on shutdown.
        """
        # Startup
        if init_database:
            init_db()

        app_storage = storage or ConsolidatedStorage(base_dir=settings.get_storage_path())
        if settings.migrate_on_startup and app_storage.has_legacy_data():
            logger.info("Legacy storage layout detected, migrating on startup")
            summary = app_storage.migrate_legacy_data()
            logger.info(
                f"Startup migration finished: {summary.migrated_assets} assets, "
                f"{len(summary.errors)} errors"
            )

        scheduler = TrainingScheduler(
            storage=app_storage,
            db_session_factory=db_session_factory or SessionLocal,
        )
        periodic = None
        if train_fn is not None and subject_provider is not None:
            periodic = PeriodicTrainer(scheduler, train_fn, subject_provider)

        app.state.storage = app_storage
        app.state.scheduler = scheduler
        app.state.training_service = TrainingService(
            scheduler=scheduler,
            storage=app_storage,
            train_fn=train_fn,
            periodic=periodic,
        )

        scheduler.start()
        app_storage.start_periodic_save()
        if periodic is not None and settings.periodic_training_enabled:
            periodic.start()

        yield

        # Shutdown
        if periodic is not None:
            periodic.stop()
        scheduler.shutdown(wait_seconds=SHUTDOWN_WAIT_SECONDS)
        app_storage.shutdown()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Scheduled and on-demand retraining of per-subject models with consolidated storage.",
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        openapi_url="/api/openapi.json",
        lifespan=lifespan,
    )

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include API router
    app.include_router(router, prefix="/api/v1")

    @app.get("/health")
    async def health_check():
        """Health check endpoint."""
        return {
            "status": "healthy",
            "version": settings.app_version,
            "environment": settings.environment,
        }

    return app


# Create the application instance
app = create_app()
