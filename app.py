"""
app.py — FastAPI application factory and startup lifecycle.

This is the ASGI application object imported by uvicorn.
It wires all services, registers routers, and runs startup initialization.

Usage (via launcher):
    python main.py

Usage (direct uvicorn):
    uvicorn app:app --reload
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI

from backend.controllers.allotment_controller import router as allotment_router
from backend.repository.data_repository import DataRepository
from backend.services.allocation_engine import AllocationEngine
from backend.services.allotment_service import AllotmentService
from backend.services.concurrency import KeyedLockRegistry
from backend.services.conflict_resolver import ConflictResolver
from backend.services.demand_signal import BookingVelocityDemandSignal
from backend.services.release_scheduler import ReleaseScheduler, ReleaseSweepRunner
from backend.services.settings_service import SettingsService
from backend.utils.config import Settings, get_settings
from backend.utils.logger import configure_logging, get_logger


logger = get_logger(__name__)


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """
    Build and wire the FastAPI application.

    Instantiates all services with explicit dependency injection via app.state.
    No global singletons — every dependency is traceable from this function.
    """
    settings = settings or get_settings()
    configure_logging(settings.log_level)

    # --- Repository (single SQLite connection factory) ---
    repository = DataRepository(settings)

    # --- Services (business logic, no direct DB access) ---
    settings_service = SettingsService(repository=repository, settings=settings)
    resolver = ConflictResolver(
        repository=repository,
        engine=AllocationEngine(settings),
        locks=KeyedLockRegistry(settings.lock_acquire_timeout_seconds),
        settings_service=settings_service,
        demand_signal=BookingVelocityDemandSignal(repository=repository, settings=settings),
        settings=settings,
    )
    allotment_service = AllotmentService(
        repository=repository,
        resolver=resolver,
        settings_service=settings_service,
        settings=settings,
    )
    release_scheduler = ReleaseScheduler(
        repository=repository,
        resolver=resolver,
        settings_service=settings_service,
        settings=settings,
    )
    release_runner = ReleaseSweepRunner(
        release_scheduler,
        interval_seconds=settings.release_sweep_interval_seconds,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Run startup initialization before accepting requests."""
        _startup(app)
        yield
        _shutdown(app)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        lifespan=lifespan,
    )

    # --- Routers ---
    app.include_router(allotment_router)

    # --- Inject services into app.state for dependency resolution ---
    app.state.settings = settings
    app.state.repository = repository
    app.state.settings_service = settings_service
    app.state.conflict_resolver = resolver
    app.state.allotment_service = allotment_service
    app.state.release_scheduler = release_scheduler
    app.state.release_runner = release_runner

    return app


def _startup(app: FastAPI) -> None:
    """
    Idempotent startup sequence. Safe to re-run on server restarts.

    Order matters:
      1. Schema must exist before seeding.
      2. Global defaults must exist before the first allotment is materialized.
      3. The release runner starts last, once there is something to sweep.
    """
    settings: Settings = app.state.settings
    repository: DataRepository = app.state.repository
    settings_service: SettingsService = app.state.settings_service
    allotment_service: AllotmentService = app.state.allotment_service

    logger.info("Startup: initializing database schema")
    repository.initialize_database()

    logger.info("Startup: seeding global defaults (skipped if already saved)")
    settings_service.seed_if_missing()

    logger.info("Startup: seeding demo allotment (skipped if any room type exists)")
    allotment_service.seed_demo_allotment_if_empty()

    if settings.release_sweep_enabled:
        logger.info("Startup: starting release sweep runner")
        app.state.release_runner.start()

    logger.info("Startup complete — system ready")


def _shutdown(app: FastAPI) -> None:
    runner: ReleaseSweepRunner = app.state.release_runner
    if runner.running:
        runner.stop()
    logger.info("Shutdown complete")


# Module-level app object for uvicorn
app = create_app()
