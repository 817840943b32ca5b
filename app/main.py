# app/main.py
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.endpoints import predictions, telemetry
from .core.config import settings
from .services.behavior_engine import (
    BehaviorStorage,
    BehaviorTracker,
    InMemoryBehaviorStorage,
    JsonFileBehaviorStorage,
    WriteBehindStorage,
)

logger = logging.getLogger(__name__)


def build_storage() -> BehaviorStorage:
    if settings.STORAGE_DIR:
        logger.info(f"Using JSON file storage at {settings.STORAGE_DIR}")
        return WriteBehindStorage(JsonFileBehaviorStorage(settings.STORAGE_DIR))
    return InMemoryBehaviorStorage()


def build_tracker(storage: Optional[BehaviorStorage] = None) -> BehaviorTracker:
    return BehaviorTracker(
        storage or build_storage(),
        buffer_size=settings.SAMPLE_BUFFER_SIZE,
        prediction_window=settings.PREDICTION_WINDOW,
        predict_every=settings.PREDICTION_EVERY_N_SAMPLES,
        session_history_limit=settings.SESSION_HISTORY_LIMIT,
        dispatch_threshold=settings.DISPATCH_CONFIDENCE_THRESHOLD,
    )


def create_app(tracker: Optional[BehaviorTracker] = None) -> FastAPI:
    logging.basicConfig(
        level=settings.LOG_LEVEL,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    tracker = tracker or build_tracker()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        yield
        # Drain pending background writes before the process exits
        if isinstance(tracker.storage, WriteBehindStorage):
            tracker.storage.shutdown()

    app = FastAPI(title="Behavior Analytics Service", version="1.0.0", lifespan=lifespan)
    app.state.tracker = tracker
    app.state.intervention_cooldown_seconds = settings.INTERVENTION_COOLDOWN_SECONDS

    # CORS for the UI layer
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origin_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(telemetry.router)
    app.include_router(predictions.router)

    @app.get("/")
    async def root():
        return {"message": "Behavior Analytics API", "version": "1.0.0"}

    @app.get("/health")
    async def health():
        return {"status": "healthy", "service": "behavior-analytics"}

    return app


app = create_app()
