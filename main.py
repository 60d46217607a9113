from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from core.config import settings
from core.preferences import Preferences
from services.cloudkit_service import CloudKitService
from services.firebase_service import get_firestore_client
from services.firestore_service import FirestoreService
from services.image_store import LocalImageStore
from services.migration_service import CloudKitMigrationService

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting application...")

    image_store = LocalImageStore(settings.IMAGE_STORAGE_DIR)
    cloudkit = CloudKitService()
    # Requests get a copy bound to the caller's uid (see api.dependencies)
    firestore_service = FirestoreService(get_firestore_client(), image_store, current_user=lambda: None)

    app.state.image_store = image_store
    app.state.cloudkit_service = cloudkit
    app.state.firestore_service = firestore_service
    app.state.migration_service = CloudKitMigrationService(
        cloudkit=cloudkit,
        firestore=firestore_service,
        image_store=image_store,
        preferences=Preferences(settings.PREFERENCES_PATH),
        migration_key=settings.MIGRATION_KEY,
    )

    yield
    logger.info("Shutting down application...")


app = FastAPI(
    title="GoTravel Sync API",
    description="Travel plans, plans and visited places backed by Firestore, with a one-time CloudKit migration.",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.get("/", tags=["Root"])
def read_root():
    return {"status": "ok"}


# Include the routers
from api.routers import auth, travel_plans, plans, places, migration

# Mount all routers with the /api prefix
app.include_router(auth.router, prefix="/api")
app.include_router(travel_plans.router, prefix="/api")
app.include_router(plans.router, prefix="/api")
app.include_router(places.router, prefix="/api")
app.include_router(migration.router, prefix="/api")
