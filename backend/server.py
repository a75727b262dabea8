"""
Distribution Hub - Main Server

Entry point. Routes are organized in /routes/, workflow logic in
/services/distribution/.
"""

from dotenv import load_dotenv
load_dotenv()  # Load .env file before any os.environ calls

from fastapi import FastAPI, APIRouter
from fastapi.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from contextlib import asynccontextmanager
import logging

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ==================== ROUTERS ====================
from routes import auth, distributions

# ==================== SERVICES ====================
from services.distribution_config import MONGO_URL, DB_NAME, get_settings
from services.distribution.catalog import MongoDocumentCatalog
from services.distribution.store import MongoDistributionStore
from services.distribution.service import DistributionService

db = None
mongo_client = None


# ==================== LIFESPAN ====================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global db, mongo_client

    # Startup
    logger.info("Starting Distribution Hub...")

    # Connect to MongoDB
    mongo_client = AsyncIOMotorClient(MONGO_URL)
    db = mongo_client[DB_NAME]

    store = MongoDistributionStore(db)
    catalog = MongoDocumentCatalog(db)
    distributions.set_service(DistributionService(
        store,
        catalog,
        location_tracker=catalog,
        settings=get_settings(),
    ))

    # Create indexes
    await store.create_indexes()

    logger.info("Distribution Hub started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Distribution Hub...")
    if mongo_client:
        mongo_client.close()


# ==================== APP SETUP ====================
app = FastAPI(
    title="Distribution Hub",
    description="Verified document distribution between departments",
    version="1.0.0",
    lifespan=lifespan
)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API Router with /api prefix
api_router = APIRouter(prefix="/api")

# Include route modules
api_router.include_router(auth.router)
api_router.include_router(distributions.router)

# Mount to app
app.include_router(api_router)


# ==================== ROOT ENDPOINTS ====================
@app.get("/")
async def root():
    return {
        "service": "Distribution Hub",
        "version": "1.0.0",
        "status": "running"
    }


@app.get("/api/health")
async def health():
    return {
        "status": "healthy",
        "service": "distribution-hub"
    }
