"""
Compliance Case Hub - Main Server

Entry point for the compliance approval workflows API. Routes are organized
in /routes/, workflow logic in /services/.
"""

from fastapi import FastAPI, APIRouter
from dotenv import load_dotenv
load_dotenv()  # Load .env file before any os.environ calls
from starlette.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from contextlib import asynccontextmanager
import logging

from services import workflow_config

# Configure logging
logging.basicConfig(
    level=getattr(logging, workflow_config.LOG_LEVEL, logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

# ==================== ROUTERS ====================
from routes import auth, approvals, notifications

# ==================== SERVICES ====================
from services.blob_store import create_blob_store
from services.case_store import MongoCaseStore
from services.notification_service import MongoNotifier
from services.workflow_orchestrator import ApprovalWorkflowService

db = None
mongo_client = None


# ==================== LIFESPAN ====================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global db, mongo_client

    logger.info("Starting Compliance Case Hub...")

    mongo_client = AsyncIOMotorClient(workflow_config.MONGO_URL)
    db = mongo_client[workflow_config.DB_NAME]

    case_store = MongoCaseStore(db)
    notifier = MongoNotifier(db)
    blob_store = create_blob_store()
    service = ApprovalWorkflowService(case_store, blob_store, notifier)

    # Initialize routers with dependencies
    auth.set_db(db)
    approvals.set_dependencies(service)
    notifications.set_dependencies(notifier)

    # Create indexes
    await case_store.create_indexes()
    await notifier.create_indexes()
    await db.users.create_index("id", unique=True)

    logger.info(
        "Compliance Case Hub started (db=%s, blob_store=%s)",
        workflow_config.DB_NAME, workflow_config.BLOB_STORE_PROVIDER
    )

    yield

    logger.info("Shutting down Compliance Case Hub...")
    if mongo_client:
        mongo_client.close()


# ==================== APP SETUP ====================
app = FastAPI(
    title="Compliance Case Hub",
    description="KYC and BRA approval workflows",
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

api_router.include_router(auth.router)
api_router.include_router(approvals.router)
api_router.include_router(notifications.router)


# ==================== ROOT ENDPOINTS ====================
@api_router.get("/health")
async def health():
    return {
        "status": "healthy",
        "service": "compliance-case-hub"
    }


# Mount to app
app.include_router(api_router)


@app.get("/")
async def root():
    return {
        "service": "Compliance Case Hub",
        "version": "1.0.0",
        "status": "running"
    }
