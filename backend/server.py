"""
PaySys Approvals - Main Server

Entry point for the approval engine API. Routes are organized in /routes/.
"""

from dotenv import load_dotenv
load_dotenv()  # Load .env file before any os.environ calls

from fastapi import FastAPI, APIRouter
from fastapi.middleware.cors import CORSMiddleware
from motor.motor_asyncio import AsyncIOMotorClient
from contextlib import asynccontextmanager
import os
import logging

# Configure logging
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

# ==================== ROUTERS ====================
from routes import documents_router, workflows_router, chat_router, workflow_error_handler, set_dependencies

# ==================== SERVICES ====================
from services.errors import WorkflowError
from services.document_store import InMemoryDocumentStore, MongoDocumentStore
from services.locks import LockManager
from services.notification_dispatcher import NotificationDispatcher, build_default_providers
from services.workflow_engine import TransitionExecutor
from services.workflow_registry import WorkflowRegistry

# ==================== DATABASE ====================
MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "paysys")
STORE_BACKEND = os.environ.get("STORE_BACKEND", "mongo").lower()
CORS_ORIGINS = os.environ.get("CORS_ORIGINS", "*").split(",")

mongo_client = None
executor = None
dispatcher = None


# ==================== LIFESPAN ====================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global mongo_client, executor, dispatcher

    # Startup
    logger.info("Starting PaySys approvals (store=%s)...", STORE_BACKEND)

    db = None
    if STORE_BACKEND == "memory":
        store = InMemoryDocumentStore()
    else:
        mongo_client = AsyncIOMotorClient(MONGO_URL)
        db = mongo_client[DB_NAME]
        store = MongoDocumentStore(db)
        await store.create_indexes(WorkflowRegistry.get_all_doc_types())

    dispatcher = NotificationDispatcher(build_default_providers(db))
    executor = TransitionExecutor(store, LockManager(), dispatcher)
    set_dependencies(executor)

    logger.info("PaySys approvals started; channels: %s", sorted(dispatcher.providers))

    yield

    # Shutdown
    logger.info("Shutting down PaySys approvals...")
    await dispatcher.drain()
    if mongo_client:
        mongo_client.close()


# ==================== APP SETUP ====================
app = FastAPI(
    title="PaySys Approvals",
    description="Role-gated approval chains for payment orders, exit permits, security logs and dispatch notes",
    version="1.0.0",
    lifespan=lifespan
)

app.add_exception_handler(WorkflowError, workflow_error_handler)

# CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# API Router with /api prefix
api_router = APIRouter(prefix="/api")

api_router.include_router(documents_router)
api_router.include_router(workflows_router)
api_router.include_router(chat_router)


@api_router.get("/health")
async def health():
    return {
        "status": "healthy",
        "service": "paysys-approvals",
        "store": STORE_BACKEND,
        "pending_notifications": dispatcher.pending if dispatcher else 0
    }


# Mount to app
app.include_router(api_router)


@app.get("/")
async def root():
    return {
        "service": "PaySys Approvals",
        "version": "1.0.0",
        "status": "running"
    }
