"""
Procurement Workflow Hub - Main Server

Entry point. Routes are organized in /routes/, engine logic in /services/.
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
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# ==================== ROUTERS ====================
from routes import workflows, config

# ==================== SERVICES ====================
from services.batch import BulkOperationCoordinator, GroupCoordinator, FanoutLinker
from services.record_store import WorkflowRecordStore
from services.workflow_engine import WorkflowEngine
from services.workflow_events import WorkflowEventBus
from services.workflow_registry import WorkflowRegistry

# ==================== DATABASE ====================
MONGO_URL = os.environ.get("MONGO_URL", "mongodb://localhost:27017")
DB_NAME = os.environ.get("DB_NAME", "procurement_workflow")

db = None
mongo_client = None
services = {}


def wire_services(database) -> dict:
    """Build the engine and coordinators over a database and hand them to the routers."""
    registry = WorkflowRegistry(database)
    records = WorkflowRecordStore(database)
    events = WorkflowEventBus()
    engine = WorkflowEngine(registry, records, events)
    bulk = BulkOperationCoordinator(engine)
    groups = GroupCoordinator(records, bulk)
    fanout = FanoutLinker(database, records)

    workflows.set_dependencies(database, engine, bulk, groups, fanout)
    config.set_dependencies(database, registry)

    return {
        "registry": registry,
        "records": records,
        "engine": engine,
        "events": events,
        "bulk": bulk,
        "groups": groups,
        "fanout": fanout,
    }


# ==================== LIFESPAN ====================
@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application startup and shutdown."""
    global db, mongo_client, services

    # Startup
    logger.info("Starting Procurement Workflow Hub...")

    mongo_client = AsyncIOMotorClient(MONGO_URL)
    db = mongo_client[DB_NAME]

    services = wire_services(db)
    await create_indexes()

    logger.info("Procurement Workflow Hub started successfully")

    yield

    # Shutdown
    logger.info("Shutting down Procurement Workflow Hub...")
    if mongo_client:
        mongo_client.close()


async def create_indexes():
    """Create database indexes."""
    await services["registry"].create_indexes()
    await services["records"].create_indexes()
    await services["fanout"].create_indexes()

    logger.info("Database indexes created")


# ==================== APP SETUP ====================
app = FastAPI(
    title="Procurement Workflow Hub",
    description="Configurable multi-stage approval workflows for procurement records",
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

api_router.include_router(workflows.router)
api_router.include_router(config.router)


@api_router.get("/health")
async def health():
    return {
        "status": "healthy",
        "service": "procurement-workflow-hub"
    }


# Mount to app
app.include_router(api_router)


# ==================== ROOT ENDPOINTS ====================
@app.get("/")
async def root():
    return {
        "service": "Procurement Workflow Hub",
        "version": "1.0.0",
        "status": "running"
    }
