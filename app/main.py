from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
import logging

# Import database components
from app.database.database import engine, Base
import app.database.models  # noqa: F401  registers all tables on Base.metadata

# Import middleware and error handlers
from app.common.middleware import TenantMiddleware, SecurityHeadersMiddleware
from app.common.errors import register_exception_handlers

# Approval outcome handlers
from app.core.registry import build_approval_handlers

# Import routers
from app.modules.inventory.router import inventory_router
from app.modules.approvals.router import router as approvals_router
from app.modules.transfers.bulk_router import bulk_router
from app.modules.transfers.router import router as transfers_router

from app.core.config import settings

# Configure logging
logging.basicConfig(
    level=logging.INFO if settings.ENVIRONMENT == "production" else logging.DEBUG,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

# FastAPI app
app = FastAPI(
    title="POS Backend API",
    description="Multi-tenant point-of-sale backend with approval-gated inventory transfers",
    version="1.0.0",
    docs_url="/docs" if settings.ENVIRONMENT != "production" else None,
    redoc_url="/redoc" if settings.ENVIRONMENT != "production" else None
)

app.state.approval_handlers = build_approval_handlers()

register_exception_handlers(app)

# Add middleware (order matters!)
app.add_middleware(GZipMiddleware, minimum_size=1000)
app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(TenantMiddleware)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Add your frontend URLs
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(inventory_router, prefix="/api/v1")
app.include_router(approvals_router, prefix="/api/v1")
app.include_router(bulk_router, prefix="/api/v1")  # before transfers_router, which matches /{transfer_id}
app.include_router(transfers_router, prefix="/api/v1")

# Create database tables (only for development - use migrations in production)
if settings.ENVIRONMENT == "development":
    Base.metadata.create_all(bind=engine)

@app.get("/")
async def read_root():
    return {
        "message": "POS Backend API is running",
        "version": "1.0.0",
        "environment": settings.ENVIRONMENT
    }

@app.get("/health")
async def health_check():
    return {"status": "healthy", "environment": settings.ENVIRONMENT}

@app.on_event("startup")
async def startup_event():
    logger.info("POS Backend API starting up...")
    logger.info(f"Environment: {settings.ENVIRONMENT}")
    logger.info(f"Debug mode: {settings.DEBUG}")

@app.on_event("shutdown")
async def shutdown_event():
    logger.info("POS Backend API shutting down...")
