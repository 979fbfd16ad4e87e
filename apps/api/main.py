"""
Licence Ledger - FastAPI Backend
Main application entry point with health check and API routing.
"""

import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from contextlib import asynccontextmanager
from sqlalchemy.exc import SQLAlchemyError

from config import settings, validate_security_settings
from database import async_session_maker, engine, Base
import models  # noqa: F401
from routers import (
    health,
    licenses,
    billing,
    plans,
    admin,
)
from services.errors import InternalError, LicenceError, ValidationError
from services.plans import seed_default_plans
from services.system_settings import seed_default_settings

logger = logging.getLogger(__name__)


async def _seed_catalog() -> None:
    async with async_session_maker() as db:
        plans_created = await seed_default_plans(db)
        settings_created = await seed_default_settings(db)
    if plans_created or settings_created:
        print(f"🌱 Seeded {plans_created} plans and {settings_created} system settings.")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Licence Ledger API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    if settings.SEED_DEFAULT_CATALOG:
        try:
            await _seed_catalog()
        except Exception as exc:
            print(f"⚠️ Catalog seeding skipped: {exc}")
    if not settings.REALTIME_ENABLED:
        print("🔕 Realtime events disabled.")
    yield
    # Shutdown
    await engine.dispose()
    print("👋 Shutting down API...")


app = FastAPI(
    title="Licence Ledger API",
    description="Sell, extend and administer time-bounded licences paid in money or credits",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(LicenceError)
async def licence_error_handler(request: Request, exc: LicenceError):
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload())


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    error = ValidationError("Request validation failed", errors=jsonable_encoder(exc.errors()))
    return JSONResponse(status_code=error.status_code, content=error.to_payload())


@app.exception_handler(SQLAlchemyError)
async def storage_error_handler(request: Request, exc: SQLAlchemyError):
    logger.exception("Storage failure on %s %s", request.method, request.url.path)
    error = InternalError("Storage failure. Please retry.")
    return JSONResponse(status_code=error.status_code, content=error.to_payload())


# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(licenses.router, prefix="/licenses", tags=["Licenses"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(plans.router, prefix="/plans", tags=["Plans"])
app.include_router(admin.router, prefix="/admin", tags=["Admin"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Licence Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
