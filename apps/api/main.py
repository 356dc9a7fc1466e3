"""
Credit Ledger API - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import (
    health,
    credits,
    allocations,
    reports,
    dashboard,
    directory,
)
from services.allocations import run_due


async def _periodic_allocation_run() -> None:
    interval_minutes = max(int(settings.ALLOCATION_LOOP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        try:
            report = await run_due()
            if report.rules or report.expired_wallets:
                print(
                    f"💳 Allocation tick: granted={len(report.grants)} "
                    f"failed={len(report.failures)} expired={report.expired_wallets}"
                )
        except Exception as exc:
            print(f"⚠️ Allocation tick failed: {exc}")
        await asyncio.sleep(interval_minutes * 60)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Credit Ledger API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    allocation_task = None
    if settings.ALLOCATION_LOOP_ENABLED and int(settings.ALLOCATION_LOOP_INTERVAL_MINUTES) > 0:
        allocation_task = asyncio.create_task(_periodic_allocation_run())
        print(
            "📅 Allocation loop enabled "
            f"(every {int(settings.ALLOCATION_LOOP_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if allocation_task is not None:
        allocation_task.cancel()
        try:
            await allocation_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Credit Ledger API",
    description="Organization and member credit wallets, allocation rules and usage reports",
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

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(credits.router, prefix="/credits", tags=["Credits"])
app.include_router(allocations.router, prefix="/allocations", tags=["Allocations"])
app.include_router(reports.router, prefix="/reports", tags=["Reports"])
app.include_router(dashboard.router, prefix="/dashboard", tags=["Dashboard"])
app.include_router(directory.router, prefix="/directory", tags=["Directory"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Credit Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
