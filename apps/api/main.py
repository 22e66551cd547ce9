"""
Review Billing - FastAPI Backend
Subscription reconciliation and credit ledger API.
"""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import billing, health
from services.billing_sync import sync_all_accounts
from services.credits import audit_all_balances
from services.price_catalog import get_price_catalog


logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)


async def _periodic_balance_audit() -> None:
    interval_minutes = max(int(settings.BALANCE_AUDIT_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            drifted = await audit_all_balances()
            if drifted:
                print(f"⚠️ Credit balance audit: {len(drifted)} account(s) drifted from ledger.")
        except Exception as exc:
            print(f"⚠️ Credit balance audit tick failed: {exc}")


async def _periodic_subscription_sync() -> None:
    interval_minutes = max(int(settings.SUBSCRIPTION_SYNC_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            counts = await sync_all_accounts()
            print(
                f"🔄 Subscription sync: updated={counts['updated']} "
                f"in_sync={counts['already_in_sync']} failed={counts['failed']}"
            )
        except Exception as exc:
            print(f"⚠️ Subscription sync tick failed: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Review Billing API...")
    validate_security_settings()
    catalog = get_price_catalog()
    print(f"💳 Price catalog loaded with {len(catalog)} price(s).")
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        drifted = await audit_all_balances()
        if drifted:
            print(f"⚠️ {len(drifted)} credit balance(s) differ from the ledger; rebuild via admin endpoint.")
    except Exception as exc:
        print(f"⚠️ Startup balance audit skipped: {exc}")

    audit_task = None
    sync_task = None
    if int(settings.BALANCE_AUDIT_INTERVAL_MINUTES) > 0:
        audit_task = asyncio.create_task(_periodic_balance_audit())
        print(f"📅 Balance audit loop enabled (every {int(settings.BALANCE_AUDIT_INTERVAL_MINUTES)} min).")
    if int(settings.SUBSCRIPTION_SYNC_INTERVAL_MINUTES) > 0:
        sync_task = asyncio.create_task(_periodic_subscription_sync())
        print(f"📅 Subscription sync loop enabled (every {int(settings.SUBSCRIPTION_SYNC_INTERVAL_MINUTES)} min).")
    yield
    # Shutdown
    for task in (audit_task, sync_task):
        if task is None:
            continue
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Review Billing API",
    description="Subscription reconciliation and credit ledger for review-management accounts",
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
app.include_router(billing.router, prefix="/billing", tags=["Billing"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Review Billing API",
        "version": "0.1.0",
        "status": "running"
    }
