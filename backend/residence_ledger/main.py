"""Residence Ledger - FastAPI Entry Point."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from residence_ledger.config import settings
from residence_ledger.database import engine, Base
from residence_ledger.middleware.error_capture import ErrorCaptureMiddleware
from residence_ledger.api import accruals
import residence_ledger.models  # noqa: F401  (register tables on Base.metadata)

logging.basicConfig(
    level=getattr(logging, settings.log_level.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup (dev only)."""
    if settings.environment == "development":
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        logger.info("Development schema ensured")
    yield
    await engine.dispose()


app = FastAPI(
    title="Residence Ledger API",
    description="Rental accrual ledger and early lease end correction engine",
    version="0.1.0",
    lifespan=lifespan,
)

# Error capture middleware (outermost)
app.add_middleware(ErrorCaptureMiddleware)

# Routers
app.include_router(accruals.router, prefix="/api/accruals", tags=["Rental Accruals"])


@app.get("/api/health")
async def health_check():
    return {"status": "healthy", "service": "residence-ledger", "version": "0.1.0"}
