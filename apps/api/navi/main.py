"""FastAPI application entry point."""
import logging

from fastapi import FastAPI
from sqlalchemy import text

from navi.core.config import settings
from navi.core.structured_logging import configure_logging
from navi.db.session import engine

configure_logging()
logger = logging.getLogger(__name__)

# ============================================================================
# FastAPI App
# ============================================================================

app = FastAPI(
    title="Navi API",
    description="Automation sequences, broadcasts and polling jobs",
    version=settings.VERSION,
    docs_url="/docs" if settings.is_dev else None,
    redoc_url="/redoc" if settings.is_dev else None,
)

# ============================================================================
# Routers
# ============================================================================

from navi.routers import automation, internal, tracking, unsubscribe  # noqa: E402

# Internal endpoints (scheduled/cron jobs - protected by INTERNAL_SECRET)
app.include_router(internal.router)

# CRM events
app.include_router(automation.router)

# Public email endpoints
app.include_router(tracking.router)
app.include_router(unsubscribe.router)


@app.get("/health")
def health():
    """Liveness plus a database round-trip."""
    with engine.connect() as conn:
        conn.execute(text("SELECT 1"))
    return {"status": "ok", "version": settings.VERSION, "env": settings.ENV}
