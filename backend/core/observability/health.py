"""Health and readiness endpoints."""

from importlib import metadata
from typing import Any

from fastapi import APIRouter
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from backend.core.cache_store import get_engine
from backend.core.observability.logging import logger

router = APIRouter()


def get_version() -> str:
    """Get application version from installed package metadata."""
    try:
        return metadata.version("ar-dunning-cache")
    except metadata.PackageNotFoundError:
        return "dev"


def check_database(engine: Engine | None = None) -> str:
    """Check cache store connectivity with a light query."""
    engine = engine or get_engine()
    try:
        with engine.connect() as conn:
            row = conn.execute(text("SELECT 1 AS health_check")).first()
        return "OK" if row and row.health_check == 1 else "FAIL"
    except SQLAlchemyError as exc:
        logger.warning("database_health_failed", extra={"error": str(exc)})
        return "FAIL"


@router.get("/health/ready")
def readiness_check() -> dict[str, Any]:
    """Readiness endpoint for load balancers."""
    db_status = check_database()
    return {
        "status": "OK" if db_status == "OK" else "DEGRADED",
        "version": get_version(),
        "db": db_status,
    }


@router.get("/health/live")
def liveness_check() -> dict[str, str]:
    """Liveness endpoint - always OK if service is running."""
    return {"status": "OK"}
