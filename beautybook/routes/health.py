"""Liveness endpoint for load balancers and uptime checks."""

import logging
from datetime import UTC, datetime

from fastapi import APIRouter

from beautybook.config import Config
from beautybook.config.supabase_config import get_initialization_status

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/health", tags=["health"])
async def health_check():
    """
    Simple health check endpoint

    Always answers 200 while the process serves requests. A failed Supabase
    initialization is reported as degraded mode in the body.
    """
    db_status = get_initialization_status()

    response = {
        "status": "healthy",
        "service": Config.SERVICE_NAME,
        "timestamp": datetime.now(UTC).isoformat(),
    }

    if db_status["has_error"]:
        response["database"] = "unavailable"
        response["mode"] = "degraded"
        response["database_error"] = db_status["error_type"]
    elif db_status["initialized"]:
        response["database"] = "connected"
    else:
        response["database"] = "not_initialized"

    return response
