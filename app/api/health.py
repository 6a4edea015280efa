from fastapi import APIRouter, Depends
from typing import Dict, Any

from ..core.recovery.service import ErrorRecoveryService, get_recovery_service

router = APIRouter()


@router.get("/healthz")
async def health_check(
    service: ErrorRecoveryService = Depends(get_recovery_service),
) -> Dict[str, Any]:
    """Health check endpoint that reports recovery worker status"""
    status = service.status()

    return {
        "status": "healthy" if status["workerRunning"] else "degraded",
        "recovery": status,
    }
