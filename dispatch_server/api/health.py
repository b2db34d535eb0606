"""Liveness and readiness endpoints."""

from fastapi import APIRouter, Depends, Response, status

from dispatch_server import __version__
from ..models.schemas import HealthResponse, ReadyResponse
from ..services import ReadinessAggregator
from .dependencies import get_readiness

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
async def health():
    """Liveness: the process is up. Touches no dependency."""
    return {"status": "ok", "version": __version__}


@router.get("/ready", response_model=ReadyResponse)
async def ready(
    response: Response,
    readiness: ReadinessAggregator = Depends(get_readiness)
):
    """Readiness: 503 unless every dependency probe succeeded."""
    report = await readiness.check()
    if not report.ok:
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return {
        "status": "ok" if report.ok else "error",
        "details": report.details,
    }
