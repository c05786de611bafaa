from datetime import datetime, timezone

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from app.services.providers import provider_readiness
from app.utils.metrics import get_snapshot

router = APIRouter(tags=["Health"])


@router.get("/health")
async def health_check():
    return {"status": "ok"}


@router.get("/health/ready")
async def readiness(request: Request):
    """Store connectivity, breaker states and which providers have credentials"""
    orchestrator = request.app.state.orchestrator
    settings = request.app.state.settings

    store_ready = await orchestrator.store.ping()
    body = {
        "status": "ok" if store_ready else "degraded",
        "storeReady": store_ready,
        "circuits": orchestrator.breakers.get_states(),
        "providers": provider_readiness(settings),
        "inFlightJobs": orchestrator.in_flight,
        "pendingRetries": orchestrator.scheduler.pending,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    return JSONResponse(status_code=200 if store_ready else 503, content=body)


@router.get("/metrics")
async def metrics():
    return get_snapshot()
