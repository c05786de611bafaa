"""
Orchestrator API Routes

Submit content generation jobs and poll their status.

    POST /api/orchestrator                 -> 202 {jobId, status: "queued", requestId}
    GET  /api/orchestrator?jobId=<id>      -> 200 full job record
    GET  /api/orchestrator/{job_id}        -> same, path form
"""
import json
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import JSONResponse

from app.config import get_settings
from app.middleware.rate_limit import limiter
from app.services.errors import InvalidJobRequest, JobStoreError
from app.services.orchestrator import JobOrchestrator
from app.utils.logger import logger

settings = get_settings()

router = APIRouter()


def get_orchestrator(request: Request) -> JobOrchestrator:
    return request.app.state.orchestrator


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


@router.post("")
@limiter.limit(settings.submit_rate_limit)
async def submit_job(request: Request, orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    """
    Queue a generate/refresh job.

    Returns immediately with the job id; execution happens in the background.
    Malformed bodies get a 400 and create nothing.
    """
    try:
        payload = await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        return _error(400, "request body must be valid JSON")

    try:
        ack = await orchestrator.submit_payload(payload)
    except InvalidJobRequest as exc:
        logger.info("job.rejected", extra={"error": str(exc)[:200]})
        return _error(400, str(exc))
    except JobStoreError as exc:
        logger.error("job.submit_failed", extra={"error": str(exc)[:200]})
        return _error(503, "job store unavailable")

    return JSONResponse(status_code=202, content=ack.to_dict())


@router.get("")
async def get_job_by_query(
    job_id: Optional[str] = Query(default=None, alias="jobId"),
    orchestrator: JobOrchestrator = Depends(get_orchestrator),
):
    """Poll a job by ?jobId=..."""
    if not job_id or not job_id.strip():
        return _error(400, "jobId required")
    return await _read_job(orchestrator, job_id.strip())


@router.get("/{job_id}")
async def get_job_by_path(job_id: str, orchestrator: JobOrchestrator = Depends(get_orchestrator)):
    """Poll a job by path segment"""
    return await _read_job(orchestrator, job_id)


async def _read_job(orchestrator: JobOrchestrator, job_id: str) -> JSONResponse:
    try:
        record = await orchestrator.get_job(job_id)
    except JobStoreError as exc:
        logger.error("job.read_failed", extra={"job_id": job_id, "error": str(exc)[:200]})
        return _error(503, "job store unavailable")

    if record is None:
        return _error(404, "job not found")
    return JSONResponse(status_code=200, content=record.to_dict())
