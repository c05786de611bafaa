"""
Shared slowapi limiter.

Counters live in memory by default; point RATE_LIMIT_STORAGE_URI at Redis
(redis://...) when several API processes sit behind one load balancer.
"""
from fastapi import Request
from fastapi.responses import JSONResponse
from slowapi import Limiter
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from app.config import get_settings
from app.utils.logger import logger

settings = get_settings()

limiter = Limiter(key_func=get_remote_address, storage_uri=settings.rate_limit_storage_uri)


async def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> JSONResponse:
    logger.warning(
        "request.rate_limited",
        extra={"path": request.url.path, "client_ip": get_remote_address(request)},
    )
    return JSONResponse(status_code=429, content={"error": f"rate limit exceeded: {exc.detail}"})
