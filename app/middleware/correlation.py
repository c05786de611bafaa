"""
Correlation ID middleware for request tracing.

Generates a UUID4 correlation ID per request (or accepts X-Correlation-ID from client).
Stores it in contextvars so log records emitted while serving the request carry it.
"""
import uuid
import time
import contextvars
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="")


def get_correlation_id() -> str:
    """Get the current request's correlation ID"""
    return correlation_id_var.get("")


class CorrelationMiddleware(BaseHTTPMiddleware):
    """
    Middleware that:
    1. Generates or accepts X-Correlation-ID
    2. Stores it in contextvars for log propagation
    3. Logs request completion with timing
    4. Returns correlation ID in response headers
    """

    async def dispatch(self, request: Request, call_next) -> Response:
        from app.utils.logger import logger

        cid = request.headers.get("x-correlation-id") or str(uuid.uuid4())
        token = correlation_id_var.set(cid)

        start = time.monotonic()
        method = request.method
        path = request.url.path

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "request.failed",
                extra={
                    "method": method,
                    "path": path,
                    "duration_ms": round((time.monotonic() - start) * 1000),
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                }
            )
            raise
        finally:
            correlation_id_var.reset(token)

        status = response.status_code
        log_fn = logger.warning if status >= 500 else logger.info
        log_fn(
            "request.completed",
            extra={
                "correlation_id": cid,
                "method": method,
                "path": path,
                "status": status,
                "duration_ms": round((time.monotonic() - start) * 1000),
                "client_ip": request.client.host if request.client else "",
            }
        )

        response.headers["X-Correlation-ID"] = cid
        return response
