from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded

from app.config import Settings, get_settings
from app.middleware.correlation import CorrelationMiddleware
from app.middleware.rate_limit import limiter, rate_limit_exceeded_handler
from app.routes import health, orchestrator as orchestrator_routes
from app.services.circuit_breaker import CircuitBreakerRegistry
from app.services.content_pipeline import ContentPipeline
from app.services.job_store import build_job_store
from app.services.orchestrator import JobOrchestrator, always_retryable, terminal_errors_fail_fast
from app.services.providers import build_providers
from app.utils.logger import logger


def build_orchestrator(settings: Settings) -> JobOrchestrator:
    """Wire store, breakers, providers and the content pipeline together."""
    store = build_job_store(settings)
    breakers = CircuitBreakerRegistry.from_settings(settings)
    providers = build_providers(settings)
    pipeline = ContentPipeline(
        breakers,
        search=providers["search"],
        ai=providers["ai"],
        publisher=providers["publisher"],
    )
    return JobOrchestrator(
        store,
        pipeline.run,
        breakers=breakers,
        max_retries=settings.job_max_retries,
        classify_error=always_retryable if settings.retry_terminal_errors else terminal_errors_fail_fast,
        cache_size=settings.job_cache_size,
    )


def create_app(settings: Optional[Settings] = None, orchestrator: Optional[JobOrchestrator] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        job_orchestrator = orchestrator or build_orchestrator(settings)
        logger.info("Starting Content Job Orchestrator...")
        await job_orchestrator.store.initialize()
        app.state.orchestrator = job_orchestrator
        app.state.settings = settings
        logger.info(f"Backend ready at http://{settings.backend_host}:{settings.backend_port}")
        try:
            yield
        finally:
            await job_orchestrator.shutdown()
            await job_orchestrator.store.close()

    app = FastAPI(title=settings.app_name, version=settings.app_version, lifespan=lifespan)
    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)

    # CORS - Explicit origins for security
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins_list,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type", "X-Correlation-ID"],
    )
    app.add_middleware(CorrelationMiddleware)

    # Root endpoint (minimal response to prevent information disclosure)
    @app.get("/")
    async def root():
        return {"status": "ok"}

    app.include_router(health.router)
    app.include_router(orchestrator_routes.router, prefix="/api/orchestrator", tags=["Orchestrator"])
    return app


app = create_app()

if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    uvicorn.run(
        "app.main:app",
        host=settings.backend_host,
        port=settings.backend_port,
        reload=settings.debug
    )
