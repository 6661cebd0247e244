from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from dotenv import load_dotenv
from typing import Optional
from contextlib import asynccontextmanager
import os
import logging
import traceback

from slowapi.errors import RateLimitExceeded
from slowapi import _rate_limit_exceeded_handler

from app.ai_service import CompletionService, OpenRouterCompletionService
from app.config import Capabilities, Settings, load_settings
from app.insights import InsightService
from app.jobs_api import router as jobs_router, batches_router, logs_router, insights_router
from app.rate_limit import limiter
from core.net import HTTPClient
from orchestrator import BatchRegistry, BulkDispatcher
from pipeline.extractor import SchemaExtractor
from pipeline.lifecycle import JobLifecycleManager
from pipeline.store import JobStore, PostgresJobStore, create_store
from pipeline.telemetry import TelemetryChannel

load_dotenv()

logging.basicConfig(
    level=os.getenv("APEXSCRAPE_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)


def create_app(
    store: Optional[JobStore] = None,
    fetcher: Optional[HTTPClient] = None,
    completion_service: Optional[CompletionService] = None,
    settings: Optional[Settings] = None,
) -> FastAPI:
    """
    Build the API application.

    Collaborators default to the environment-configured ones; tests pass fakes.
    """
    settings = settings or load_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Wire the pipeline onto app.state and tear it down on shutdown."""
        logger.info(f"[apexscrape] env: APEXSCRAPE_ENV={settings.env}")

        job_store = store or create_store()
        if isinstance(job_store, PostgresJobStore):
            try:
                await job_store.ensure_schema()
            except Exception as e:
                # Keep serving; requests that touch the store will report 503
                logger.error(f"[apexscrape] Could not ensure database schema: {e}")

        service = completion_service or OpenRouterCompletionService(timeout=settings.inference_timeout)
        telemetry = TelemetryChannel(job_store)
        manager = JobLifecycleManager(
            store=job_store,
            fetcher=fetcher or HTTPClient(
                user_agent=os.getenv("APEXSCRAPE_CRAWLER_UA"),
                contact_email=os.getenv("APEXSCRAPE_CONTACT_EMAIL"),
                timeout=settings.fetch_timeout,
            ),
            extractor=SchemaExtractor(service),
            telemetry=telemetry,
            max_chars=settings.max_content_chars,
            job_timeout=settings.job_timeout,
        )
        dispatcher = BulkDispatcher(
            manager,
            concurrency=settings.bulk_concurrency,
            pacing_seconds=settings.bulk_pacing_seconds,
            max_urls=settings.bulk_max_urls,
        )

        app.state.settings = settings
        app.state.store = job_store
        app.state.telemetry = telemetry
        app.state.manager = manager
        app.state.batches = BatchRegistry(dispatcher, ttl_seconds=settings.batch_ttl_seconds)
        app.state.insights = InsightService(job_store, service)
        logger.info(f"[apexscrape] Pipeline ready (store={type(job_store).__name__}, model={service.model})")

        yield

        # Shutdown
        await app.state.batches.shutdown()
        logger.info("[apexscrape] Shutdown complete")

    app = FastAPI(title="ApexScrape API", version="1.0.0", lifespan=lifespan)

    # Add rate limiter state
    app.state.limiter = limiter

    # Rate limit exceeded handler
    app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

    # Error masking middleware
    @app.middleware("http")
    async def error_masking_middleware(request: Request, call_next):
        """Mask detailed errors in production; show full errors in dev."""
        try:
            response = await call_next(request)
            return response
        except HTTPException:
            # Let HTTPException propagate untouched (proper status codes like 404, 400, etc.)
            raise
        except Exception as e:
            logger.error(f"Unhandled error: {str(e)}")
            if settings.is_dev:
                logger.error(traceback.format_exc())
                return JSONResponse(
                    status_code=500,
                    content={
                        "status": "error",
                        "data": None,
                        "error": str(e),
                        "traceback": traceback.format_exc(),
                    },
                )
            return JSONResponse(
                status_code=500,
                content={
                    "status": "error",
                    "data": None,
                    "error": "An internal error occurred. Please try again later.",
                },
            )

    allowed_origins = [
        origin.strip()
        for origin in os.getenv("APEXSCRAPE_CORS_ORIGINS", "http://localhost:8081,http://localhost:19006").split(",")
        if origin.strip()
    ]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    app.include_router(jobs_router)
    app.include_router(batches_router)
    app.include_router(logs_router)
    app.include_router(insights_router)

    @app.get("/api/healthz")
    async def healthz():
        return Capabilities.get_status()

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=int(os.getenv("PORT", "8000")))
