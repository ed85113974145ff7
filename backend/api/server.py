# api/server.py
# ============================================================================
# COMMERCE BACKEND — FASTAPI SERVER
# ============================================================================
# App factory with CORS, timing headers, error rendering, health check and
# lifespan-managed store / gateway / background sweep.
# ============================================================================

import asyncio
import os
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

import structlog
import uvicorn
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from pydantic import ValidationError as SchemaValidationError

from api.commerce_routes import router as commerce_router
from api.payment_routes import router as payment_router
from config import Settings
from logging_config import configure_logging
from pipeline.errors import CommerceError
from pipeline.exchange_rates import ExchangeRateClient
from pipeline.gateway import PaymentGateway
from pipeline.providers import AdapterRegistry, build_registry
from services.commerce_service import CommerceService
from services.notifications import LogOnlyEmailSender, Notifier, SendGridEmailSender
from storage import EntityStore, IUploadUrlGenerator, S3UploadUrlGenerator, create_store
from tasks.expiry_sweep import ExpirySweepConfig, expiry_loop

logger = structlog.get_logger().bind(component="server")

VERSION = "1.0.0"


class HealthResponse(BaseModel):
    """Health check response"""
    status: str
    version: str
    uptime_seconds: float
    providers: list


def build_notifier(settings: Settings) -> Notifier:
    if settings.sendgrid_api_key:
        sender = SendGridEmailSender(settings.sendgrid_api_key, settings.sendgrid_from_email)
    else:
        sender = LogOnlyEmailSender()
    return Notifier(sender, admin_email=settings.notify_email)


# ============================================================================
# APP FACTORY
# ============================================================================

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[EntityStore] = None,
    adapters: Optional[AdapterRegistry] = None,
    rates: Optional[ExchangeRateClient] = None,
    notifier: Optional[Notifier] = None,
    uploads: Optional[IUploadUrlGenerator] = None,
) -> FastAPI:
    """
    Build the application. Every collaborator can be injected; anything not
    supplied is built from ``settings`` (default: ``Settings.from_env()``).
    """
    settings = settings or Settings.from_env()
    store = store or create_store(settings)
    adapters = adapters if adapters is not None else build_registry(settings)
    rates = rates or ExchangeRateClient(
        base_url=settings.exchange_rate_url,
        timeout_seconds=settings.http_timeout_seconds,
        cache_ttl_seconds=settings.exchange_rate_ttl_seconds,
    )
    notifier = notifier or build_notifier(settings)
    uploads = uploads or S3UploadUrlGenerator(
        bucket=settings.s3_bucket,
        region=settings.aws_region,
        expires_in_seconds=settings.upload_url_expiry_seconds,
    )

    gateway = PaymentGateway(store, adapters, rates, notifier, store_currency=settings.store_currency)
    commerce = CommerceService(store, gateway, notifier)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Startup and shutdown logic"""
        logger.info(
            "server_starting",
            version=VERSION,
            store_backend=settings.store_backend,
            providers=[a.kind.value for a in adapters],
        )
        await store.initialize()

        sweep_task = None
        sweep_config = ExpirySweepConfig.from_settings(settings)
        if sweep_config.enabled:
            sweep_task = asyncio.create_task(expiry_loop(store, sweep_config, gateway))

        yield

        logger.info("server_shutting_down")
        if sweep_task is not None:
            sweep_task.cancel()
            try:
                await sweep_task
            except asyncio.CancelledError:
                pass
        await gateway.close()
        await store.close()

    app = FastAPI(
        title="Commerce Backend",
        description="Orders, subscriptions and multi-provider payment reconciliation",
        version=VERSION,
        lifespan=lifespan,
    )

    app.state.settings = settings
    app.state.store = store
    app.state.gateway = gateway
    app.state.commerce = commerce
    app.state.uploads = uploads
    app.state.started_at = datetime.now(timezone.utc)

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ========================================================================
    # MIDDLEWARE
    # ========================================================================

    @app.middleware("http")
    async def add_timing_header(request: Request, call_next):
        """Add response timing and request ID headers"""
        request_id = str(uuid4())[:8]
        structlog.contextvars.bind_contextvars(request_id=request_id)
        start = time.perf_counter()

        try:
            response = await call_next(request)
        finally:
            structlog.contextvars.unbind_contextvars("request_id")

        duration = (time.perf_counter() - start) * 1000
        response.headers["X-Response-Time-Ms"] = f"{duration:.2f}"
        response.headers["X-Request-ID"] = request_id
        return response

    # ========================================================================
    # ERROR RENDERING
    # ========================================================================

    @app.exception_handler(CommerceError)
    async def commerce_error_handler(request: Request, exc: CommerceError):
        log = logger.warning if exc.status_code < 500 else logger.error
        log("request_failed", path=request.url.path, code=exc.code, status=exc.status_code, error=exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(SchemaValidationError)
    async def schema_error_handler(request: Request, exc: SchemaValidationError):
        errors = [
            {"field": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
            for err in exc.errors()
        ]
        return JSONResponse(
            status_code=400,
            content={"error": errors[0]["message"] if errors else "invalid input", "code": "validation_error", "detail": {"errors": errors}},
        )

    # ========================================================================
    # ENDPOINTS
    # ========================================================================

    @app.get("/health", response_model=HealthResponse)
    async def health_check():
        """Health check endpoint"""
        uptime = (datetime.now(timezone.utc) - app.state.started_at).total_seconds()
        return HealthResponse(
            status="healthy",
            version=VERSION,
            uptime_seconds=uptime,
            providers=[a.kind.value for a in adapters],
        )

    app.include_router(payment_router)
    app.include_router(commerce_router)
    return app


# ============================================================================
# MAIN
# ============================================================================

def main() -> None:
    settings = Settings.from_env()
    configure_logging(settings.log_level, json_output=settings.log_json)
    port = int(os.getenv("PORT", "8000"))
    uvicorn.run(
        create_app(settings),
        host="0.0.0.0",
        port=port,
        log_level=settings.log_level.lower(),
    )


if __name__ == "__main__":
    main()
