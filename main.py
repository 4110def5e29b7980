"""
Image Gateway Web Application
FastAPI backend that mediates image generation across upstream gateways,
meters token usage per user and credits purchased tokens from payment webhooks.
"""

import os
import time
import logging
from datetime import datetime
from typing import Optional, Any, Callable

import aiohttp
from fastapi import FastAPI, BackgroundTasks, Header, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from config import Settings, load_settings, configure_logging, log_settings_summary
from db_store import Database, BalanceStore, PurchaseLedger, JobLogStore, PendingJobStore
from errors import GatewayError, ValidationError
from gateway import Dispatcher
from generation_service import GenerationService
from identity import Identity, IdentityVerifier
from job_queue import JobQueue
from metering_service import MeteringService
from models import GenerationRequest
from webhook_service import (
    TOKEN_PACKAGES,
    DodoWebhookVerifier,
    WebhookProcessor,
    build_dodo_client,
    create_checkout_session,
)

logger = logging.getLogger(__name__)

APP_VERSION = "1.0.0"


class JobsStatusBody(BaseModel):
    jobIds: Optional[Any] = None


class CheckoutBody(BaseModel):
    packageId: str


class ByoKeyBody(BaseModel):
    apiKey: Optional[str] = None


class LogResizeBody(BaseModel):
    batchId: Optional[str] = None
    imageSize: Optional[str] = None
    imagesCount: Optional[int] = None
    elapsedMs: Optional[int] = None
    aspectRatio: Optional[str] = None


def create_app(
    settings: Optional[Settings] = None,
    db: Optional[Database] = None,
    session_factory: Callable = aiohttp.ClientSession,
    webhook_verifier: Optional[DodoWebhookVerifier] = None,
    dodo_client: Any = None,
) -> FastAPI:
    """Wire components together. Every collaborator can be injected for tests."""
    if settings is None:
        settings = load_settings()
        configure_logging(settings.log_level)
        log_settings_summary(settings, logger)

    os.makedirs(settings.temp_dir, exist_ok=True)
    if db is None:
        db = Database(settings.database_url, settings.sqlite_path)
    db.init_db()

    balances = BalanceStore(db)
    ledger = PurchaseLedger(db)
    job_log = JobLogStore(db)
    pending_jobs = PendingJobStore(db)

    identity_verifier = IdentityVerifier(settings)
    dispatcher = Dispatcher(settings, session_factory=session_factory)
    metering = MeteringService(settings, balances, job_log)
    generation = GenerationService(settings, dispatcher, metering, balances)
    job_queue = JobQueue(pending_jobs, generation)

    if dodo_client is None:
        dodo_client = build_dodo_client(settings)
    if webhook_verifier is None:
        webhook_verifier = DodoWebhookVerifier(dodo_client, settings.dodo_webhook_key)
    webhooks = WebhookProcessor(webhook_verifier, ledger, balances)

    app = FastAPI(
        title="Image Gateway",
        version=APP_VERSION,
        docs_url="/docs" if settings.is_dev else None,
        redoc_url="/redoc" if settings.is_dev else None,
    )
    app.state.settings = settings
    app.state.db = db

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.is_dev else list(settings.allowed_origins),
        allow_credentials=False,
        allow_methods=["*"] if settings.is_dev else ["GET", "POST", "OPTIONS"],
        allow_headers=["*"] if settings.is_dev else ["Content-Type", "Authorization"],
    )

    @app.middleware("http")
    async def add_security_headers(request, call_next):
        """Add security headers to all responses."""
        response = await call_next(request)
        response.headers["X-Content-Type-Options"] = "nosniff"
        response.headers["X-Frame-Options"] = "DENY"
        response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"
        response.headers["Referrer-Policy"] = "strict-origin-when-cross-origin"
        return response

    @app.exception_handler(GatewayError)
    async def gateway_error_handler(request: Request, exc: GatewayError):
        if exc.status_code >= 500:
            logger.error(f"{request.url.path} failed: {exc.error_code} {exc.message}")
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        first = exc.errors()[0] if exc.errors() else {}
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"Invalid request body: {field or 'payload'} {first.get('msg', '')}".strip()
        return JSONResponse(status_code=400, content=ValidationError(message).to_dict())

    def authenticate(authorization: Optional[str]) -> Identity:
        return identity_verifier.verify(authorization)

    async def read_generation_request(request: Request) -> GenerationRequest:
        # Shape errors are raised later by validation so the attempt is logged
        try:
            payload = await request.json()
        except ValueError:
            logger.warning(f"{request.url.path}: body is not valid JSON")
            payload = None
        return GenerationRequest.from_payload(payload)

    # ============= GENERATION ROUTES =============

    @app.post("/api/process-image")
    async def process_image(request: Request, authorization: Optional[str] = Header(None)):
        """Synchronous generation: one upstream call, metered before returning."""
        identity = authenticate(authorization)
        generation_request = await read_generation_request(request)
        return await generation.generate(identity, generation_request)

    @app.post("/api/enqueue-job", status_code=202)
    async def enqueue_job(
        request: Request,
        background_tasks: BackgroundTasks,
        authorization: Optional[str] = Header(None),
    ):
        """Queue a generation and process it after the response is sent."""
        identity = authenticate(authorization)
        generation_request = await read_generation_request(request)
        queued = job_queue.enqueue(identity, generation_request)
        background_tasks.add_task(job_queue.process, queued["jobId"], identity)
        return queued

    @app.post("/api/jobs-status")
    async def jobs_status(body: JobsStatusBody, authorization: Optional[str] = Header(None)):
        identity = authenticate(authorization)
        return job_queue.status(identity.user_id, body.jobIds)

    @app.get("/api/job-status/{job_id}")
    async def job_status(job_id: str, authorization: Optional[str] = Header(None)):
        identity = authenticate(authorization)
        jobs = job_queue.status(identity.user_id, [job_id])["jobs"]
        return {"jobId": job_id, **jobs[job_id]}

    @app.post("/api/log-resize")
    async def log_resize(body: LogResizeBody, authorization: Optional[str] = Header(None)):
        """Record a client-side resize. Best effort: always 200, guests allowed."""
        user_id = None
        if authorization:
            try:
                user_id = authenticate(authorization).user_id
            except GatewayError as e:
                logger.warning(f"log-resize with unusable credential: {e.message}")

        outcome = metering.record_local_operation(
            user_id,
            request_id=f"resize-{int(time.time() * 1000)}",
            image_count=body.imagesCount or 1,
            image_size=body.imageSize or "1K",
            elapsed_ms=body.elapsedMs or 0,
            batch_id=body.batchId,
        )
        return {"success": True, "logged": not outcome.advisory_errors}

    # ============= BILLING ROUTES =============

    @app.post("/api/billing/checkout")
    async def create_checkout(body: CheckoutBody, authorization: Optional[str] = Header(None)):
        """Create hosted Dodo checkout session for a token package."""
        identity = authenticate(authorization)
        return create_checkout_session(
            dodo_client, settings, identity.user_id, identity.email, body.packageId
        )

    @app.post("/api/billing/webhook")
    async def handle_webhook(request: Request):
        """Handle Dodo Payments webhook events."""
        raw_body = await request.body()
        return webhooks.handle(raw_body, request.headers)

    @app.get("/api/usage")
    async def get_usage(authorization: Optional[str] = Header(None)):
        """Current balance, recent purchases and available packages."""
        identity = authenticate(authorization)
        profile = balances.get_profile(identity.user_id) or {}
        purchases = ledger.list_for_user(identity.user_id, limit=10)
        return {
            "user_id": identity.user_id,
            "tokens_remaining": int(profile.get("tokens_remaining") or 0),
            "tokens_used": int(profile.get("tokens_used") or 0),
            "has_byo_key": bool(profile.get("gemini_api_key")),
            "purchases": [
                {
                    "id": p.id,
                    "tokens_purchased": p.tokens_purchased,
                    "amount_usd": str(p.amount_usd),
                    "status": p.status.value,
                    "created_at": p.created_at,
                    "completed_at": p.completed_at,
                }
                for p in purchases
            ],
            "packages": [
                {"id": package_id, "name": p["name"], "tokens": p["tokens"], "price_usd": str(p["price_usd"])}
                for package_id, p in TOKEN_PACKAGES.items()
            ],
        }

    @app.post("/api/byo-key")
    async def save_byo_key(body: ByoKeyBody, authorization: Optional[str] = Header(None)):
        """Save the caller's personal Gemini key for byo/ models. Empty clears it."""
        identity = authenticate(authorization)
        api_key = (body.apiKey or "").strip() or None
        balances.set_byo_key(identity.user_id, api_key, email=identity.email)
        logger.info(f"BYO key {'saved' if api_key else 'cleared'} for user {identity.user_id}")
        return {"success": True, "has_byo_key": api_key is not None}

    # ============= HEALTH =============

    @app.get("/health")
    async def health_check():
        """Health check endpoint for monitoring."""
        return {
            "status": "healthy",
            "timestamp": datetime.now().isoformat(),
            "version": APP_VERSION,
        }

    @app.get("/ready")
    async def readiness_check():
        """Readiness check: database reachable and an upstream gateway configured."""
        db_ready = True
        try:
            with db.get_db() as conn:
                conn.cursor().execute("SELECT 1")
        except Exception as e:
            logger.error(f"Readiness database check failed: {e}")
            db_ready = False

        gateway_ready = bool(settings.aggregator_api_key or settings.google_api_key)
        ready = db_ready and gateway_ready
        return JSONResponse(
            status_code=200 if ready else 503,
            content={
                "ready": ready,
                "database": db_ready,
                "gateway": gateway_ready,
                "timestamp": datetime.now().isoformat(),
            },
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8000")))
