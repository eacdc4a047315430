# consult_dispatch/transport/http_app.py
"""
HTTP surface of the dispatch service.

Public:
- POST /request-doctor  start dispatching a consultation request
- POST /respond-call    candidate's accept / decline answer
- GET  /requests/{id}   current state (or terminal outcome) of a request
- GET  /health

Protected (METRICS_TOKEN when set):
- GET  /metrics
"""
from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request, Depends
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware

from consult_dispatch.config import settings
from consult_dispatch.core.dispatch import (
    Decision,
    DispatchEngine,
    DispatchError,
    InvalidRequestError,
    RequestNotFoundError,
)
from consult_dispatch.core.dispatch.ports import ResponderDirectory
from consult_dispatch.infra.db_async import close_pool, init_pool
from consult_dispatch.infra.fcm_sender import close_fcm_session
from consult_dispatch.infra.logging_config import setup_logging, get_logger
from consult_dispatch.infra.metrics import get_metrics_collector
from consult_dispatch.infra.notification_senders import get_notification_sender
from consult_dispatch.infra.rate_limiter import RequestRateLimiter
from consult_dispatch.infra.session_credentials import HmacCredentialIssuer
from consult_dispatch.transport.middleware import RequestContextMiddleware, SecurityHeadersMiddleware
from consult_dispatch.transport.schemas import (
    CallResponseIn,
    CallResponseOut,
    DoctorRequestIn,
    DoctorRequestOut,
)
from consult_dispatch.transport.security import (
    check_configured_tokens,
    require_metrics_auth,
    sanitize_error_message,
)

# Initialize logging first
setup_logging(
    level=settings.log_level,
    use_json=settings.is_production
)

logger = get_logger(__name__)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_engine(request: Request) -> DispatchEngine:
    """Get engine from app state"""
    return request.app.state.engine


def throttle_request_creation(request: Request, requester_id: str | None) -> None:
    """Apply the per-IP and per-requester creation limit, if one is installed"""
    limiter: RequestRateLimiter | None = getattr(request.app.state, "rate_limiter", None)
    if limiter is None:
        return
    client_ip = request.client.host if request.client else None
    limiter.check(client_ip, requester_id)


# ============================================================================
# WIRING
# ============================================================================

async def build_directory() -> ResponderDirectory:
    """Responder directory selected by ``directory_backend``."""
    if settings.directory_backend == "postgres":
        from consult_dispatch.infra.pg_responder_directory_async import (
            AsyncPostgresResponderDirectory,
        )

        await init_pool()
        logger.info("Database pool initialized")
        return AsyncPostgresResponderDirectory()

    from consult_dispatch.infra.responder_directory import (
        InMemoryResponderDirectory,
        load_seed_file,
    )

    responders = load_seed_file(settings.directory_seed_file) if settings.directory_seed_file else []
    if not responders:
        logger.warning("In-memory responder directory is empty; every request will get 404")
    return InMemoryResponderDirectory(responders)


async def build_engine() -> DispatchEngine:
    directory = await build_directory()
    sender = get_notification_sender()
    credentials = HmacCredentialIssuer.from_settings()

    engine = DispatchEngine.from_settings(directory, sender, credentials, settings)
    logger.info(
        f"Dispatch engine ready: directory={settings.directory_backend}, "
        f"sender={getattr(sender, 'name', type(sender).__name__)}, "
        f"timeout={engine.response_timeout}s, max_extra_cycles={engine.max_extra_cycles}"
    )
    return engine


# ============================================================================
# LIFESPAN
# ============================================================================

@asynccontextmanager
async def lifespan(fastapi_app: FastAPI):
    """Application lifecycle: startup and shutdown"""

    # STARTUP
    logger.info(f"Starting application: env={settings.app_env}")

    if settings.is_production:
        missing = settings.validate_required_for_production()
        if missing:
            logger.critical(f"Missing required production settings: {missing}")
            raise RuntimeError(f"Missing production config: {missing}")

        if settings.log_level.upper() == "DEBUG":
            logger.critical("LOG_LEVEL=DEBUG is not allowed in production")
            raise RuntimeError("LOG_LEVEL=DEBUG in production")

    check_configured_tokens()

    fastapi_app.state.engine = await build_engine()

    fastapi_app.state.rate_limiter = RequestRateLimiter(settings.rate_limit_per_minute)

    yield

    # SHUTDOWN
    logger.info("Shutting down application")

    await fastapi_app.state.engine.shutdown()

    await close_fcm_session()
    await close_pool()
    logger.info("Application shutdown complete")


# ============================================================================
# CREATE APP
# ============================================================================

app = FastAPI(
    title="Consult Dispatch",
    description="Routes consultation requests to available doctors, one call at a time",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=None if settings.is_production else "/docs",
    redoc_url=None if settings.is_production else "/redoc",
    openapi_url=None if settings.is_production else "/openapi.json",
)

if settings.is_production or settings.is_staging:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.allowed_origins if settings.allowed_origins != ["*"] else [],
        allow_credentials=False,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type", "Authorization"],
    )
else:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.add_middleware(SecurityHeadersMiddleware)
app.add_middleware(RequestContextMiddleware, log_requests=settings.enable_request_logging)


# ============================================================================
# EXCEPTION HANDLERS
# ============================================================================

@app.exception_handler(DispatchError)
async def dispatch_error_handler(request: Request, exc: DispatchError):
    """Map domain errors onto their HTTP status"""
    if exc.status_code >= 500:
        logger.error(f"Dispatch error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
    )


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Handle HTTP exceptions with appropriate logging"""
    if exc.status_code >= 500:
        logger.error(f"Server error: {exc.detail}", extra={"status_code": exc.status_code})

    return JSONResponse(
        status_code=exc.status_code,
        content={"error": exc.detail},
        headers=exc.headers,
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions"""
    logger.error(f"Unhandled exception: {exc.__class__.__name__}", exc_info=True)

    return JSONResponse(
        status_code=500,
        content={"error": sanitize_error_message(exc, settings.is_production)},
    )


# ============================================================================
# PUBLIC ENDPOINTS
# ============================================================================

@app.get("/health")
def health():
    """Liveness check. Returns minimal information."""
    return {"status": "healthy"}


@app.post(
    "/request-doctor",
    response_model=DoctorRequestOut,
    response_model_by_alias=True,
)
async def request_doctor(
    payload: DoctorRequestIn,
    request: Request,
    engine: DispatchEngine = Depends(get_engine),
):
    """
    Create a consultation request and start calling matching doctors.

    400 when language is missing, 404 when nobody speaks it, 429 when the
    caller's IP or requesterId is creating requests too fast.
    """
    throttle_request_creation(request, payload.requester_id)
    ticket = await engine.create_and_dispatch(
        payload.language,
        requester_id=payload.requester_id,
    )
    return DoctorRequestOut(
        request_id=ticket.request_id,
        session_id=ticket.session_id,
        credential=ticket.credential,
    )


@app.post("/respond-call", response_model=CallResponseOut)
async def respond_call(
    payload: CallResponseIn,
    engine: DispatchEngine = Depends(get_engine),
):
    """Apply a doctor's answer to the call currently offered to them."""
    if not payload.request_id:
        raise InvalidRequestError()

    decision = Decision.ACCEPT if payload.accepted else Decision.DECLINE
    record = await engine.respond_to_call(
        payload.request_id,
        decision,
        candidate_id=payload.candidate_id,
    )
    return CallResponseOut(status=record.status.value)


@app.get("/requests/{request_id}")
async def get_request(request_id: str, engine: DispatchEngine = Depends(get_engine)):
    """
    Pending requests report their live state; resolved ones report the
    recorded outcome while it is still in history.
    """
    try:
        return engine.get_request(request_id).to_view()
    except RequestNotFoundError:
        outcome = engine.find_outcome(request_id)
        if outcome is None:
            raise
        return outcome.to_view()


# ============================================================================
# PROTECTED ENDPOINTS
# ============================================================================

@app.get("/metrics", dependencies=[Depends(require_metrics_auth)])
def metrics(request: Request):
    """Operational counters plus the number of requests in flight."""
    collector = get_metrics_collector()
    data = collector.get_metrics()
    engine = getattr(request.app.state, "engine", None)
    if engine is not None:
        data["pending_requests"] = engine.pending_count
    return data


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "consult_dispatch.transport.http_app:app",
        host="0.0.0.0",
        port=8099,
        reload=not settings.is_production,
        log_level=settings.log_level.lower(),
        access_log=not settings.is_production,  # request logging middleware covers prod
        server_header=False,
        date_header=False,
    )
