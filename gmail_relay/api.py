"""
FastAPI application factory for the Gmail relay.

The module exposes a `create_app` function that builds the REST API around a
:class:`gmail_relay.core.RelayService`. The service instance is stored on
``app.state`` and injected into each route, so independent applications can
run side by side (one per test, for instance).
"""

from typing import Any, AsyncContextManager, Callable, Dict, Optional, Sequence
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config_loader import build_profiles
from .core import ENDPOINTS, RelayService
from .logger import get_logger
from .models import (
    ApiInfoResponse,
    FailureKind,
    HealthResponse,
    SendFailure,
    SendingStatusResponse,
    SendPayload,
    SendResult,
    StopSendingResponse,
)

logger = get_logger("GmailRelay.api")


def get_service(request: Request) -> RelayService:
    """Return the service bound to the application handling ``request``."""
    service = getattr(request.app.state, "service", None)
    if service is None:
        raise HTTPException(500, "Service not initialized")
    return service


def _send_response(result: SendResult):
    if not result.ok:
        return JSONResponse(status_code=result.http_status, content=result.to_response())
    return result.to_response()


@asynccontextmanager
async def default_lifespan(app: FastAPI):
    """Log the startup banner and the session summary on shutdown."""
    service: RelayService = app.state.service
    logger.info("Email server running on port %s", service.port)
    logger.info("Started at %s", service.started_at.isoformat())
    for route, description in ENDPOINTS.items():
        logger.info("  %-24s %s", route, description)
    yield
    logger.info("Shutting down gracefully; %d e-mails sent this session", service.gate.total_sent)


def create_app(
    svc: RelayService,
    *,
    cors_origins: Optional[Sequence[str]] = None,
    max_body_bytes: Optional[int] = 50 * 1024 * 1024,
    lifespan: Callable[[FastAPI], AsyncContextManager] | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Parameters
    ----------
    svc:
        Instance of :class:`gmail_relay.core.RelayService` that owns the send
        gate and implements each operation.
    cors_origins:
        Origins allowed by the CORS middleware. Defaults to ``["*"]``.
    max_body_bytes:
        Requests announcing a larger ``Content-Length`` are refused with
        ``413``. ``None`` disables the check.
    lifespan:
        Optional lifespan context manager for startup/shutdown events. The
        default one logs the startup banner and the shutdown summary.

    Returns
    -------
    FastAPI
        A configured application ready to be served by Uvicorn or any ASGI
        server.
    """
    api = FastAPI(title="Gmail Relay", version=svc.version, lifespan=lifespan or default_lifespan)
    api.state.service = svc
    api.add_middleware(
        CORSMiddleware,
        allow_origins=list(cors_origins or ["*"]),
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @api.middleware("http")
    async def limit_body_size(request: Request, call_next):
        length = request.headers.get("content-length")
        if max_body_bytes is not None and length and length.isdigit() and int(length) > max_body_bytes:
            logger.warning("Refused %s %s: body of %s bytes exceeds limit", request.method, request.url.path, length)
            return JSONResponse(
                status_code=413,
                content={"success": False, "message": "Request body too large"},
            )
        return await call_next(request)

    @api.exception_handler(RequestValidationError)
    async def validation_exception_handler(request: Request, exc: RequestValidationError):
        """Report malformed send bodies as ``InvalidInput``."""
        logger.error(f"Validation error on {request.method} {request.url.path}")
        logger.error(f"Validation errors: {exc.errors()}")
        failure = SendFailure(FailureKind.INVALID_INPUT, "Invalid request body. Check the field types.")
        return JSONResponse(status_code=failure.http_status, content=failure.to_response())

    @api.exception_handler(StarletteHTTPException)
    async def route_not_found_handler(request: Request, exc: StarletteHTTPException):
        """Answer unknown routes (and wrong methods) with the route listing."""
        if exc.status_code in (404, 405):
            return JSONResponse(
                status_code=404,
                content={
                    "success": False,
                    "message": "Route not found",
                    "availableRoutes": dict(ENDPOINTS),
                },
            )
        return await http_exception_handler(request, exc)

    @api.exception_handler(Exception)
    async def unexpected_error_handler(request: Request, exc: Exception):
        """Last-resort boundary: the send gate is already released by then."""
        logger.exception("Unhandled error on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=500,
            content={"success": False, "message": "Internal server error"},
        )

    @api.get("/api", response_model=ApiInfoResponse)
    async def api_info(service: RelayService = Depends(get_service)):
        """List the endpoints exposed by the relay."""
        return service.api_info()

    @api.get("/status")
    async def status(service: RelayService = Depends(get_service)):
        """Return the operational status used by external monitors."""
        try:
            return service.status()
        except Exception as exc:
            logger.exception("Error in /status: %s", exc)
            return JSONResponse(
                status_code=500,
                content={"status": "error", "message": "Failed to read server status"},
            )

    @api.get("/health", response_model=HealthResponse)
    async def health(service: RelayService = Depends(get_service)):
        return HealthResponse.model_validate(service.health())

    @api.get("/sending-status", response_model=SendingStatusResponse)
    async def sending_status(service: RelayService = Depends(get_service)):
        """Report whether a send holds the gate and whether a stop is pending."""
        return SendingStatusResponse.model_validate(service.sending_status())

    @api.post("/stop-sending", response_model=StopSendingResponse)
    async def stop_sending(service: RelayService = Depends(get_service)):
        """Request cooperative cancellation of the send in progress."""
        if service.stop_sending():
            return StopSendingResponse(success=True, message="Stop requested. Please wait...")
        return StopSendingResponse(success=False, message="No send in progress")

    @api.post("/send-gmail")
    async def send_gmail(payload: SendPayload, service: RelayService = Depends(get_service)):
        """Send an e-mail with the full profile (verified session, attachments)."""
        logger.info("Received request on /send-gmail")
        result = await service.send(payload.to_request(), profile="full")
        return _send_response(result)

    @api.post("/send-gmail-simple")
    async def send_gmail_simple(payload: SendPayload, service: RelayService = Depends(get_service)):
        """Send an e-mail with the simplified, certificate-tolerant profile."""
        logger.info("Received request on /send-gmail-simple")
        result = await service.send(payload.to_request(), profile="simple")
        return _send_response(result)

    @api.get("/metrics")
    async def metrics(service: RelayService = Depends(get_service)):
        """Expose Prometheus metrics collected by the relay."""
        return Response(content=service.metrics.generate_latest(), media_type="text/plain; version=0.0.4")

    return api


def build_app(settings: Dict[str, Any]) -> FastAPI:
    """Create the relay service and its application from loaded settings."""
    service = RelayService(
        port=int(settings["http_port"]),
        service_name=str(settings["service_name"]),
        profiles=build_profiles(settings),
    )
    max_body_mb = settings.get("max_body_mb")
    return create_app(
        service,
        cors_origins=settings.get("cors_origins"),
        max_body_bytes=int(float(max_body_mb) * 1024 * 1024) if max_body_mb else None,
    )
