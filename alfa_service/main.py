import hmac
import logging

from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.responses import JSONResponse, PlainTextResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from alfa_service import __version__
from alfa_service.api.routes.compile import router as compile_router
from alfa_service.api.routes.health import router as health_router
from alfa_service.compiler.orchestrator import CompileOrchestrator
from alfa_service.core.config import settings
from alfa_service.core.errors import (
    AlfaServiceError,
    HandshakeFailedError,
    SpawnError,
    get_status_code,
)
from alfa_service.core.middleware import RequestSizeLimitMiddleware
from alfa_service.core.observability import (
    ObservabilityMiddleware,
    configure_plain_logging,
    configure_structured_logging,
    extract_request_context,
    metrics_endpoint,
)
from alfa_service.services.uploads import PolicyUploadStore

# Configure logging before creating logger
if settings.observability_structured_logs:
    configure_structured_logging(settings.app_log_level)
else:
    configure_plain_logging(settings.app_log_level)

logger = logging.getLogger(__name__)


def create_app(
    orchestrator: CompileOrchestrator | None = None,
    upload_store: PolicyUploadStore | None = None,
    autostart: bool | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Sets up:
    - The compile orchestrator and its language server lifecycle
    - Observability middleware (metrics, request tracking)
    - Request size limits
    - Exception handlers mapping service errors to JSON responses
    - API routers
    - Metrics endpoint for Prometheus scraping

    Args:
        orchestrator: Orchestrator to use (built from settings if None)
        upload_store: Where uploads are written (settings.policies_path if None)
        autostart: Start the language server on startup (settings if None)
    """
    app = FastAPI(
        title="ALFA Compiler Service",
        description="Compiles ALFA policies to XACML through the ALFA language server",
        version=__version__,
    )

    if orchestrator is None:
        orchestrator = CompileOrchestrator.from_settings(settings)
    if upload_store is None:
        upload_store = PolicyUploadStore(settings.policies_path)
    app.state.orchestrator = orchestrator
    app.state.upload_store = upload_store
    start_language_server = settings.language_server_autostart if autostart is None else autostart

    # ============================================================================
    # Language Server Lifecycle
    # ============================================================================

    @app.on_event("startup")
    async def startup_language_server():
        """Spawn the language server and complete the LSP handshake."""
        if not start_language_server:
            logger.info("Language server autostart disabled")
            return
        logger.info("Initializing ALFA compiler...")
        try:
            await app.state.orchestrator.start()
        except (SpawnError, HandshakeFailedError) as exc:
            logger.critical(
                f"Failed to initialize compiler: {exc.message}",
                extra={"details": exc.details},
            )
            raise

    @app.on_event("shutdown")
    async def shutdown_language_server():
        """Shut the language server down gracefully."""
        await app.state.orchestrator.stop()

    # ============================================================================
    # Middleware
    # ============================================================================

    if settings.observability_enabled:
        app.add_middleware(ObservabilityMiddleware)

    app.add_middleware(RequestSizeLimitMiddleware, max_size_mb=settings.max_request_size_mb)

    # ============================================================================
    # Exception Handlers
    # ============================================================================

    @app.exception_handler(AlfaServiceError)
    async def service_error_handler(request: Request, exc: AlfaServiceError) -> JSONResponse:
        """
        Map service errors to HTTP status codes.

        The client receives only the human-readable message; details are logged.
        """
        status_code = get_status_code(exc)
        context = {
            "details": exc.details,
            "path": request.url.path,
            **extract_request_context(request),
        }

        if status_code >= 500:
            logger.error(f"{exc.__class__.__name__}: {exc.message}", extra=context)
        else:
            logger.warning(f"{exc.__class__.__name__}: {exc.message}", extra=context)

        return JSONResponse(status_code=status_code, content={"error": exc.message})

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> Response:
        """
        Handle routing errors and explicit HTTP exceptions.

        Unknown paths answer with a plain-text ``Not found``.
        """
        if exc.status_code == status.HTTP_404_NOT_FOUND:
            return PlainTextResponse("Not found", status_code=status.HTTP_404_NOT_FOUND)

        if exc.status_code == status.HTTP_405_METHOD_NOT_ALLOWED:
            allowed = (exc.headers or {}).get("Allow", "POST")
            return JSONResponse(
                status_code=exc.status_code,
                content={"error": f"Method Not Allowed. Use {allowed}."},
                headers=exc.headers,
            )

        if exc.status_code >= 500:
            logger.error(
                f"HTTP {exc.status_code}: {exc.detail}",
                extra={"path": request.url.path, **extract_request_context(request)},
            )
        return JSONResponse(
            status_code=exc.status_code,
            content={"error": str(exc.detail)},
            headers=exc.headers,
        )

    @app.exception_handler(Exception)
    async def general_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        """
        Catch-all handler for unexpected exceptions.

        Logs the full exception and returns a generic 500 error to the client
        without exposing internal implementation details.
        """
        logger.error(
            f"Unhandled exception: {exc}",
            exc_info=True,
            extra={"path": request.url.path, **extract_request_context(request)},
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "An unexpected error occurred"},
        )

    # ============================================================================
    # Router Registration
    # ============================================================================

    app.include_router(compile_router)
    app.include_router(health_router)

    # ============================================================================
    # Metrics Endpoint (Prometheus)
    # ============================================================================

    async def protected_metrics(request: Request) -> Response:
        """
        Prometheus metrics endpoint.

        When METRICS_TOKEN is set the X-Metrics-Token header must match it.
        """
        expected_token = settings.metrics_token
        if expected_token:
            metrics_token = request.headers.get("X-Metrics-Token")
            # Constant-time comparison
            if not hmac.compare_digest(metrics_token or "", expected_token):
                logger.warning(
                    "Unauthorized metrics access attempt",
                    extra={
                        "security_event": True,
                        "event_type": "METRICS_ACCESS_DENIED",
                        "client_ip": request.client.host if request.client else "unknown",
                    },
                )
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail="Invalid metrics token",
                )
        return metrics_endpoint()

    if settings.observability_enabled:
        app.add_route("/metrics", protected_metrics)

    return app


app = create_app()
