import logging

from fastapi import APIRouter, status
from fastapi.responses import JSONResponse

from alfa_service.core.dependencies import Orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(tags=["health"])


@router.get("/health")
def health() -> dict:
    """Basic liveness check."""
    return {"ok": True}


@router.get("/readyz")
async def readyz(orchestrator: Orchestrator) -> JSONResponse:
    """Readiness probe: verifies the language server is initialized.

    Returns:
      - 200 when the language server accepts compile requests
      - 503 when it is not started, still initializing, or gone
    """
    if orchestrator.is_ready():
        return JSONResponse(
            status_code=status.HTTP_200_OK,
            content={"ok": True, "languageServer": "ready"},
        )
    logger.warning("Readiness check failed: language server is not ready")
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"ok": False, "languageServer": "unavailable"},
    )
