import json
import logging

from fastapi import APIRouter, Request
from pydantic import ValidationError as PydanticValidationError

from alfa_service.api.schemas.compile import (
    CompiledFileResponse,
    CompileMultipleRequest,
    CompileResponse,
    ErrorResponse,
)
from alfa_service.compiler.output import CompiledFile
from alfa_service.core.config import settings
from alfa_service.core.dependencies import Orchestrator, UploadStore
from alfa_service.core.errors import ValidationError
from alfa_service.services.uploads import SourceFile, compile_sources

logger = logging.getLogger(__name__)

router = APIRouter(tags=["compile"])

SINGLE_UPLOAD_NAME = "policy.alfa"

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid request or compilation errors"},
    503: {"model": ErrorResponse, "description": "Language server unavailable"},
    504: {"model": ErrorResponse, "description": "Compilation timed out"},
}


def _require_content_type(request: Request, expected: str) -> None:
    content_type = request.headers.get("content-type", "").lower()
    if not content_type.startswith(expected):
        raise ValidationError(
            f"Content-Type must be {expected}",
            details={"content_type": content_type},
        )


def _decode(body: bytes) -> str:
    try:
        return body.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ValidationError("Request body must be UTF-8 encoded") from exc


def _response(output: list[CompiledFile]) -> CompileResponse:
    logger.info(f"Compilation produced {len(output)} file(s)")
    return CompileResponse(
        success=True,
        output=[CompiledFileResponse.from_compiled(f) for f in output],
    )


@router.post("/compile", response_model=CompileResponse, responses=ERROR_RESPONSES)
async def compile_policy(
    request: Request, orchestrator: Orchestrator, store: UploadStore
) -> CompileResponse:
    """Compile one ALFA policy sent as the raw ``text/plain`` body.

    Returns every artifact the language server generated for it.
    """
    _require_content_type(request, "text/plain")
    content = _decode(await request.body())
    if not content.strip():
        raise ValidationError("Empty file content")

    output = await compile_sources(
        orchestrator, store, [SourceFile(file_name=SINGLE_UPLOAD_NAME, content=content)]
    )
    return _response(output)


@router.post(
    "/compile-multiple", response_model=CompileResponse, responses=ERROR_RESPONSES
)
async def compile_policies(
    request: Request, orchestrator: Orchestrator, store: UploadStore
) -> CompileResponse:
    """Compile several ALFA files that may reference each other.

    **Body:** ``{"files": [{"fileName": "root.alfa", "content": "..."}, ...]}``

    All files are handed to the language server as one batch.
    """
    _require_content_type(request, "application/json")
    body = _decode(await request.body())
    if not body:
        raise ValidationError("Empty content")

    try:
        payload = json.loads(body)
    except json.JSONDecodeError as exc:
        raise ValidationError("Invalid JSON body") from exc

    files = payload.get("files") if isinstance(payload, dict) else None
    if not isinstance(files, list) or not files:
        raise ValidationError("No files provided")

    try:
        parsed = CompileMultipleRequest.model_validate({"files": files})
    except PydanticValidationError as exc:
        raise ValidationError(
            "Each file must have a filename and content",
            details={"error_count": exc.error_count()},
        ) from exc

    output = await compile_sources(
        orchestrator,
        store,
        [f.to_source() for f in parsed.files],
        settle_seconds=settings.upload_settle_seconds,
    )
    return _response(output)
