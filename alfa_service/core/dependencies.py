"""
FastAPI dependency injection utilities.

The orchestrator and the upload store live on ``app.state`` (set by
``create_app``); routes receive them through these dependencies so tests
can swap them via ``app.dependency_overrides``.
"""

from typing import Annotated

from fastapi import Depends, Request

from alfa_service.compiler.orchestrator import CompileOrchestrator
from alfa_service.services.uploads import PolicyUploadStore


def get_orchestrator(request: Request) -> CompileOrchestrator:
    """The application's compile orchestrator."""
    return request.app.state.orchestrator


def get_upload_store(request: Request) -> PolicyUploadStore:
    """Where uploaded policy sources are written before compiling."""
    return request.app.state.upload_store


Orchestrator = Annotated[CompileOrchestrator, Depends(get_orchestrator)]
UploadStore = Annotated[PolicyUploadStore, Depends(get_upload_store)]
