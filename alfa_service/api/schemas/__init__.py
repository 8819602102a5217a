"""
Pydantic schemas for API request/response validation.
"""

# Re-export schemas for convenient imports.
from .compile import CompiledFileResponse as CompiledFileResponse
from .compile import CompileMultipleRequest as CompileMultipleRequest
from .compile import CompileResponse as CompileResponse
from .compile import ErrorResponse as ErrorResponse
from .compile import SourceFilePayload as SourceFilePayload
