from __future__ import annotations

from pydantic import BaseModel, ConfigDict, Field, field_validator

from alfa_service.compiler.output import CompiledFile
from alfa_service.services.uploads import SourceFile


class SourceFilePayload(BaseModel):
    file_name: str = Field(alias="fileName", min_length=1)
    content: str = Field(min_length=1)

    model_config = ConfigDict(populate_by_name=True)

    @field_validator("file_name")
    @classmethod
    def validate_file_name(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("fileName cannot be blank")
        return v

    def to_source(self) -> SourceFile:
        return SourceFile(file_name=self.file_name, content=self.content)


class CompileMultipleRequest(BaseModel):
    files: list[SourceFilePayload] = Field(min_length=1)


class CompiledFileResponse(BaseModel):
    file_name: str = Field(alias="fileName")
    content: str

    model_config = ConfigDict(populate_by_name=True)

    @classmethod
    def from_compiled(cls, compiled: CompiledFile) -> CompiledFileResponse:
        return cls.model_validate(compiled.to_dict())


class CompileResponse(BaseModel):
    success: bool = True
    output: list[CompiledFileResponse]


class ErrorResponse(BaseModel):
    error: str
