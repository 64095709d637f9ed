"""
Data models for the upload pipeline and API responses
"""
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel


class HealthResponse(BaseModel):
    status: str = "healthy"


class ErrorResponse(BaseModel):
    error: str  # short failure message
    details: str  # human readable explanation
    category: Optional[str] = None  # validation, invocation, ...
    stack: Optional[str] = None  # only populated in development


class ErrorCategory(str, Enum):
    VALIDATION = "validation"
    INVOCATION = "invocation"
    STREAMING = "streaming"
    CLEANUP = "cleanup"
    RATE_LIMIT = "rate_limit"
    CAPACITY = "capacity"


STATUS_BY_CATEGORY = {
    ErrorCategory.VALIDATION: 400,
    ErrorCategory.INVOCATION: 500,
    ErrorCategory.STREAMING: 500,
    ErrorCategory.CLEANUP: 500,
    ErrorCategory.RATE_LIMIT: 429,
    ErrorCategory.CAPACITY: 503,
}


@dataclass(frozen=True)
class PipelineError:
    """Failure produced by a pipeline stage, returned rather than raised"""

    category: ErrorCategory
    error: str
    details: str
    exit_code: Optional[int] = None
    stack: Optional[str] = None

    @property
    def status_code(self) -> int:
        return STATUS_BY_CATEGORY[self.category]

    def to_response(self, include_stack: bool = False) -> ErrorResponse:
        return ErrorResponse(
            error=self.error,
            details=self.details,
            category=self.category.value,
            stack=self.stack if include_stack else None,
        )


@dataclass(frozen=True)
class UploadedFile:
    filename: str
    path: Path
    content_type: str
    size: int
    created_at: float


@dataclass(frozen=True)
class OutputArtifact:
    path: Path
    size: int
    content_type: str


@dataclass(frozen=True)
class ProcessingJob:
    input_path: Path
    output_dir: Path
    output_path: Path
    args: List[str]
    started_at: float


@dataclass(frozen=True)
class InvocationResult:
    """Outcome of one run of the external tool: either an artifact or an error"""

    artifact: Optional[OutputArtifact] = None
    error: Optional[PipelineError] = None
    diagnostics: str = ""

    @property
    def ok(self) -> bool:
        return self.artifact is not None


@dataclass
class ValidationResult:
    error: Optional[PipelineError] = None
    warnings: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None
