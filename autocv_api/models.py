"""Pydantic models for API requests, responses and stream events."""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Base model exchanging camelCase JSON with the browser client."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# =============================================================================
# Operation Models (internal)
# =============================================================================


class OperationInputs(BaseModel):
    """Immutable snapshot of what an analysis was started with."""

    model_config = ConfigDict(frozen=True)

    resume_text: str = Field(..., min_length=1)
    job_posting_text: str = ""
    client_file_name: str = ""


class RefinementRequest(BaseModel):
    """A pending user refinement for the next generation pass."""

    model_config = ConfigDict(frozen=True)

    target_section: str
    user_instruction: str
    previous_output: str | None = None


# =============================================================================
# Analysis API Models
# =============================================================================


class InitiateAnalysisResponse(CamelModel):
    """Response for a successfully initiated analysis."""

    success: bool = True
    operation_id: str = Field(..., description="Id to stream, refine or cancel the analysis")
    file_name: str = Field(..., description="Client-side name of the uploaded resume")


class CancelOperationRequest(CamelModel):
    """Request body for the cancel endpoint."""

    operation_id: str = Field(..., min_length=1, description="Operation to cancel")


class CancelOperationResponse(CamelModel):
    """Cancellation acknowledgment (cancel is idempotent)."""

    success: bool = True
    found: bool = Field(..., description="Whether a live operation was cancelled")
    message: str


class RefineAnalysisRequest(CamelModel):
    """Request body for the refine endpoint."""

    operation_id: str = Field(..., min_length=1, description="Operation to refine")
    section: str = Field(..., min_length=1, max_length=200, description="Section to refine")
    user_input: str = Field(..., min_length=1, description="Free-text refinement instruction")
    previous_output: str | None = Field(
        default=None, description="Result the user is refining, if the client kept it"
    )


class RefineAnalysisResponse(CamelModel):
    """Refinement acknowledgment; the client reconnects its stream next."""

    success: bool = True
    message: str


class DownloadPdfRequest(CamelModel):
    """Request body for rendering a suggested resume to PDF."""

    markdown_content: str = Field(..., description="Resume markdown, usually suggestedResumeMarkdown")
    file_name: str = Field(default="resume", description="Base name for the downloaded file")


class HealthResponse(CamelModel):
    """Response for health check endpoint."""

    status: Literal["healthy", "degraded", "unhealthy"] = Field(..., description="Service status")
    generator_mode: Literal["openrouter", "mock", "unconfigured"] = Field(
        ..., description="Which generator backs analysis streams"
    )
    active_operations: int = Field(..., description="Number of live operations")
    max_operations: int = Field(..., description="Operations held before the oldest is evicted")
    operation_ttl_seconds: float = Field(..., description="Idle seconds before an operation expires")
    persistence_enabled: bool = Field(..., description="Whether results are persisted")
    version: str = Field(..., description="API version")


# =============================================================================
# Stream Event Models
# =============================================================================


class FragmentEvent(BaseModel):
    """Progress event carrying one generated text fragment."""

    chunk: str


class CompleteEvent(CamelModel):
    """Terminal event carrying the parsed analysis."""

    analysis: dict[str, Any]
    operation_id: str


class ErrorEvent(BaseModel):
    """Terminal event carrying a human-readable failure."""

    error: str
    details: str | None = None
