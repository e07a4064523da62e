"""FastAPI application entrypoint for AutoCV API."""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator
from urllib.parse import unquote

import structlog
from fastapi import FastAPI, File, Form, HTTPException, Query, Request, Response, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from prometheus_fastapi_instrumentator import Instrumentator
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.util import get_remote_address

from autocv_api import __version__
from autocv_api.config import get_settings
from autocv_api.guardrails import check_refinement_input
from autocv_api.models import (
    CancelOperationRequest,
    CancelOperationResponse,
    DownloadPdfRequest,
    ErrorEvent,
    HealthResponse,
    InitiateAnalysisResponse,
    OperationInputs,
    RefineAnalysisRequest,
    RefineAnalysisResponse,
)
from autocv_api.observability import generate_trace_id, set_trace_id
from autocv_api.openrouter_client import OpenRouterClient
from autocv_api.operation_manager import (
    InvalidInputError,
    OperationManager,
    OperationNotFoundError,
    StreamConflictError,
)
from autocv_api.pdf_export import PdfExportError, pdf_file_name, render_markdown_pdf
from autocv_api.result_persister import SQLiteResultPersister
from autocv_api.stream_transport import open_channel
from autocv_api.text_source import TextExtractionError, extract_text_from_file, extract_text_from_url

settings = get_settings()

logging.basicConfig(format="%(message)s", level=settings.log_level)

# Configure structlog
structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.stdlib.BoundLogger,
    context_class=dict,
    logger_factory=structlog.stdlib.LoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()

# Rate limiter
limiter = Limiter(key_func=get_remote_address)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan handler for startup/shutdown."""
    settings = get_settings()
    logger.info("Starting AutoCV API", version=__version__, environment=settings.environment)

    generator = OpenRouterClient()
    try:
        await generator.connect()
        logger.info("OpenRouter client initialized", mode=generator.mode)
    except Exception as e:
        logger.warning("Failed to initialize OpenRouter client", error=str(e))

    persister = None
    if settings.persistence_enabled:
        persister = SQLiteResultPersister(settings.persistence_db_path)
        logger.info("Result persistence enabled", db_path=settings.persistence_db_path)

    manager = OperationManager(generator, persister=persister)
    manager.start_reaper(settings.reaper_interval_seconds)

    app.state.generator = generator
    app.state.manager = manager

    yield

    # Cleanup on shutdown
    logger.info("Shutting down AutoCV API")
    await manager.shutdown()
    await generator.close()


# Create FastAPI app
app = FastAPI(
    title="AutoCV API",
    description="Streaming AI resume analysis with cancellation and refinement",
    version=__version__,
    lifespan=lifespan,
)

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allow_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# Trace ID middleware for request correlation
@app.middleware("http")
async def trace_id_middleware(request: Request, call_next):
    """Add trace ID to every request for log correlation."""
    # Get trace ID from header or generate new one
    trace_id = request.headers.get("X-Trace-ID", generate_trace_id())
    set_trace_id(trace_id)

    # Bind trace ID to structlog context for all logs in this request
    structlog.contextvars.clear_contextvars()
    structlog.contextvars.bind_contextvars(trace_id=trace_id)

    response = await call_next(request)

    # Add trace ID to response headers for client correlation
    response.headers["X-Trace-ID"] = trace_id
    return response


# Add rate limiter
app.state.limiter = limiter
app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

# Add Prometheus metrics
Instrumentator().instrument(app).expose(app)


def get_manager(request: Request) -> OperationManager:
    """Operation manager owned by the running application."""
    return request.app.state.manager


# =============================================================================
# Health Endpoints
# =============================================================================


@app.get("/health", response_model=HealthResponse)
async def health_check(request: Request) -> HealthResponse:
    """Check the health of the API and its generator."""
    stats = get_manager(request).store_stats()
    mode = request.app.state.generator.mode

    return HealthResponse(
        status="healthy" if mode != "unconfigured" else "degraded",
        generator_mode=mode,
        active_operations=stats["active_operations"],
        max_operations=stats["max_operations"],
        operation_ttl_seconds=stats["ttl_seconds"],
        persistence_enabled=get_settings().persistence_enabled,
        version=__version__,
    )


# =============================================================================
# Analysis Endpoints
# =============================================================================


@app.post("/api/initiate-analysis", response_model=InitiateAnalysisResponse, response_model_by_alias=True)
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def initiate_analysis(
    request: Request,
    resume_file: UploadFile | None = File(default=None, alias="resumeFile"),
    job_posting_url: str | None = Form(default=None, alias="jobPostingUrl"),
    encoded_file_name: str | None = Form(default=None, alias="encodedFileName"),
) -> InitiateAnalysisResponse:
    """
    Start an analysis and return its operation id.

    - **resumeFile**: PDF, DOCX or plain-text resume
    - **jobPostingUrl**: Optional job posting to tailor the analysis to
    - **encodedFileName**: Optional URI-encoded original file name
    """
    if resume_file is None:
        raise HTTPException(status_code=400, detail="No resume file uploaded.")

    file_name = unquote(encoded_file_name) if encoded_file_name else (resume_file.filename or "resume")
    content = await resume_file.read()
    if len(content) > get_settings().max_upload_bytes:
        raise HTTPException(status_code=413, detail="Resume file is too large.")

    try:
        resume_text = await asyncio.to_thread(
            extract_text_from_file,
            content,
            file_name,
            resume_file.content_type,
        )
    except TextExtractionError as e:
        logger.warning("Resume extraction failed", file_name=e.file_name, file_type=e.file_type, error=str(e))
        raise HTTPException(
            status_code=400,
            detail={"error": str(e), "fileName": e.file_name, "fileType": e.file_type},
        ) from e

    job_posting_text = ""
    if job_posting_url:
        job_posting_text = await extract_text_from_url(job_posting_url)

    try:
        operation_id = await get_manager(request).initiate(
            OperationInputs(
                resume_text=resume_text,
                job_posting_text=job_posting_text,
                client_file_name=file_name,
            )
        )
    except InvalidInputError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    return InitiateAnalysisResponse(operation_id=operation_id, file_name=file_name)


@app.get("/api/stream-analysis")
async def stream_analysis(
    request: Request,
    operation_id: str | None = Query(default=None, alias="operationId"),
):
    """
    Stream one generation pass for an operation as server-sent events.

    Emits `data: {"chunk": ...}` fragments, then exactly one `complete` or
    `error` event. A stream closed without a terminal event was cancelled.
    """
    heartbeat = get_settings().sse_heartbeat_seconds
    channel = open_channel(operation_id or "", heartbeat_seconds=heartbeat)

    if not operation_id:
        channel.send("error", ErrorEvent(error="operationId query parameter is required."))
        channel.close()
        return channel.as_response(status_code=400)

    try:
        get_manager(request).attach_stream(operation_id, channel)
    except OperationNotFoundError as e:
        channel.send("error", ErrorEvent(error=str(e)))
        channel.close()
        return channel.as_response(status_code=404)
    except StreamConflictError as e:
        channel.send("error", ErrorEvent(error=str(e)))
        channel.close()
        return channel.as_response(status_code=409)

    return channel.as_response()


@app.post("/api/cancel-operation", response_model=CancelOperationResponse, response_model_by_alias=True)
async def cancel_operation(request: Request, cancel_request: CancelOperationRequest) -> CancelOperationResponse:
    """Cancel an operation. Succeeds whether or not it is still live."""
    result = get_manager(request).cancel(cancel_request.operation_id)
    return CancelOperationResponse(found=result.found, message=result.message)


@app.post("/api/refine-analysis", response_model=RefineAnalysisResponse, response_model_by_alias=True)
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def refine_analysis(request: Request, refine_request: RefineAnalysisRequest) -> RefineAnalysisResponse:
    """
    Prime an operation for a refinement pass.

    - **operationId**: Operation to refine
    - **section**: Section of the analysis to change
    - **userInput**: What should change
    - **previousOutput**: Optional result the user is refining
    """
    if len(refine_request.user_input) > get_settings().max_refinement_chars:
        raise HTTPException(status_code=400, detail="Refinement instruction is too long.")

    # Input guardrail: refinement text is spliced into the prompt
    is_safe, blocked_message = check_refinement_input(refine_request.section, refine_request.user_input)
    if not is_safe:
        logger.warning(
            "Refinement blocked by guardrail",
            operation_id=refine_request.operation_id,
            input_preview=refine_request.user_input[:50],
        )
        raise HTTPException(status_code=400, detail=blocked_message)

    try:
        result = get_manager(request).refine(
            refine_request.operation_id,
            refine_request.section,
            refine_request.user_input,
            refine_request.previous_output,
        )
    except InvalidInputError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except OperationNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e)) from e

    return RefineAnalysisResponse(message=result.message)


@app.post("/api/download-pdf")
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def download_pdf(request: Request, pdf_request: DownloadPdfRequest) -> Response:
    """
    Render resume markdown to a PDF attachment.

    - **markdownContent**: Markdown to render, usually `suggestedResumeMarkdown`
    - **fileName**: Base name for the downloaded file
    """
    file_name = pdf_file_name(pdf_request.file_name)
    try:
        pdf = await asyncio.to_thread(render_markdown_pdf, pdf_request.markdown_content, file_name[:-4])
    except PdfExportError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e

    logger.info("Resume PDF downloaded", file_name=file_name, size_bytes=len(pdf))
    return Response(
        content=pdf,
        media_type="application/pdf",
        headers={"Content-Disposition": f'attachment; filename="{file_name}"'},
    )


# =============================================================================
# Entry point
# =============================================================================

if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "autocv_api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
    )
