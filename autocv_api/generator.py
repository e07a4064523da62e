"""Contract between the operation manager and analysis generators."""

from collections.abc import AsyncGenerator
from typing import Protocol

from autocv_api.cancellation import CancellationScope
from autocv_api.models import RefinementRequest


class GenerationError(Exception):
    """Base exception for failures while generating an analysis."""

    pass


class AnalysisGenerator(Protocol):
    """Streams the text of one resume analysis.

    Implementations yield fragments that concatenate into a response holding
    one ```json fenced block. They must stop yielding, without raising, once
    ``scope`` is signalled, and raise ``GenerationError`` on failure.
    """

    def generate(
        self,
        resume_text: str,
        job_posting_text: str,
        refinement: RefinementRequest | None,
        scope: CancellationScope,
    ) -> AsyncGenerator[str, None]: ...
