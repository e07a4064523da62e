"""OpenRouter LLM client streaming resume analyses."""

import asyncio
import json
from collections.abc import AsyncGenerator, AsyncIterator
from typing import Any

import httpx
import structlog

from autocv_api.cancellation import CancellationScope
from autocv_api.config import get_settings
from autocv_api.generator import GenerationError
from autocv_api.models import RefinementRequest
from autocv_api.prompts import build_messages

logger = structlog.get_logger()


class OpenRouterError(GenerationError):
    """Base exception for OpenRouter client errors."""

    pass


class OpenRouterAuthError(OpenRouterError):
    """Raised when authentication fails."""

    pass


class OpenRouterRateLimitError(OpenRouterError):
    """Raised when rate limit is exceeded."""

    pass


# Skills the mock generator recognises in resume text
MOCK_SKILL_KEYWORDS = [
    "Python",
    "Go",
    "Java",
    "JavaScript",
    "TypeScript",
    "Kotlin",
    "SQL",
    "AWS",
    "GCP",
    "Docker",
    "Kubernetes",
    "React",
    "Spring",
    "Terraform",
]

MOCK_FRAGMENT_CHARS = 24


class OpenRouterClient:
    """Async client for the OpenRouter chat-completions API.

    Implements the analysis generator contract: ``generate`` streams text
    fragments and stops quietly once its cancellation scope is signalled.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ):
        """Initialize the OpenRouter client.

        Args:
            api_key: OpenRouter API key. Defaults to config value.
            base_url: API base URL. Defaults to config value.
            model: Model ID to use. Defaults to config value.
            max_tokens: Maximum tokens in response. Defaults to config value.
            temperature: Sampling temperature. Defaults to config value.
        """
        settings = get_settings()
        self._api_key = api_key if api_key is not None else settings.openrouter_api_key
        self._base_url = base_url or settings.openrouter_base_url
        self._model = model or settings.llm_model
        self._max_tokens = max_tokens or settings.llm_max_tokens
        self._temperature = temperature if temperature is not None else settings.llm_temperature
        self._timeout = settings.llm_timeout_seconds
        self._client: httpx.AsyncClient | None = None

    async def __aenter__(self) -> "OpenRouterClient":
        """Enter async context."""
        await self.connect()
        return self

    async def __aexit__(self, _exc_type: Any, _exc_val: Any, _exc_tb: Any) -> None:
        """Exit async context."""
        await self.close()

    @property
    def is_configured(self) -> bool:
        """Check if the client is properly configured with an API key."""
        return bool(self._api_key and self._api_key.startswith("sk-"))

    @property
    def mode(self) -> str:
        """Which backend serves ``generate``: openrouter, mock or unconfigured."""
        if self.is_configured:
            return "openrouter"
        if get_settings().mock_openrouter:
            return "mock"
        return "unconfigured"

    async def connect(self) -> None:
        """Create the HTTP client.

        Skipped when no key is configured, since requests would be served by
        the mock generator or refused.
        """
        if not self.is_configured:
            logger.info("OpenRouter client not configured, skipping HTTP client creation", mode=self.mode)
            return

        self._client = httpx.AsyncClient(
            base_url=self._base_url,
            headers={
                "Authorization": f"Bearer {self._api_key}",
                "Content-Type": "application/json",
                "X-Title": "AutoCV Resume Analysis",
            },
            timeout=httpx.Timeout(self._timeout, connect=10.0),
        )
        logger.info("OpenRouter client connected", model=self._model)

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None
            logger.info("OpenRouter client closed")

    async def generate(
        self,
        resume_text: str,
        job_posting_text: str,
        refinement: RefinementRequest | None,
        scope: CancellationScope,
    ) -> AsyncGenerator[str, None]:
        """Stream one analysis as text fragments.

        Args:
            resume_text: Extracted resume text.
            job_posting_text: Extracted job posting text (may be empty).
            refinement: Pending refinement request, if any.
            scope: Cancellation scope of this attempt; observed before the
                request, while waiting on the upstream and between lines.

        Yields:
            Text fragments of the model response.

        Raises:
            OpenRouterAuthError: If no key is configured and mock mode is off,
                or the API rejects the key.
            OpenRouterRateLimitError: If the API rate limits the request.
            OpenRouterError: For any other API or transport failure.
        """
        if not self.is_configured:
            if get_settings().mock_openrouter:
                logger.info("MOCK_OPENROUTER=true: Using mock analysis stream")
                async for fragment in self._mock_generate(resume_text, refinement, scope):
                    yield fragment
                return
            error_msg = (
                "OpenRouter API key not configured with MOCK_OPENROUTER=false. "
                "Either set OPENROUTER_API_KEY or set MOCK_OPENROUTER=true for testing."
            )
            logger.error(error_msg)
            raise OpenRouterAuthError(error_msg)

        if scope.is_signaled:
            return

        if not self._client:
            await self.connect()

        payload = {
            "model": self._model,
            "messages": build_messages(resume_text, job_posting_text, refinement),
            "max_tokens": self._max_tokens,
            "temperature": self._temperature,
            "stream": True,
        }

        total_tokens = 0
        signaled = asyncio.ensure_future(scope.wait())

        try:
            async with self._client.stream("POST", "/chat/completions", json=payload) as response:
                if response.status_code >= 400:
                    await response.aread()
                response.raise_for_status()

                lines = response.aiter_lines()
                while True:
                    if scope.is_signaled:
                        logger.info("Analysis stream stopped by cancellation", reason=scope.reason)
                        return

                    # A stalled upstream must not hold a cancelled pass open
                    reading = asyncio.ensure_future(_next_line(lines))
                    try:
                        await asyncio.wait({reading, signaled}, return_when=asyncio.FIRST_COMPLETED)
                    except asyncio.CancelledError:
                        reading.cancel()
                        raise
                    if not reading.done():
                        reading.cancel()
                        await asyncio.wait({reading})
                        logger.info("Analysis stream stopped while waiting", reason=scope.reason)
                        return

                    line = reading.result()
                    if line is None:
                        break

                    if not line or not line.startswith("data: "):
                        continue

                    data_str = line[6:]  # Remove "data: " prefix
                    if data_str == "[DONE]":
                        break

                    try:
                        data = json.loads(data_str)
                    except json.JSONDecodeError:
                        logger.warning("Failed to parse streaming chunk", line=line[:200])
                        continue

                    if "error" in data:
                        message = data["error"].get("message", "unknown error")
                        raise OpenRouterError(f"Upstream error during streaming: {message}")

                    if "usage" in data:
                        total_tokens = data["usage"].get("total_tokens", total_tokens)

                    choice = (data.get("choices") or [{}])[0]
                    content = choice.get("delta", {}).get("content") or ""
                    if content:
                        yield content

            logger.info("Analysis stream completed", tokens=total_tokens)

        except httpx.HTTPStatusError as e:
            self._handle_http_error(e)
        except httpx.HTTPError as e:
            logger.error("OpenRouter transport error", error=str(e))
            raise OpenRouterError(f"Could not reach the AI service: {e}") from e
        finally:
            signaled.cancel()

    def _handle_http_error(self, error: httpx.HTTPStatusError) -> None:
        """Translate HTTP errors from OpenRouter API into client errors."""
        status = error.response.status_code
        try:
            detail = error.response.json().get("error", {}).get("message", str(error))
        except Exception:
            detail = str(error)

        logger.error("OpenRouter API error", status=status, detail=detail)

        if status == 401:
            raise OpenRouterAuthError(f"Authentication failed: {detail}") from error
        elif status == 429:
            raise OpenRouterRateLimitError(f"Rate limit exceeded: {detail}") from error
        else:
            raise OpenRouterError(f"API error ({status}): {detail}") from error

    async def _mock_generate(
        self,
        resume_text: str,
        refinement: RefinementRequest | None,
        scope: CancellationScope,
    ) -> AsyncGenerator[str, None]:
        """Stream a canned analysis for testing.

        The analysis is derived from the resume text and reflects the
        refinement instruction in the targeted section, so refinement loops
        can be exercised end to end without an API key.
        """
        delay = get_settings().mock_fragment_delay_seconds
        text = "```json\n" + json.dumps(build_mock_analysis(resume_text, refinement), indent=2) + "\n```"

        for start in range(0, len(text), MOCK_FRAGMENT_CHARS):
            if scope.is_signaled:
                return
            if delay:
                await asyncio.sleep(delay)
            else:
                await asyncio.sleep(0)
            yield text[start : start + MOCK_FRAGMENT_CHARS]


async def _next_line(lines: AsyncIterator[str]) -> str | None:
    """Next streamed line, or None once the response is exhausted."""
    try:
        return await anext(lines)
    except StopAsyncIteration:
        return None


def build_mock_analysis(resume_text: str, refinement: RefinementRequest | None = None) -> dict[str, Any]:
    """Build the deterministic analysis served in mock mode."""
    first_line = next((line.strip() for line in resume_text.splitlines() if line.strip()), "")
    words = set(resume_text.replace(",", " ").replace("/", " ").split())
    skills = [skill for skill in MOCK_SKILL_KEYWORDS if skill in words] or [
        "Communication",
        "Problem solving",
    ]

    analysis: dict[str, Any] = {
        "summary": f"Candidate profile: {first_line[:120]}",
        "skills": skills,
        "strengths": ["Clear career progression", "Hands-on delivery experience"],
        "improvementSuggestions": [
            "Quantify achievements with metrics",
            "Lead each role with its most relevant accomplishment",
        ],
    }

    if refinement is not None:
        section = refinement.target_section
        instruction = refinement.user_instruction
        if isinstance(analysis.get(section), list):
            analysis[section] = [*analysis[section], instruction]
        elif isinstance(analysis.get(section), str):
            analysis[section] = f"{analysis[section]} ({instruction})"
        else:
            analysis["improvementSuggestions"].append(f"{section}: {instruction}")

    skills_md = "\n".join(f"- {skill}" for skill in analysis["skills"])
    analysis["suggestedResumeMarkdown"] = (
        f"# Resume\n\n## Summary\n{analysis['summary']}\n\n## Skills\n{skills_md}\n"
    )
    return analysis
