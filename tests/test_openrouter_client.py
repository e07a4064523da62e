"""Tests for OpenRouter LLM client."""

import asyncio
import json
from collections.abc import AsyncIterator, Callable
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest

from autocv_api.cancellation import CancellationScope
from autocv_api.generator import GenerationError
from autocv_api.models import RefinementRequest
from autocv_api.openrouter_client import (
    OpenRouterAuthError,
    OpenRouterClient,
    OpenRouterError,
    OpenRouterRateLimitError,
    build_mock_analysis,
)
from autocv_api.structured_output import extract_structured_payload


def stream_returning(lines: list[str], stall: asyncio.Event | None = None) -> MagicMock:
    """Build an httpx-like client whose stream() yields the given lines.

    With ``stall`` the stream then hangs until the event is set.
    """

    async def mock_aiter_lines() -> AsyncIterator[str]:
        for line in lines:
            yield line
        if stall is not None:
            await stall.wait()

    mock_response = MagicMock()
    mock_response.status_code = 200
    mock_response.aiter_lines = mock_aiter_lines
    mock_response.raise_for_status = MagicMock()

    class MockStreamContext:
        async def __aenter__(self) -> MagicMock:
            return mock_response

        async def __aexit__(self, *args: Any) -> None:
            return None

    mock_client = AsyncMock()
    mock_client.stream = MagicMock(return_value=MockStreamContext())
    return mock_client


def delta(content: str) -> str:
    return "data: " + json.dumps({"choices": [{"delta": {"content": content}, "finish_reason": None}]})


async def collect(client: OpenRouterClient, scope: CancellationScope | None = None, **kwargs: Any) -> list[str]:
    fragments = []
    async for fragment in client.generate(
        kwargs.get("resume_text", "Engineer with Python"),
        kwargs.get("job_posting_text", ""),
        kwargs.get("refinement"),
        scope or CancellationScope(),
    ):
        fragments.append(fragment)
    return fragments


class TestOpenRouterClient:
    """Tests for OpenRouterClient class."""

    def test_init_custom_values(self) -> None:
        """Test client initialization with custom values."""
        client = OpenRouterClient(
            api_key="sk-test-key",
            model="gpt-4",
            max_tokens=2048,
            temperature=0.5,
        )
        assert client._api_key == "sk-test-key"
        assert client._model == "gpt-4"
        assert client._max_tokens == 2048
        assert client._temperature == 0.5

    def test_is_configured_with_valid_key(self) -> None:
        """Test is_configured with valid API key."""
        client = OpenRouterClient(api_key="sk-or-v1-test123")
        assert client.is_configured is True
        assert client.mode == "openrouter"

    def test_is_configured_with_invalid_key(self) -> None:
        """Test is_configured with invalid API key."""
        client = OpenRouterClient(api_key="invalid-key")
        assert client.is_configured is False

    def test_mode_without_key(self, mock_settings: Callable[..., Any]) -> None:
        """Test mode reflects the mock switch when no key is set."""
        mock_settings(mock_openrouter="true")
        assert OpenRouterClient(api_key="").mode == "mock"

        mock_settings(mock_openrouter="false")
        assert OpenRouterClient(api_key="").mode == "unconfigured"

    def test_errors_are_generation_errors(self) -> None:
        """Test the error hierarchy used by the operation manager."""
        assert issubclass(OpenRouterAuthError, OpenRouterError)
        assert issubclass(OpenRouterRateLimitError, OpenRouterError)
        assert issubclass(OpenRouterError, GenerationError)


class TestOpenRouterClientAsync:
    """Async tests for OpenRouterClient."""

    @pytest.mark.asyncio
    async def test_connect_and_close(self) -> None:
        """Test connect and close lifecycle."""
        client = OpenRouterClient(api_key="sk-test")
        await client.connect()
        assert client._client is not None
        await client.close()
        assert client._client is None

    @pytest.mark.asyncio
    async def test_connect_skipped_without_key(self) -> None:
        """Test that no HTTP client is created without a key."""
        client = OpenRouterClient(api_key="")
        await client.connect()
        assert client._client is None

    @pytest.mark.asyncio
    async def test_context_manager(self) -> None:
        """Test async context manager."""
        async with OpenRouterClient(api_key="sk-test") as client:
            assert client._client is not None
        assert client._client is None


class TestOpenRouterHttpErrorHandling:
    """Tests for HTTP error handling."""

    @staticmethod
    def _status_error(status: int, body: Any = None) -> httpx.HTTPStatusError:
        mock_response = MagicMock()
        mock_response.status_code = status
        if body is None:
            mock_response.json.side_effect = Exception("Not JSON")
        else:
            mock_response.json.return_value = body
        return httpx.HTTPStatusError(message=f"{status}", request=MagicMock(), response=mock_response)

    def test_handle_http_error_auth(self) -> None:
        """Test handling 401 authentication error."""
        client = OpenRouterClient(api_key="sk-test")
        error = self._status_error(401, {"error": {"message": "Invalid API key"}})

        with pytest.raises(OpenRouterAuthError) as exc_info:
            client._handle_http_error(error)
        assert "Authentication failed" in str(exc_info.value)

    def test_handle_http_error_rate_limit(self) -> None:
        """Test handling 429 rate limit error."""
        client = OpenRouterClient(api_key="sk-test")
        error = self._status_error(429, {"error": {"message": "Rate limit exceeded"}})

        with pytest.raises(OpenRouterRateLimitError) as exc_info:
            client._handle_http_error(error)
        assert "Rate limit exceeded" in str(exc_info.value)

    def test_handle_http_error_generic(self) -> None:
        """Test handling generic HTTP error."""
        client = OpenRouterClient(api_key="sk-test")
        error = self._status_error(500, {"error": {"message": "Internal server error"}})

        with pytest.raises(OpenRouterError) as exc_info:
            client._handle_http_error(error)
        assert "API error (500)" in str(exc_info.value)

    def test_handle_http_error_json_parse_failure(self) -> None:
        """Test handling error when JSON parsing fails."""
        client = OpenRouterClient(api_key="sk-test")

        with pytest.raises(OpenRouterError) as exc_info:
            client._handle_http_error(self._status_error(502))
        assert "API error (502)" in str(exc_info.value)


class TestOpenRouterStreaming:
    """Tests for streaming analyses from the API."""

    @pytest.mark.asyncio
    async def test_generate_parses_sse_lines(self) -> None:
        """Test that content deltas are yielded in order."""
        client = OpenRouterClient(api_key="sk-test-key")
        client._client = stream_returning(
            [
                ": OPENROUTER PROCESSING",
                delta("Hello"),
                "",
                delta(" world"),
                "data: " + json.dumps({"choices": [{"delta": {}, "finish_reason": "stop"}], "usage": {"total_tokens": 42}}),
                "data: [DONE]",
                delta("after done"),
            ]
        )

        assert await collect(client) == ["Hello", " world"]

        _, kwargs = client._client.stream.call_args
        assert kwargs["json"]["stream"] is True
        assert kwargs["json"]["messages"][0]["role"] == "system"

    @pytest.mark.asyncio
    async def test_generate_skips_malformed_lines(self) -> None:
        """Test that undecodable chunks are skipped."""
        client = OpenRouterClient(api_key="sk-test-key")
        client._client = stream_returning(["data: {not json", delta("ok")])

        assert await collect(client) == ["ok"]

    @pytest.mark.asyncio
    async def test_generate_upstream_error_chunk(self) -> None:
        """Test that an error object mid-stream raises."""
        client = OpenRouterClient(api_key="sk-test-key")
        client._client = stream_returning([delta("a"), "data: " + json.dumps({"error": {"message": "overloaded"}})])

        with pytest.raises(OpenRouterError) as exc_info:
            await collect(client)
        assert "overloaded" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_generate_stops_when_scope_signaled(self) -> None:
        """Test that a signalled scope stops the stream without raising."""
        client = OpenRouterClient(api_key="sk-test-key")
        client._client = stream_returning([delta("a"), delta("b"), delta("c")])
        scope = CancellationScope()

        fragments = []
        async for fragment in client.generate("resume", "", None, scope):
            fragments.append(fragment)
            scope.signal("cancelled")

        assert fragments == ["a"]

    @pytest.mark.asyncio
    async def test_generate_stops_while_upstream_stalls(self) -> None:
        """Test that signalling the scope ends a stream blocked on the upstream."""
        client = OpenRouterClient(api_key="sk-test-key")
        stall = asyncio.Event()
        client._client = stream_returning([delta("a")], stall=stall)
        scope = CancellationScope()

        fragments = []

        async def consume() -> None:
            async for fragment in client.generate("resume", "", None, scope):
                fragments.append(fragment)
                asyncio.get_running_loop().call_later(0.01, scope.signal, "refined")

        await asyncio.wait_for(consume(), timeout=1)

        assert fragments == ["a"]

    @pytest.mark.asyncio
    async def test_generate_skips_request_for_signaled_scope(self) -> None:
        """Test that no request is issued once the scope is signalled."""
        client = OpenRouterClient(api_key="sk-test-key")
        client._client = stream_returning([delta("a")])
        scope = CancellationScope()
        scope.signal("refined")

        assert await collect(client, scope) == []
        client._client.stream.assert_not_called()

    @pytest.mark.asyncio
    async def test_generate_transport_error(self) -> None:
        """Test that transport failures become OpenRouterError."""
        client = OpenRouterClient(api_key="sk-test-key")
        mock_client = AsyncMock()
        mock_client.stream = MagicMock(side_effect=httpx.ConnectError("refused"))
        client._client = mock_client

        with pytest.raises(OpenRouterError) as exc_info:
            await collect(client)
        assert "Could not reach" in str(exc_info.value)


class TestOpenRouterMockModes:
    """Tests for mock mode functionality."""

    @pytest.mark.asyncio
    async def test_generate_with_mock_enabled(self, mock_settings: Callable[..., Any]) -> None:
        """Test that mock mode streams one parseable fenced block."""
        mock_settings(mock_openrouter="true", openrouter_api_key="", mock_fragment_delay_seconds="0")
        client = OpenRouterClient(api_key="")

        fragments = await collect(client, resume_text="Jane Doe\nBackend engineer: Python, AWS")

        assert len(fragments) > 5
        payload = extract_structured_payload("".join(fragments))
        assert payload["skills"] == ["Python", "AWS"]
        assert payload["summary"] == "Candidate profile: Jane Doe"
        assert "suggestedResumeMarkdown" in payload

    @pytest.mark.asyncio
    async def test_generate_with_mock_disabled_no_api_key(self, mock_settings: Callable[..., Any]) -> None:
        """Test generate() raises error when mock disabled but no API key."""
        mock_settings(mock_openrouter="false", openrouter_api_key="")
        client = OpenRouterClient(api_key="")

        with pytest.raises(OpenRouterAuthError) as exc_info:
            await collect(client)
        assert "MOCK_OPENROUTER=false" in str(exc_info.value)
        assert "OPENROUTER_API_KEY" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_mock_stream_observes_scope(self, mock_settings: Callable[..., Any]) -> None:
        """Test that the mock stream stops once its scope is signalled."""
        mock_settings(mock_openrouter="true", mock_fragment_delay_seconds="0")
        client = OpenRouterClient(api_key="")
        scope = CancellationScope()

        fragments = []
        async for fragment in client.generate("resume", "", None, scope):
            fragments.append(fragment)
            if len(fragments) == 2:
                scope.signal("cancelled")

        assert len(fragments) == 2


class TestBuildMockAnalysis:
    """Tests for the deterministic mock analysis."""

    def test_default_skills(self) -> None:
        """Test fallback skills when no keyword matches."""
        analysis = build_mock_analysis("Shepherd with twenty years of field work")
        assert analysis["skills"] == ["Communication", "Problem solving"]

    def test_refinement_appends_to_list_section(self) -> None:
        """Test that list sections gain the instruction."""
        refinement = RefinementRequest(target_section="skills", user_instruction="add Go")
        analysis = build_mock_analysis("Python developer", refinement)
        assert analysis["skills"] == ["Python", "add Go"]
        assert "- add Go" in analysis["suggestedResumeMarkdown"]

    def test_refinement_annotates_text_section(self) -> None:
        """Test that text sections carry the instruction."""
        refinement = RefinementRequest(target_section="summary", user_instruction="more concise")
        analysis = build_mock_analysis("Python developer", refinement)
        assert analysis["summary"].endswith("(more concise)")

    def test_refinement_of_unknown_section(self) -> None:
        """Test that unknown sections become an improvement suggestion."""
        refinement = RefinementRequest(target_section="awards", user_instruction="list hackathon win")
        analysis = build_mock_analysis("Python developer", refinement)
        assert analysis["improvementSuggestions"][-1] == "awards: list hackathon win"
