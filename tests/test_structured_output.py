"""Tests for fenced JSON payload extraction."""

import pytest

from autocv_api.structured_output import StructuredPayloadError, extract_structured_payload


class TestExtractStructuredPayload:
    """Tests for extract_structured_payload function."""

    def test_single_block(self) -> None:
        """Test parsing the one fenced block in a response."""
        text = 'Here is the analysis:\n```json\n{"summary": "Solid", "skills": ["X"]}\n```\nThanks.'
        assert extract_structured_payload(text) == {"summary": "Solid", "skills": ["X"]}

    def test_block_split_across_fragments(self) -> None:
        """Test a block assembled from streamed fragments."""
        fragments = ["``", "`json\n{\"sum", "mary\": \"ok\"}", "\n``", "`"]
        assert extract_structured_payload("".join(fragments)) == {"summary": "ok"}

    def test_case_insensitive_fence(self) -> None:
        """Test that the fence language tag is matched case-insensitively."""
        assert extract_structured_payload('```JSON\n{"a": 1}\n```') == {"a": 1}

    def test_first_block_wins(self) -> None:
        """Test that the first of several blocks is used."""
        text = '```json\n{"a": 1}\n```\n```json\n{"a": 2}\n```'
        assert extract_structured_payload(text) == {"a": 1}

    def test_no_block(self) -> None:
        """Test that a response without a block is rejected."""
        with pytest.raises(StructuredPayloadError) as exc_info:
            extract_structured_payload('{"summary": "unfenced"}')
        assert "Could not find" in str(exc_info.value)
        assert exc_info.value.preview.startswith('{"summary"')

    def test_invalid_json(self) -> None:
        """Test that malformed JSON is rejected with a preview."""
        with pytest.raises(StructuredPayloadError) as exc_info:
            extract_structured_payload('```json\n{"summary": \n```')
        assert "Could not parse" in str(exc_info.value)
        assert exc_info.value.preview == '{"summary":'

    def test_non_object(self) -> None:
        """Test that a JSON array is rejected."""
        with pytest.raises(StructuredPayloadError) as exc_info:
            extract_structured_payload("```json\n[1, 2]\n```")
        assert "not a JSON object" in str(exc_info.value)
