"""Extraction of the fenced JSON block that ends every generated analysis."""

import json
import re
from typing import Any

import structlog

logger = structlog.get_logger()

FENCED_JSON_PATTERN = re.compile(r"```json\s*([\s\S]*?)\s*```", re.IGNORECASE)

PREVIEW_CHARS = 200


class StructuredPayloadError(Exception):
    """Raised when generated text does not carry a usable JSON block."""

    def __init__(self, message: str, preview: str = ""):
        super().__init__(message)
        self.preview = preview


def extract_structured_payload(text: str) -> dict[str, Any]:
    """Parse the ```json fenced block out of generated text.

    Args:
        text: Full concatenated generator output.

    Returns:
        The decoded JSON object.

    Raises:
        StructuredPayloadError: No fenced block, invalid JSON, or not an object.
    """
    matches = FENCED_JSON_PATTERN.findall(text)
    if not matches:
        raise StructuredPayloadError(
            "Could not find the analysis result in the AI response.",
            preview=text[:PREVIEW_CHARS],
        )
    if len(matches) > 1:
        logger.warning("Multiple fenced JSON blocks in response, using the first", blocks=len(matches))

    block = matches[0]
    try:
        payload = json.loads(block)
    except json.JSONDecodeError as e:
        raise StructuredPayloadError(
            f"Could not parse the analysis result ({e.msg}).",
            preview=block[:PREVIEW_CHARS],
        ) from e

    if not isinstance(payload, dict):
        raise StructuredPayloadError(
            "The analysis result is not a JSON object.",
            preview=block[:PREVIEW_CHARS],
        )
    return payload
