"""Input guardrails for user-supplied refinement instructions.

Refinement instructions are spliced verbatim into the analysis prompt, so
they are screened for prompt injection before an operation is primed.
"""

import re
from dataclasses import dataclass

import structlog

from autocv_api.observability import get_trace_id

logger = structlog.get_logger()

BLOCKED_REFINEMENT_MESSAGE = (
    "The refinement request could not be accepted. Please describe how the "
    "selected section of the resume should change."
)

# Patterns that indicate injection attempts (case-insensitive)
INJECTION_PATTERNS = [
    # Direct instruction override attempts
    r"ignore.*(?:previous|above|all|prior|earlier).*(?:instruction|directive|prompt|rule|command)",
    r"disregard.*(?:previous|above|all|prior|earlier).*(?:instruction|directive|prompt|rule)",
    r"forget.*(?:previous|above|all|prior|earlier).*(?:instruction|directive|prompt|rule)",
    # System prompt extraction attempts
    r"(?:reveal|show|display|output|print|echo|tell me).*(?:system|original|full|complete).*(?:prompt|instruction|directive|message)",
    r"repeat.*(?:system|above|previous).*(?:prompt|instruction|message)",
    # Role/identity manipulation
    r"you are now",
    r"pretend (?:you are|to be)",
    r"roleplay as",
    # Delimiter breaking attempts
    r"```.*(?:system|ignore|override)",
    r"</?(?:system|admin|root|sudo)>",
]

_compiled_injection_patterns = [re.compile(pattern, re.IGNORECASE) for pattern in INJECTION_PATTERNS]


@dataclass
class InjectionDetectionResult:
    """Result of injection detection check."""

    is_injection: bool
    matched_pattern: str | None = None
    confidence: str = "low"  # low, medium, high


def detect_injection(text: str) -> InjectionDetectionResult:
    """Check if text contains prompt injection patterns."""
    text_normalized = " ".join(text.lower().split())

    for pattern in _compiled_injection_patterns:
        match = pattern.search(text_normalized)
        if match:
            logger.warning(
                "injection_detected",
                trace_id=get_trace_id(),
                pattern=pattern.pattern[:50],
                matched_text=match.group()[:100],
                input_preview=text[:100],
            )
            return InjectionDetectionResult(
                is_injection=True,
                matched_pattern=pattern.pattern,
                confidence="high" if "ignore" in match.group().lower() else "medium",
            )

    return InjectionDetectionResult(is_injection=False)


def check_refinement_input(*texts: str) -> tuple[bool, str]:
    """Check refinement fields and return (is_safe, message_if_blocked)."""
    for text in texts:
        if text and detect_injection(text).is_injection:
            return False, BLOCKED_REFINEMENT_MESSAGE
    return True, ""
