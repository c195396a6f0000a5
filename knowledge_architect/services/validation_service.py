"""
Input validation for pipeline runs.

Inputs are checked before any provider call, so a bad request never costs a
network round trip.
"""

import re
from typing import Any, Optional

from knowledge_architect.models.schemas import ErrorCode
from knowledge_architect.utils.logger import get_logger

logger = get_logger(__name__)

DEFAULT_MAX_INPUT_CHARS = 500_000


class InputValidationError(Exception):
    """Raised when pipeline input is rejected."""

    def __init__(self, code: ErrorCode, message: str, details: Optional[dict[str, Any]] = None):
        self.code = ErrorCode(code)
        self.message = message
        self.details = details or {}
        super().__init__(message)


def combine_input(file_text: Optional[str] = None, user_text: Optional[str] = None) -> str:
    """
    Build the raw pipeline input from extracted file text and typed text.

    Both parts are labelled when present; empty parts are left out.
    """
    file_text = (file_text or "").strip()
    user_text = (user_text or "").strip()
    if file_text and user_text:
        return f"File Content:\n{file_text}\n\nUser Text:\n{user_text}"
    if file_text:
        return f"File Content:\n{file_text}"
    return user_text


class ValidationService:
    """Validates and normalizes pipeline inputs."""

    SLUG_PATTERN = re.compile(r"[^\w\s-]", re.UNICODE)

    def __init__(self, max_input_chars: int = DEFAULT_MAX_INPUT_CHARS):
        self.max_input_chars = max_input_chars

    def validate_pipeline_input(self, raw_input: Any, topic: Any) -> tuple[str, str]:
        """
        Validate raw input and topic.

        Returns:
            Tuple of (raw_input, topic), with the topic trimmed. The raw input is
            kept as given apart from surrounding whitespace.

        Raises:
            InputValidationError: VAL_001 for an empty topic or input,
                VAL_002 when the input exceeds ``max_input_chars``.
        """
        if not isinstance(topic, str) or not topic.strip():
            logger.warning("Pipeline input rejected", reason="empty_topic")
            raise InputValidationError(
                ErrorCode.VALIDATION_INPUT_EMPTY,
                "A topic is required to run the pipeline.",
                details={"field": "topic"},
            )
        if not isinstance(raw_input, str) or not raw_input.strip():
            logger.warning("Pipeline input rejected", reason="empty_input")
            raise InputValidationError(
                ErrorCode.VALIDATION_INPUT_EMPTY,
                "Input is empty. Provide some text or a file to process.",
                details={"field": "raw_input"},
            )

        raw_input = raw_input.strip()
        if len(raw_input) > self.max_input_chars:
            logger.warning(
                "Pipeline input rejected",
                reason="input_too_long",
                length=len(raw_input),
                limit=self.max_input_chars,
            )
            raise InputValidationError(
                ErrorCode.VALIDATION_INPUT_TOO_LONG,
                f"Input is too long: {len(raw_input)} characters "
                f"(limit {self.max_input_chars}).",
                details={"length": len(raw_input), "limit": self.max_input_chars},
            )

        return raw_input, topic.strip()

    def slugify(self, text: str, max_length: int = 80) -> str:
        """Turn a topic or title into a safe file name stem."""
        slug = self.SLUG_PATTERN.sub("", text).strip().lower()
        slug = re.sub(r"[\s_-]+", "-", slug).strip("-")
        return slug[:max_length].rstrip("-") or "note"


__all__ = [
    "DEFAULT_MAX_INPUT_CHARS",
    "InputValidationError",
    "combine_input",
    "ValidationService",
]
