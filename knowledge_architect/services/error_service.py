"""
Structured error classification and reporting.

Raw exceptions raised by providers, the retry executor and the pipeline are
turned into ``EnhancedError`` records only at the outermost boundary (CLI or
embedding caller). Classification is a pure function of the error message and
context; the manager adds an in-memory log, listeners and notifications.

Features:
    - Ordered, first-match-wins classification rules
    - Static severity, user action and retryability tables per error code
    - Notifications for high and critical errors
    - Error log with aggregate statistics

Example:
    >>> manager = ErrorManager()
    >>> record = manager.handle_error(exc, context="condenser")
    >>> record.code_name
    'API_RATE_LIMIT'
"""

from __future__ import annotations

import traceback
from dataclasses import dataclass
from typing import Any, Callable, Optional
from uuid import uuid4

from knowledge_architect.models.schemas import (
    EnhancedError,
    ErrorCategory,
    ErrorCode,
    ErrorNotification,
    ErrorSeverity,
    NotificationAction,
)
from knowledge_architect.utils.logger import get_logger

logger = get_logger(__name__)


# =============================================================================
# Constants and Tables
# =============================================================================

# Contexts that are not pipeline stages; failures there are not stage failures.
NON_STAGE_CONTEXTS = frozenset({"setup", "title_generation"})

SEVERITY_MAP: dict[ErrorCode, ErrorSeverity] = {
    ErrorCode.API_KEY_MISSING: ErrorSeverity.CRITICAL,
    ErrorCode.API_KEY_INVALID: ErrorSeverity.CRITICAL,
    ErrorCode.SYSTEM_MEMORY_LOW: ErrorSeverity.CRITICAL,
    ErrorCode.SYSTEM_STORAGE_FULL: ErrorSeverity.CRITICAL,
    ErrorCode.API_SERVICE_UNAVAILABLE: ErrorSeverity.HIGH,
    ErrorCode.PROCESSING_PIPELINE_FAILED: ErrorSeverity.HIGH,
    ErrorCode.FILE_CORRUPTED: ErrorSeverity.HIGH,
    ErrorCode.CONFIG_MISSING_SETTING: ErrorSeverity.HIGH,
    ErrorCode.API_RATE_LIMIT: ErrorSeverity.MEDIUM,
    ErrorCode.NETWORK_CONNECTION_FAILED: ErrorSeverity.MEDIUM,
    ErrorCode.FILE_TOO_LARGE: ErrorSeverity.MEDIUM,
    ErrorCode.VALIDATION_INPUT_TOO_LONG: ErrorSeverity.MEDIUM,
}

USER_ACTIONS: dict[ErrorCode, str] = {
    ErrorCode.API_KEY_MISSING: "Configure your API key in settings",
    ErrorCode.API_KEY_INVALID: "Verify that your API key is correct in settings",
    ErrorCode.API_RATE_LIMIT: "Wait a few minutes before trying again",
    ErrorCode.API_SERVICE_UNAVAILABLE: (
        "The AI service is temporarily overloaded. Try again in a few minutes"
    ),
    ErrorCode.NETWORK_CONNECTION_FAILED: (
        "Check your internet connection, or make sure the local model server is running"
    ),
    ErrorCode.FILE_TOO_LARGE: "Try with a smaller file",
    ErrorCode.FILE_INVALID_FORMAT: (
        "Make sure the file is in a supported format (PDF, DOCX, TXT)"
    ),
    ErrorCode.VALIDATION_INPUT_EMPTY: "Enter some text or upload a file",
    ErrorCode.VALIDATION_INPUT_TOO_LONG: "Shorten the input or split it into several notes",
    ErrorCode.CONFIG_MISSING_SETTING: "Complete the configuration in settings",
}

RETRYABLE_CODES = frozenset({
    ErrorCode.API_RATE_LIMIT,
    ErrorCode.API_TIMEOUT,
    ErrorCode.API_SERVICE_UNAVAILABLE,
    ErrorCode.NETWORK_CONNECTION_FAILED,
    ErrorCode.NETWORK_TIMEOUT,
    ErrorCode.PROCESSING_TIMEOUT,
})

_CATEGORY_BY_PREFIX: dict[str, ErrorCategory] = {
    "API": ErrorCategory.API,
    "NET": ErrorCategory.NETWORK,
    "FILE": ErrorCategory.FILE,
    "VAL": ErrorCategory.VALIDATION,
    "CFG": ErrorCategory.CONFIGURATION,
    "PROC": ErrorCategory.PROCESSING,
    "UI": ErrorCategory.UI,
    "SYS": ErrorCategory.SYSTEM,
}

NOTIFICATION_TITLES: dict[ErrorSeverity, str] = {
    ErrorSeverity.CRITICAL: "Critical Error",
    ErrorSeverity.HIGH: "Important Error",
    ErrorSeverity.MEDIUM: "Warning",
    ErrorSeverity.LOW: "Information",
}

DEFAULT_MAX_ERROR_LOG = 500


def severity_for(code: ErrorCode) -> ErrorSeverity:
    return SEVERITY_MAP.get(ErrorCode(code), ErrorSeverity.LOW)


def category_for(code: ErrorCode) -> ErrorCategory:
    prefix = ErrorCode(code).value.split("_", 1)[0]
    return _CATEGORY_BY_PREFIX[prefix]


def is_retryable(code: ErrorCode) -> bool:
    return ErrorCode(code) in RETRYABLE_CODES


# =============================================================================
# Classification Rules
# =============================================================================

@dataclass(frozen=True)
class ClassificationRule:
    """
    One inference rule: matches when any marker occurs in the lower-cased
    message, or when the optional context predicate accepts the context.
    """

    code: ErrorCode
    markers: tuple[str, ...] = ()
    context_predicate: Optional[Callable[[str], bool]] = None

    def matches(self, message: str, context: str) -> bool:
        if any(marker in message for marker in self.markers):
            return True
        if self.context_predicate is not None:
            return self.context_predicate(context)
        return False


CLASSIFICATION_RULES: tuple[ClassificationRule, ...] = (
    ClassificationRule(
        ErrorCode.API_KEY_MISSING,
        ("api key not configured", "api key is not configured"),
    ),
    ClassificationRule(
        ErrorCode.API_KEY_INVALID,
        ("api key not valid", "invalid api key", "invalid x-api-key"),
    ),
    ClassificationRule(
        ErrorCode.API_RATE_LIMIT,
        ("rate limit", "429", "resource_exhausted"),
    ),
    ClassificationRule(ErrorCode.API_QUOTA_EXCEEDED, ("quota exceeded",)),
    ClassificationRule(
        ErrorCode.API_SERVICE_UNAVAILABLE,
        ("service unavailable", "503", "unavailable", "overloaded", "temporarily unavailable"),
    ),
    ClassificationRule(
        ErrorCode.NETWORK_CONNECTION_FAILED,
        ("failed to fetch", "network error"),
    ),
    ClassificationRule(ErrorCode.NETWORK_TIMEOUT, ("timeout", "timed out")),
    ClassificationRule(ErrorCode.FILE_TOO_LARGE, ("file too large", "exceeds")),
    ClassificationRule(
        ErrorCode.FILE_INVALID_FORMAT,
        ("invalid format", "unsupported format"),
    ),
    ClassificationRule(ErrorCode.FILE_CORRUPTED, ("corrupt", "damaged")),
    ClassificationRule(
        ErrorCode.PROCESSING_STAGE_FAILED,
        context_predicate=lambda context: context not in NON_STAGE_CONTEXTS,
    ),
)


def _error_message(error: BaseException | str) -> str:
    """Message text including the chain of causes."""
    if isinstance(error, str):
        return error
    parts = [str(error)]
    cause = error.__cause__
    while cause is not None:
        text = str(cause)
        if text and text not in parts[-1]:
            parts.append(text)
        cause = cause.__cause__
    return ": ".join(part for part in parts if part)


# =============================================================================
# Classifier
# =============================================================================

class ErrorClassifier:
    """Maps a raw error and a context to an ``EnhancedError``."""

    def __init__(self, rules: tuple[ClassificationRule, ...] = CLASSIFICATION_RULES):
        self.rules = rules

    def infer_code(self, message: str, context: str) -> ErrorCode:
        lowered = message.lower()
        for rule in self.rules:
            if rule.matches(lowered, context):
                return rule.code
        return ErrorCode.SYSTEM_UNKNOWN

    def classify(
        self,
        error: BaseException | str,
        context: str,
        *,
        message: Optional[str] = None,
        code: Optional[ErrorCode] = None,
        category: Optional[ErrorCategory] = None,
        metadata: Optional[dict[str, Any]] = None,
        session_id: Optional[str] = None,
    ) -> EnhancedError:
        """
        Classify an error.

        Args:
            error: Raw exception (or message) to classify.
            context: Stage id or one of setup, title_generation, validation,
                file_processing, system.
            message: Override for the recorded message.
            code: Skip inference and use this code.
            category: Override the category derived from the code prefix.
            metadata: Extra structured data stored on the record.
            session_id: Session the error belongs to.
        """
        raw_message = _error_message(error)
        resolved = ErrorCode(code) if code is not None else self.infer_code(raw_message, context)

        details = None
        stack_trace = None
        if isinstance(error, BaseException):
            details = type(error).__name__
            if error.__traceback__ is not None:
                stack_trace = "".join(traceback.format_exception(error))

        return EnhancedError(
            code=resolved,
            category=category or category_for(resolved),
            severity=severity_for(resolved),
            context=context,
            message=message or raw_message or "Unknown error",
            details=details,
            retryable=is_retryable(resolved),
            user_action=USER_ACTIONS.get(resolved),
            session_id=session_id,
            stack_trace=stack_trace,
            metadata=metadata or {},
        )


# =============================================================================
# Main Service Class
# =============================================================================

ErrorListener = Callable[[EnhancedError], None]
NotificationListener = Callable[[ErrorNotification], None]


class ErrorManager:
    """
    Error log, listener fan-out and notification builder.

    One instance is owned by each ``ObservabilityContext``; there is no
    process-wide singleton.
    """

    def __init__(
        self,
        classifier: Optional[ErrorClassifier] = None,
        session_id: Optional[str] = None,
        max_log_size: int = DEFAULT_MAX_ERROR_LOG,
    ):
        self.classifier = classifier or ErrorClassifier()
        self.session_id = session_id or f"session_{uuid4().hex[:12]}"
        self.max_log_size = max_log_size
        self._error_log: list[EnhancedError] = []
        self._error_listeners: list[ErrorListener] = []
        self._notification_listeners: list[NotificationListener] = []

    def handle_error(
        self,
        error: BaseException | str,
        context: str = "system",
        **kwargs: Any,
    ) -> EnhancedError:
        """Classify, record and broadcast an error. Never raises for listener failures."""
        record = self.classifier.classify(
            error, context, session_id=self.session_id, **kwargs
        )
        self._record(record)
        self._notify(self._error_listeners, record)

        if record.severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL):
            self._notify(self._notification_listeners, self.build_notification(record))

        return record

    def _record(self, record: EnhancedError) -> None:
        self._error_log.append(record)
        if len(self._error_log) > self.max_log_size:
            del self._error_log[: len(self._error_log) - self.max_log_size]

        log = logger.error if record.severity in (
            ErrorSeverity.HIGH, ErrorSeverity.CRITICAL
        ) else logger.warning
        log(
            "Error recorded",
            error_id=record.id,
            code=record.code,
            severity=record.severity,
            context=record.context,
            message=record.message,
        )

    def _notify(self, listeners: list, payload: Any) -> None:
        for listener in list(listeners):
            try:
                listener(payload)
            except Exception as e:
                logger.warning("Error listener failed", listener=repr(listener), error=str(e))

    @staticmethod
    def build_notification(record: EnhancedError) -> ErrorNotification:
        severity = ErrorSeverity(record.severity)
        actions: list[NotificationAction] = []
        if record.retryable:
            actions.append(NotificationAction(label="Retry", action="retry"))
        if record.code in (ErrorCode.API_KEY_MISSING, ErrorCode.API_KEY_INVALID):
            actions.append(NotificationAction(label="Open Settings", action="open_settings"))

        return ErrorNotification(
            id=f"notification_{record.id}",
            type="modal" if severity == ErrorSeverity.CRITICAL else "toast",
            title=NOTIFICATION_TITLES[severity],
            message=record.user_action or record.message,
            severity=severity,
            actions=actions,
            error_id=record.id,
        )

    # =========================================================================
    # Subscriptions
    # =========================================================================

    def on_error(self, listener: ErrorListener) -> Callable[[], None]:
        """Subscribe to classified errors. Returns an unsubscribe callable."""
        self._error_listeners.append(listener)
        return lambda: self._remove(self._error_listeners, listener)

    def on_notification(self, listener: NotificationListener) -> Callable[[], None]:
        """Subscribe to notifications. Returns an unsubscribe callable."""
        self._notification_listeners.append(listener)
        return lambda: self._remove(self._notification_listeners, listener)

    @staticmethod
    def _remove(listeners: list, listener: Any) -> None:
        if listener in listeners:
            listeners.remove(listener)

    # =========================================================================
    # Error Log
    # =========================================================================

    def get_error_log(self) -> list[EnhancedError]:
        return list(self._error_log)

    def get_error_stats(self) -> dict[str, Any]:
        stats: dict[str, Any] = {
            "total": len(self._error_log),
            "by_severity": {severity.value: 0 for severity in ErrorSeverity},
            "by_category": {category.value: 0 for category in ErrorCategory},
            "by_code": {},
        }
        for record in self._error_log:
            stats["by_severity"][record.severity] += 1
            stats["by_category"][record.category] += 1
            stats["by_code"][record.code] = stats["by_code"].get(record.code, 0) + 1
        return stats

    def clear_error_log(self) -> None:
        self._error_log.clear()

    # =========================================================================
    # Convenience Helpers
    # =========================================================================

    def create_api_error(
        self,
        message: str,
        error: Optional[BaseException] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> EnhancedError:
        return self.handle_error(
            error or message,
            "setup",
            message=message,
            category=ErrorCategory.API,
            metadata=metadata,
        )

    def create_validation_error(
        self,
        message: str,
        context: str = "validation",
        code: Optional[ErrorCode] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> EnhancedError:
        return self.handle_error(
            message,
            context,
            code=code,
            category=ErrorCategory.VALIDATION,
            metadata=metadata,
        )

    def create_file_error(
        self,
        message: str,
        error: Optional[BaseException] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> EnhancedError:
        return self.handle_error(
            error or message,
            "file_processing",
            message=message,
            category=ErrorCategory.FILE,
            metadata=metadata,
        )

    def create_processing_error(
        self,
        message: str,
        stage: str,
        error: Optional[BaseException] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> EnhancedError:
        return self.handle_error(
            error or message,
            stage,
            message=message,
            category=ErrorCategory.PROCESSING,
            metadata=metadata,
        )


__all__ = [
    "NON_STAGE_CONTEXTS",
    "SEVERITY_MAP",
    "USER_ACTIONS",
    "RETRYABLE_CODES",
    "NOTIFICATION_TITLES",
    "severity_for",
    "category_for",
    "is_retryable",
    "ClassificationRule",
    "CLASSIFICATION_RULES",
    "ErrorClassifier",
    "ErrorManager",
]
