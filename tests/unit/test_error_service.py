import pytest

from knowledge_architect.models.schemas import (
    ErrorCategory,
    ErrorCode,
    ErrorSeverity,
    StageId,
)
from knowledge_architect.pipeline.orchestrator import PipelineError
from knowledge_architect.services.error_service import (
    ErrorClassifier,
    ErrorManager,
    category_for,
    is_retryable,
    severity_for,
)
from knowledge_architect.services.providers import (
    NetworkError,
    ProviderConfigurationError,
    ProviderResponseError,
)


@pytest.fixture
def classifier():
    return ErrorClassifier()


@pytest.fixture
def manager():
    return ErrorManager(session_id="session_test")


# =============================================================================
# Tables
# =============================================================================

def test_tables():
    assert severity_for(ErrorCode.API_KEY_MISSING) == ErrorSeverity.CRITICAL
    assert severity_for(ErrorCode.API_SERVICE_UNAVAILABLE) == ErrorSeverity.HIGH
    assert severity_for(ErrorCode.API_RATE_LIMIT) == ErrorSeverity.MEDIUM
    assert severity_for(ErrorCode.PROCESSING_STAGE_FAILED) == ErrorSeverity.LOW
    assert category_for(ErrorCode.NETWORK_TIMEOUT) == ErrorCategory.NETWORK
    assert category_for(ErrorCode.CONFIG_SAVE_FAILED) == ErrorCategory.CONFIGURATION
    assert is_retryable(ErrorCode.API_RATE_LIMIT)
    assert not is_retryable(ErrorCode.API_KEY_INVALID)


# =============================================================================
# Classification
# =============================================================================

@pytest.mark.parametrize("message,context,expected", [
    ("Anthropic API key is not configured. Please set it", "synthesizer", ErrorCode.API_KEY_MISSING),
    ("API key not valid. Please pass a valid API key.", "setup", ErrorCode.API_KEY_INVALID),
    ("invalid x-api-key", "condenser", ErrorCode.API_KEY_INVALID),
    ("Rate limit exceeded: free-models-per-day", "enhancer", ErrorCode.API_RATE_LIMIT),
    ("RESOURCE_EXHAUSTED", "setup", ErrorCode.API_RATE_LIMIT),
    ("Quota exceeded for this month", "setup", ErrorCode.API_QUOTA_EXCEEDED),
    ("Request failed with status 503: Service Unavailable", "finalizer", ErrorCode.API_SERVICE_UNAVAILABLE),
    ("Overloaded", "setup", ErrorCode.API_SERVICE_UNAVAILABLE),
    ("Network error: could not connect to Ollama at http://localhost:11434", "setup", ErrorCode.NETWORK_CONNECTION_FAILED),
    ("Failed to fetch", "setup", ErrorCode.NETWORK_CONNECTION_FAILED),
    ("Request to LM Studio timed out after 300s", "enhancer", ErrorCode.NETWORK_TIMEOUT),
    ("File too large: 12MB", "file_processing", ErrorCode.FILE_TOO_LARGE),
    ("Unsupported format for notes.pdf", "file_processing", ErrorCode.FILE_INVALID_FORMAT),
    ("The document is corrupt", "file_processing", ErrorCode.FILE_CORRUPTED),
    ("Something odd", "mermaidValidator", ErrorCode.PROCESSING_STAGE_FAILED),
    ("Something odd", "setup", ErrorCode.SYSTEM_UNKNOWN),
    ("Something odd", "title_generation", ErrorCode.SYSTEM_UNKNOWN),
])
def test_infer_code(classifier, message, context, expected):
    assert classifier.infer_code(message, context) == expected


def test_first_matching_rule_wins(classifier):
    # Mentions both a rate limit and a timeout; rate limit is checked first.
    assert classifier.infer_code("429 rate limit, request timed out", "setup") == ErrorCode.API_RATE_LIMIT


def test_classify_pipeline_error(classifier):
    cause = ProviderResponseError("429 Too Many Requests", status_code=429)
    try:
        raise PipelineError(StageId.CONDENSER, cause) from cause
    except PipelineError as e:
        error = e

    record = classifier.classify(error, StageId.CONDENSER.value)

    assert record.code == ErrorCode.API_RATE_LIMIT
    assert record.code_name == "API_RATE_LIMIT"
    assert record.category == ErrorCategory.API
    assert record.severity == ErrorSeverity.MEDIUM
    assert record.retryable is True
    assert record.user_action == "Wait a few minutes before trying again"
    assert record.context == "condenser"
    assert record.details == "PipelineError"
    assert record.stack_trace
    assert record.id.startswith("error_")


def test_classify_configuration_error(classifier):
    error = ProviderConfigurationError(
        "Anthropic API key is not configured. Please set it in the application settings or ANTHROPIC_API_KEY."
    )
    record = classifier.classify(error, "synthesizer")

    assert record.code == ErrorCode.API_KEY_MISSING
    assert record.severity == ErrorSeverity.CRITICAL
    assert record.retryable is False
    assert record.user_action == "Configure your API key in settings"


def test_classify_overrides(classifier):
    record = classifier.classify(
        NetworkError("Network error: offline"),
        "setup",
        message="Could not load models",
        code=ErrorCode.CONFIG_MISSING_SETTING,
        category=ErrorCategory.SYSTEM,
        metadata={"provider": "ollama"},
        session_id="s1",
    )

    assert record.code == ErrorCode.CONFIG_MISSING_SETTING
    assert record.category == ErrorCategory.SYSTEM
    assert record.message == "Could not load models"
    assert record.metadata == {"provider": "ollama"}
    assert record.session_id == "s1"


def test_classify_plain_string(classifier):
    record = classifier.classify("network error while uploading", "file_processing")
    assert record.code == ErrorCode.NETWORK_CONNECTION_FAILED
    assert record.details is None
    assert record.stack_trace is None


def test_enhanced_error_is_immutable(classifier):
    record = classifier.classify("oops", "setup")
    with pytest.raises(Exception):
        record.message = "changed"


# =============================================================================
# Error Manager
# =============================================================================

def test_handle_error_notifies_listeners(manager):
    received = []
    manager.on_error(received.append)

    record = manager.handle_error(Exception("Rate limit exceeded"), "enhancer")

    assert received == [record]
    assert record.session_id == "session_test"
    assert manager.get_error_log() == [record]


def test_critical_error_builds_modal_notification(manager):
    notifications = []
    manager.on_notification(notifications.append)

    record = manager.handle_error(Exception("invalid x-api-key"), "synthesizer")

    assert len(notifications) == 1
    notification = notifications[0]
    assert notification.type == "modal"
    assert notification.title == "Critical Error"
    assert notification.error_id == record.id
    assert notification.message == "Verify that your API key is correct in settings"
    assert [action.action for action in notification.actions] == ["open_settings"]


def test_high_error_builds_toast_with_retry(manager):
    notifications = []
    manager.on_notification(notifications.append)

    manager.handle_error(Exception("503 Service Unavailable"), "finalizer")

    assert notifications[0].type == "toast"
    assert notifications[0].title == "Important Error"
    assert [action.label for action in notifications[0].actions] == ["Retry"]


def test_medium_error_has_no_notification(manager):
    notifications = []
    manager.on_notification(notifications.append)

    manager.handle_error(Exception("Rate limit exceeded"), "synthesizer")

    assert notifications == []


def test_unsubscribe(manager):
    received = []
    unsubscribe = manager.on_error(received.append)
    unsubscribe()

    manager.handle_error("anything", "setup")

    assert received == []


def test_failing_listener_does_not_break_others(manager):
    received = []

    def broken(record):
        raise RuntimeError("listener bug")

    manager.on_error(broken)
    manager.on_error(received.append)

    record = manager.handle_error("anything", "setup")

    assert received == [record]


def test_error_log_is_bounded():
    manager = ErrorManager(max_log_size=3)
    for n in range(5):
        manager.handle_error(f"error {n}", "setup")

    assert [record.message for record in manager.get_error_log()] == ["error 2", "error 3", "error 4"]


def test_error_stats(manager):
    manager.handle_error("Rate limit exceeded", "synthesizer")
    manager.handle_error("Rate limit exceeded", "condenser")
    manager.handle_error("invalid api key", "setup")

    stats = manager.get_error_stats()

    assert stats["total"] == 3
    assert stats["by_severity"]["medium"] == 2
    assert stats["by_severity"]["critical"] == 1
    assert stats["by_category"]["api"] == 3
    assert stats["by_code"]["API_003"] == 2

    manager.clear_error_log()
    assert manager.get_error_stats()["total"] == 0


def test_convenience_helpers(manager):
    validation = manager.create_validation_error("Topic missing", code=ErrorCode.VALIDATION_REQUIRED_FIELD)
    assert validation.category == ErrorCategory.VALIDATION
    assert validation.code == ErrorCode.VALIDATION_REQUIRED_FIELD

    file_error = manager.create_file_error("Unsupported format for notes.pdf")
    assert file_error.category == ErrorCategory.FILE
    assert file_error.context == "file_processing"

    processing = manager.create_processing_error("Stage crashed", "enhancer")
    assert processing.code == ErrorCode.PROCESSING_STAGE_FAILED
    assert processing.context == "enhancer"

    api = manager.create_api_error("Could not reach the API", NetworkError("network error"))
    assert api.code == ErrorCode.NETWORK_CONNECTION_FAILED
    assert api.category == ErrorCategory.API


def test_classify_reads_cause_chain(classifier):
    try:
        try:
            raise ValueError("Rate limit reached")
        except ValueError as inner:
            raise RuntimeError("Title request failed") from inner
    except RuntimeError as e:
        error = e

    record = classifier.classify(error, "title_generation")

    assert record.code == ErrorCode.API_RATE_LIMIT
    assert record.message == "Title request failed: Rate limit reached"
