"""
Observability context shared by the pipeline components.

An ``ObservabilityContext`` bundles the structlog logger, the ``ErrorManager``
and an in-memory ``LogCollector`` for one session. It is created by the caller
and passed explicitly to the engine, stage runner, retry executor and
providers, so tests can inspect what was logged without patching globals.

Example:
    >>> obs = ObservabilityContext.create()
    >>> obs.collector.start_timer("synthesizer")
    >>> ...
    >>> metrics = obs.collector.end_timer("synthesizer")
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any, Callable, Optional
from uuid import uuid4

from knowledge_architect.models.schemas import EnhancedError, LogEntry, LogLevel
from knowledge_architect.utils.logger import get_logger

if TYPE_CHECKING:
    from knowledge_architect.services.error_service import ErrorManager

logger = get_logger(__name__)


# =============================================================================
# Constants
# =============================================================================

LEVEL_ORDER: tuple[LogLevel, ...] = (
    LogLevel.DEBUG,
    LogLevel.INFO,
    LogLevel.WARN,
    LogLevel.ERROR,
    LogLevel.CRITICAL,
)

DEFAULT_MAX_LOG_ENTRIES = 1000

_STRUCTLOG_METHODS = {
    LogLevel.DEBUG: "debug",
    LogLevel.INFO: "info",
    LogLevel.WARN: "warning",
    LogLevel.ERROR: "error",
    LogLevel.CRITICAL: "critical",
}


# =============================================================================
# Records
# =============================================================================

@dataclass
class PerformanceMetrics:
    """Timing of one tracked operation, in seconds."""
    operation: str
    start_time: float
    end_time: Optional[float] = None
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def duration(self) -> Optional[float]:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time


@dataclass
class AnalyticsEvent:
    name: str
    category: str
    session_id: str
    properties: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)
    id: str = field(default_factory=lambda: f"event_{uuid4().hex[:12]}")


# =============================================================================
# Log Collector
# =============================================================================

class LogCollector:
    """
    Bounded in-memory log with level filtering and performance timers.

    Every accepted entry is also forwarded to structlog, so the collector
    adds queryable history on top of normal logging rather than replacing it.
    """

    def __init__(
        self,
        session_id: Optional[str] = None,
        max_entries: int = DEFAULT_MAX_LOG_ENTRIES,
        level: LogLevel | str = LogLevel.INFO,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_id = session_id or f"log_session_{uuid4().hex[:12]}"
        self.max_entries = max_entries
        self.level = LogLevel(level)
        self._clock = clock
        self._entries: list[LogEntry] = []
        self._events: list[AnalyticsEvent] = []
        self._timers: dict[str, PerformanceMetrics] = {}
        self._listeners: list[Callable[[LogEntry], None]] = []

    def should_log(self, level: LogLevel | str) -> bool:
        return LEVEL_ORDER.index(LogLevel(level)) >= LEVEL_ORDER.index(self.level)

    def log(
        self,
        level: LogLevel | str,
        message: str,
        category: str = "general",
        context: Optional[str] = None,
        **metadata: Any,
    ) -> Optional[LogEntry]:
        level = LogLevel(level)
        if not self.should_log(level):
            return None

        entry = LogEntry(
            level=level,
            message=message,
            category=category,
            context=context,
            metadata=metadata,
            session_id=self.session_id,
        )
        self._entries.append(entry)
        if len(self._entries) > self.max_entries:
            del self._entries[: len(self._entries) - self.max_entries]

        getattr(logger, _STRUCTLOG_METHODS[level])(
            message, category=category, context=context, **metadata
        )

        for listener in list(self._listeners):
            try:
                listener(entry)
            except Exception as e:
                logger.warning("Log listener failed", error=str(e))
        return entry

    def debug(self, message: str, category: str = "general", context: Optional[str] = None, **metadata: Any):
        return self.log(LogLevel.DEBUG, message, category, context, **metadata)

    def info(self, message: str, category: str = "general", context: Optional[str] = None, **metadata: Any):
        return self.log(LogLevel.INFO, message, category, context, **metadata)

    def warn(self, message: str, category: str = "general", context: Optional[str] = None, **metadata: Any):
        return self.log(LogLevel.WARN, message, category, context, **metadata)

    def error(self, message: str, category: str = "general", context: Optional[str] = None, **metadata: Any):
        return self.log(LogLevel.ERROR, message, category, context, **metadata)

    def critical(self, message: str, category: str = "general", context: Optional[str] = None, **metadata: Any):
        return self.log(LogLevel.CRITICAL, message, category, context, **metadata)

    def log_error(self, error: EnhancedError) -> None:
        """Record a classified error at a level derived from its severity."""
        level = {
            "critical": LogLevel.CRITICAL,
            "high": LogLevel.ERROR,
            "medium": LogLevel.WARN,
        }.get(error.severity, LogLevel.INFO)
        self.log(
            level,
            error.message,
            category="error",
            context=error.context,
            error_id=error.id,
            code=error.code,
            retryable=error.retryable,
        )

    # =========================================================================
    # Performance Tracking
    # =========================================================================

    def start_timer(self, operation: str, **metadata: Any) -> None:
        self._timers[operation] = PerformanceMetrics(
            operation=operation,
            start_time=self._clock(),
            metadata=metadata,
        )
        self.debug(f"Started performance tracking for: {operation}", "performance", "tracking")

    def end_timer(self, operation: str, **metadata: Any) -> Optional[PerformanceMetrics]:
        metrics = self._timers.pop(operation, None)
        if metrics is None:
            self.warn(f"No performance tracking found for: {operation}", "performance", "tracking")
            return None

        metrics.end_time = self._clock()
        metrics.metadata.update(metadata)
        self.info(
            f"Performance: {operation}",
            "performance",
            "measurement",
            duration_seconds=round(metrics.duration, 3),
            **metrics.metadata,
        )
        return metrics

    def track_event(self, name: str, category: str = "general", **properties: Any) -> AnalyticsEvent:
        event = AnalyticsEvent(
            name=name,
            category=category,
            session_id=self.session_id,
            properties=properties,
        )
        self._events.append(event)
        self.debug(f"Event tracked: {name}", "analytics", category, **properties)
        return event

    # =========================================================================
    # Listeners and Queries
    # =========================================================================

    def on_log(self, listener: Callable[[LogEntry], None]) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def get_logs(
        self,
        level: Optional[LogLevel | str] = None,
        category: Optional[str] = None,
        context: Optional[str] = None,
    ) -> list[LogEntry]:
        entries = list(self._entries)
        if level is not None:
            entries = [e for e in entries if e.level == LogLevel(level)]
        if category is not None:
            entries = [e for e in entries if e.category == category]
        if context is not None:
            entries = [e for e in entries if e.context == context]
        return entries

    def get_events(self) -> list[AnalyticsEvent]:
        return list(self._events)

    def get_log_stats(self) -> dict[str, Any]:
        one_hour_ago = datetime.utcnow() - timedelta(hours=1)
        by_level = {level.value: 0 for level in LEVEL_ORDER}
        by_category: dict[str, int] = {}
        recent_errors = 0
        for entry in self._entries:
            by_level[entry.level] += 1
            by_category[entry.category] = by_category.get(entry.category, 0) + 1
            if entry.level in (LogLevel.ERROR, LogLevel.CRITICAL) and entry.timestamp > one_hour_ago:
                recent_errors += 1
        return {
            "total": len(self._entries),
            "by_level": by_level,
            "by_category": by_category,
            "recent_errors": recent_errors,
        }

    def set_level(self, level: LogLevel | str) -> None:
        self.level = LogLevel(level)
        self.info(f"Log level changed to: {self.level.value}", "logging", "configuration")

    def clear(self) -> None:
        self._entries.clear()
        self._events.clear()
        self._timers.clear()

    def export_logs(self) -> str:
        """Export entries, events and stats as a JSON document."""
        payload = {
            "session_id": self.session_id,
            "timestamp": datetime.utcnow().isoformat(),
            "logs": [entry.model_dump(mode="json") for entry in self._entries],
            "analytics_events": [
                {
                    "id": event.id,
                    "name": event.name,
                    "category": event.category,
                    "timestamp": event.timestamp.isoformat(),
                    "properties": event.properties,
                }
                for event in self._events
            ],
            "stats": self.get_log_stats(),
        }
        return json.dumps(payload, indent=2, default=str)


# =============================================================================
# Context
# =============================================================================

@dataclass
class ObservabilityContext:
    """Logger, error manager and log collector for one session."""

    session_id: str
    error_manager: ErrorManager
    collector: LogCollector
    logger: Any = field(default_factory=lambda: get_logger("knowledge_architect"))

    @classmethod
    def create(
        cls,
        session_id: Optional[str] = None,
        max_log_entries: int = DEFAULT_MAX_LOG_ENTRIES,
        level: LogLevel | str = LogLevel.INFO,
        clock: Callable[[], float] = time.monotonic,
    ) -> "ObservabilityContext":
        # Imported here: the services package imports this module.
        from knowledge_architect.services.error_service import ErrorManager

        session_id = session_id or f"session_{uuid4().hex[:12]}"
        error_manager = ErrorManager(session_id=session_id)
        collector = LogCollector(
            session_id=session_id,
            max_entries=max_log_entries,
            level=level,
            clock=clock,
        )
        error_manager.on_error(collector.log_error)
        return cls(
            session_id=session_id,
            error_manager=error_manager,
            collector=collector,
            logger=get_logger("knowledge_architect", session_id=session_id),
        )


__all__ = [
    "LEVEL_ORDER",
    "DEFAULT_MAX_LOG_ENTRIES",
    "PerformanceMetrics",
    "AnalyticsEvent",
    "LogCollector",
    "ObservabilityContext",
]
