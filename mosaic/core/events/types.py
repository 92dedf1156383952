"""Core event types."""

import re
import uuid
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from enum import Enum, IntEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

WILDCARD = "*"


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _new_id() -> str:
    return str(uuid.uuid4())


class EventPriority(IntEnum):
    """Event priority levels. Lower values are dequeued first."""

    CRITICAL = 0
    HIGH = 1
    NORMAL = 2
    LOW = 3
    BACKGROUND = 4

    @classmethod
    def parse(cls, value: Any) -> "EventPriority":
        """Accept an enum member, its integer value or a case-insensitive name."""
        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            try:
                return cls[value.strip().upper()]
            except KeyError:
                raise ValueError(f"Unknown event priority: {value!r}") from None
        return cls(value)


class EventProcessingMode(str, Enum):
    """How the handlers matched by one event are scheduled."""

    SYNC = "sync"
    ASYNC = "async"
    PARALLEL = "parallel"
    SEQUENTIAL = "sequential"


class EventHandlerStatus(str, Enum):
    """Handler execution status."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"
    CANCELLED = "cancelled"


class PatternType(str, Enum):
    """Pattern kinds understood by pattern subscriptions."""

    GLOB = "glob"
    REGEX = "regex"
    EXACT = "exact"


class Event(BaseModel):
    """Immutable event record."""

    id: str = Field(default_factory=_new_id)
    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)
    source: str | None = None
    priority: EventPriority = EventPriority.NORMAL
    processing_mode: EventProcessingMode = EventProcessingMode.ASYNC
    correlation_id: str | None = None
    parent_event_id: str | None = None
    timeout: float | None = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)
    retry_count: int = 0
    max_retries: int = 0

    model_config = ConfigDict(frozen=True)

    @field_validator("priority", mode="before")
    @classmethod
    def validate_priority(cls, value: Any) -> EventPriority:
        return EventPriority.parse(value)


EventHandler = Callable[[Event], Any]
EventFilter = Callable[[Event], bool]
NextFunction = Callable[[], Awaitable[None]]
EventMiddleware = Callable[[Event, NextFunction], Awaitable[None]]


class EventHandlerConfig(BaseModel):
    """Per-subscription handler configuration.

    Unset fields are filled in from the event system defaults at subscribe time.
    """

    id: str | None = None
    priority: EventPriority | None = None
    processing_mode: EventProcessingMode | None = None
    timeout: float | None = Field(default=None, gt=0)
    max_retries: int | None = Field(default=None, ge=0)
    retry_delay: float | None = Field(default=None, ge=0)
    retry_backoff: float | None = Field(default=None, gt=0)
    filter: EventFilter | None = None
    error_handler: Callable[[Exception, Event], Any] | None = None
    before_handler: Callable[[Event], Any] | None = None
    after_handler: Callable[[Event, Any], Any] | None = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @field_validator("priority", mode="before")
    @classmethod
    def validate_priority(cls, value: Any) -> EventPriority | None:
        if value is None:
            return None
        return EventPriority.parse(value)


class Subscription(BaseModel):
    """A registered handler and its execution statistics."""

    id: str = Field(default_factory=_new_id)
    event_type: str
    handler: EventHandler
    config: EventHandlerConfig = Field(default_factory=EventHandlerConfig)
    created_at: datetime = Field(default_factory=_utcnow)
    is_active: bool = True
    execution_count: int = 0
    last_executed: datetime | None = None
    total_execution_time: float = 0.0
    error_count: int = 0
    last_error: str | None = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def priority(self) -> EventPriority:
        return self.config.priority if self.config.priority is not None else EventPriority.NORMAL

    def describe(self) -> dict[str, Any]:
        """JSON-friendly view without the callables."""
        return {
            "id": self.id,
            "event_type": self.event_type,
            "handler": getattr(self.handler, "__qualname__", str(self.handler)),
            "priority": self.priority.name,
            "processing_mode": self.config.processing_mode.value
            if self.config.processing_mode
            else None,
            "timeout": self.config.timeout,
            "max_retries": self.config.max_retries,
            "created_at": self.created_at.isoformat(),
            "is_active": self.is_active,
            "execution_count": self.execution_count,
            "total_execution_time": self.total_execution_time,
            "error_count": self.error_count,
            "last_executed": self.last_executed.isoformat() if self.last_executed else None,
            "last_error": self.last_error,
        }


class EventHandlerResult(BaseModel):
    """Outcome of running one subscription against one event."""

    handler_id: str
    event_id: str
    status: EventHandlerStatus = EventHandlerStatus.RUNNING
    start_time: datetime = Field(default_factory=_utcnow)
    end_time: datetime | None = None
    duration: float | None = None
    retry_count: int = 0
    result: Any = None
    error: str | None = None
    error_type: str | None = None

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @property
    def succeeded(self) -> bool:
        return self.status == EventHandlerStatus.COMPLETED


class DeadLetterEvent(BaseModel):
    """An event whose processing failed after retries were exhausted."""

    original_event: Event
    failure_reason: str
    failure_time: datetime = Field(default_factory=_utcnow)
    attempt_count: int = 1
    last_error: str | None = None
    failed_handlers: list[str] = Field(default_factory=list)


class BatchEventData(BaseModel):
    """One entry of an event batch."""

    type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    source: str | None = None
    correlation_id: str | None = None
    parent_event_id: str | None = None
    timeout: float | None = None
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)


class EventBatch(BaseModel):
    """Events published together with shared defaults."""

    events: list[BatchEventData]
    processing_mode: EventProcessingMode | None = None
    priority: EventPriority | None = None

    @field_validator("priority", mode="before")
    @classmethod
    def validate_priority(cls, value: Any) -> EventPriority | None:
        if value is None:
            return None
        return EventPriority.parse(value)


class EventPattern(BaseModel):
    """Pattern used by pattern-based subscriptions."""

    pattern: str | re.Pattern
    type: PatternType = PatternType.GLOB

    model_config = ConfigDict(arbitrary_types_allowed=True)


class EventProcessingStats(BaseModel):
    """Processing statistics for one event type."""

    event_type: str
    total_events: int = 0
    successful_events: int = 0
    failed_events: int = 0
    average_processing_time: float = 0.0
    last_processed: datetime | None = None
    subscriber_count: int = 0


class EventSystemMetrics(BaseModel):
    """System-wide counters."""

    total_events_published: int = 0
    total_events_processed: int = 0
    total_events_failed: int = 0
    average_event_processing_time: float = 0.0
    active_subscriptions: int = 0
    queue_size: int = 0
    memory_usage: int = 0
    uptime: float = 0.0
    event_type_stats: dict[str, EventProcessingStats] = Field(default_factory=dict)


class RetryPolicy(BaseModel):
    """Retry policy configuration. Delays are in seconds."""

    max_retries: int = Field(default=3, ge=0)
    initial_delay: float = Field(default=1.0, ge=0)
    backoff_multiplier: float = Field(default=2.0, gt=0)
    max_delay: float = Field(default=10.0, ge=0)
    jitter: bool = True


class EventQueueConfig(BaseModel):
    """Pending queue configuration.

    ``retry_policy`` and ``persist_events`` are accepted for configuration
    compatibility but are not read: retries follow
    ``EventSystemConfig.default_retry_policy`` and events are never persisted.
    """

    max_size: int = Field(default=10000, gt=0)
    processing_concurrency: int = Field(default=10, gt=0)
    retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    dead_letter_queue: bool = True
    dead_letter_limit: int = Field(default=1000, gt=0)
    persist_events: bool = False


class EventSystemConfig(BaseModel):
    """Event system configuration.

    ``enable_persistence`` is inert; the system keeps all state in memory.
    """

    max_listeners: int = Field(default=1000, gt=0)
    history_limit: int = Field(default=1000, gt=0)
    enable_metrics: bool = True
    metrics_interval: float = Field(default=5.0, gt=0)
    enable_persistence: bool = False
    default_timeout: float = Field(default=30.0, gt=0)
    default_retry_policy: RetryPolicy = Field(default_factory=RetryPolicy)
    queue_config: EventQueueConfig = Field(default_factory=EventQueueConfig)
    middleware: list[EventMiddleware] = Field(default_factory=list)
    idle_poll_interval: float = Field(default=0.01, gt=0)
    error_cooldown: float = Field(default=1.0, ge=0)

    model_config = ConfigDict(arbitrary_types_allowed=True)
