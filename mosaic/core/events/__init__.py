"""Enhanced event system interfaces and implementations."""

from .errors import (
    EventQueueFullError,
    EventSystemError,
    HandlerExecutionError,
    HandlerTimeoutError,
    SynchronousContractError,
    UnsupportedPatternError,
)
from .metrics import MetricsManager
from .priority_queue import PriorityQueue
from .processor import EventProcessor
from .system import EnhancedEventSystem
from .types import (
    WILDCARD,
    BatchEventData,
    DeadLetterEvent,
    Event,
    EventBatch,
    EventFilter,
    EventHandler,
    EventHandlerConfig,
    EventHandlerResult,
    EventHandlerStatus,
    EventMiddleware,
    EventPattern,
    EventPriority,
    EventProcessingMode,
    EventProcessingStats,
    EventQueueConfig,
    EventSystemConfig,
    EventSystemMetrics,
    NextFunction,
    PatternType,
    RetryPolicy,
    Subscription,
)

__all__ = [
    "WILDCARD",
    "BatchEventData",
    "DeadLetterEvent",
    "EnhancedEventSystem",
    "Event",
    "EventBatch",
    "EventFilter",
    "EventHandler",
    "EventHandlerConfig",
    "EventHandlerResult",
    "EventHandlerStatus",
    "EventMiddleware",
    "EventPattern",
    "EventPriority",
    "EventProcessingMode",
    "EventProcessingStats",
    "EventProcessor",
    "EventQueueConfig",
    "EventQueueFullError",
    "EventSystemConfig",
    "EventSystemError",
    "EventSystemMetrics",
    "HandlerExecutionError",
    "HandlerTimeoutError",
    "MetricsManager",
    "NextFunction",
    "PatternType",
    "PriorityQueue",
    "RetryPolicy",
    "Subscription",
    "SynchronousContractError",
    "UnsupportedPatternError",
]
