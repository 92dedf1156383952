"""Metrics and statistics for the event system."""

import time
from collections.abc import Mapping
from datetime import UTC, datetime

from mosaic.core.events.types import EventProcessingStats, EventSystemMetrics, Subscription

# Rough per-object byte costs used by the memory estimate
SUBSCRIPTION_BYTES = 200
QUEUED_EVENT_BYTES = 500
STATS_ENTRY_BYTES = 100


class MetricsManager:
    """Tracks global counters, per event type stats and per subscription stats."""

    def __init__(self) -> None:
        self._processing_stats: dict[str, EventProcessingStats] = {}
        self._start_time = time.monotonic()
        self._metrics = EventSystemMetrics()

    def update_metrics(self, subscriptions: Mapping[str, Subscription], queue_size: int) -> None:
        """Recompute the derived fields from the current system state."""
        self._metrics.active_subscriptions = sum(1 for s in subscriptions.values() if s.is_active)
        self._metrics.queue_size = queue_size
        self._metrics.uptime = time.monotonic() - self._start_time
        self._metrics.memory_usage = self._estimate_memory_usage(subscriptions, queue_size)

        self._metrics.event_type_stats = {
            event_type: stats.model_copy() for event_type, stats in self._processing_stats.items()
        }

        # Weighted mean across event types
        total_time = 0.0
        total_events = 0
        for stats in self._processing_stats.values():
            total_time += stats.average_processing_time * stats.total_events
            total_events += stats.total_events
        self._metrics.average_event_processing_time = (
            total_time / total_events if total_events > 0 else 0.0
        )

    def increment_events_published(self) -> None:
        self._metrics.total_events_published += 1

    def increment_events_processed(self) -> None:
        self._metrics.total_events_processed += 1

    def increment_events_failed(self) -> None:
        self._metrics.total_events_failed += 1

    def update_event_type_stats(
        self,
        event_type: str,
        success: bool,
        duration: float = 0.0,
        subscriber_count: int | None = None,
    ) -> EventProcessingStats:
        """Record one processed event for its type."""
        stats = self._processing_stats.get(event_type)
        if stats is None:
            stats = self._create_empty_stats(event_type)
            self._processing_stats[event_type] = stats

        stats.total_events += 1
        stats.last_processed = datetime.now(UTC)
        if success:
            stats.successful_events += 1
        else:
            stats.failed_events += 1
        if subscriber_count is not None:
            stats.subscriber_count = subscriber_count

        # Incremental running mean
        stats.average_processing_time += (duration - stats.average_processing_time) / stats.total_events
        return stats

    def update_subscription_stats(
        self,
        subscription: Subscription,
        duration: float,
        is_error: bool,
        error: str | None = None,
    ) -> None:
        subscription.execution_count += 1
        subscription.total_execution_time += duration
        subscription.last_executed = datetime.now(UTC)

        if is_error:
            subscription.error_count += 1
            subscription.last_error = error or "Handler execution failed"

    def get_stats(
        self, event_type: str | None = None
    ) -> EventProcessingStats | dict[str, EventProcessingStats]:
        """Stats for one event type, or a copy of all of them."""
        if event_type is not None:
            stats = self._processing_stats.get(event_type)
            return stats.model_copy() if stats else self._create_empty_stats(event_type)
        return {name: stats.model_copy() for name, stats in self._processing_stats.items()}

    def get_metrics(self) -> EventSystemMetrics:
        return self._metrics.model_copy(deep=True)

    def reset(self) -> None:
        self._processing_stats.clear()
        self._start_time = time.monotonic()
        self._metrics = EventSystemMetrics()

    def _create_empty_stats(self, event_type: str) -> EventProcessingStats:
        return EventProcessingStats(event_type=event_type)

    def _estimate_memory_usage(
        self, subscriptions: Mapping[str, Subscription], queue_size: int
    ) -> int:
        """Approximate footprint in bytes. A heuristic, not a measurement."""
        return (
            len(subscriptions) * SUBSCRIPTION_BYTES
            + queue_size * QUEUED_EVENT_BYTES
            + len(self._processing_stats) * STATS_ENTRY_BYTES
        )
