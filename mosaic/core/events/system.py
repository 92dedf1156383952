"""Enhanced event system: priority-queued, middleware-composable publish/subscribe."""

import asyncio
import time
import uuid
from collections import deque
from collections.abc import Awaitable, Callable, Mapping
from typing import Any

from pydantic import ValidationError

from mosaic.core.events.errors import (
    EventQueueFullError,
    HandlerExecutionError,
    UnsupportedPatternError,
)
from mosaic.core.events.metrics import MetricsManager
from mosaic.core.events.priority_queue import PriorityQueue
from mosaic.core.events.processor import EventProcessor
from mosaic.core.events.types import (
    WILDCARD,
    DeadLetterEvent,
    Event,
    EventBatch,
    EventHandler,
    EventHandlerConfig,
    EventHandlerResult,
    EventHandlerStatus,
    EventMiddleware,
    EventPattern,
    EventPriority,
    EventProcessingMode,
    EventProcessingStats,
    EventSystemConfig,
    EventSystemMetrics,
    PatternType,
    Subscription,
)
from mosaic.utils.logging_config import get_logger

logger = get_logger(__name__)

ConfigInput = EventHandlerConfig | Mapping[str, Any] | None


class EnhancedEventSystem:
    """Publish/subscribe core with a priority queue, retries and a dead-letter queue.

    Queued events (``publish``) are drained by a background loop started with
    ``start()``. ``emit_sync`` and ``emit_async`` bypass the queue. All state is
    owned by one instance and mutated only from the event loop thread.
    """

    def __init__(
        self,
        config: EventSystemConfig | None = None,
        processor: EventProcessor | None = None,
        metrics: MetricsManager | None = None,
    ) -> None:
        self.config = config or EventSystemConfig()
        self._subscriptions: dict[str, Subscription] = {}
        self._queue: PriorityQueue[Event] = PriorityQueue()
        self._dead_letter_queue: deque[DeadLetterEvent] = deque(
            maxlen=self.config.queue_config.dead_letter_limit
        )
        self._history: dict[str, deque[Event]] = {}
        self._middleware: list[EventMiddleware] = list(self.config.middleware)
        self._processor = processor or EventProcessor()
        self._metrics = metrics or MetricsManager()

        self._processing = False
        self._loop_task: asyncio.Task | None = None
        self._metrics_task: asyncio.Task | None = None
        self._pending_tasks: set[asyncio.Task] = set()
        self._slots = asyncio.Semaphore(self.config.queue_config.processing_concurrency)
        self._req_id = str(uuid.uuid4())

        logger.info("Enhanced event system created", extra=self._extra())

    # Lifecycle

    @property
    def is_processing(self) -> bool:
        return self._processing

    @property
    def queue_size(self) -> int:
        return self._queue.size()

    @property
    def pending_task_count(self) -> int:
        return len(self._pending_tasks)

    async def start(self) -> None:
        """Start the dequeue loop and, if enabled, periodic metrics collection."""
        self._start_queue_processing()
        if self.config.enable_metrics and self._metrics_task is None:
            self._metrics_task = asyncio.create_task(
                self._collect_metrics(), name="event-system-metrics"
            )
        logger.info("Enhanced event system started", extra=self._extra())

    def pause(self) -> None:
        """Stop dequeuing. Published events keep accumulating in the queue."""
        self._processing = False
        logger.info("Event processing paused", extra=self._extra(queue_size=self._queue.size()))

    def resume(self) -> None:
        """Restart dequeuing. Must be called from a running event loop."""
        if self._processing:
            return
        self._start_queue_processing()
        logger.info("Event processing resumed", extra=self._extra(queue_size=self._queue.size()))

    async def shutdown(self, timeout: float | None = None) -> None:
        """Stop the loop, wait for in-flight processing, then clear all state.

        Args:
            timeout: Seconds to wait for outstanding tasks before cancelling them
        """
        logger.info(
            "Shutting down enhanced event system",
            extra=self._extra(pending_tasks=len(self._pending_tasks)),
        )
        self._processing = False

        for task in (self._loop_task, self._metrics_task):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except asyncio.CancelledError:
                    pass
        self._loop_task = None
        self._metrics_task = None

        await self._drain_pending_tasks(timeout)

        self._subscriptions.clear()
        self._queue.clear()
        self._history.clear()
        self._dead_letter_queue.clear()
        self._pending_tasks.clear()

        logger.info("Enhanced event system shutdown complete", extra=self._extra())

    # Subscriptions

    def subscribe(
        self,
        event_type: str,
        handler: EventHandler,
        config: ConfigInput = None,
        **options: Any,
    ) -> str:
        """Register a handler for an event type (or ``*`` for every type).

        Unset configuration falls back to the system defaults. Keyword options
        override fields of ``config``.

        Returns:
            str: The subscription id
        """
        if not event_type:
            raise ValueError("Event type cannot be empty")
        if not callable(handler):
            raise ValueError("Handler must be callable")

        resolved = self._apply_defaults(self._build_config(config, options))
        subscription_id = resolved.id or str(uuid.uuid4())
        if subscription_id in self._subscriptions:
            raise ValueError(f"Subscription {subscription_id} already exists")

        if len(self._subscriptions) >= self.config.max_listeners:
            logger.warning(
                "Maximum listener count exceeded",
                extra=self._extra(
                    max_listeners=self.config.max_listeners,
                    subscription_count=len(self._subscriptions) + 1,
                ),
            )

        self._subscriptions[subscription_id] = Subscription(
            id=subscription_id,
            event_type=event_type,
            handler=handler,
            config=resolved,
        )
        self._update_metrics()

        logger.debug(
            f"Subscribed to event {event_type} with ID {subscription_id}",
            extra=self._extra(
                event_type=event_type,
                subscription_id=subscription_id,
                handler=getattr(handler, "__qualname__", str(handler)),
            ),
        )
        return subscription_id

    def subscribe_pattern(
        self,
        pattern: EventPattern | Mapping[str, Any] | str,
        handler: EventHandler,
        config: ConfigInput = None,
        **options: Any,
    ) -> str:
        """Subscribe with a glob, regex or exact pattern on the event type.

        A bare string is treated as a glob. The pattern is combined with any
        filter already present in the configuration.
        """
        if isinstance(pattern, str):
            pattern = EventPattern(pattern=pattern, type=PatternType.GLOB)
        elif not isinstance(pattern, EventPattern):
            try:
                pattern = EventPattern.model_validate(pattern)
            except ValidationError as e:
                raise UnsupportedPatternError(f"Invalid event pattern: {e}") from e

        pattern_filter = self._processor.build_pattern_filter(pattern)
        base = self._build_config(config, options)
        existing = base.filter

        if existing is None:
            combined = pattern_filter
        else:

            def combined(event: Event) -> bool:
                return bool(existing(event)) and pattern_filter(event)

        return self.subscribe(WILDCARD, handler, base.model_copy(update={"filter": combined}))

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a subscription. Returns False for unknown ids."""
        subscription = self._subscriptions.get(subscription_id)
        if subscription is None:
            logger.warning(
                f"Subscription {subscription_id} not found",
                extra=self._extra(subscription_id=subscription_id),
            )
            return False

        subscription.is_active = False
        del self._subscriptions[subscription_id]
        self._update_metrics()

        logger.debug(
            f"Unsubscribed from event {subscription.event_type} with ID {subscription_id}",
            extra=self._extra(event_type=subscription.event_type, subscription_id=subscription_id),
        )
        return True

    def get_subscriptions(self, event_type: str | None = None) -> list[Subscription]:
        """Active subscriptions, optionally those that would receive ``event_type``."""
        subscriptions = [s for s in self._subscriptions.values() if s.is_active]
        if event_type is not None:
            return [s for s in subscriptions if s.event_type in (event_type, WILDCARD)]
        return subscriptions

    # Publishing

    def publish(
        self,
        event_type: str,
        payload: dict[str, Any] | None = None,
        *,
        source: str | None = None,
        priority: EventPriority | str | int | None = None,
        processing_mode: EventProcessingMode | str | None = None,
        correlation_id: str | None = None,
        parent_event_id: str | None = None,
        timeout: float | None = None,
        tags: list[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> str:
        """Queue an event for background processing.

        Returns:
            str: The event id

        Raises:
            EventQueueFullError: If the pending queue is at its maximum size
        """
        max_size = self.config.queue_config.max_size
        if self._queue.size() >= max_size:
            logger.warning(
                "Event queue full, rejecting event",
                extra=self._extra(event_type=event_type, queue_size=self._queue.size()),
            )
            raise EventQueueFullError(max_size)

        event = Event(
            type=event_type,
            payload=payload or {},
            source=source,
            priority=priority if priority is not None else EventPriority.NORMAL,
            processing_mode=processing_mode or EventProcessingMode.ASYNC,
            correlation_id=correlation_id,
            parent_event_id=parent_event_id,
            timeout=timeout,
            tags=tags or [],
            metadata=metadata or {},
            retry_count=0,
            max_retries=self.config.default_retry_policy.max_retries,
        )

        self._add_to_history(event)
        self._queue.enqueue(event, event.priority)
        self._metrics.increment_events_published()
        self._update_metrics()

        logger.debug(
            f"Published event {event_type} with ID {event.id}",
            extra=self._extra(
                event_id=event.id,
                event_type=event_type,
                priority=event.priority.name,
                processing_mode=event.processing_mode.value,
                queue_size=self._queue.size(),
            ),
        )
        return event.id

    def publish_batch(self, batch: EventBatch | Mapping[str, Any]) -> list[str]:
        """Publish each batch entry in order. There is no rollback on partial failure."""
        if not isinstance(batch, EventBatch):
            batch = EventBatch.model_validate(batch)

        return [
            self.publish(
                item.type,
                item.payload,
                source=item.source,
                priority=batch.priority,
                processing_mode=batch.processing_mode,
                correlation_id=item.correlation_id,
                parent_event_id=item.parent_event_id,
                timeout=item.timeout,
                tags=item.tags,
                metadata=item.metadata,
            )
            for item in batch.events
        ]

    def emit_sync(
        self,
        event_type: str,
        payload: dict[str, Any] | None = None,
        *,
        source: str | None = None,
        correlation_id: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> list[EventHandlerResult]:
        """Run all matching handlers on the caller's stack and return their results.

        Handlers must be synchronous; an awaitable from a handler or hook yields
        a FAILED result. Middleware is not applied on this path.
        """
        event = Event(
            type=event_type,
            payload=payload or {},
            source=source,
            priority=EventPriority.CRITICAL,
            processing_mode=EventProcessingMode.SYNC,
            correlation_id=correlation_id,
            metadata=metadata or {},
            retry_count=0,
            max_retries=0,
        )

        subscriptions = self._processor.get_matching_subscriptions(event, self._subscriptions)
        started = time.perf_counter()
        results = [self._processor.execute_handler_sync(s, event) for s in subscriptions]
        if subscriptions:
            self._record_results(event, subscriptions, results, time.perf_counter() - started)
        return results

    async def emit_async(
        self,
        event_type: str,
        payload: dict[str, Any] | None = None,
        *,
        source: str | None = None,
        correlation_id: str | None = None,
        metadata: dict[str, Any] | None = None,
        timeout: float | None = None,
    ) -> list[EventHandlerResult]:
        """Dispatch immediately through the middleware chain and await completion."""
        event = Event(
            type=event_type,
            payload=payload or {},
            source=source,
            priority=EventPriority.HIGH,
            processing_mode=EventProcessingMode.ASYNC,
            correlation_id=correlation_id,
            metadata=metadata or {},
            timeout=timeout,
            retry_count=0,
            max_retries=self.config.default_retry_policy.max_retries,
        )

        subscriptions = self._processor.get_matching_subscriptions(event, self._subscriptions)
        results: list[EventHandlerResult] = []

        async def handle() -> None:
            for subscription in subscriptions:
                try:
                    result = await self._processor.execute_handler_async(
                        subscription,
                        event,
                        self.config.default_timeout,
                        self.config.default_retry_policy,
                    )
                except Exception as e:
                    result = self._processor.failed_result(subscription, event, e)
                results.append(result)

        started = time.perf_counter()
        try:
            await self._apply_middleware(event, handle)
        except Exception as e:
            logger.error(
                f"Error processing event {event.id}",
                extra=self._extra(event_id=event.id, event_type=event_type, error=str(e)),
                exc_info=True,
            )
            self._handle_event_processing_error(event, e, subscriber_count=len(subscriptions))
            return []

        if results:
            self._record_results(event, subscriptions, results, time.perf_counter() - started)
        return results

    # Middleware

    def use(self, middleware: EventMiddleware) -> None:
        """Append a middleware. It must await ``next()`` or processing stops there."""
        self._middleware.append(middleware)

    def remove_middleware(self, middleware: EventMiddleware) -> bool:
        try:
            self._middleware.remove(middleware)
        except ValueError:
            return False
        return True

    # Inspection and management

    def get_stats(
        self, event_type: str | None = None
    ) -> EventProcessingStats | dict[str, EventProcessingStats]:
        return self._metrics.get_stats(event_type)

    def get_metrics(self) -> EventSystemMetrics:
        self._update_metrics()
        return self._metrics.get_metrics()

    def get_history(self, event_type: str | None = None, limit: int | None = None) -> list[Event]:
        """Published events, oldest first. Without a type, all types merged by timestamp."""
        if event_type is not None:
            history = list(self._history.get(event_type, ()))
        else:
            history = sorted(
                (event for events in self._history.values() for event in events),
                key=lambda event: event.timestamp,
            )
        if limit:
            return history[-limit:]
        return history

    def clear_history(self, event_type: str | None = None) -> None:
        if event_type is None:
            self._history.clear()
        else:
            self._history.pop(event_type, None)
        logger.debug("Cleared event history", extra=self._extra(event_type=event_type))

    def get_dead_letter_queue(self) -> list[DeadLetterEvent]:
        return list(self._dead_letter_queue)

    def clear_dead_letter_queue(self) -> None:
        self._dead_letter_queue.clear()

    def retry_dead_letter_events(
        self, filter: Callable[[DeadLetterEvent], bool] | None = None
    ) -> list[str]:
        """Re-enqueue dead-lettered events with ``retry_count`` reset to zero.

        Returns:
            list[str]: Ids of the re-enqueued events
        """
        to_retry = [d for d in self._dead_letter_queue if filter is None or filter(d)]
        if not to_retry:
            return []

        retried = {id(d) for d in to_retry}
        event_ids = []
        for dead_letter in to_retry:
            event = dead_letter.original_event.model_copy(update={"retry_count": 0})
            self._queue.enqueue(event, event.priority)
            event_ids.append(event.id)

        self._dead_letter_queue = deque(
            (d for d in self._dead_letter_queue if id(d) not in retried),
            maxlen=self.config.queue_config.dead_letter_limit,
        )
        self._update_metrics()

        logger.info(
            "Re-enqueued dead letter events",
            extra=self._extra(count=len(event_ids), event_ids=event_ids),
        )
        return event_ids

    # Internals

    def _start_queue_processing(self) -> None:
        if self._processing:
            return
        self._processing = True
        # A paused loop that has not exited yet picks the flag back up
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._process_queue(), name="event-queue-loop")

    async def _process_queue(self) -> None:
        while self._processing:
            try:
                if self._queue.is_empty():
                    await asyncio.sleep(self.config.idle_poll_interval)
                    continue

                await self._slots.acquire()
                event = self._queue.dequeue() if self._processing else None
                if event is None:
                    self._slots.release()
                    continue

                self._track(
                    asyncio.create_task(self._process_queued_event(event), name=f"event-{event.id}")
                )
            except Exception as e:
                logger.error(
                    "Error in queue processing",
                    extra=self._extra(error=str(e), error_type=type(e).__name__),
                    exc_info=True,
                )
                await asyncio.sleep(self.config.error_cooldown)

    async def _process_queued_event(self, event: Event) -> None:
        try:
            await self._process_event(event)
        finally:
            self._slots.release()

    async def _process_event(self, event: Event) -> None:
        subscriptions = self._processor.get_matching_subscriptions(event, self._subscriptions)
        if not subscriptions:
            logger.debug(
                "No subscribers for event",
                extra=self._extra(event_id=event.id, event_type=event.type),
            )
            return

        async def handle() -> None:
            await self._dispatch(event, subscriptions)

        try:
            await self._apply_middleware(event, handle)
        except Exception as e:
            logger.error(
                f"Error processing event {event.id}",
                extra=self._extra(event_id=event.id, event_type=event.type, error=str(e)),
                exc_info=True,
            )
            self._handle_event_processing_error(event, e, subscriber_count=len(subscriptions))

    async def _dispatch(self, event: Event, subscriptions: list[Subscription]) -> None:
        started = time.perf_counter()

        if event.processing_mode == EventProcessingMode.ASYNC:
            tasks = self._processor.schedule_async(
                event,
                subscriptions,
                self.config.default_timeout,
                self.config.default_retry_policy,
            )
            for task in tasks:
                self._track(task)
            self._track(
                asyncio.create_task(
                    self._fold_async_results(event, subscriptions, tasks, started),
                    name=f"event-results-{event.id}",
                )
            )
            return

        results = await self._processor.process_subscriptions(
            event,
            subscriptions,
            self.config.default_timeout,
            self.config.default_retry_policy,
        )
        self._record_results(event, subscriptions, results, time.perf_counter() - started)

    async def _fold_async_results(
        self,
        event: Event,
        subscriptions: list[Subscription],
        tasks: list[asyncio.Task],
        started: float,
    ) -> None:
        outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        results = [
            self._processor.failed_result(subscription, event, outcome)
            if isinstance(outcome, BaseException)
            else outcome
            for subscription, outcome in zip(subscriptions, outcomes)
        ]
        self._record_results(event, subscriptions, results, time.perf_counter() - started)

    def _record_results(
        self,
        event: Event,
        subscriptions: list[Subscription],
        results: list[EventHandlerResult],
        duration: float,
    ) -> None:
        """Fold handler results into subscription stats, metrics and the dead-letter queue."""
        by_id = {s.id: s for s in subscriptions}
        for result in results:
            subscription = by_id.get(result.handler_id)
            if subscription is not None and result.duration is not None:
                self._metrics.update_subscription_stats(
                    subscription,
                    result.duration,
                    result.status == EventHandlerStatus.FAILED,
                    result.error,
                )

        failed = [r for r in results if r.status == EventHandlerStatus.FAILED]
        if failed:
            error = HandlerExecutionError(
                "One or more handlers failed", [r.handler_id for r in failed]
            )
            self._handle_event_processing_error(
                event,
                error,
                failed_results=failed,
                duration=duration,
                subscriber_count=len(subscriptions),
            )
            return

        self._metrics.increment_events_processed()
        self._metrics.update_event_type_stats(event.type, True, duration, len(subscriptions))
        logger.debug(
            "Event processed",
            extra=self._extra(
                event_id=event.id,
                event_type=event.type,
                handler_count=len(results),
                duration=duration,
            ),
        )

    def _handle_event_processing_error(
        self,
        event: Event,
        error: Exception,
        failed_results: list[EventHandlerResult] | None = None,
        duration: float = 0.0,
        subscriber_count: int | None = None,
    ) -> None:
        """Count the failure and record one dead-letter entry for the event."""
        self._metrics.increment_events_failed()
        self._metrics.update_event_type_stats(event.type, False, duration, subscriber_count)

        failed_results = failed_results or []
        failed_handlers = [r.handler_id for r in failed_results]

        if not self.config.queue_config.dead_letter_queue:
            logger.error(
                "Event processing failed",
                extra=self._extra(
                    event_id=event.id,
                    event_type=event.type,
                    error=str(error),
                    failed_handlers=failed_handlers,
                ),
            )
            return

        dead_letter = DeadLetterEvent(
            original_event=event,
            failure_reason=str(error) or type(error).__name__,
            attempt_count=max(
                (r.retry_count + 1 for r in failed_results), default=event.retry_count + 1
            ),
            last_error=failed_results[-1].error if failed_results else str(error),
            failed_handlers=failed_handlers,
        )
        # Bounded deque: the oldest entry is evicted at capacity
        self._dead_letter_queue.append(dead_letter)

        logger.error(
            "Event moved to dead letter queue",
            extra=self._extra(
                event_id=event.id,
                event_type=event.type,
                error=dead_letter.failure_reason,
                last_error=dead_letter.last_error,
                failed_handlers=failed_handlers,
                dead_letter_size=len(self._dead_letter_queue),
            ),
        )

    async def _apply_middleware(
        self, event: Event, handler: Callable[[], Awaitable[None]]
    ) -> None:
        chain = list(self._middleware)

        async def call(index: int) -> None:
            if index < len(chain):
                await chain[index](event, lambda: call(index + 1))
            else:
                await handler()

        await call(0)

    def _build_config(self, config: ConfigInput, options: Mapping[str, Any]) -> EventHandlerConfig:
        if config is None and not options:
            return EventHandlerConfig()
        if isinstance(config, EventHandlerConfig) and not options:
            return config

        if isinstance(config, EventHandlerConfig):
            data = {name: getattr(config, name) for name in EventHandlerConfig.model_fields}
        else:
            data = dict(config or {})
        data.update(options)
        return EventHandlerConfig.model_validate(data)

    def _apply_defaults(self, config: EventHandlerConfig) -> EventHandlerConfig:
        policy = self.config.default_retry_policy
        defaults = {
            "priority": EventPriority.NORMAL,
            "processing_mode": EventProcessingMode.ASYNC,
            "timeout": self.config.default_timeout,
            "max_retries": policy.max_retries,
            "retry_delay": policy.initial_delay,
            "retry_backoff": policy.backoff_multiplier,
        }
        updates = {key: value for key, value in defaults.items() if getattr(config, key) is None}
        return config.model_copy(update=updates) if updates else config

    def _add_to_history(self, event: Event) -> None:
        history = self._history.get(event.type)
        if history is None:
            history = deque(maxlen=self.config.history_limit)
            self._history[event.type] = history
        history.append(event)

    def _update_metrics(self) -> None:
        self._metrics.update_metrics(self._subscriptions, self._queue.size())

    async def _collect_metrics(self) -> None:
        while True:
            await asyncio.sleep(self.config.metrics_interval)
            try:
                self._update_metrics()
            except Exception as e:
                logger.error("Error collecting metrics", extra=self._extra(error=str(e)))

    async def _drain_pending_tasks(self, timeout: float | None) -> None:
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout

        # Processing tasks can spawn handler tasks, so keep waiting until the set is empty
        while self._pending_tasks:
            remaining = None if deadline is None else max(0.0, deadline - loop.time())
            _, not_done = await asyncio.wait(set(self._pending_tasks), timeout=remaining)
            if not_done and deadline is not None and loop.time() >= deadline:
                logger.warning(
                    "Cancelling event tasks still running at shutdown",
                    extra=self._extra(task_count=len(not_done)),
                )
                for task in not_done:
                    task.cancel()
                await asyncio.gather(*not_done, return_exceptions=True)
                break

    def _track(self, task: asyncio.Task) -> None:
        self._pending_tasks.add(task)
        task.add_done_callback(self._cleanup_task)

    def _cleanup_task(self, task: asyncio.Task) -> None:
        self._pending_tasks.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                "Event task failed",
                extra=self._extra(task_name=task.get_name(), error=str(exc), error_type=type(exc).__name__),
            )

    def _extra(self, **fields: Any) -> dict[str, Any]:
        return {"req_id": self._req_id, "component": "event_system", **fields}
