"""Event processor: runs the handlers of matched subscriptions."""

import asyncio
import fnmatch
import functools
import inspect
import random
import re
import time
from collections.abc import Iterable, Mapping
from datetime import UTC, datetime
from typing import Any

from mosaic.core.events.errors import (
    HandlerTimeoutError,
    SynchronousContractError,
    UnsupportedPatternError,
)
from mosaic.core.events.types import (
    WILDCARD,
    Event,
    EventFilter,
    EventHandlerResult,
    EventHandlerStatus,
    EventPattern,
    EventProcessingMode,
    PatternType,
    RetryPolicy,
    Subscription,
)
from mosaic.utils.logging_config import get_logger

logger = get_logger(__name__)


class EventProcessor:
    """Executes handlers for one event according to its processing mode.

    The processor keeps no per-event state; the owning event system passes in
    the matched subscriptions, the default timeout and the retry policy.
    """

    def __init__(self, rng: random.Random | None = None) -> None:
        self._random = rng or random.Random()

    def execute_handler_sync(self, subscription: Subscription, event: Event) -> EventHandlerResult:
        """Run a handler on the caller's stack without retries.

        Any hook or handler that returns an awaitable violates the synchronous
        contract and produces a FAILED result.
        """
        started = time.perf_counter()
        result = EventHandlerResult(handler_id=subscription.id, event_id=event.id)
        config = subscription.config

        try:
            if config.before_handler is not None:
                self._ensure_synchronous(config.before_handler(event), "before_handler")

            handler_result = subscription.handler(event)
            self._ensure_synchronous(handler_result, "handler")

            if config.after_handler is not None:
                self._ensure_synchronous(config.after_handler(event, handler_result), "after_handler")

            self._finish(result, started, EventHandlerStatus.COMPLETED, value=handler_result)
        except Exception as e:
            self._finish(result, started, EventHandlerStatus.FAILED, error=e)
            self._call_error_handler_sync(subscription, e, event)
            logger.error(
                "Synchronous handler failed",
                extra={
                    "component": "event_processor",
                    "subscription_id": subscription.id,
                    "event_id": event.id,
                    "event_type": event.type,
                    "error": str(e),
                    "error_type": type(e).__name__,
                },
            )

        return result

    async def execute_handler_async(
        self,
        subscription: Subscription,
        event: Event,
        default_timeout: float | None,
        retry_policy: RetryPolicy,
    ) -> EventHandlerResult:
        """Run a handler with timeout and retry/backoff.

        Makes up to ``max_retries + 1`` attempts. ``retry_count`` on the
        returned result is the index of the last attempt.
        """
        started = time.perf_counter()
        result = EventHandlerResult(handler_id=subscription.id, event_id=event.id)
        config = subscription.config
        max_retries = config.max_retries or 0
        timeout = self.resolve_timeout(subscription, event, default_timeout)

        for attempt in range(max_retries + 1):
            result.retry_count = attempt

            if attempt > 0:
                result.status = EventHandlerStatus.RETRYING
                delay = self.calculate_retry_delay(attempt, subscription, retry_policy)
                logger.debug(
                    "Retrying handler",
                    extra={
                        "component": "event_processor",
                        "subscription_id": subscription.id,
                        "event_id": event.id,
                        "attempt": attempt,
                        "delay": delay,
                    },
                )
                await asyncio.sleep(delay)

            try:
                if config.before_handler is not None:
                    await self._resolve(config.before_handler(event))

                handler_result = await self._invoke_with_timeout(subscription, event, timeout)

                if config.after_handler is not None:
                    await self._resolve(config.after_handler(event, handler_result))
            except Exception as e:
                await self._call_error_handler(subscription, e, event)

                if attempt == max_retries:
                    self._finish(result, started, EventHandlerStatus.FAILED, error=e)
                    logger.error(
                        f"Handler {subscription.id} failed for event {event.id} "
                        f"after {attempt + 1} attempts",
                        extra={
                            "component": "event_processor",
                            "subscription_id": subscription.id,
                            "event_id": event.id,
                            "event_type": event.type,
                            "attempts": attempt + 1,
                            "error": str(e),
                            "error_type": type(e).__name__,
                        },
                    )
                else:
                    logger.warning(
                        "Handler attempt failed",
                        extra={
                            "component": "event_processor",
                            "subscription_id": subscription.id,
                            "event_id": event.id,
                            "attempt": attempt + 1,
                            "max_attempts": max_retries + 1,
                            "error": str(e),
                        },
                    )
                continue

            self._finish(result, started, EventHandlerStatus.COMPLETED, value=handler_result)
            return result

        return result

    async def process_subscriptions(
        self,
        event: Event,
        subscriptions: list[Subscription],
        default_timeout: float | None,
        retry_policy: RetryPolicy,
    ) -> list[EventHandlerResult]:
        """Dispatch handlers according to ``event.processing_mode``.

        ASYNC schedules the handlers and returns an empty list immediately.
        """
        mode = event.processing_mode

        if mode == EventProcessingMode.ASYNC:
            self.schedule_async(event, subscriptions, default_timeout, retry_policy)
            return []
        if mode == EventProcessingMode.PARALLEL:
            return await self._process_parallel(event, subscriptions, default_timeout, retry_policy)
        if mode in (EventProcessingMode.SYNC, EventProcessingMode.SEQUENTIAL):
            # Both run one handler at a time, in subscription priority order
            return await self._process_sequential(event, subscriptions, default_timeout, retry_policy)

        logger.warning(
            "Unknown processing mode",
            extra={"component": "event_processor", "event_id": event.id, "mode": str(mode)},
        )
        return []

    def schedule_async(
        self,
        event: Event,
        subscriptions: list[Subscription],
        default_timeout: float | None,
        retry_policy: RetryPolicy,
    ) -> list["asyncio.Task[EventHandlerResult]"]:
        """Fire-and-forget: start every handler as its own task.

        The tasks are returned so the caller can track them and fold their
        results once they settle.
        """
        tasks = []
        for subscription in subscriptions:
            task = asyncio.create_task(
                self.execute_handler_async(subscription, event, default_timeout, retry_policy),
                name=f"event-handler-{subscription.id}-{event.id}",
            )
            task.add_done_callback(functools.partial(self._log_async_outcome, event, subscription))
            tasks.append(task)
        return tasks

    async def _process_sequential(
        self,
        event: Event,
        subscriptions: list[Subscription],
        default_timeout: float | None,
        retry_policy: RetryPolicy,
    ) -> list[EventHandlerResult]:
        results = []
        for subscription in subscriptions:
            results.append(
                await self.execute_handler_async(subscription, event, default_timeout, retry_policy)
            )
        return results

    async def _process_parallel(
        self,
        event: Event,
        subscriptions: list[Subscription],
        default_timeout: float | None,
        retry_policy: RetryPolicy,
    ) -> list[EventHandlerResult]:
        outcomes = await asyncio.gather(
            *(
                self.execute_handler_async(subscription, event, default_timeout, retry_policy)
                for subscription in subscriptions
            ),
            return_exceptions=True,
        )

        results = []
        for subscription, outcome in zip(subscriptions, outcomes):
            if isinstance(outcome, BaseException):
                results.append(self.failed_result(subscription, event, outcome))
            else:
                results.append(outcome)
        return results

    def failed_result(
        self, subscription: Subscription, event: Event, error: BaseException
    ) -> EventHandlerResult:
        """Synthesize a FAILED result for an execution that escaped the retry path."""
        now = datetime.now(UTC)
        return EventHandlerResult(
            handler_id=subscription.id,
            event_id=event.id,
            status=EventHandlerStatus.FAILED,
            start_time=now,
            end_time=now,
            duration=0.0,
            retry_count=0,
            error=str(error) or type(error).__name__,
            error_type=type(error).__name__,
        )

    def resolve_timeout(
        self, subscription: Subscription, event: Event, default_timeout: float | None
    ) -> float | None:
        """Smallest of the subscription, event and system timeouts that are set."""
        candidates = [
            value
            for value in (subscription.config.timeout, event.timeout, default_timeout)
            if value is not None and value > 0
        ]
        return min(candidates) if candidates else None

    def calculate_retry_delay(
        self, attempt: int, subscription: Subscription, retry_policy: RetryPolicy
    ) -> float:
        """Exponential backoff in seconds, capped at ``max_delay`` and optionally jittered."""
        config = subscription.config
        base_delay = config.retry_delay if config.retry_delay is not None else retry_policy.initial_delay
        backoff = (
            config.retry_backoff
            if config.retry_backoff is not None
            else retry_policy.backoff_multiplier
        )

        delay = min(base_delay * backoff ** (attempt - 1), retry_policy.max_delay)
        if retry_policy.jitter:
            delay *= self._random.uniform(0.5, 1.0)
        return delay

    def get_matching_subscriptions(
        self,
        event: Event,
        subscriptions: Mapping[str, Subscription] | Iterable[Subscription],
    ) -> list[Subscription]:
        """Active subscriptions for the event type (or wildcard) whose filter accepts it.

        Sorted by configured priority, most urgent first; registration order is
        kept among equal priorities.
        """
        candidates = subscriptions.values() if isinstance(subscriptions, Mapping) else subscriptions
        matching = []

        for subscription in candidates:
            if not subscription.is_active:
                continue
            if subscription.event_type != WILDCARD and subscription.event_type != event.type:
                continue
            if subscription.config.filter is not None and not self._accepts(subscription, event):
                continue
            matching.append(subscription)

        matching.sort(key=lambda s: s.priority)
        return matching

    def build_pattern_filter(self, pattern: EventPattern) -> EventFilter:
        """Compile a pattern into a predicate over ``event.type``."""
        if pattern.type == PatternType.REGEX:
            try:
                regex = (
                    pattern.pattern
                    if isinstance(pattern.pattern, re.Pattern)
                    else re.compile(pattern.pattern)
                )
            except re.error as e:
                raise UnsupportedPatternError(f"Invalid regex pattern {pattern.pattern!r}: {e}") from e
            return lambda event: regex.search(event.type) is not None

        if isinstance(pattern.pattern, re.Pattern):
            raise UnsupportedPatternError(
                f"Compiled regular expressions require the 'regex' pattern type, got {pattern.type.value!r}"
            )

        text = pattern.pattern
        if pattern.type == PatternType.GLOB:
            return lambda event: self.match_glob(event.type, text)
        if pattern.type == PatternType.EXACT:
            return lambda event: event.type == text

        raise UnsupportedPatternError(f"Unsupported pattern type: {pattern.type}")

    @staticmethod
    def match_glob(text: str, pattern: str) -> bool:
        """Whole-string, case-sensitive shell-style match (``*``, ``?``, ``[seq]``)."""
        return fnmatch.fnmatchcase(text, pattern)

    def _accepts(self, subscription: Subscription, event: Event) -> bool:
        try:
            return bool(subscription.config.filter(event))
        except Exception as e:
            logger.error(
                "Subscription filter raised, treating as no match",
                extra={
                    "component": "event_processor",
                    "subscription_id": subscription.id,
                    "event_id": event.id,
                    "error": str(e),
                },
            )
            return False

    async def _invoke_with_timeout(
        self, subscription: Subscription, event: Event, timeout: float | None
    ) -> Any:
        outcome = subscription.handler(event)
        if not inspect.isawaitable(outcome):
            return outcome
        if timeout is None:
            return await outcome

        task = asyncio.ensure_future(outcome)
        try:
            # Shielded so an expired wait abandons the handler instead of cancelling it
            return await asyncio.wait_for(asyncio.shield(task), timeout)
        except TimeoutError:
            if task.done():
                raise
            task.add_done_callback(functools.partial(self._log_abandoned, subscription, event))
            raise HandlerTimeoutError(timeout) from None
        except asyncio.CancelledError:
            # The caller went away, so the handler goes with it
            task.cancel()
            raise

    @staticmethod
    async def _resolve(value: Any) -> Any:
        if inspect.isawaitable(value):
            return await value
        return value

    @staticmethod
    def _ensure_synchronous(value: Any, where: str) -> None:
        if inspect.isawaitable(value):
            if inspect.iscoroutine(value):
                value.close()
            raise SynchronousContractError(f"Synchronous execution cannot handle async {where}")

    async def _call_error_handler(self, subscription: Subscription, error: Exception, event: Event) -> None:
        if subscription.config.error_handler is None:
            return
        try:
            await self._resolve(subscription.config.error_handler(error, event))
        except Exception as e:
            logger.error(
                "Error handler raised",
                extra={
                    "component": "event_processor",
                    "subscription_id": subscription.id,
                    "event_id": event.id,
                    "error": str(e),
                },
            )

    def _call_error_handler_sync(self, subscription: Subscription, error: Exception, event: Event) -> None:
        if subscription.config.error_handler is None:
            return
        try:
            self._ensure_synchronous(subscription.config.error_handler(error, event), "error_handler")
        except Exception as e:
            logger.error(
                "Error handler raised",
                extra={
                    "component": "event_processor",
                    "subscription_id": subscription.id,
                    "event_id": event.id,
                    "error": str(e),
                },
            )

    @staticmethod
    def _finish(
        result: EventHandlerResult,
        started: float,
        status: EventHandlerStatus,
        value: Any = None,
        error: BaseException | None = None,
    ) -> None:
        result.status = status
        result.end_time = datetime.now(UTC)
        result.duration = time.perf_counter() - started
        if error is not None:
            result.error = str(error) or type(error).__name__
            result.error_type = type(error).__name__
        else:
            result.result = value

    @staticmethod
    def _log_async_outcome(event: Event, subscription: Subscription, task: asyncio.Task) -> None:
        if task.cancelled():
            logger.debug(
                "Async handler cancelled",
                extra={"component": "event_processor", "subscription_id": subscription.id, "event_id": event.id},
            )
            return
        exc = task.exception()
        if exc is not None:
            logger.error(
                f"Error in async handler for event {event.id}",
                extra={
                    "component": "event_processor",
                    "subscription_id": subscription.id,
                    "event_id": event.id,
                    "error": str(exc),
                    "error_type": type(exc).__name__,
                },
            )

    @staticmethod
    def _log_abandoned(subscription: Subscription, event: Event, task: asyncio.Future) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        logger.debug(
            "Timed out handler finished after being abandoned",
            extra={
                "component": "event_processor",
                "subscription_id": subscription.id,
                "event_id": event.id,
                "error": str(exc) if exc else None,
            },
        )
