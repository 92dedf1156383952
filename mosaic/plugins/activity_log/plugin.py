"""Activity log plugin: keeps a bounded record of recent events and dispatch timings."""

import time
from collections import deque
from typing import Any

from fastapi import FastAPI

from mosaic.core.events import EnhancedEventSystem, Event, NextFunction
from mosaic.core.plugins import PluginBase, PluginConfig, hookimpl
from mosaic.utils.logging_config import get_logger

logger = get_logger("mosaic.plugins.activity_log.plugin")

DEFAULT_MAX_ENTRIES = 200


class ActivityLogPlugin(PluginBase):
    """Records every event it sees and how long middleware-wrapped dispatch took."""

    def __init__(
        self, config: PluginConfig, event_system: EnhancedEventSystem | None = None
    ) -> None:
        super().__init__(config, event_system)
        max_entries = int(self.get_config("max_entries", DEFAULT_MAX_ENTRIES))
        self._activity: deque[dict[str, Any]] = deque(maxlen=max_entries)
        self._timings: deque[dict[str, Any]] = deque(maxlen=max_entries)

    async def _initialize(self) -> None:
        self.subscribe(
            "*",
            self._record_event,
            priority=self.get_config("priority", "background"),
            max_retries=0,
        )
        self.use(self._timing_middleware)
        logger.info(
            "Activity log plugin initialization complete",
            extra={"plugin": self.name, "max_entries": self._activity.maxlen},
        )

    async def _shutdown(self) -> None:
        logger.info(
            "Activity log plugin shutdown complete",
            extra={"plugin": self.name, "recorded_events": len(self._activity)},
        )

    @hookimpl
    async def on_startup(self, app: FastAPI) -> None:
        self.publish(
            "system.started",
            {"app": app.title, "version": app.version},
            priority="high",
        )

    @hookimpl
    async def on_shutdown(self, app: FastAPI) -> None:
        logger.debug("Application stopping", extra={"plugin": self.name})

    def get_activity(self, limit: int | None = None) -> list[dict[str, Any]]:
        """Most recent activity entries, oldest first."""
        entries = list(self._activity)
        return entries[-limit:] if limit else entries

    def get_timings(self) -> list[dict[str, Any]]:
        return list(self._timings)

    def _record_event(self, event: Event) -> None:
        self._activity.append(
            {
                "event_id": event.id,
                "event_type": event.type,
                "source": event.source,
                "priority": event.priority.name,
                "timestamp": event.timestamp.isoformat(),
            }
        )

    async def _timing_middleware(self, event: Event, next: NextFunction) -> None:
        started = time.perf_counter()
        try:
            await next()
        finally:
            duration = time.perf_counter() - started
            self._timings.append(
                {"event_id": event.id, "event_type": event.type, "duration": duration}
            )
            logger.debug(
                "Event dispatched",
                extra={"event_id": event.id, "event_type": event.type, "duration": duration},
            )
