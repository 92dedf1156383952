from abc import ABC, abstractmethod
from typing import Any

from pydantic import BaseModel, Field

from mosaic.core.events import (
    EnhancedEventSystem,
    EventHandler,
    EventHandlerConfig,
    EventHandlerResult,
    EventMiddleware,
    EventPattern,
)
from mosaic.utils.logging_config import get_logger

logger = get_logger(__name__)


class PluginConfig(BaseModel):
    """Plugin configuration"""

    name: str
    version: str
    enabled: bool = True
    dependencies: list[str] = Field(default_factory=list)
    config: dict[str, Any] | None = None


class PluginBase(ABC):
    """Base class for all plugins.

    The subscribe/publish helpers tag events with the plugin name as ``source``
    and remember what they registered so ``shutdown`` can remove it again.
    """

    def __init__(
        self, config: PluginConfig, event_system: EnhancedEventSystem | None = None
    ) -> None:
        self.config = config
        self.event_system = event_system
        self.version = config.version
        self.logger = get_logger(f"plugin.{config.name}")
        self._initialized = False
        self._subscription_ids: list[str] = []
        self._middleware: list[EventMiddleware] = []

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def is_initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Initialize the plugin"""
        if self.event_system is None:
            self.logger.warning(
                "No event system available, plugin will not receive events"
            )
            return

        try:
            self.logger.info(
                "Initializing plugin",
                extra={
                    "plugin_name": self.name,
                    "plugin_version": self.version,
                    "plugin_config": self.config.model_dump(),
                },
            )
            await self._initialize()
            self._initialized = True
            self.logger.info(
                "Plugin initialized successfully", extra={"plugin_name": self.name}
            )
        except Exception as e:
            self.logger.error(
                "Failed to initialize plugin",
                extra={
                    "plugin_name": self.name,
                    "error": str(e),
                    "plugin_config": self.config.model_dump(),
                },
            )
            raise

    async def shutdown(self) -> None:
        """Shutdown the plugin and release its subscriptions and middleware"""
        try:
            self.logger.info("Shutting down plugin", extra={"plugin_name": self.name})
            await self._shutdown()
            self._release_event_resources()
            self._initialized = False
            self.logger.info(
                "Plugin shutdown successfully", extra={"plugin_name": self.name}
            )
        except Exception as e:
            self.logger.error(
                "Failed to shutdown plugin",
                extra={"plugin_name": self.name, "error": str(e)},
            )
            raise

    def get_config(self, key: str, default: Any = None) -> Any:
        """Get configuration value"""
        if self.config.config is None:
            return default
        value = self.config.config.get(key, default)
        self.logger.debug(
            "Retrieved plugin config",
            extra={"plugin_name": self.name, "config_key": key, "config_value": value},
        )
        return value

    def subscribe(
        self,
        event_type: str,
        handler: EventHandler,
        config: EventHandlerConfig | dict[str, Any] | None = None,
        **options: Any,
    ) -> str | None:
        """Subscribe to events safely."""
        if self.event_system is None:
            self.logger.warning(f"Cannot subscribe to {event_type}: no event system available")
            return None
        subscription_id = self.event_system.subscribe(event_type, handler, config, **options)
        self._subscription_ids.append(subscription_id)
        return subscription_id

    def subscribe_pattern(
        self,
        pattern: EventPattern | dict[str, Any] | str,
        handler: EventHandler,
        config: EventHandlerConfig | dict[str, Any] | None = None,
        **options: Any,
    ) -> str | None:
        """Subscribe to every event type matching a pattern."""
        if self.event_system is None:
            self.logger.warning("Cannot subscribe to pattern: no event system available")
            return None
        subscription_id = self.event_system.subscribe_pattern(pattern, handler, config, **options)
        self._subscription_ids.append(subscription_id)
        return subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Unsubscribe from events safely."""
        if self.event_system is None:
            return False
        if subscription_id in self._subscription_ids:
            self._subscription_ids.remove(subscription_id)
        return self.event_system.unsubscribe(subscription_id)

    def publish(
        self, event_type: str, payload: dict[str, Any] | None = None, **options: Any
    ) -> str | None:
        """Queue an event with this plugin as its source."""
        if self.event_system is None:
            self.logger.warning(f"Cannot publish event {event_type}: no event system available")
            return None
        options.setdefault("source", self.name)
        return self.event_system.publish(event_type, payload, **options)

    async def emit_event(
        self,
        name: str,
        data: dict[str, Any],
        correlation_id: str | None = None,
    ) -> list[EventHandlerResult]:
        """Helper method to dispatch an event immediately and wait for its handlers"""
        if self.event_system is None:
            self.logger.warning(f"Cannot emit event {name}: no event system available")
            return []

        return await self.event_system.emit_async(
            name,
            data,
            source=self.name,
            correlation_id=correlation_id,
            metadata={"source_plugin": self.name},
        )

    def use(self, middleware: EventMiddleware) -> None:
        """Install middleware that is removed again on shutdown."""
        if self.event_system is None:
            self.logger.warning("Cannot install middleware: no event system available")
            return
        self.event_system.use(middleware)
        self._middleware.append(middleware)

    def _release_event_resources(self) -> None:
        if self.event_system is None:
            return
        for subscription_id in self._subscription_ids:
            self.event_system.unsubscribe(subscription_id)
        for middleware in self._middleware:
            self.event_system.remove_middleware(middleware)
        self._subscription_ids.clear()
        self._middleware.clear()

    @abstractmethod
    async def _initialize(self) -> None:
        """Plugin-specific initialization"""
        pass

    @abstractmethod
    async def _shutdown(self) -> None:
        """Plugin-specific shutdown"""
        pass
