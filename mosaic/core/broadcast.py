"""WebSocket bridge that rebroadcasts every delivered event to dashboard clients."""

import uuid
from datetime import UTC, datetime
from typing import Any

from fastapi import WebSocket

from mosaic.core.events import (
    WILDCARD,
    EnhancedEventSystem,
    Event,
    EventPriority,
    EventProcessingMode,
)
from mosaic.utils.logging_config import get_logger

logger = get_logger(__name__)


class EventBroadcaster:
    """Fans events out to connected WebSocket clients.

    Subscribes once to ``*`` at LOW priority so regular handlers run first.
    SYNC-mode events, which include everything sent with ``emit_sync``,
    are not broadcast.
    A client whose send fails is dropped.
    """

    def __init__(self, event_system: EnhancedEventSystem) -> None:
        self.event_system = event_system
        self.clients: dict[str, WebSocket] = {}
        self.total_messages_sent = 0
        self._subscription_id: str | None = None

    @property
    def connection_count(self) -> int:
        return len(self.clients)

    @property
    def is_running(self) -> bool:
        return self._subscription_id is not None

    def start(self) -> None:
        if self._subscription_id is not None:
            return
        self._subscription_id = self.event_system.subscribe(
            WILDCARD,
            self.broadcast_event,
            priority=EventPriority.LOW,
            processing_mode=EventProcessingMode.ASYNC,
            max_retries=0,
            filter=self._accepts,
        )
        logger.info(
            "Event broadcaster started",
            extra={"subscription_id": self._subscription_id},
        )

    async def stop(self) -> None:
        if self._subscription_id is not None:
            self.event_system.unsubscribe(self._subscription_id)
            self._subscription_id = None

        for client_id, websocket in list(self.clients.items()):
            try:
                await websocket.close()
            except Exception as e:
                logger.debug(f"Error closing client {client_id}: {e}")
        self.clients.clear()
        logger.info("Event broadcaster stopped")

    async def connect(self, websocket: WebSocket) -> str:
        """Accept a client connection and send a welcome message."""
        await websocket.accept()
        client_id = str(uuid.uuid4())
        self.clients[client_id] = websocket
        logger.info(f"Client {client_id} connected", extra={"client_count": len(self.clients)})

        await self.send_to_client(
            client_id,
            {
                "type": "connected",
                "client_id": client_id,
                "timestamp": datetime.now(UTC).isoformat(),
            },
        )
        return client_id

    def disconnect(self, client_id: str) -> None:
        if self.clients.pop(client_id, None) is not None:
            logger.info(
                f"Client {client_id} disconnected", extra={"client_count": len(self.clients)}
            )

    async def send_to_client(self, client_id: str, message: dict[str, Any]) -> None:
        websocket = self.clients.get(client_id)
        if websocket is None:
            return

        try:
            await websocket.send_json(message)
            self.total_messages_sent += 1
        except Exception as e:
            logger.error(f"Failed to send to client {client_id}: {e}")
            self.disconnect(client_id)

    @staticmethod
    def _accepts(event: Event) -> bool:
        # broadcast_event is a coroutine and cannot run on the emit_sync path
        return event.processing_mode != EventProcessingMode.SYNC

    async def broadcast_event(self, event: Event) -> None:
        """Event handler: send the event to every connected client."""
        if not self.clients:
            return

        message = {"type": "event", "event": event.model_dump(mode="json")}
        for client_id in list(self.clients.keys()):
            await self.send_to_client(client_id, message)
