"""Request bodies accepted by the admin API."""

from typing import Any

from pydantic import BaseModel, Field, field_validator

from mosaic.core.events import EventPriority, EventProcessingMode


class PublishEventRequest(BaseModel):
    """Event to queue for background processing."""

    type: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    source: str | None = None
    priority: EventPriority = EventPriority.NORMAL
    processing_mode: EventProcessingMode = EventProcessingMode.ASYNC
    correlation_id: str | None = None
    parent_event_id: str | None = None
    timeout: float | None = Field(default=None, gt=0)
    tags: list[str] = Field(default_factory=list)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("priority", mode="before")
    @classmethod
    def validate_priority(cls, value: Any) -> EventPriority:
        return EventPriority.parse(value)

    def publish_options(self) -> dict[str, Any]:
        return self.model_dump(exclude={"type", "payload"})


class EmitEventRequest(BaseModel):
    """Event to dispatch immediately, waiting for every handler."""

    type: str = Field(min_length=1)
    payload: dict[str, Any] = Field(default_factory=dict)
    source: str | None = None
    correlation_id: str | None = None
    timeout: float | None = Field(default=None, gt=0)
    metadata: dict[str, Any] = Field(default_factory=dict)


class RetryDeadLetterRequest(BaseModel):
    """Selects dead-letter entries to re-enqueue. No criteria selects all."""

    event_ids: list[str] | None = None
    event_type: str | None = None
