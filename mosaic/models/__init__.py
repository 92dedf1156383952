"""HTTP request models."""

from mosaic.models.requests import EmitEventRequest, PublishEventRequest, RetryDeadLetterRequest

__all__ = ["EmitEventRequest", "PublishEventRequest", "RetryDeadLetterRequest"]
