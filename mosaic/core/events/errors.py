"""Event system exceptions."""


class EventSystemError(Exception):
    """Base class for event system errors."""


class HandlerTimeoutError(EventSystemError):
    """A handler did not finish within its allotted time."""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"Handler execution timed out after {timeout}s")
        self.timeout = timeout


class SynchronousContractError(EventSystemError):
    """A handler or hook returned an awaitable on the synchronous path."""


class HandlerExecutionError(EventSystemError):
    """One or more handlers failed for an event."""

    def __init__(self, message: str, failed_handlers: list[str] | None = None) -> None:
        super().__init__(message)
        self.failed_handlers = failed_handlers or []


class UnsupportedPatternError(EventSystemError, ValueError):
    """Pattern subscription with an unknown type or an invalid pattern."""


class EventQueueFullError(EventSystemError):
    """The pending event queue reached its configured size."""

    def __init__(self, max_size: int) -> None:
        super().__init__(f"Event queue is full ({max_size} pending events)")
        self.max_size = max_size
