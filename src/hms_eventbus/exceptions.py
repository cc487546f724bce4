"""
Event Bus Exceptions

Error taxonomy shared by the broker connection, the event bus, the outbox
and the idempotency guard.
"""


class EventBusError(Exception):
    """Base exception for integration event errors."""

    def __init__(self, message: str, event_id: str | None = None, cause: Exception | None = None):
        super().__init__(message)
        self.event_id = event_id
        self.cause = cause


class NonTransientError(EventBusError):
    """Marker for failures that will not succeed on redelivery.

    Handlers raise a subclass of this to have the message acknowledged and
    recorded as poison instead of being redelivered.
    """


class BrokerUnavailable(EventBusError):
    """Raised when the broker cannot be reached within the retry budget."""


class PublishFailed(EventBusError):
    """Raised when an event could not be published after all retries."""


class SerializationError(NonTransientError):
    """Raised when an event payload cannot be encoded or decoded."""


class HandlerFailure(EventBusError):
    """Transient handler failure; the message is redelivered."""


class InvalidStateTransition(EventBusError):
    """Raised when an outbox entry is moved outside its state machine."""

    def __init__(self, event_id: str, current: str, target: str):
        super().__init__(
            f"Outbox entry {event_id} cannot move from {current} to {target}",
            event_id=event_id,
        )
        self.current = current
        self.target = target


class OutboxEntryNotFound(EventBusError):
    """Raised when an outbox entry does not exist."""


class DuplicateRequest(EventBusError):
    """A request id was already processed. Used internally by the guard."""

    def __init__(self, request_id: str, result=None):
        super().__init__(f"Request {request_id} already processed")
        self.request_id = request_id
        self.result = result


class ConcurrentDuplicateInsert(EventBusError):
    """Lost the insert race for a request id and could not read the winner."""

    def __init__(self, request_id: str):
        super().__init__(f"Concurrent insert for request {request_id} could not be resolved")
        self.request_id = request_id


class InvalidRequestId(EventBusError, ValueError):
    """Raised when a command is submitted without a usable request id."""
