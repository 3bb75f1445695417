class JobRelayError(Exception):
    """Base class for everything this package raises on purpose."""


class ValidationError(JobRelayError):
    """Bad enqueue/admin parameters; nothing was written."""


class InvalidPriority(ValidationError):
    def __init__(self, level):
        super().__init__(f"unknown priority level: {level!r}")
        self.level = level


class NotFoundError(JobRelayError):
    def __init__(self, kind: str, ident: str):
        super().__init__(f"{kind} not found: {ident}")
        self.kind = kind
        self.ident = ident


class CapacityError(JobRelayError):
    """The live channel is full."""


class HandlerError(JobRelayError):
    """Domain failure raised by a job handler. Drives retry, never escapes the processor."""


class StoreError(JobRelayError):
    """Transient persistence failure; callers retry on the next tick."""
