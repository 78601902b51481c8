"""Error taxonomy shared by every component.

SDK and transport exceptions are translated into these classes at the
adapter boundary so the orchestration code only handles one hierarchy.
"""


class ZenoError(Exception):
    """Base class for all bot errors."""


class TransportError(ZenoError):
    """Messaging, provider or sandbox network failure."""


class ProviderError(TransportError):
    """A provider answered with a non-success status or an unreadable body."""

    def __init__(self, message: str, status: int | None = None):
        super().__init__(message)
        self.status = status


class FormattingError(TransportError):
    """Telegram rejected the message markup."""


class AuthError(ZenoError):
    """The caller has no usable credential for the requested provider."""


class ValidationError(ZenoError, ValueError):
    """Malformed tool arguments, unknown tool name or invalid enumerated value."""


class OperationTimeout(ZenoError, TimeoutError):
    """A bounded operation exceeded its deadline."""


class SandboxTimeout(OperationTimeout):
    """Sandboxed code ran past its wall-clock limit."""


class EmptyResultError(ZenoError):
    """A well-formed response carried no usable content."""


class PersistenceError(ZenoError):
    """Storage read or write failure."""


class ImageQueueFull(ZenoError):
    """The image queue is at capacity; the job was not accepted."""
