from enum import Enum


class ErrorKind(Enum):
    CONFIG = "config"
    TRANSPORT = "transport"
    PARSE = "parse"
    EXECUTION = "execution"


class ToolRelayError(Exception):
    """Base for every error raised by toolrelay.

    ``kind`` tells the orchestrator how to recover without inspecting
    vendor-specific exception attributes.
    """

    kind: ErrorKind = ErrorKind.EXECUTION


class ConfigurationError(ToolRelayError):
    """Missing or invalid provider configuration.  Fatal at selection time."""

    kind = ErrorKind.CONFIG


class ProviderError(ToolRelayError):
    """The upstream provider failed (HTTP, network, timeout) mid-stream.

    Args:
        message: Human-readable description.
        vendor: Vendor identity of the failing adapter.
        status_code: HTTP status if the provider returned one.
    """

    kind = ErrorKind.TRANSPORT

    def __init__(
        self,
        message: str,
        vendor: str | None = None,
        status_code: int | None = None,
    ):
        super().__init__(message)
        self.vendor = vendor
        self.status_code = status_code


class ToolArgumentsError(ToolRelayError):
    """Accumulated tool arguments are not a JSON object."""

    kind = ErrorKind.PARSE


class ToolExecutionError(ToolRelayError):
    """Raised by tool authors and executors to report an expected failure.

    The dispatcher turns it into a failed result whose text is the
    message alone, and logs it as a warning rather than an error.  Any
    other exception is treated as a bug in the tool.

    Example::

        @tool
        def fill_field(selector: str, value: str):
            if selector not in page:
                raise ToolExecutionError(f"no element matches {selector}")
    """

    kind = ErrorKind.EXECUTION


class ConversationError(ToolRelayError, ValueError):
    """An inbound conversation violates message ordering rules."""

    kind = ErrorKind.PARSE
