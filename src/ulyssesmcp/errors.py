"""
Error taxonomy for the Ulysses bridge.

Every failure the bridge surfaces to a caller is a BridgeError subclass
with a stable ``code``. Nothing here is retried automatically; retry
policy belongs to the caller.
"""


class BridgeError(Exception):
    """Base class for all bridge errors."""

    code = "bridge_error"


class InvalidInput(BridgeError):
    """Caller-supplied input was rejected before any invocation."""

    code = "invalid_input"

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class UnknownAction(InvalidInput):
    """The requested action is not in the whitelist."""

    def __init__(self, action: str) -> None:
        super().__init__(f"Invalid action: {action}", field="action")
        self.action = action


class MissingField(InvalidInput):
    """A required field was absent or empty."""


class InvalidEnum(InvalidInput):
    """A value was not a member of its closed set."""


class TooLong(InvalidInput):
    """A value exceeded its length ceiling."""


class RateLimited(BridgeError):
    """A destructive action exceeded its per-window ceiling."""

    code = "rate_limited"

    def __init__(self, action: str, retry_after_ms: int) -> None:
        super().__init__(
            f"Rate limit exceeded for {action}. Please wait before trying again."
        )
        self.action = action
        self.retry_after_ms = retry_after_ms


class HelperStartFailure(BridgeError):
    """The callback receiver could not be started."""

    code = "helper_start_failure"


class InvocationFailure(BridgeError):
    """The OS-level URL open call failed."""

    code = "invocation_failure"


class CallbackTimeout(BridgeError):
    """No callback artifact appeared within the wait bound."""

    code = "callback_timeout"

    def __init__(self, correlation_id: str, action: str, timeout_ms: int) -> None:
        super().__init__(
            f"Callback timeout for action: {action} after {timeout_ms} ms. "
            "Ulysses may not be running or may not have called back.\n\n"
            "Troubleshooting:\n"
            "1. Ensure Ulysses is installed and running\n"
            "2. Ensure the ulysses-mcp callback receiver is running "
            "(ulysses-mcp-receiver)\n"
            "3. Check that Ulysses has permission to use x-callback-url"
        )
        self.correlation_id = correlation_id
        self.action = action
        self.timeout_ms = timeout_ms


class ExternalError(BridgeError):
    """Ulysses reported a failure through the error address."""

    code = "external_error"


class ArtifactCorruption(BridgeError):
    """A matching callback artifact could not be read or parsed."""

    code = "artifact_corruption"


class StoreError(BridgeError):
    """Base class for secure store failures."""

    code = "store_error"


class ArtifactNotFound(StoreError):
    """No artifact exists at the requested path."""


class SymlinkRejected(StoreError):
    """A symbolic link was found where a regular file was expected."""


class PathEscape(StoreError):
    """A derived path resolved outside the store root."""


class StoreWriteError(StoreError):
    """An artifact or marker could not be written."""
