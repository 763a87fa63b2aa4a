"""
Custom exceptions for reducer synchronization.

All engine components and backends raise these exceptions
for consistent error handling. Business-rule failures are not
exceptions: reducers report them through ``resolve({"errors": ...})``.
"""


class ReducerSyncError(Exception):
    """Base exception for all reducer sync errors."""

    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class EmitError(ReducerSyncError):
    """Raised when appending an action to the event log fails."""

    def __init__(self, channel: str, cause: Exception | None = None):
        details: dict = {"channel": channel}
        if cause:
            details["cause"] = str(cause)
        message = f"Error emitting event to {channel}"
        if cause:
            message += f": {cause}"
        super().__init__(message, details)
        self.channel = channel
        self.cause = cause


class EmitTimeoutError(ReducerSyncError):
    """Raised when an emitted action is not resolved in time."""

    def __init__(self, channel: str, correlation_id: str, timeout: float):
        super().__init__(
            f"Action {correlation_id} on {channel} not resolved within {timeout}s",
            {"channel": channel, "correlation_id": correlation_id, "timeout": timeout},
        )
        self.channel = channel
        self.correlation_id = correlation_id
        self.timeout = timeout


class ReducerMismatchError(ReducerSyncError):
    """Raised when two writers disagree on the reducer for a channel.

    The channel stops applying events once this is detected.
    """

    def __init__(self, channel: str, expected: str | None, found: str | None):
        super().__init__(
            f"Reducer version mismatch on {channel}: expected {expected!r}, found {found!r}",
            {"channel": channel, "expected": expected, "found": found},
        )
        self.channel = channel
        self.expected = expected
        self.found = found


class BaselineTimeoutError(ReducerSyncError):
    """Raised when a channel's initial value does not load in time."""

    def __init__(self, channel: str, timeout: float):
        super().__init__(
            f"Initial value for {channel} not loaded within {timeout}s",
            {"channel": channel, "timeout": timeout},
        )
        self.channel = channel
        self.timeout = timeout


class ChannelNotAttachedError(ReducerSyncError):
    """Raised when emitting to a channel that has no live reducer here."""

    def __init__(self, channel: str):
        super().__init__(
            f"Channel {channel} has no attached observers; its actions would never resolve",
            {"channel": channel},
        )
        self.channel = channel


class StorageIOError(ReducerSyncError):
    """Raised when a storage I/O operation fails."""

    def __init__(self, operation: str, path: str | None = None, cause: Exception | None = None):
        details = {"operation": operation}
        if path:
            details["path"] = path
        if cause:
            details["cause"] = str(cause)
        message = f"Storage I/O error during {operation}"
        if path:
            message += f": {path}"
        super().__init__(message, details)
        self.operation = operation
        self.path = path
        self.cause = cause


class StorageConnectionError(ReducerSyncError):
    """Raised when connection to remote storage fails.

    Note: Named StorageConnectionError to avoid shadowing the builtin ConnectionError.
    """

    def __init__(self, endpoint: str, cause: Exception | None = None):
        details = {"endpoint": endpoint}
        if cause:
            details["cause"] = str(cause)
        super().__init__(f"Connection failed to {endpoint}", details)
        self.endpoint = endpoint
        self.cause = cause


class AuthenticationError(ReducerSyncError):
    """Raised when authentication to remote storage fails."""

    def __init__(self, endpoint: str, reason: str | None = None):
        details = {"endpoint": endpoint}
        if reason:
            details["reason"] = reason
        super().__init__(f"Authentication failed for {endpoint}", details)
        self.endpoint = endpoint
        self.reason = reason


class ValidationError(ReducerSyncError):
    """Raised when data validation fails."""

    def __init__(self, field: str, reason: str, value: str | None = None):
        details = {"field": field, "reason": reason}
        if value is not None:
            details["value"] = value
        super().__init__(f"Validation failed for {field}: {reason}", details)
        self.field = field
        self.reason = reason
        self.value = value
