"""Custom exceptions for notifier-hub."""


class NotifierHubError(Exception):
    """Base class for notifier-hub errors."""


class SharedStorageError(NotifierHubError):
    """Raised when the shared storage slot cannot be read or written."""


class AdapterConnectionError(NotifierHubError):
    """Raised for transient platform failures that are worth retrying."""


class AdapterAuthError(NotifierHubError):
    """Raised when a platform permanently rejects the configured credentials."""

    def __init__(self, platform: str, reason: str) -> None:
        """Initialize the error with the rejecting platform."""
        self.platform = platform
        self.reason = reason
        super().__init__(f"{platform}: {reason}")


class RelayProtocolError(NotifierHubError):
    """Raised when a backend relay frame cannot be interpreted."""
