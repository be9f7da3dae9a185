"""
Exception types raised by sandbox_keeper.

Transient failures of the host's extend-request callback are never raised;
they are logged and reported as a failed extension.
"""


class SandboxKeeperError(Exception):
    """Base class for sandbox_keeper errors."""


class TimeoutManagerDisposedError(SandboxKeeperError):
    """Raised when a disposed TimeoutManager is asked to start again."""

    def __init__(self, message: str = "TimeoutManager has been disposed"):
        super().__init__(message)


class ExtensionConfigError(SandboxKeeperError):
    """Raised when adaptive extension or timeout settings fail validation."""
