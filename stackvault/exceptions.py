"""
Error taxonomy shared by every stackvault component.

Target-level errors raised while a full batch runs are caught by the
coordinator and recorded on the result. Restore, retention and scheduling
operations let them propagate to the caller.
"""


class StackvaultError(Exception):
    """Base class for all stackvault errors."""
    pass


class ServiceUnavailable(StackvaultError):
    """Raised when a target container is not running."""
    pass


class ToolInvocationFailure(StackvaultError):
    """Raised when an external client or CLI exits non-zero or times out."""

    def __init__(self, message: str, returncode: int = None, stderr: str = None):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class DependencyMissing(StackvaultError):
    """Raised when a required external tool or library is absent."""
    pass


class NotFound(StackvaultError):
    """Raised when a requested artifact cannot be located."""
    pass


class ConfigurationInvalid(StackvaultError):
    """Raised when a required setting is absent or malformed."""
    pass


class ConfirmationRequired(StackvaultError):
    """Raised when a destructive operation was not explicitly confirmed."""
    pass


class LockHeld(StackvaultError):
    """Raised when another coordinator run owns the backup root."""
    pass
