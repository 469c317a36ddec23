"""
Custom exceptions for Gist synchronization.
"""

from typing import Optional


class SyncError(Exception):
    """
    Generic synchronization error.

    Base class for all sync-related errors.
    """
    pass


class ConfigError(SyncError):
    """
    Raised when sync configuration is incomplete (missing token, username
    or Gist ID). Never attempted against the network.
    """
    pass


class MissingRemoteIdError(ConfigError):
    """
    Raised when an operation needs an existing Gist but none is configured.
    """
    pass


class SyncInProgressError(SyncError):
    """
    Raised when a sync is started while another one is still running.
    """
    pass


class GistApiError(SyncError):
    """
    Raised when the GitHub API rejects a request.

    Attributes:
        status_code: HTTP status (None for network failures)
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class AuthError(GistApiError):
    """
    Raised when GitHub token is invalid or lacks the 'gist' scope.
    """
    pass


class NotFoundOrForbiddenError(GistApiError):
    """
    Raised when the Gist no longer exists or is not accessible.

    Write paths recover from this by creating a new Gist.
    """
    pass


class WriteConflictError(GistApiError):
    """
    Raised when the Gist was modified concurrently since it was last read.

    This is never retried automatically; the user should sync again.
    """
    pass


class BatchUpdateError(GistApiError):
    """
    Raised when a batched update fails after earlier batches were applied.

    Attributes:
        batch_index: Zero-based index of the failed batch
        total_batches: Number of batches in the operation
    """

    def __init__(
        self,
        message: str,
        batch_index: int,
        total_batches: int,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, status_code)
        self.batch_index = batch_index
        self.total_batches = total_batches


class VerificationError(SyncError):
    """
    Raised when files read back after an upload do not match what was sent.

    Attributes:
        problems: Human-readable list of every mismatch found
    """

    def __init__(self, problems: list[str]):
        super().__init__("Upload verification failed:\n" + "\n".join(problems))
        self.problems = problems


class TruncatedContentError(SyncError):
    """
    Raised when a truncated Gist file cannot be fetched from its raw URL.
    """
    pass


class EntityParseError(SyncError):
    """
    Raised when a single remote entity cannot be decoded.
    """
    pass
