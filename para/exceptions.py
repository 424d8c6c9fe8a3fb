"""
Exceptions for the para assistant.
"""


class ParaError(Exception):
    """Base exception for para."""


class InvalidPathError(ParaError):
    """Raised when a path is not located under the expected base directory."""


class ConfigurationError(ParaError):
    """Raised when required configuration is missing or invalid."""


class RemoteServiceError(ParaError):
    """Base exception for remote file store and index failures."""


class NotFoundError(RemoteServiceError):
    """Raised when a remote object is already absent."""


class TransientServiceError(RemoteServiceError):
    """Raised for any remote failure other than not-found."""


class UploadError(TransientServiceError):
    """Raised when an upload fails on transport or quota."""


class PartialSyncFailure(ParaError):
    """Raised when a multi-step sync sequence only partly completed.

    The remote record is left in place so a later sync pass can detect
    the missing step and complete it.
    """

    def __init__(self, filename: str, remote_id: str, missing_step: str, cause=None):
        self.filename = filename
        self.remote_id = remote_id
        self.missing_step = missing_step
        self.cause = cause
        message = f"{filename} ({remote_id}): {missing_step} did not complete"
        if cause is not None:
            message = f"{message}: {cause}"
        super().__init__(message)


class ConversationError(ParaError):
    """Raised when an assistant run ends in a non-completed state."""
