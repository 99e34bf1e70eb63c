"""
storage_errors.py - Error types shared by the storage tools

Fatal at startup:
- ConfigurationError: category / label-id source missing or malformed
- ConnectivityError: object store unreachable

Caught per file pair (recorded as an error, run continues):
- ParseError: metadata JSON unreadable or invalid
- StorageOperationError: get/put/copy/delete failed
"""


class StorageToolError(Exception):
    """Base class for all storage tool errors."""


class ConfigurationError(StorageToolError):
    """Category or label-id source is missing or malformed."""


class ConnectivityError(StorageToolError):
    """Object store cannot be reached."""


class ParseError(StorageToolError):
    """A metadata document could not be decoded."""


class StorageOperationError(StorageToolError):
    """An object store call failed."""

    def __init__(self, message: str, key: str | None = None):
        super().__init__(message)
        self.key = key


class ObjectNotFound(StorageOperationError):
    """The requested key does not exist."""


class TransportError(StorageOperationError):
    """The object store returned an unexpected error."""
