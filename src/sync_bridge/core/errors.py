"""
Exceptions raised inside the sync core and the error mapper.

``classify_exception`` is the single place where exceptions are turned
into an ``ErrorKind``. Anything it does not recognize is Transient, so a
misclassified failure is retried a bounded number of times and then
dead-lettered rather than lost.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from sync_bridge.connectors.remote import (
    RemoteAccessError,
    RemoteModelNotFoundError,
    RemoteRateLimitError,
    RemoteRecordNotFoundError,
    RemoteValidationError,
)
from sync_bridge.core.results import ErrorKind, SyncResult

if TYPE_CHECKING:
    from sync_bridge.core.entity_map import EntityMapping


class SyncBridgeError(Exception):
    """Base exception for sync core errors."""

    pass


class ConflictError(SyncBridgeError):
    """Raised when saving a mapping would break a uniqueness constraint."""

    def __init__(self, message: str, existing: "EntityMapping | None" = None) -> None:
        super().__init__(message)
        self.existing = existing


class ConfigurationError(SyncBridgeError):
    """
    Raised for wiring mistakes that retrying cannot fix.

    Unknown modules or entity types, a job whose direction the module
    does not support, and dependency cycles all end up here.
    """

    pass


class DependencyNotSyncedError(SyncBridgeError):
    """Raised when a referenced entity has no remote counterpart yet."""

    def __init__(self, module_id: str, entity_type: str, local_id: int) -> None:
        super().__init__(
            f"Dependency {module_id}/{entity_type}#{local_id} is not synced yet"
        )
        self.module_id = module_id
        self.entity_type = entity_type
        self.local_id = local_id


class EntityLockedError(SyncBridgeError):
    """Raised when another worker holds the create lock of an entity."""

    def __init__(self, module_id: str, entity_type: str, local_id: int) -> None:
        super().__init__(
            f"Push of {module_id}/{entity_type}#{local_id} is in progress elsewhere; will retry"
        )
        self.module_id = module_id
        self.entity_type = entity_type
        self.local_id = local_id


PERMANENT_ERRORS: tuple[type[BaseException], ...] = (
    RemoteValidationError,
    RemoteAccessError,
    RemoteModelNotFoundError,
    RemoteRecordNotFoundError,
    ConfigurationError,
)


def classify_exception(exc: BaseException) -> ErrorKind:
    """
    Map an exception to an ErrorKind.

    Args:
        exc: Exception raised by a module, the remote client or the core

    Returns:
        ErrorKind.PERMANENT for errors a retry cannot fix,
        ErrorKind.TRANSIENT for everything else
    """
    if isinstance(exc, PERMANENT_ERRORS):
        return ErrorKind.PERMANENT
    return ErrorKind.TRANSIENT


def failure_from_exception(
    exc: BaseException,
    remote_id: int | None = None,
    local_id: int | None = None,
) -> SyncResult:
    """Turn an exception into a classified failed result."""
    retry_after = exc.retry_after if isinstance(exc, RemoteRateLimitError) else None
    return SyncResult.failure(
        str(exc) or type(exc).__name__,
        classify_exception(exc),
        remote_id=remote_id,
        local_id=local_id,
        retry_after=retry_after,
    )
