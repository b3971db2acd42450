"""Tests for error classification."""

import pytest

from sync_bridge.connectors.remote import (
    RemoteAccessError,
    RemoteError,
    RemoteModelNotFoundError,
    RemoteRateLimitError,
    RemoteRecordNotFoundError,
    RemoteTransportError,
    RemoteValidationError,
)
from sync_bridge.core.errors import (
    ConfigurationError,
    ConflictError,
    DependencyNotSyncedError,
    classify_exception,
)
from sync_bridge.core.results import ErrorKind, SyncResult


class TestClassifyException:
    """Test classify_exception function."""

    @pytest.mark.parametrize(
        "exc",
        [
            RemoteValidationError("bad value"),
            RemoteAccessError("denied"),
            RemoteModelNotFoundError("no model"),
            RemoteRecordNotFoundError("gone"),
            ConfigurationError("unknown module"),
        ],
    )
    def test_permanent(self, exc: Exception) -> None:
        """Test errors a retry cannot fix."""
        assert classify_exception(exc) == ErrorKind.PERMANENT

    @pytest.mark.parametrize(
        "exc",
        [
            RemoteTransportError("timeout"),
            RemoteRateLimitError(30),
            RemoteError("unexpected"),
            ConflictError("race"),
            DependencyNotSyncedError("bookings", "service", 3),
            KeyError("boom"),
        ],
    )
    def test_transient(self, exc: Exception) -> None:
        """Test everything else is retried."""
        assert classify_exception(exc) == ErrorKind.TRANSIENT


class TestSyncResult:
    """Test SyncResult class."""

    def test_success(self) -> None:
        """Test a successful result."""
        result = SyncResult.success(remote_id=5, local_id=1)
        assert result.ok
        assert result.error_kind is None
        assert not result.is_transient and not result.is_permanent

    def test_failure_defaults_to_transient(self) -> None:
        """Test failures are transient unless stated otherwise."""
        result = SyncResult.failure("timeout")
        assert not result.ok
        assert result.is_transient

    def test_permanent_failure(self) -> None:
        """Test a permanent failure."""
        result = SyncResult.failure("bad", ErrorKind.PERMANENT, remote_id=9)
        assert result.is_permanent
        assert result.remote_id == 9

    def test_dependency_error_message(self) -> None:
        """Test the unsynced dependency message names the entity."""
        exc = DependencyNotSyncedError("bookings", "service", 3)
        assert str(exc) == "Dependency bookings/service#3 is not synced yet"
        assert exc.entity_type == "service"
