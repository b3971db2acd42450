"""
Result values returned by every push and pull.

Modules never raise across the dispatcher boundary; they return a
``SyncResult`` that is either a success (optionally carrying the remote id)
or a failure tagged with an ``ErrorKind``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class ErrorKind(str, Enum):
    """Failure classification driving retry policy."""

    TRANSIENT = "transient"
    PERMANENT = "permanent"


@dataclass(frozen=True)
class SyncResult:
    """Outcome of a single push or pull."""

    ok: bool
    remote_id: int | None = None
    local_id: int | None = None
    message: str = ""
    error_kind: ErrorKind | None = None
    retry_after: float | None = None

    @classmethod
    def success(
        cls,
        remote_id: int | None = None,
        local_id: int | None = None,
        message: str = "",
    ) -> "SyncResult":
        return cls(ok=True, remote_id=remote_id, local_id=local_id, message=message)

    @classmethod
    def failure(
        cls,
        message: str,
        kind: ErrorKind = ErrorKind.TRANSIENT,
        remote_id: int | None = None,
        local_id: int | None = None,
        retry_after: float | None = None,
    ) -> "SyncResult":
        """
        Build a failed result.

        ``remote_id`` is set when a remote record was created before the
        failure, so that the retry updates it instead of creating another.
        ``retry_after`` is the minimum delay the remote system asked for.
        """
        return cls(
            ok=False,
            remote_id=remote_id,
            local_id=local_id,
            message=message,
            error_kind=kind,
            retry_after=retry_after,
        )

    @property
    def is_transient(self) -> bool:
        return not self.ok and self.error_kind == ErrorKind.TRANSIENT

    @property
    def is_permanent(self) -> bool:
        return not self.ok and self.error_kind == ErrorKind.PERMANENT

