"""
Circuit Breakers - stop hammering an unhealthy remote system.

A batch whose share of failures reaches ``failure_ratio`` counts as a
failing batch. After ``failure_threshold`` consecutive failing batches the
breaker opens and dispatch runs are skipped for ``recovery_delay_seconds``.
After that exactly one probe run is let through (half-open): a healthy
probe closes the breaker, a failing one reopens it.

``ModuleCircuitBreaker`` applies the same rule to each module separately,
so one module whose remote model is gone does not hold up the others.

State lives in the shared SQLite database so overlapping runs see it.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from datetime import timedelta
from enum import Enum
from typing import Any

from sync_bridge.config import BreakerOptions
from sync_bridge.connectors.sqlite import SQLiteDatabase
from sync_bridge.core.clock import Clock, from_iso, to_iso, utc_now


logger = logging.getLogger("sync_bridge.circuit_breaker")


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass
class BreakerSnapshot:
    """Persisted breaker state."""

    state: BreakerState = BreakerState.CLOSED
    consecutive_failures: int = 0
    opened_at: str | None = None
    probe_started_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "BreakerSnapshot":
        return cls(
            state=BreakerState(data.get("state", "closed")),
            consecutive_failures=int(data.get("consecutive_failures", 0)),
            opened_at=data.get("opened_at"),
            probe_started_at=data.get("probe_started_at"),
        )


def _load_state(db: SQLiteDatabase, key: str) -> dict[str, Any] | None:
    row = db.fetch_one("SELECT value FROM engine_state WHERE key = ?", (key,))
    return json.loads(row["value"]) if row is not None else None


def _save_state(db: SQLiteDatabase, key: str, value: dict[str, Any]) -> None:
    db.execute(
        "INSERT INTO engine_state (key, value) VALUES (?, ?) "
        "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (key, json.dumps(value)),
    )


class CircuitBreaker:
    """
    Ratio-based circuit breaker for the whole remote system.

    Example:
        breaker = CircuitBreaker(db, settings.breaker)

        if breaker.try_acquire():
            ...
            breaker.record_batch(processed=20, transient_failures=18)
    """

    STATE_KEY = "circuit_breaker"

    def __init__(
        self,
        db: SQLiteDatabase,
        options: BreakerOptions | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.db = db
        self.options = options or BreakerOptions()
        self.clock = clock

    def _load(self) -> BreakerSnapshot:
        data = _load_state(self.db, self.STATE_KEY)
        return BreakerSnapshot.from_dict(data) if data is not None else BreakerSnapshot()

    def _save(self, snapshot: BreakerSnapshot) -> None:
        _save_state(self.db, self.STATE_KEY, snapshot.to_dict())

    def _delay_passed(self, since: str | None) -> bool:
        if not since:
            return True
        return self.clock() >= from_iso(since) + timedelta(
            seconds=self.options.recovery_delay_seconds
        )

    def _effective_state(self, snapshot: BreakerSnapshot) -> BreakerState:
        if snapshot.state == BreakerState.OPEN and self._delay_passed(snapshot.opened_at):
            return BreakerState.HALF_OPEN
        return snapshot.state

    def _admits(self, snapshot: BreakerSnapshot) -> bool:
        state = self._effective_state(snapshot)
        if state == BreakerState.CLOSED:
            return True
        if state == BreakerState.OPEN:
            return False
        # A probe whose run died is given up after one recovery delay
        return self._delay_passed(snapshot.probe_started_at)

    @property
    def state(self) -> BreakerState:
        """Current state, with an expired open state reported as half-open."""
        return self._effective_state(self._load())

    def is_available(self) -> bool:
        """Whether a run would be admitted now. Claims nothing."""
        if not self.options.enabled:
            return True
        return self._admits(self._load())

    def try_acquire(self) -> bool:
        """
        Admit a dispatch run.

        A closed breaker admits every run. A half-open breaker admits one
        probe run and refuses the others until the probe has reported
        through ``record_batch`` or ``release_probe``.
        """
        if not self.options.enabled:
            return True
        with self.db.transaction():
            snapshot = self._load()
            if not self._admits(snapshot):
                return False
            if self._effective_state(snapshot) == BreakerState.HALF_OPEN:
                snapshot.state = BreakerState.HALF_OPEN
                snapshot.probe_started_at = to_iso(self.clock())
                self._save(snapshot)
                logger.info("Circuit breaker half-open: admitting one probe run")
        return True

    def release_probe(self) -> None:
        """Give up a probe slot that processed nothing."""
        with self.db.transaction():
            snapshot = self._load()
            if snapshot.state == BreakerState.HALF_OPEN and snapshot.probe_started_at:
                snapshot.probe_started_at = None
                self._save(snapshot)

    def record_batch(self, processed: int, transient_failures: int) -> None:
        """
        Feed the outcome of one batch.

        Args:
            processed: Jobs processed in the batch
            transient_failures: How many of them failed Transient
        """
        if not self.options.enabled or processed <= 0:
            return

        ratio = transient_failures / processed
        with self.db.transaction():
            snapshot = self._load()
            state = self._effective_state(snapshot)

            if ratio < self.options.failure_ratio:
                if state != BreakerState.CLOSED:
                    logger.info("Circuit breaker closed after a healthy batch")
                if state != BreakerState.CLOSED or snapshot.consecutive_failures:
                    self._save(BreakerSnapshot())
                return

            snapshot.consecutive_failures += 1
            if state == BreakerState.HALF_OPEN or (
                state == BreakerState.CLOSED
                and snapshot.consecutive_failures >= self.options.failure_threshold
            ):
                snapshot.state = BreakerState.OPEN
                snapshot.opened_at = to_iso(self.clock())
                snapshot.probe_started_at = None
                logger.warning(
                    "Circuit breaker opened: %d of %d jobs failed transiently "
                    "(%d consecutive failing batches); pausing for %ds",
                    transient_failures,
                    processed,
                    snapshot.consecutive_failures,
                    self.options.recovery_delay_seconds,
                )
            self._save(snapshot)

    def reset(self) -> None:
        """Force the breaker closed."""
        self._save(BreakerSnapshot())


@dataclass
class ModuleBreakerState:
    """Persisted state of one module's breaker."""

    failures: int = 0
    opened_at: str | None = None


class ModuleCircuitBreaker:
    """
    Per-module circuit breaker.

    Counts every failed job, Transient or Permanent, since a module whose
    remote model was removed fails Permanent on every job. An open module
    is skipped until ``module_recovery_delay_seconds`` have passed; state
    older than ``module_state_max_age_seconds`` is discarded.

    Example:
        modules = ModuleCircuitBreaker(db, settings.breaker)

        jobs = queue.claim(50, exclude_modules=modules.open_modules())
        ...
        modules.record_batch("orders", successes=0, failures=12)
    """

    KEY_PREFIX = "module_breaker:"

    def __init__(
        self,
        db: SQLiteDatabase,
        options: BreakerOptions | None = None,
        clock: Clock = utc_now,
    ) -> None:
        self.db = db
        self.options = options or BreakerOptions()
        self.clock = clock

    def _key(self, module_id: str) -> str:
        return f"{self.KEY_PREFIX}{module_id}"

    def _load(self, module_id: str) -> ModuleBreakerState | None:
        data = _load_state(self.db, self._key(module_id))
        if data is None:
            return None
        return ModuleBreakerState(
            failures=int(data.get("failures", 0)),
            opened_at=data.get("opened_at"),
        )

    def _age(self, state: ModuleBreakerState) -> float:
        if not state.opened_at:
            return 0.0
        return (self.clock() - from_iso(state.opened_at)).total_seconds()

    def is_available(self, module_id: str) -> bool:
        """Whether jobs of ``module_id`` may be processed now."""
        if not self.options.module_enabled:
            return True
        state = self._load(module_id)
        if state is None or not state.opened_at:
            return True
        age = self._age(state)
        if age > self.options.module_state_max_age_seconds:
            self.reset(module_id)
            return True
        return age >= self.options.module_recovery_delay_seconds

    def open_modules(self) -> list[str]:
        """Modules whose jobs must be left alone right now."""
        if not self.options.module_enabled:
            return []
        rows = self.db.fetch_all(
            "SELECT key FROM engine_state WHERE key LIKE ?",
            (f"{self.KEY_PREFIX}%",),
        )
        module_ids = [row["key"][len(self.KEY_PREFIX):] for row in rows]
        return [m for m in module_ids if not self.is_available(m)]

    def record_batch(self, module_id: str, successes: int, failures: int) -> None:
        """Feed one batch's outcomes for a module."""
        total = successes + failures
        if not self.options.module_enabled or total <= 0:
            return

        key = self._key(module_id)
        with self.db.transaction():
            state = self._load(module_id)

            if failures / total < self.options.failure_ratio:
                if state is None:
                    return
                self.db.execute("DELETE FROM engine_state WHERE key = ?", (key,))
                if state.opened_at:
                    logger.info("Module circuit breaker closed: %s recovered", module_id)
                return

            state = state or ModuleBreakerState()
            state.failures += 1
            # Reopen on a failing probe; open once the threshold is reached
            if state.opened_at or state.failures >= self.options.module_failure_threshold:
                state.opened_at = to_iso(self.clock())
                logger.warning(
                    "Module circuit breaker opened for %s after %d failing batches; "
                    "pausing it for %ds",
                    module_id,
                    state.failures,
                    self.options.module_recovery_delay_seconds,
                )
            _save_state(self.db, key, asdict(state))

    def reset(self, module_id: str) -> None:
        """Close a module's breaker by hand."""
        removed = self.db.execute(
            "DELETE FROM engine_state WHERE key = ?",
            (self._key(module_id),),
        )
        if removed:
            logger.info("Module circuit breaker reset for %s", module_id)
