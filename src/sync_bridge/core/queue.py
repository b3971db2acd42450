"""
Job Queue - durable at-least-once job store.

Provides:
- Atomic claiming with claim tokens and expiries (safe across processes)
- Exponential backoff with jitter for transient failures
- Dead-lettering with the failure reason kept for operators
- Manual re-enqueue, cancellation, statistics and cleanup
"""

from __future__ import annotations

import json
import logging
import random
import sqlite3
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from enum import Enum
from typing import Any, Iterable

from sync_bridge.config import QueueOptions
from sync_bridge.connectors.sqlite import SQLiteDatabase
from sync_bridge.core.clock import Clock, to_iso, utc_now


logger = logging.getLogger("sync_bridge.queue")


class JobStatus(str, Enum):
    """Lifecycle of a job."""

    PENDING = "pending"
    PROCESSING = "processing"
    DONE = "done"
    DEAD = "dead"


class JobAction(str, Enum):
    """What happened to the entity."""

    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


class JobDirection(str, Enum):
    """Which side is written."""

    PUSH = "push"  # local -> remote
    PULL = "pull"  # remote -> local


@dataclass
class Job:
    """A unit of sync work."""

    id: int
    module_id: str
    entity_type: str
    action: JobAction
    direction: JobDirection = JobDirection.PUSH
    local_id: int | None = None
    remote_id: int | None = None
    payload: dict[str, Any] = field(default_factory=dict)
    priority: int = 5
    attempt_count: int = 0
    next_attempt_at: str = ""
    status: JobStatus = JobStatus.PENDING
    claim_token: str | None = None
    claim_expires_at: str | None = None
    last_error: str | None = None
    created_at: str = ""
    updated_at: str = ""

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Job":
        """Create from a database row."""
        return cls(
            id=row["id"],
            module_id=row["module_id"],
            entity_type=row["entity_type"],
            action=JobAction(row["action"]),
            direction=JobDirection(row["direction"]),
            local_id=row["local_id"],
            remote_id=row["remote_id"],
            payload=json.loads(row["payload"] or "{}"),
            priority=row["priority"],
            attempt_count=row["attempt_count"],
            next_attempt_at=row["next_attempt_at"],
            status=JobStatus(row["status"]),
            claim_token=row["claim_token"],
            claim_expires_at=row["claim_expires_at"],
            last_error=row["last_error"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def describe(self) -> str:
        """Short human-readable label for logs and tables."""
        ident = self.local_id if self.local_id is not None else f"r{self.remote_id}"
        return f"{self.module_id}/{self.entity_type}#{ident} {self.action.value}"


@dataclass
class QueueStats:
    """Job counts per status."""

    pending: int = 0
    processing: int = 0
    done: int = 0
    dead: int = 0
    due: int = 0
    by_module: dict[str, dict[str, int]] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return self.pending + self.processing + self.done + self.dead


def compute_backoff(
    attempt_count: int,
    base: float,
    cap: float,
    jitter: float = 0.0,
    rng: random.Random | None = None,
) -> float:
    """
    Exponential backoff delay in seconds.

    ``base * 2**attempt_count`` capped at ``cap``, plus a random extra of
    up to ``jitter`` times that delay, capped again.

    Args:
        attempt_count: Attempts already made
        base: Delay for the first retry
        cap: Upper bound for any delay
        jitter: Fraction of the delay added at random (0 disables)
        rng: Random source (module default if omitted)
    """
    exponent = min(max(attempt_count, 0), 32)
    delay = min(cap, base * (2 ** exponent))
    if jitter > 0:
        delay += (rng or random).uniform(0, delay * jitter)
    return min(cap, delay)


class JobQueue:
    """
    SQLite-backed job queue.

    Example:
        queue = JobQueue(db, options=settings.queue)

        job_id = queue.enqueue("orders", "order", JobAction.CREATE, local_id=42)

        for job in queue.claim(10):
            ...
            queue.complete(job.id, claim_token=job.claim_token)
    """

    def __init__(
        self,
        db: SQLiteDatabase,
        clock: Clock = utc_now,
        options: QueueOptions | None = None,
    ) -> None:
        """
        Initialize the queue.

        Args:
            db: Shared SQLite database
            clock: Source of the current time
            options: Queue options (defaults if omitted)
        """
        self.db = db
        self.clock = clock
        self.options = options or QueueOptions()

    def _now(self) -> str:
        return to_iso(self.clock())

    def _after(self, seconds: float) -> str:
        return to_iso(self.clock() + timedelta(seconds=seconds))

    # ------------------------------------------------------------------
    # Enqueue
    # ------------------------------------------------------------------
    def enqueue(
        self,
        module: str,
        entity_type: str,
        action: JobAction | str,
        local_id: int | None = None,
        remote_id: int | None = None,
        payload: dict[str, Any] | None = None,
        priority: int | None = None,
        direction: JobDirection | str = JobDirection.PUSH,
        delay_seconds: float = 0,
    ) -> int:
        """
        Add a pending job.

        Never merges with existing jobs; callers that want coalescing use
        ``find_pending`` / ``update_pending``.

        Returns:
            New job id
        """
        action = JobAction(action)
        direction = JobDirection(direction)
        if priority is None:
            priority = self.options.default_priority
        now = self._now()

        job_id = self.db.insert(
            "INSERT INTO sync_jobs (module_id, direction, entity_type, action, "
            "local_id, remote_id, payload, priority, attempt_count, next_attempt_at, "
            "status, created_at, updated_at) "
            "VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?, 'pending', ?, ?)",
            (
                module,
                direction.value,
                entity_type,
                action.value,
                local_id,
                remote_id,
                json.dumps(payload or {}, default=str),
                priority,
                self._after(delay_seconds),
                now,
                now,
            ),
        )
        logger.debug(
            "Enqueued job %s: %s/%s %s local=%s remote=%s",
            job_id, module, entity_type, action.value, local_id, remote_id,
        )
        return job_id

    def find_pending(
        self,
        module: str,
        entity_type: str,
        direction: JobDirection | str,
        local_id: int | None = None,
        remote_id: int | None = None,
    ) -> Job | None:
        """Find the oldest pending job for the same entity and direction."""
        direction = JobDirection(direction)
        if local_id is not None:
            key_sql, key = "local_id = ?", local_id
        elif remote_id is not None:
            key_sql, key = "remote_id = ?", remote_id
        else:
            return None

        row = self.db.fetch_one(
            "SELECT * FROM sync_jobs WHERE status = 'pending' AND module_id = ? "
            f"AND entity_type = ? AND direction = ? AND {key_sql} ORDER BY id LIMIT 1",
            (module, entity_type, direction.value, key),
        )
        return Job.from_row(row) if row else None

    def update_pending(
        self,
        job_id: int,
        action: JobAction | str,
        payload: dict[str, Any] | None = None,
        priority: int | None = None,
        remote_id: int | None = None,
        local_id: int | None = None,
    ) -> bool:
        """
        Rewrite a job that is still pending.

        Returns:
            False if the job was claimed or finished in the meantime
        """
        action = JobAction(action)
        sets = ["action = ?", "updated_at = ?"]
        params: list[Any] = [action.value, self._now()]
        if payload is not None:
            sets.append("payload = ?")
            params.append(json.dumps(payload, default=str))
        if priority is not None:
            sets.append("priority = ?")
            params.append(priority)
        if remote_id is not None:
            sets.append("remote_id = ?")
            params.append(remote_id)
        if local_id is not None:
            sets.append("local_id = ?")
            params.append(local_id)
        params.append(job_id)

        updated = self.db.execute(
            f"UPDATE sync_jobs SET {', '.join(sets)} WHERE id = ? AND status = 'pending'",
            params,
        )
        return updated > 0

    # ------------------------------------------------------------------
    # Claiming
    # ------------------------------------------------------------------
    def claim(
        self,
        batch_size: int,
        worker_id: str | None = None,
        module_id: str | None = None,
        exclude_modules: Iterable[str] = (),
    ) -> list[Job]:
        """
        Atomically claim due jobs.

        Pending jobs whose ``next_attempt_at`` has passed and processing
        jobs whose claim expired are eligible, ordered by priority and
        then age. The whole selection and update runs under one write
        lock, so concurrent callers never receive the same job.

        Args:
            batch_size: Maximum number of jobs to claim
            worker_id: Optional label stored in the claim token
            module_id: Restrict claiming to one module
            exclude_modules: Leave jobs of these modules unclaimed

        Returns:
            Claimed jobs, each carrying its claim token
        """
        if batch_size <= 0:
            return []

        now = self._now()
        expires = self._after(self.options.claim_timeout_seconds)
        token = f"{worker_id or 'worker'}:{uuid.uuid4().hex}"

        module_sql = ""
        params: list[Any] = [now, now]
        if module_id is not None:
            module_sql = " AND module_id = ?"
            params.append(module_id)
        excluded = sorted(set(exclude_modules))
        if excluded:
            module_sql += f" AND module_id NOT IN ({', '.join('?' for _ in excluded)})"
            params.extend(excluded)
        params.append(batch_size)

        with self.db.transaction() as conn:
            rows = conn.execute(
                "SELECT id FROM sync_jobs WHERE "
                "((status = 'pending' AND next_attempt_at <= ?) "
                "OR (status = 'processing' AND claim_expires_at <= ?))"
                f"{module_sql} ORDER BY priority ASC, id ASC LIMIT ?",
                params,
            ).fetchall()
            ids = [row["id"] for row in rows]
            if not ids:
                return []

            placeholders = ", ".join("?" for _ in ids)
            conn.execute(
                f"UPDATE sync_jobs SET status = 'processing', claim_token = ?, "
                f"claim_expires_at = ?, updated_at = ? WHERE id IN ({placeholders})",
                (token, expires, now, *ids),
            )
            claimed = conn.execute(
                "SELECT * FROM sync_jobs WHERE claim_token = ? "
                "ORDER BY priority ASC, id ASC",
                (token,),
            ).fetchall()

        jobs = [Job.from_row(row) for row in claimed]
        logger.debug("Claimed %d job(s) with token %s", len(jobs), token)
        return jobs

    def due(self, limit: int, module_id: str | None = None) -> list[Job]:
        """List jobs that ``claim`` would return, without claiming them."""
        now = self._now()
        params: list[Any] = [now, now]
        module_sql = ""
        if module_id is not None:
            module_sql = " AND module_id = ?"
            params.append(module_id)
        params.append(limit)
        rows = self.db.fetch_all(
            "SELECT * FROM sync_jobs WHERE "
            "((status = 'pending' AND next_attempt_at <= ?) "
            "OR (status = 'processing' AND claim_expires_at <= ?))"
            f"{module_sql} ORDER BY priority ASC, id ASC LIMIT ?",
            params,
        )
        return [Job.from_row(row) for row in rows]

    def _claim_guard(self, claim_token: str | None) -> tuple[str, tuple[Any, ...]]:
        if claim_token is None:
            return "", ()
        return " AND status = 'processing' AND claim_token = ?", (claim_token,)

    # ------------------------------------------------------------------
    # Outcomes
    # ------------------------------------------------------------------
    def complete(self, job_id: int, claim_token: str | None = None) -> bool:
        """Mark a job done."""
        guard, guard_params = self._claim_guard(claim_token)
        updated = self.db.execute(
            "UPDATE sync_jobs SET status = 'done', claim_token = NULL, "
            f"claim_expires_at = NULL, last_error = NULL, updated_at = ? WHERE id = ?{guard}",
            (self._now(), job_id, *guard_params),
        )
        return updated > 0

    def reschedule(
        self,
        job_id: int,
        backoff_delay: float,
        error: str | None = None,
        remote_id: int | None = None,
        claim_token: str | None = None,
    ) -> bool:
        """
        Put a job back to pending after a transient failure.

        Increments ``attempt_count`` and pushes ``next_attempt_at`` to
        ``now + backoff_delay``. A ``remote_id`` learned during the failed
        attempt is kept on the job so the retry updates instead of creating.
        """
        guard, guard_params = self._claim_guard(claim_token)
        updated = self.db.execute(
            "UPDATE sync_jobs SET status = 'pending', attempt_count = attempt_count + 1, "
            "next_attempt_at = ?, last_error = ?, remote_id = COALESCE(?, remote_id), "
            "claim_token = NULL, claim_expires_at = NULL, updated_at = ? "
            f"WHERE id = ?{guard}",
            (
                self._after(backoff_delay),
                error,
                remote_id,
                self._now(),
                job_id,
                *guard_params,
            ),
        )
        return updated > 0

    def kill(
        self,
        job_id: int,
        reason: str,
        remote_id: int | None = None,
        claim_token: str | None = None,
    ) -> bool:
        """Dead-letter a job, keeping the reason for operators."""
        guard, guard_params = self._claim_guard(claim_token)
        updated = self.db.execute(
            "UPDATE sync_jobs SET status = 'dead', attempt_count = attempt_count + 1, "
            "last_error = ?, remote_id = COALESCE(?, remote_id), claim_token = NULL, "
            f"claim_expires_at = NULL, updated_at = ? WHERE id = ?{guard}",
            (reason, remote_id, self._now(), job_id, *guard_params),
        )
        if updated:
            logger.debug("Job %s dead-lettered: %s", job_id, reason)
        return updated > 0

    def release(self, job_id: int, claim_token: str) -> bool:
        """Return a claimed job to pending without counting an attempt."""
        updated = self.db.execute(
            "UPDATE sync_jobs SET status = 'pending', claim_token = NULL, "
            "claim_expires_at = NULL, updated_at = ? "
            "WHERE id = ? AND status = 'processing' AND claim_token = ?",
            (self._now(), job_id, claim_token),
        )
        return updated > 0

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------
    def requeue(self, job_id: int) -> bool:
        """Manually re-enqueue a dead job with a fresh attempt budget."""
        now = self._now()
        updated = self.db.execute(
            "UPDATE sync_jobs SET status = 'pending', attempt_count = 0, "
            "next_attempt_at = ?, updated_at = ? WHERE id = ? AND status = 'dead'",
            (now, now, job_id),
        )
        return updated > 0

    def requeue_dead(self, module: str | None = None) -> int:
        """Re-enqueue every dead job, optionally for one module."""
        now = self._now()
        if module is None:
            return self.db.execute(
                "UPDATE sync_jobs SET status = 'pending', attempt_count = 0, "
                "next_attempt_at = ?, updated_at = ? WHERE status = 'dead'",
                (now, now),
            )
        return self.db.execute(
            "UPDATE sync_jobs SET status = 'pending', attempt_count = 0, "
            "next_attempt_at = ?, updated_at = ? WHERE status = 'dead' AND module_id = ?",
            (now, now, module),
        )

    def cancel(self, job_id: int) -> bool:
        """Delete a job that has not been claimed yet."""
        removed = self.db.execute(
            "DELETE FROM sync_jobs WHERE id = ? AND status = 'pending'",
            (job_id,),
        )
        return removed > 0

    def purge(self, older_than_days: int | None = None) -> int:
        """
        Delete done and dead jobs last touched before the retention window.

        Returns:
            Number of deleted jobs
        """
        days = older_than_days if older_than_days is not None else self.options.retention_days
        cutoff = to_iso(self.clock() - timedelta(days=days))
        return self.db.execute(
            "DELETE FROM sync_jobs WHERE status IN ('done', 'dead') AND updated_at < ?",
            (cutoff,),
        )

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------
    def get(self, job_id: int) -> Job | None:
        row = self.db.fetch_one("SELECT * FROM sync_jobs WHERE id = ?", (job_id,))
        return Job.from_row(row) if row else None

    def list_jobs(
        self,
        status: JobStatus | str | None = None,
        module: str | None = None,
        limit: int = 50,
    ) -> list[Job]:
        """List jobs, newest first."""
        clauses: list[str] = []
        params: list[Any] = []
        if status is not None:
            clauses.append("status = ?")
            params.append(JobStatus(status).value)
        if module is not None:
            clauses.append("module_id = ?")
            params.append(module)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        params.append(limit)
        rows = self.db.fetch_all(
            f"SELECT * FROM sync_jobs {where}ORDER BY id DESC LIMIT ?",
            params,
        )
        return [Job.from_row(row) for row in rows]

    def stats(self) -> QueueStats:
        """Count jobs per status and per module."""
        stats = QueueStats()
        rows = self.db.fetch_all(
            "SELECT module_id, status, COUNT(*) AS n FROM sync_jobs GROUP BY module_id, status"
        )
        for row in rows:
            status = row["status"]
            count = int(row["n"])
            setattr(stats, status, getattr(stats, status) + count)
            stats.by_module.setdefault(row["module_id"], {})[status] = count

        now = self._now()
        due = self.db.fetch_one(
            "SELECT COUNT(*) AS n FROM sync_jobs WHERE status = 'pending' AND next_attempt_at <= ?",
            (now,),
        )
        stats.due = int(due["n"]) if due else 0
        return stats
