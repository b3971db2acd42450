"""Tests for the job queue."""

import random
import threading
from datetime import timedelta
from pathlib import Path

from conftest import FakeClock

from sync_bridge.config import QueueOptions
from sync_bridge.connectors.sqlite import SQLiteDatabase
from sync_bridge.core.clock import to_iso
from sync_bridge.core.queue import (
    JobAction,
    JobDirection,
    JobQueue,
    JobStatus,
    compute_backoff,
)


def make_queue(db: SQLiteDatabase, clock: FakeClock, **options: object) -> JobQueue:
    return JobQueue(db, clock=clock, options=QueueOptions(**options))


class TestEnqueue:
    """Test adding jobs."""

    def test_enqueue_defaults(self, db: SQLiteDatabase, clock: FakeClock) -> None:
        """Test a new job is pending and due now."""
        queue = make_queue(db, clock)
        job_id = queue.enqueue("catalog", "product", "create", local_id=7, payload={"a": 1})

        job = queue.get(job_id)
        assert job is not None
        assert job.status == JobStatus.PENDING
        assert job.action == JobAction.CREATE
        assert job.direction == JobDirection.PUSH
        assert job.priority == 5
        assert job.attempt_count == 0
        assert job.payload == {"a": 1}
        assert job.next_attempt_at == to_iso(clock())

    def test_enqueue_with_delay(self, db: SQLiteDatabase, clock: FakeClock) -> None:
        """Test delayed jobs are not due until the delay passes."""
        queue = make_queue(db, clock)
        queue.enqueue("catalog", "product", "update", local_id=1, delay_seconds=30)

        assert queue.claim(10) == []
        clock.advance(30)
        assert len(queue.claim(10)) == 1

    def test_find_and_update_pending(self, db: SQLiteDatabase, clock: FakeClock) -> None:
        """Test locating and rewriting a pending job."""
        queue = make_queue(db, clock)
        job_id = queue.enqueue("catalog", "product", "create", local_id=3)

        found = queue.find_pending("catalog", "product", "push", local_id=3)
        assert found is not None and found.id == job_id
        assert queue.find_pending("catalog", "product", "pull", local_id=3) is None

        assert queue.update_pending(job_id, "delete", payload={"x": 1})
        job = queue.get(job_id)
        assert job.action == JobAction.DELETE
        assert job.payload == {"x": 1}

    def test_update_pending_ignores_claimed(self, db: SQLiteDatabase, clock: FakeClock) -> None:
        """Test claimed jobs can no longer be rewritten."""
        queue = make_queue(db, clock)
        job_id = queue.enqueue("catalog", "product", "create", local_id=3)
        queue.claim(1)

        assert queue.update_pending(job_id, "update") is False


class TestClaim:
    """Test claiming."""

    def test_claim_orders_by_priority_then_age(self, db: SQLiteDatabase, clock: FakeClock) -> None:
        """Test lower priority values are claimed first."""
        queue = make_queue(db, clock)
        low = queue.enqueue("catalog", "product", "update", local_id=1, priority=9)
        first = queue.enqueue("catalog", "product", "update", local_id=2, priority=1)
        second = queue.enqueue("catalog", "product", "update", local_id=3, priority=1)

        jobs = queue.claim(10, worker_id="w1")
        assert [job.id for job in jobs] == [first, second, low]
        assert all(job.status == JobStatus.PROCESSING for job in jobs)
        assert all(job.claim_token and job.claim_token.startswith("w1:") for job in jobs)

    def test_claim_respects_batch_size_and_module(
        self, db: SQLiteDatabase, clock: FakeClock
    ) -> None:
        """Test the batch limit and module filter."""
        queue = make_queue(db, clock)
        for local_id in range(3):
            queue.enqueue("catalog", "product", "update", local_id=local_id)
        queue.enqueue("bookings", "booking", "create", local_id=9)

        assert len(queue.claim(2)) == 2
        jobs = queue.claim(10, module_id="bookings")
        assert [job.module_id for job in jobs] == ["bookings"]
        assert queue.claim(0) == []

    def test_claim_skips_excluded_modules(self, db: SQLiteDatabase, clock: FakeClock) -> None:
        """Test jobs of excluded modules stay pending."""
        queue = make_queue(db, clock)
        paused = queue.enqueue("catalog", "product", "update", local_id=1, priority=1)
        other = queue.enqueue("bookings", "booking", "create", local_id=2)

        jobs = queue.claim(10, exclude_modules=["catalog"])
        assert [job.id for job in jobs] == [other]
        skipped = queue.get(paused)
        assert skipped is not None
        assert skipped.status == JobStatus.PENDING

    def test_concurrent_claims_never_overlap(self, tmp_path: Path, clock: FakeClock) -> None:
        """Test two workers on separate connections get disjoint jobs."""
        path = tmp_path / "shared.db"
        setup = SQLiteDatabase(path)
        seed = make_queue(setup, clock)
        for local_id in range(40):
            seed.enqueue("catalog", "product", "update", local_id=local_id)

        claimed: list[list[int]] = []
        lock = threading.Lock()

        def worker(name: str) -> None:
            db = SQLiteDatabase(path)
            queue = make_queue(db, clock)
            mine: list[int] = []
            while True:
                jobs = queue.claim(3, worker_id=name)
                if not jobs:
                    break
                mine.extend(job.id for job in jobs)
            db.close()
            with lock:
                claimed.append(mine)

        threads = [threading.Thread(target=worker, args=(f"w{i}",)) for i in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        setup.close()

        all_ids = [job_id for ids in claimed for job_id in ids]
        assert len(all_ids) == 40
        assert len(set(all_ids)) == 40

    def test_expired_claim_is_reclaimed(self, db: SQLiteDatabase, clock: FakeClock) -> None:
        """Test a stale claim is reclaimable and the old token loses."""
        queue = make_queue(db, clock, claim_timeout_seconds=60)
        job_id = queue.enqueue("catalog", "product", "update", local_id=1)

        (stale,) = queue.claim(1, worker_id="crashed")
        assert queue.claim(1) == []

        clock.advance(61)
        (fresh,) = queue.claim(1, worker_id="rescuer")
        assert fresh.id == job_id
        assert fresh.claim_token != stale.claim_token

        assert queue.complete(job_id, claim_token=stale.claim_token) is False
        assert queue.complete(job_id, claim_token=fresh.claim_token) is True
        assert queue.get(job_id).status == JobStatus.DONE

    def test_due_does_not_claim(self, db: SQLiteDatabase, clock: FakeClock) -> None:
        """Test listing due jobs leaves them pending."""
        queue = make_queue(db, clock)
        job_id = queue.enqueue("catalog", "product", "update", local_id=1)

        assert [job.id for job in queue.due(10)] == [job_id]
        assert queue.get(job_id).status == JobStatus.PENDING


class TestOutcomes:
    """Test completing, rescheduling and dead-lettering."""

    def test_reschedule(self, db: SQLiteDatabase, clock: FakeClock) -> None:
        """Test a transient failure puts the job back with a later due time."""
        queue = make_queue(db, clock)
        job_id = queue.enqueue("catalog", "product", "create", local_id=1)
        (job,) = queue.claim(1)

        assert queue.reschedule(job_id, 120, error="timeout", remote_id=55, claim_token=job.claim_token)
        job = queue.get(job_id)
        assert job.status == JobStatus.PENDING
        assert job.attempt_count == 1
        assert job.last_error == "timeout"
        assert job.remote_id == 55
        assert job.claim_token is None
        assert job.next_attempt_at == to_iso(clock() + timedelta(seconds=120))

    def test_kill_keeps_reason(self, db: SQLiteDatabase, clock: FakeClock) -> None:
        """Test dead-lettering records the reason."""
        queue = make_queue(db, clock)
        job_id = queue.enqueue("catalog", "product", "create", local_id=1)
        (job,) = queue.claim(1)

        assert queue.kill(job_id, "invalid field", claim_token=job.claim_token)
        job = queue.get(job_id)
        assert job.status == JobStatus.DEAD
        assert job.last_error == "invalid field"
        assert job.attempt_count == 1

    def test_release_returns_job_without_attempt(self, db: SQLiteDatabase, clock: FakeClock) -> None:
        """Test releasing a claim does not count an attempt."""
        queue = make_queue(db, clock)
        job_id = queue.enqueue("catalog", "product", "update", local_id=1)
        (job,) = queue.claim(1)

        assert queue.release(job_id, job.claim_token)
        job = queue.get(job_id)
        assert job.status == JobStatus.PENDING
        assert job.attempt_count == 0


class TestOperatorActions:
    """Test requeue, cancel, purge, listing and statistics."""

    def test_requeue_only_dead(self, db: SQLiteDatabase, clock: FakeClock) -> None:
        """Test requeue resets dead jobs and ignores others."""
        queue = make_queue(db, clock)
        dead_id = queue.enqueue("catalog", "product", "create", local_id=1)
        pending_id = queue.enqueue("catalog", "product", "create", local_id=2)
        queue.claim(1)
        queue.kill(dead_id, "gone")

        assert queue.requeue(pending_id) is False
        assert queue.requeue(dead_id) is True
        job = queue.get(dead_id)
        assert job.status == JobStatus.PENDING
        assert job.attempt_count == 0

    def test_requeue_dead_by_module(self, db: SQLiteDatabase, clock: FakeClock) -> None:
        """Test bulk requeue filtered by module."""
        queue = make_queue(db, clock)
        ids = [
            queue.enqueue("catalog", "product", "create", local_id=1),
            queue.enqueue("bookings", "booking", "create", local_id=2),
        ]
        for job_id in ids:
            queue.kill(job_id, "x")

        assert queue.requeue_dead("catalog") == 1
        assert queue.requeue_dead() == 1
        assert queue.stats().dead == 0

    def test_cancel_pending_only(self, db: SQLiteDatabase, clock: FakeClock) -> None:
        """Test only pending jobs can be cancelled."""
        queue = make_queue(db, clock)
        claimed_id = queue.enqueue("catalog", "product", "create", local_id=1)
        queue.claim(1)
        pending_id = queue.enqueue("catalog", "product", "create", local_id=2)

        assert queue.cancel(claimed_id) is False
        assert queue.cancel(pending_id) is True
        assert queue.get(pending_id) is None

    def test_purge_old_finished_jobs(self, db: SQLiteDatabase, clock: FakeClock) -> None:
        """Test purge removes finished jobs past the retention window."""
        queue = make_queue(db, clock)
        old_id = queue.enqueue("catalog", "product", "create", local_id=1)
        queue.complete(old_id)
        clock.advance(8 * 86400)
        recent_id = queue.enqueue("catalog", "product", "create", local_id=2)
        queue.complete(recent_id)
        pending_id = queue.enqueue("catalog", "product", "create", local_id=3)

        assert queue.purge() == 1
        assert queue.get(old_id) is None
        assert queue.get(recent_id) is not None
        assert queue.get(pending_id) is not None

    def test_list_and_stats(self, db: SQLiteDatabase, clock: FakeClock) -> None:
        """Test listing newest first and counting per status."""
        queue = make_queue(db, clock)
        first = queue.enqueue("catalog", "product", "create", local_id=1)
        second = queue.enqueue("bookings", "booking", "create", local_id=2, delay_seconds=60)
        queue.kill(first, "x")

        assert [job.id for job in queue.list_jobs()] == [second, first]
        assert [job.id for job in queue.list_jobs(status="dead")] == [first]
        assert [job.id for job in queue.list_jobs(module="bookings")] == [second]

        stats = queue.stats()
        assert stats.pending == 1
        assert stats.dead == 1
        assert stats.due == 0
        assert stats.total == 2
        assert stats.by_module == {"catalog": {"dead": 1}, "bookings": {"pending": 1}}


class TestComputeBackoff:
    """Test compute_backoff function."""

    def test_exponential_growth(self) -> None:
        """Test delays double per attempt."""
        assert compute_backoff(0, 60, 3600) == 60
        assert compute_backoff(1, 60, 3600) == 120
        assert compute_backoff(2, 60, 3600) == 240

    def test_capped(self) -> None:
        """Test the delay never exceeds the cap."""
        assert compute_backoff(20, 60, 3600) == 3600
        assert compute_backoff(10_000, 60, 3600) == 3600

    def test_jitter_bounds(self) -> None:
        """Test jitter adds at most the given fraction."""
        rng = random.Random(1)
        for _ in range(50):
            delay = compute_backoff(1, 60, 3600, jitter=0.25, rng=rng)
            assert 120 <= delay <= 150

    def test_monotonic_without_jitter(self) -> None:
        """Test delays never decrease with more attempts."""
        delays = [compute_backoff(n, 30, 1000) for n in range(12)]
        assert delays == sorted(delays)
