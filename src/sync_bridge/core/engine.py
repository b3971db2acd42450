"""
Sync Engine - drains the job queue.

Coordinates all components for a dispatch run:
- Job queue for claiming and recording outcomes
- Module registry for resolving the owning module
- Dependency resolver for the push pipeline
- Circuit breaker for backing off an unhealthy remote system
- Per-module breaker for pausing a module that keeps failing

No exception escapes ``process_job``: every failure is classified,
logged and turned into a reschedule or a dead-letter.
"""

from __future__ import annotations

import logging
import os
import random
import socket
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from sync_bridge.core.circuit_breaker import BreakerState, CircuitBreaker, ModuleCircuitBreaker
from sync_bridge.core.context import SyncContext
from sync_bridge.core.errors import ConfigurationError, ConflictError, failure_from_exception
from sync_bridge.core.module import Module
from sync_bridge.core.queue import Job, JobAction, JobDirection, compute_backoff
from sync_bridge.core.resolver import DependencyResolver
from sync_bridge.core.results import ErrorKind, SyncResult
from sync_bridge.utils.logger import log_event


class JobOutcome(str, Enum):
    """What the dispatcher did with a processed job."""

    DONE = "done"
    RETRIED = "retried"
    DEAD = "dead"
    SKIPPED = "skipped"


@dataclass
class DispatchStats:
    """Statistics for a dispatch run."""

    claimed: int = 0
    succeeded: int = 0
    retried: int = 0
    dead: int = 0
    skipped: int = 0
    released: int = 0
    batches: int = 0
    breaker_open: bool = False
    dry_run: bool = False
    due_jobs: list[Job] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    start_time: float = 0.0
    end_time: float = 0.0

    @property
    def duration_seconds(self) -> float:
        """Duration in seconds."""
        if self.end_time and self.start_time:
            return self.end_time - self.start_time
        if self.start_time:
            return time.time() - self.start_time
        return 0.0

    @property
    def processed(self) -> int:
        return self.succeeded + self.retried + self.dead + self.skipped

    def record(self, outcome: JobOutcome) -> None:
        if outcome == JobOutcome.DONE:
            self.succeeded += 1
        elif outcome == JobOutcome.RETRIED:
            self.retried += 1
        elif outcome == JobOutcome.DEAD:
            self.dead += 1
        else:
            self.skipped += 1


# Progress callback type
ProgressCallback = Callable[[DispatchStats], None]


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


class SyncEngine:
    """
    Queue dispatcher.

    Example:
        engine = SyncEngine(ctx, breaker=CircuitBreaker(db, settings.breaker))

        stats = engine.run()
        print(f"{stats.succeeded} done, {stats.retried} retried, {stats.dead} dead")
    """

    def __init__(
        self,
        ctx: SyncContext,
        worker_id: str | None = None,
        breaker: CircuitBreaker | None = None,
        rng: random.Random | None = None,
        module_breaker: ModuleCircuitBreaker | None = None,
    ) -> None:
        """
        Initialize the engine.

        Args:
            ctx: Sync context
            worker_id: Label stored on claims (host:pid if omitted)
            breaker: Optional circuit breaker consulted before each run
            rng: Random source for backoff jitter
            module_breaker: Optional per-module breaker; jobs of paused
                modules are left in the queue
        """
        self.ctx = ctx
        self.worker_id = worker_id or default_worker_id()
        self.breaker = breaker
        self.module_breaker = module_breaker
        self.rng = rng or random.Random()
        self.resolver = DependencyResolver(ctx)
        self.logger = ctx.logger

    def run(
        self,
        module_id: str | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> DispatchStats:
        """
        Process due jobs until the queue drains or a limit is reached.

        Args:
            module_id: Only process jobs of this module
            on_progress: Called after every batch

        Returns:
            DispatchStats for the run
        """
        sync_opts = self.ctx.settings.sync
        stats = DispatchStats(start_time=time.time(), dry_run=sync_opts.dry_run)

        if sync_opts.dry_run:
            if self.breaker is not None and not self.breaker.is_available():
                stats.breaker_open = True
            stats.due_jobs = self.ctx.queue.due(self.ctx.settings.queue.batch_size, module_id=module_id)
            stats.end_time = time.time()
            return stats

        if self.breaker is not None and not self.breaker.try_acquire():
            stats.breaker_open = True
            log_event(self.logger, logging.WARNING, "Circuit breaker open, skipping dispatch run")
            stats.end_time = time.time()
            return stats

        probing = self.breaker is not None and self.breaker.state == BreakerState.HALF_OPEN
        try:
            self._drain(stats, module_id, on_progress)
        finally:
            if probing and self.breaker is not None:
                self.breaker.release_probe()

        stats.end_time = time.time()
        log_event(
            self.logger, logging.INFO, "Dispatch run finished",
            claimed=stats.claimed, succeeded=stats.succeeded, retried=stats.retried,
            dead=stats.dead, skipped=stats.skipped, released=stats.released,
            duration=f"{stats.duration_seconds:.2f}s",
        )
        return stats

    def _drain(
        self,
        stats: DispatchStats,
        module_id: str | None,
        on_progress: ProgressCallback | None,
    ) -> None:
        sync_opts = self.ctx.settings.sync
        batch_size = self.ctx.settings.queue.batch_size
        deadline = stats.start_time + sync_opts.batch_time_limit_seconds

        while stats.batches < sync_opts.max_batches_per_run and time.time() < deadline:
            paused = self.module_breaker.open_modules() if self.module_breaker else []
            jobs = self.ctx.queue.claim(
                batch_size,
                worker_id=self.worker_id,
                module_id=module_id,
                exclude_modules=paused,
            )
            if not jobs:
                break
            stats.batches += 1
            stats.claimed += len(jobs)

            processed = 0
            transient = 0
            # module_id -> [successes, failures]
            module_outcomes: dict[str, list[int]] = {}
            for index, job in enumerate(jobs):
                if time.time() >= deadline:
                    for leftover in jobs[index:]:
                        if self.ctx.queue.release(leftover.id, leftover.claim_token or ""):
                            stats.released += 1
                    break

                if self.module_breaker is not None and not self.module_breaker.is_available(job.module_id):
                    if self.ctx.queue.release(job.id, job.claim_token or ""):
                        stats.released += 1
                    continue

                result, outcome = self._handle(job)
                processed += 1
                stats.record(outcome)
                if outcome != JobOutcome.SKIPPED:
                    counts = module_outcomes.setdefault(job.module_id, [0, 0])
                    counts[0 if result.ok else 1] += 1
                if not result.ok:
                    stats.errors.append(f"{job.describe()}: {result.message}")
                    if result.is_transient:
                        transient += 1

            if on_progress:
                on_progress(stats)

            if self.module_breaker is not None:
                for mod_id, (successes, failures) in module_outcomes.items():
                    self.module_breaker.record_batch(mod_id, successes, failures)

            if self.breaker is not None:
                self.breaker.record_batch(processed, transient)
                if self.breaker.state == BreakerState.OPEN:
                    stats.breaker_open = True
                    break

    def process_job(self, job: Job) -> SyncResult:
        """Process one claimed job and record its outcome in the queue."""
        result, _ = self._handle(job)
        return result

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    def _handle(self, job: Job) -> tuple[SyncResult, JobOutcome]:
        try:
            module = self.ctx.registry.resolve(job.module_id)
        except ConfigurationError as exc:
            return self._apply(job, None, SyncResult.failure(str(exc), ErrorKind.PERMANENT))

        if self.ctx.registry.is_dormant(module.module_id) and self.ctx.settings.sync.drop_dormant_jobs:
            reason = f"Module '{module.module_id}' is dormant; job dropped"
            self.ctx.queue.kill(job.id, reason, claim_token=job.claim_token)
            log_event(
                self.logger, logging.INFO, "Dropped job of dormant module",
                job_id=job.id, module_id=job.module_id, entity_type=job.entity_type,
                local_id=job.local_id,
            )
            return SyncResult.failure(reason, ErrorKind.PERMANENT), JobOutcome.SKIPPED

        if not module.sync_direction().allows(job.direction):
            result = SyncResult.failure(
                f"Module '{module.module_id}' is {module.sync_direction().value} "
                f"and does not accept {job.direction.value} jobs",
                ErrorKind.PERMANENT,
            )
            return self._apply(job, module, result)

        return self._apply(job, module, self._execute(module, job))

    def _execute(self, module: Module, job: Job) -> SyncResult:
        try:
            if job.direction == JobDirection.PUSH:
                return self.resolver.push(
                    module,
                    job.entity_type,
                    job.action,
                    job.local_id,
                    job.remote_id,
                    job.payload,
                )
            return module.pull(
                self.ctx,
                job.entity_type,
                job.action,
                job.remote_id,
                job.local_id,
                job.payload,
            )
        except Exception as exc:
            return failure_from_exception(exc, remote_id=job.remote_id, local_id=job.local_id)

    def _apply(
        self,
        job: Job,
        module: Module | None,
        result: SyncResult,
    ) -> tuple[SyncResult, JobOutcome]:
        queue = self.ctx.queue
        if result.ok:
            if module is not None:
                self._record_mapping(module, job, result)
            queue.complete(job.id, claim_token=job.claim_token)
            log_event(
                self.logger, logging.DEBUG, "Job completed",
                job_id=job.id, module_id=job.module_id, entity_type=job.entity_type,
                local_id=result.local_id or job.local_id,
                remote_id=result.remote_id or job.remote_id,
            )
            return result, JobOutcome.DONE

        kind = result.error_kind or ErrorKind.TRANSIENT
        attempts = job.attempt_count + 1
        log_event(
            self.logger, logging.WARNING, "Job failed",
            job_id=job.id,
            module_id=job.module_id,
            entity_type=job.entity_type,
            local_id=job.local_id,
            remote_id=result.remote_id or job.remote_id,
            attempt_count=attempts,
            error_kind=kind.value,
            message=result.message,
        )

        if kind == ErrorKind.PERMANENT:
            queue.kill(job.id, result.message, remote_id=result.remote_id, claim_token=job.claim_token)
            return result, JobOutcome.DEAD

        max_attempts = self.ctx.settings.queue.max_attempts
        if attempts >= max_attempts:
            queue.kill(
                job.id,
                f"Max attempts ({max_attempts}) reached: {result.message}",
                remote_id=result.remote_id,
                claim_token=job.claim_token,
            )
            return result, JobOutcome.DEAD

        options = self.ctx.settings.queue
        delay = compute_backoff(
            attempts,
            options.backoff_base_seconds,
            options.backoff_max_seconds,
            options.backoff_jitter,
            self.rng,
        )
        if result.retry_after:
            delay = max(delay, float(result.retry_after))
        queue.reschedule(
            job.id,
            delay,
            error=result.message,
            remote_id=result.remote_id,
            claim_token=job.claim_token,
        )
        return result, JobOutcome.RETRIED

    def _record_mapping(self, module: Module, job: Job, result: SyncResult) -> None:
        """Save the mapping a successful create produced, if the module did not."""
        if job.action == JobAction.DELETE or result.remote_id is None:
            return
        local_id = result.local_id if result.local_id is not None else job.local_id
        if local_id is None:
            return

        entity_map = self.ctx.entity_map
        if entity_map.get(module.module_id, job.entity_type, local_id) is not None:
            return
        try:
            entity_map.save(
                module.module_id,
                job.entity_type,
                local_id,
                result.remote_id,
                module.remote_model(job.entity_type),
            )
        except (ConflictError, ConfigurationError) as exc:
            log_event(
                self.logger, logging.WARNING, "Could not record mapping",
                module_id=module.module_id, entity_type=job.entity_type,
                local_id=local_id, remote_id=result.remote_id, message=str(exc),
            )
