"""
Sync Context - the handles every sync operation works through.

Bundles the queue, the entity map, the remote client, the module registry,
settings, a logger and a clock into one value that is passed explicitly
instead of living in globals. Also turns local change notifications into
queue jobs.
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Generator

from sync_bridge.config import Settings
from sync_bridge.connectors.remote import RemoteClient, create_remote_client
from sync_bridge.connectors.sqlite import SQLiteDatabase
from sync_bridge.core.clock import Clock, utc_now
from sync_bridge.core.entity_map import EntityMapRepository
from sync_bridge.core.queue import JobAction, JobDirection, JobQueue
from sync_bridge.core.registry import ModuleRegistry
from sync_bridge.utils.logger import get_logger, log_event


@dataclass
class SyncContext:
    """
    Explicit dependencies of the sync core.

    Example:
        ctx = SyncContext.from_settings(settings, registry)
        ctx.notify_change("orders", "order", "update", local_id=42)
    """

    queue: JobQueue
    entity_map: EntityMapRepository
    remote: RemoteClient
    registry: ModuleRegistry
    settings: Settings = field(default_factory=Settings)
    logger: logging.Logger = field(default_factory=get_logger)
    clock: Clock = utc_now
    _suppressed: dict[str, int] = field(default_factory=dict, repr=False)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        registry: ModuleRegistry,
        remote: RemoteClient | None = None,
        db: SQLiteDatabase | None = None,
        clock: Clock = utc_now,
    ) -> "SyncContext":
        """
        Wire a context from settings.

        Args:
            settings: Application settings
            registry: Registered modules
            remote: Remote client (JSON-RPC client from settings if omitted)
            db: Shared database (opened at ``queue.database_path`` if omitted)
            clock: Source of the current time
        """
        db = db or SQLiteDatabase(settings.queue.database_path)
        for module_id in settings.sync.disabled_modules:
            if module_id in registry:
                registry.set_enabled(module_id, False)
        return cls(
            queue=JobQueue(db, clock=clock, options=settings.queue),
            entity_map=EntityMapRepository(db, clock=clock),
            remote=remote or create_remote_client(settings),
            registry=registry,
            settings=settings,
            clock=clock,
        )

    # ------------------------------------------------------------------
    # Echo suppression
    # ------------------------------------------------------------------
    @contextmanager
    def suppress_changes(self, module_id: str) -> Generator[None, None, None]:
        """
        Ignore change notifications of a module inside the block.

        Wraps local writes made by a pull so they do not enqueue a push
        straight back to the remote system. Nests.
        """
        self._suppressed[module_id] = self._suppressed.get(module_id, 0) + 1
        try:
            yield
        finally:
            remaining = self._suppressed[module_id] - 1
            if remaining:
                self._suppressed[module_id] = remaining
            else:
                del self._suppressed[module_id]

    def is_suppressed(self, module_id: str) -> bool:
        return self._suppressed.get(module_id, 0) > 0

    # ------------------------------------------------------------------
    # Change notifications
    # ------------------------------------------------------------------
    def notify_change(
        self,
        module_id: str,
        entity_type: str,
        action: JobAction | str,
        local_id: int | None = None,
        remote_id: int | None = None,
        payload: dict[str, Any] | None = None,
        direction: JobDirection | str = JobDirection.PUSH,
        priority: int | None = None,
    ) -> int | None:
        """
        Turn a change on either side into a queued job.

        Only active modules react; dormant, disabled and suppressed
        modules are ignored. A pending job for the same entity and
        direction absorbs the change instead of a new job being added:
        create followed by update stays a create, and delete always wins.

        Returns:
            The id of the job that will carry the change, or None if ignored
        """
        action = JobAction(action)
        direction = JobDirection(direction)

        if not self.registry.is_active(module_id):
            log_event(
                self.logger, logging.DEBUG, "Change ignored, module not active",
                module_id=module_id, entity_type=entity_type, local_id=local_id,
            )
            return None
        if self.is_suppressed(module_id):
            return None

        module = self.registry.resolve(module_id)
        module.handler(entity_type)
        if not module.sync_direction().allows(direction):
            log_event(
                self.logger, logging.DEBUG, "Change ignored, direction not supported",
                module_id=module_id, entity_type=entity_type, direction=direction.value,
            )
            return None

        options = self.settings.queue
        if options.coalesce:
            existing = self.queue.find_pending(
                module_id, entity_type, direction, local_id=local_id, remote_id=remote_id,
            )
            if existing is not None:
                merged = _merge_actions(existing.action, action)
                if self.queue.update_pending(
                    existing.id,
                    merged,
                    payload=payload,
                    priority=priority,
                    remote_id=remote_id,
                    local_id=local_id,
                ):
                    return existing.id

        delay = (
            options.push_debounce_seconds
            if direction == JobDirection.PUSH
            else options.pull_debounce_seconds
        )
        return self.queue.enqueue(
            module_id,
            entity_type,
            action,
            local_id=local_id,
            remote_id=remote_id,
            payload=payload,
            priority=priority,
            direction=direction,
            delay_seconds=delay,
        )


def _merge_actions(pending: JobAction, incoming: JobAction) -> JobAction:
    """Action of a pending job after absorbing another change."""
    if incoming == JobAction.DELETE:
        return JobAction.DELETE
    if pending == JobAction.CREATE:
        return JobAction.CREATE
    return incoming
