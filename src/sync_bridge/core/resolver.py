"""
Dependency & Dedup Resolver.

Runs the push pipeline shared by queued jobs and inline dependency pushes:
1. A create for an already-mapped entity becomes an update
2. Declared dependencies are synced first, synchronously and inline
3. Before a create, the module's dedup domain is searched and a hit is
   adopted into the entity map instead of creating a duplicate
4. The module's push runs

Identity resolution by natural key is not atomic: two different local
entities describing the same logical record may both miss the dedup
search and both create. The remote system offers no upsert to close that
window. Creates of one local entity are serialized by the entity map's
push lock.
"""

from __future__ import annotations

import logging
from typing import Any

from sync_bridge.core.context import SyncContext
from sync_bridge.core.errors import ConfigurationError, ConflictError, failure_from_exception
from sync_bridge.core.module import Module
from sync_bridge.core.queue import JobAction
from sync_bridge.core.results import ErrorKind, SyncResult
from sync_bridge.utils.logger import log_event


EntityKey = tuple[str, str, int]


class DependencyResolver:
    """
    Orders pushes so prerequisites exist remotely before their dependents.

    Example:
        resolver = DependencyResolver(ctx)
        result = resolver.ensure_synced(bookings, "service", 3)
        if result.ok:
            service_remote_id = result.remote_id
    """

    def __init__(self, ctx: SyncContext) -> None:
        self.ctx = ctx
        self.max_depth = ctx.settings.sync.max_dependency_depth

    def ensure_synced(
        self,
        module: Module,
        entity_type: str,
        local_id: int,
        _stack: tuple[EntityKey, ...] = (),
    ) -> SyncResult:
        """
        Make sure an entity exists remotely.

        Mapped entities return immediately without remote calls; unmapped
        ones are pushed inline as a create through the full pipeline.

        Returns:
            Success carrying the remote id, or the failure of the inline push
        """
        remote_id = self.ctx.entity_map.get_remote_id(module.module_id, entity_type, local_id)
        if remote_id is not None:
            return SyncResult.success(remote_id=remote_id, local_id=local_id)

        log_event(
            self.ctx.logger, logging.INFO, "Pushing unsynced dependency inline",
            module_id=module.module_id, entity_type=entity_type, local_id=local_id,
            depth=len(_stack),
        )
        return self.push(module, entity_type, JobAction.CREATE, local_id, _stack=_stack)

    def push(
        self,
        module: Module,
        entity_type: str,
        action: JobAction | str,
        local_id: int | None,
        remote_id: int | None = None,
        payload: dict[str, Any] | None = None,
        _stack: tuple[EntityKey, ...] = (),
    ) -> SyncResult:
        """
        Push one entity through the full pipeline. Never raises.

        Args:
            module: Owning module
            entity_type: Entity type within the module
            action: create, update or delete
            local_id: Local entity id
            remote_id: Remote id already known to the job, if any
            payload: Opaque job payload
        """
        action = JobAction(action)
        try:
            return self._push(module, entity_type, action, local_id, remote_id, payload, _stack)
        except Exception as exc:
            return failure_from_exception(exc, remote_id=remote_id, local_id=local_id)

    def _push(
        self,
        module: Module,
        entity_type: str,
        action: JobAction,
        local_id: int | None,
        remote_id: int | None,
        payload: dict[str, Any] | None,
        stack: tuple[EntityKey, ...],
    ) -> SyncResult:
        module.handler(entity_type)

        if action == JobAction.DELETE or local_id is None:
            return module.push(self.ctx, entity_type, action, local_id, remote_id, payload)

        key = (module.module_id, entity_type, local_id)
        if key in stack:
            path = " -> ".join(f"{m}/{t}#{i}" for m, t, i in (*stack, key))
            raise ConfigurationError(f"Dependency cycle: {path}")
        if len(stack) > self.max_depth:
            raise ConfigurationError(
                f"Dependency depth exceeds {self.max_depth} at "
                f"{module.module_id}/{entity_type}#{local_id}"
            )

        if remote_id is None:
            remote_id = self.ctx.entity_map.get_remote_id(module.module_id, entity_type, local_id)
        if action == JobAction.CREATE and remote_id is not None:
            action = JobAction.UPDATE

        for dep_type, dep_local_id in module.dependencies(self.ctx, entity_type, local_id):
            result = self.ensure_synced(module, dep_type, dep_local_id, (*stack, key))
            if not result.ok:
                return SyncResult.failure(
                    f"Dependency {dep_type}#{dep_local_id} failed: {result.message}",
                    result.error_kind or ErrorKind.TRANSIENT,
                    local_id=local_id,
                    retry_after=result.retry_after,
                )

        if action == JobAction.CREATE:
            adopted = self.adopt_existing(module, entity_type, local_id, payload)
            if adopted is not None:
                action, remote_id = JobAction.UPDATE, adopted

        return module.push(self.ctx, entity_type, action, local_id, remote_id, payload)

    def adopt_existing(
        self,
        module: Module,
        entity_type: str,
        local_id: int,
        payload: dict[str, Any] | None = None,
    ) -> int | None:
        """
        Look for an existing remote record matching the entity's dedup domain.

        A hit is written to the entity map so the push proceeds as an
        update of that record.

        Returns:
            The adopted remote id, or None when there is no dedup domain or no hit

        Raises:
            ConfigurationError: The matching record is already mapped to a
                different local entity
        """
        values = module.remote_values(self.ctx, entity_type, local_id, payload)
        if not values:
            return None
        domain = module.dedup_domain(entity_type, values)
        if not domain:
            return None

        model = module.remote_model(entity_type)
        ids = self.ctx.remote.search(model, domain, limit=1)
        if not ids:
            return None

        remote_id = int(ids[0])
        try:
            self.ctx.entity_map.save(module.module_id, entity_type, local_id, remote_id, model)
        except ConflictError as exc:
            existing = exc.existing
            raise ConfigurationError(
                f"Dedup match {model} #{remote_id} is already mapped to local "
                f"#{existing.local_id if existing else '?'}"
            ) from exc

        log_event(
            self.ctx.logger, logging.INFO, "Adopted existing remote record",
            module_id=module.module_id, entity_type=entity_type, local_id=local_id,
            remote_model=model, remote_id=remote_id,
        )
        return remote_id

