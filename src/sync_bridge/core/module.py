"""
Module Contract - pluggable per-entity sync adapters.

A module is a plain value: configuration plus a table of entity handlers,
each a small struct of functions (load, map, save, dedup, dependencies).
Modules are assembled with ``ModuleBuilder``, not by subclassing.

The standard push and pull defined here cover the common case; a handler
may override either with its own function. Both always return a
``SyncResult`` and never raise.

Example:
    to_remote, from_remote = field_mapping({"name": "name", "sku": "default_code"})

    products = (
        ModuleBuilder("catalog", name="Catalog")
        .direction(SyncDirection.BIDIRECTIONAL)
        .entity(
            "product",
            remote_model="product.product",
            load=lambda ctx, local_id: store.load("product", local_id),
            map_to_remote=to_remote,
            map_from_remote=from_remote,
            save_local=lambda ctx, data, local_id: store.save("product", data, local_id),
            dedup_domain=lambda values: [["default_code", "=", values["default_code"]]],
        )
        .build()
    )
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from sync_bridge.core.errors import (
    ConfigurationError,
    ConflictError,
    DependencyNotSyncedError,
    failure_from_exception,
)
from sync_bridge.core.queue import JobAction, JobDirection
from sync_bridge.core.results import ErrorKind, SyncResult

if TYPE_CHECKING:
    from sync_bridge.core.context import SyncContext


logger = logging.getLogger("sync_bridge.module")


class SyncDirection(str, Enum):
    """Directions a module supports."""

    PUSH_ONLY = "push_only"
    PULL_ONLY = "pull_only"
    BIDIRECTIONAL = "bidirectional"

    def allows(self, direction: JobDirection) -> bool:
        """Whether jobs flowing in ``direction`` are accepted."""
        if self is SyncDirection.BIDIRECTIONAL:
            return True
        if direction == JobDirection.PUSH:
            return self is SyncDirection.PUSH_ONLY
        return self is SyncDirection.PULL_ONLY


# Capability signatures
LoadFn = Callable[["SyncContext", int], "dict[str, Any] | None"]
MapToRemoteFn = Callable[["SyncContext", "dict[str, Any]"], "dict[str, Any]"]
MapFromRemoteFn = Callable[["SyncContext", "dict[str, Any]"], "dict[str, Any]"]
SaveLocalFn = Callable[["SyncContext", "dict[str, Any]", "int | None"], int]
DeleteLocalFn = Callable[["SyncContext", int], bool]
DedupDomainFn = Callable[["dict[str, Any]"], "list[Any] | None"]
DependenciesFn = Callable[["SyncContext", int], "list[tuple[str, int]]"]
PushFn = Callable[..., SyncResult]
PullFn = Callable[..., SyncResult]


@dataclass
class EntityHandler:
    """Function values implementing one entity type of a module."""

    remote_model: str
    load: LoadFn | None = None
    map_to_remote: MapToRemoteFn | None = None
    map_from_remote: MapFromRemoteFn | None = None
    save_local: SaveLocalFn | None = None
    delete_local: DeleteLocalFn | None = None
    dedup_domain: DedupDomainFn | None = None
    dependencies: DependenciesFn | None = None
    remote_fields: list[str] | None = None
    push: PushFn | None = None
    pull: PullFn | None = None


@dataclass
class Module:
    """
    A pluggable adapter owning one or more entity types.

    ``exclusive_group`` names a set of modules writing overlapping remote
    models; only one of them is active at a time (lower
    ``exclusive_priority`` wins).
    """

    module_id: str
    name: str = ""
    direction: SyncDirection = SyncDirection.BIDIRECTIONAL
    handlers: dict[str, EntityHandler] = field(default_factory=dict)
    exclusive_group: str | None = None
    exclusive_priority: int = 0

    def __post_init__(self) -> None:
        if not self.name:
            self.name = self.module_id

    @property
    def entity_types(self) -> list[str]:
        return list(self.handlers)

    def sync_direction(self) -> SyncDirection:
        return self.direction

    def handler(self, entity_type: str) -> EntityHandler:
        """
        Get the handler for an entity type.

        Raises:
            ConfigurationError: The module does not own ``entity_type``
        """
        try:
            return self.handlers[entity_type]
        except KeyError:
            raise ConfigurationError(
                f"Module '{self.module_id}' has no entity type '{entity_type}'"
            ) from None

    def remote_model(self, entity_type: str) -> str:
        return self.handler(entity_type).remote_model

    # ------------------------------------------------------------------
    # Contract helpers
    # ------------------------------------------------------------------
    def dedup_domain(self, entity_type: str, values: dict[str, Any]) -> list[Any] | None:
        """Search filter for an existing remote record, or None to skip dedup."""
        handler = self.handler(entity_type)
        if handler.dedup_domain is None:
            return None
        return handler.dedup_domain(values) or None

    def dependencies(
        self,
        ctx: "SyncContext",
        entity_type: str,
        local_id: int,
    ) -> list[tuple[str, int]]:
        """Prerequisite (entity_type, local_id) pairs that must exist remotely first."""
        handler = self.handler(entity_type)
        if handler.dependencies is None:
            return []
        return list(handler.dependencies(ctx, local_id))

    def remote_values(
        self,
        ctx: "SyncContext",
        entity_type: str,
        local_id: int | None,
        payload: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """
        Load a local entity and map it to remote field values.

        Handlers without a ``load`` function push the job payload as is.
        """
        handler = self.handler(entity_type)
        if handler.load is not None and local_id is not None:
            data = handler.load(ctx, local_id)
        else:
            data = dict(payload or {})
        if not data:
            return {}
        if handler.map_to_remote is not None:
            return handler.map_to_remote(ctx, data)
        return dict(data)

    def reference(self, ctx: "SyncContext", entity_type: str, local_id: int) -> int:
        """
        Resolve the remote id of a referenced entity of this module.

        Used by mapping functions to fill relational fields.

        Raises:
            DependencyNotSyncedError: The entity has no remote counterpart yet
        """
        remote_id = ctx.entity_map.get_remote_id(self.module_id, entity_type, local_id)
        if remote_id is None:
            raise DependencyNotSyncedError(self.module_id, entity_type, local_id)
        return remote_id

    # ------------------------------------------------------------------
    # Push / pull
    # ------------------------------------------------------------------
    def push(
        self,
        ctx: "SyncContext",
        entity_type: str,
        action: JobAction | str,
        local_id: int | None,
        remote_id: int | None = None,
        payload: dict[str, Any] | None = None,
    ) -> SyncResult:
        """Push a local entity to the remote system. Never raises."""
        action = JobAction(action)
        try:
            handler = self.handler(entity_type)
            if handler.push is not None:
                return handler.push(ctx, self, entity_type, action, local_id, remote_id, payload or {})
            return self._standard_push(ctx, handler, entity_type, action, local_id, remote_id, payload)
        except Exception as exc:
            return failure_from_exception(exc, remote_id=remote_id, local_id=local_id)

    def pull(
        self,
        ctx: "SyncContext",
        entity_type: str,
        action: JobAction | str,
        remote_id: int | None,
        local_id: int | None = None,
        payload: dict[str, Any] | None = None,
    ) -> SyncResult:
        """Pull a remote record into the local system. Never raises."""
        action = JobAction(action)
        try:
            handler = self.handler(entity_type)
            if handler.pull is not None:
                return handler.pull(ctx, self, entity_type, action, remote_id, local_id, payload or {})
            return self._standard_pull(ctx, handler, entity_type, action, remote_id, local_id)
        except Exception as exc:
            return failure_from_exception(exc, remote_id=remote_id, local_id=local_id)

    def _standard_push(
        self,
        ctx: "SyncContext",
        handler: EntityHandler,
        entity_type: str,
        action: JobAction,
        local_id: int | None,
        remote_id: int | None,
        payload: dict[str, Any] | None,
    ) -> SyncResult:
        model = handler.remote_model
        if remote_id is None and local_id is not None:
            remote_id = ctx.entity_map.get_remote_id(self.module_id, entity_type, local_id)

        if action == JobAction.DELETE:
            if remote_id is not None:
                ctx.remote.unlink(model, remote_id)
            if local_id is not None:
                ctx.entity_map.delete(self.module_id, entity_type, local_id)
            return SyncResult.success(remote_id=remote_id, local_id=local_id)

        values = self.remote_values(ctx, entity_type, local_id, payload)
        if not values:
            return SyncResult.failure("No data to push", ErrorKind.PERMANENT, local_id=local_id)

        if remote_id is not None:
            ctx.remote.write(model, remote_id, values)
            logger.debug("Updated %s #%s for %s/%s #%s", model, remote_id, self.module_id, entity_type, local_id)
            if local_id is None:
                return SyncResult.success(remote_id=remote_id)
            return self._record_push(ctx, entity_type, local_id, remote_id, model, values, created=False)

        if local_id is None:
            remote_id = ctx.remote.create(model, values)
            return SyncResult.success(remote_id=remote_id)

        with ctx.entity_map.push_lock(
            self.module_id, entity_type, local_id, ctx.settings.queue.push_lock_seconds
        ):
            # Another worker may have finished the create before we got the lock
            mapped = ctx.entity_map.get_remote_id(self.module_id, entity_type, local_id)
            if mapped is not None:
                ctx.remote.write(model, mapped, values)
                logger.debug("Mapping appeared under lock; updated %s #%s instead", model, mapped)
                return SyncResult.success(remote_id=mapped, local_id=local_id)

            remote_id = ctx.remote.create(model, values)
            logger.debug("Created %s #%s for %s/%s #%s", model, remote_id, self.module_id, entity_type, local_id)
            return self._record_push(ctx, entity_type, local_id, remote_id, model, values, created=True)

    def _record_push(
        self,
        ctx: "SyncContext",
        entity_type: str,
        local_id: int,
        remote_id: int,
        model: str,
        values: dict[str, Any],
        created: bool,
    ) -> SyncResult:
        """
        Map a pushed entity to the record it was written to.

        When the entity turns out to be mapped to another record already,
        that record is the counterpart: the values are written to it and a
        record created by this push is removed again.
        """
        try:
            ctx.entity_map.save(self.module_id, entity_type, local_id, remote_id, model)
        except ConflictError as exc:
            existing = exc.existing
            if existing is None or existing.local_id != local_id:
                return SyncResult.failure(
                    f"Mapping save failed after remote write: {exc}",
                    ErrorKind.PERMANENT,
                    remote_id=remote_id if created else None,
                    local_id=local_id,
                )
            ctx.remote.write(model, existing.remote_id, values)
            if created:
                self._discard_duplicate(ctx, model, remote_id)
            logger.info(
                "%s/%s #%s is already mapped to %s #%s; adopted it",
                self.module_id, entity_type, local_id, model, existing.remote_id,
            )
            return SyncResult.success(remote_id=existing.remote_id, local_id=local_id)
        except Exception as exc:
            return failure_from_exception(
                exc,
                remote_id=remote_id,
                local_id=local_id,
            )
        return SyncResult.success(remote_id=remote_id, local_id=local_id)

    def _discard_duplicate(self, ctx: "SyncContext", model: str, remote_id: int) -> None:
        try:
            ctx.remote.unlink(model, remote_id)
        except Exception as exc:
            logger.warning("Could not remove duplicate %s #%s: %s", model, remote_id, exc)

    def _standard_pull(
        self,
        ctx: "SyncContext",
        handler: EntityHandler,
        entity_type: str,
        action: JobAction,
        remote_id: int | None,
        local_id: int | None,
    ) -> SyncResult:
        model = handler.remote_model
        if local_id is None and remote_id is not None:
            local_id = ctx.entity_map.get_local_id(self.module_id, entity_type, remote_id)

        if action == JobAction.DELETE:
            if local_id is not None:
                if handler.delete_local is not None:
                    with ctx.suppress_changes(self.module_id):
                        handler.delete_local(ctx, local_id)
                ctx.entity_map.delete(self.module_id, entity_type, local_id)
            return SyncResult.success(remote_id=remote_id, local_id=local_id)

        if remote_id is None:
            return SyncResult.failure("Pull requires a remote id", ErrorKind.PERMANENT, local_id=local_id)
        if handler.save_local is None:
            raise ConfigurationError(
                f"Module '{self.module_id}' cannot save '{entity_type}' locally"
            )

        records = ctx.remote.read(model, [remote_id], handler.remote_fields)
        if not records:
            return SyncResult.failure(
                f"Remote record {model} #{remote_id} not found during pull",
                ErrorKind.PERMANENT,
                remote_id=remote_id,
                local_id=local_id,
            )

        record = records[0]
        data = handler.map_from_remote(ctx, record) if handler.map_from_remote else dict(record)

        with ctx.suppress_changes(self.module_id):
            saved_id = handler.save_local(ctx, data, local_id)
        if not saved_id:
            return SyncResult.failure(
                "Failed to save local data during pull",
                ErrorKind.PERMANENT,
                remote_id=remote_id,
                local_id=local_id,
            )

        try:
            ctx.entity_map.save(self.module_id, entity_type, saved_id, remote_id, model)
        except ConflictError as exc:
            return SyncResult.failure(
                f"Mapping save failed after local save: {exc}",
                ErrorKind.TRANSIENT,
                remote_id=remote_id,
                local_id=saved_id,
            )
        return SyncResult.success(remote_id=remote_id, local_id=saved_id)


class ModuleBuilder:
    """Fluent assembly of a ``Module``."""

    def __init__(self, module_id: str, name: str = "") -> None:
        self._module_id = module_id
        self._name = name
        self._direction = SyncDirection.BIDIRECTIONAL
        self._handlers: dict[str, EntityHandler] = {}
        self._exclusive_group: str | None = None
        self._exclusive_priority = 0

    def direction(self, direction: SyncDirection | str) -> "ModuleBuilder":
        self._direction = SyncDirection(direction)
        return self

    def exclusive(self, group: str, priority: int = 0) -> "ModuleBuilder":
        """Join an exclusive group (lower priority value wins)."""
        self._exclusive_group = group
        self._exclusive_priority = priority
        return self

    def entity(self, entity_type: str, remote_model: str, **capabilities: Any) -> "ModuleBuilder":
        """
        Register an entity type.

        Args:
            entity_type: Logical record kind (e.g. "order")
            remote_model: Remote model the entity maps to
            **capabilities: EntityHandler function fields (load, map_to_remote, ...)
        """
        if entity_type in self._handlers:
            raise ConfigurationError(
                f"Entity type '{entity_type}' already registered on '{self._module_id}'"
            )
        self._handlers[entity_type] = EntityHandler(remote_model=remote_model, **capabilities)
        return self

    def handler(self, entity_type: str, handler: EntityHandler) -> "ModuleBuilder":
        """Register a pre-built handler."""
        if entity_type in self._handlers:
            raise ConfigurationError(
                f"Entity type '{entity_type}' already registered on '{self._module_id}'"
            )
        self._handlers[entity_type] = handler
        return self

    def build(self) -> Module:
        if not self._module_id:
            raise ConfigurationError("Module id is required")
        if not self._handlers:
            raise ConfigurationError(f"Module '{self._module_id}' declares no entity types")
        for entity_type, handler in self._handlers.items():
            if not handler.remote_model:
                raise ConfigurationError(
                    f"Entity type '{entity_type}' of '{self._module_id}' has no remote model"
                )
        return Module(
            module_id=self._module_id,
            name=self._name,
            direction=self._direction,
            handlers=dict(self._handlers),
            exclusive_group=self._exclusive_group,
            exclusive_priority=self._exclusive_priority,
        )


def field_mapping(
    mapping: dict[str, str],
) -> tuple[MapToRemoteFn, MapFromRemoteFn]:
    """
    Build mapping functions from a local -> remote field name table.

    Fields missing from the input are left out of the output.

    Returns:
        (map_to_remote, map_from_remote)
    """

    def map_to_remote(ctx: "SyncContext", data: dict[str, Any]) -> dict[str, Any]:
        return {remote: data[local] for local, remote in mapping.items() if local in data}

    def map_from_remote(ctx: "SyncContext", record: dict[str, Any]) -> dict[str, Any]:
        return {local: record[remote] for local, remote in mapping.items() if remote in record}

    return map_to_remote, map_from_remote
