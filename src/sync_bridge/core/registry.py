"""
Module Registry - lookup and mutual exclusion.

Keeps modules in registration order and decides, for every exclusive
group, which single module is active. Dormant modules stay resolvable so
jobs already queued under their id still run.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sync_bridge.core.errors import ConfigurationError
from sync_bridge.core.module import EntityHandler, Module, SyncDirection


logger = logging.getLogger("sync_bridge.registry")


@dataclass(frozen=True)
class ModuleRegistration:
    """Read-only view of a registered module."""

    module_id: str
    entity_types: tuple[str, ...]
    remote_model_by_entity_type: dict[str, str]
    sync_direction: SyncDirection
    exclusive_group: str | None
    exclusive_priority: int
    enabled: bool
    active: bool
    order: int


class ModuleRegistry:
    """
    Registry of sync modules.

    Within an exclusive group the active module is the first one in this
    total order: enabled before disabled, then ``exclusive_priority``
    ascending, then registration order. Exactly one module per group is
    active, and only if at least one of them is enabled.

    Example:
        registry = ModuleRegistry()
        registry.register(woo_orders)
        registry.register(shop_orders, enabled=False)

        registry.is_active("woo_orders")        # True
        registry.resolve("shop_orders")         # still resolvable
    """

    def __init__(self) -> None:
        self._modules: dict[str, Module] = {}
        self._enabled: dict[str, bool] = {}
        self._order: dict[str, int] = {}

    def register(self, module: Module, enabled: bool = True) -> None:
        """
        Add a module.

        Raises:
            ConfigurationError: A module with the same id is already registered
        """
        if module.module_id in self._modules:
            raise ConfigurationError(f"Module '{module.module_id}' is already registered")
        self._order[module.module_id] = len(self._modules)
        self._modules[module.module_id] = module
        self._enabled[module.module_id] = enabled

        if module.exclusive_group and enabled:
            active = self.active_module(module.exclusive_group)
            if active is not None and active.module_id != module.module_id:
                logger.info(
                    "Module '%s' is dormant: '%s' is active in exclusive group '%s'",
                    module.module_id, active.module_id, module.exclusive_group,
                )

    def get(self, module_id: str) -> Module | None:
        return self._modules.get(module_id)

    def resolve(self, module_id: str) -> Module:
        """
        Get a registered module.

        Raises:
            ConfigurationError: Unknown module id
        """
        module = self._modules.get(module_id)
        if module is None:
            raise ConfigurationError(f"Unknown module '{module_id}'")
        return module

    def handler(self, module_id: str, entity_type: str) -> EntityHandler:
        return self.resolve(module_id).handler(entity_type)

    def all(self) -> list[Module]:
        """All modules in registration order."""
        return list(self._modules.values())

    def __contains__(self, module_id: object) -> bool:
        return module_id in self._modules

    def __len__(self) -> int:
        return len(self._modules)

    def set_enabled(self, module_id: str, enabled: bool) -> None:
        self.resolve(module_id)
        self._enabled[module_id] = enabled

    def is_enabled(self, module_id: str) -> bool:
        return self._enabled.get(module_id, False)

    # ------------------------------------------------------------------
    # Mutual exclusion
    # ------------------------------------------------------------------
    def _sort_key(self, module: Module) -> tuple[int, int, int]:
        return (
            0 if self._enabled[module.module_id] else 1,
            module.exclusive_priority,
            self._order[module.module_id],
        )

    def group_order(self, group: str) -> list[Module]:
        """Members of an exclusive group in precedence order."""
        members = [m for m in self._modules.values() if m.exclusive_group == group]
        return sorted(members, key=self._sort_key)

    def active_module(self, group: str) -> Module | None:
        """The active module of a group, or None if no member is enabled."""
        for module in self.group_order(group):
            if self._enabled[module.module_id]:
                return module
        return None

    def is_active(self, module_id: str) -> bool:
        """
        Whether a module's change detection should run.

        A module is active when it is enabled and, if it belongs to an
        exclusive group, wins that group.
        """
        module = self._modules.get(module_id)
        if module is None or not self._enabled[module_id]:
            return False
        if not module.exclusive_group:
            return True
        active = self.active_module(module.exclusive_group)
        return active is not None and active.module_id == module_id

    def is_dormant(self, module_id: str) -> bool:
        """Enabled but shadowed by another member of its exclusive group."""
        return self.is_enabled(module_id) and not self.is_active(module_id)

    def conflicts(self, module_id: str) -> list[str]:
        """Ids of the other modules sharing this module's exclusive group."""
        module = self.resolve(module_id)
        if not module.exclusive_group:
            return []
        return [
            m.module_id
            for m in self.group_order(module.exclusive_group)
            if m.module_id != module_id
        ]

    def active_modules(self) -> list[Module]:
        return [m for m in self._modules.values() if self.is_active(m.module_id)]

    def registration(self, module_id: str) -> ModuleRegistration:
        """Snapshot of a module's registration."""
        module = self.resolve(module_id)
        return ModuleRegistration(
            module_id=module.module_id,
            entity_types=tuple(module.entity_types),
            remote_model_by_entity_type={
                entity_type: handler.remote_model
                for entity_type, handler in module.handlers.items()
            },
            sync_direction=module.sync_direction(),
            exclusive_group=module.exclusive_group,
            exclusive_priority=module.exclusive_priority,
            enabled=self._enabled[module_id],
            active=self.is_active(module_id),
            order=self._order[module_id],
        )
