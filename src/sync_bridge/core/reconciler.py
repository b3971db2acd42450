"""
Reconciler - find mappings whose remote record has disappeared.

Records deleted directly on the remote side leave dangling mappings
behind; the next update push would then fail on a missing record. The
reconciler checks mapped remote ids in chunks and reports, or removes,
the orphans.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from sync_bridge.core.context import SyncContext
from sync_bridge.core.entity_map import EntityMapping
from sync_bridge.utils.logger import log_event


@dataclass
class ReconcileReport:
    """Result of a reconciliation pass."""

    module_id: str
    entity_type: str
    remote_model: str
    checked: int = 0
    orphaned: list[EntityMapping] = field(default_factory=list)
    fixed: int = 0

    @property
    def orphan_count(self) -> int:
        return len(self.orphaned)


class Reconciler:
    """
    Detects orphaned entity mappings.

    Example:
        report = Reconciler(ctx).reconcile(catalog, "product", fix=True)
        print(f"{report.orphan_count} orphaned, {report.fixed} removed")
    """

    CHUNK_SIZE = 200

    def __init__(self, ctx: SyncContext, chunk_size: int = CHUNK_SIZE) -> None:
        self.ctx = ctx
        self.chunk_size = chunk_size

    def reconcile(self, module_id: str, entity_type: str, fix: bool = False) -> ReconcileReport:
        """
        Compare mappings of one entity type with the remote model.

        Args:
            module_id: Owning module
            entity_type: Entity type to check
            fix: Delete orphaned mappings

        Returns:
            ReconcileReport listing orphaned mappings
        """
        module = self.ctx.registry.resolve(module_id)
        model = module.remote_model(entity_type)
        mappings = self.ctx.entity_map.list_mappings(module_id, entity_type)
        report = ReconcileReport(module_id=module_id, entity_type=entity_type, remote_model=model)

        for start in range(0, len(mappings), self.chunk_size):
            chunk = mappings[start:start + self.chunk_size]
            ids = [m.remote_id for m in chunk]
            found = set(self.ctx.remote.search(model, [["id", "in", ids]]))
            report.checked += len(chunk)
            report.orphaned.extend(m for m in chunk if m.remote_id not in found)

        if fix:
            for mapping in report.orphaned:
                if self.ctx.entity_map.delete(module_id, entity_type, mapping.local_id):
                    report.fixed += 1

        log_event(
            self.ctx.logger,
            logging.WARNING if report.orphaned else logging.INFO,
            "Reconciliation finished",
            module_id=module_id, entity_type=entity_type, remote_model=model,
            checked=report.checked, orphaned=report.orphan_count, fixed=report.fixed,
        )
        return report
