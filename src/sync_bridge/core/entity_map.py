"""
Entity Map Repository - bidirectional identity store.

Maps (module, entity_type, local_id) to (remote_model, remote_id):
- At most one remote counterpart per local entity and vice versa
- Mappings are never mutated, only created and deleted
- Small LRU read cache in front of SQLite, invalidated on writes
"""

from __future__ import annotations

import json
import logging
import sqlite3
import uuid
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from typing import Generator, Iterable

from sync_bridge.connectors.sqlite import SQLiteDatabase
from sync_bridge.core.clock import Clock, to_iso, utc_now
from sync_bridge.core.errors import ConflictError, EntityLockedError


logger = logging.getLogger("sync_bridge.entity_map")


@dataclass(frozen=True)
class EntityMapping:
    """A durable link between a local entity and its remote record."""

    module_id: str
    entity_type: str
    local_id: int
    remote_model: str
    remote_id: int
    created_at: str

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "EntityMapping":
        return cls(
            module_id=row["module_id"],
            entity_type=row["entity_type"],
            local_id=row["local_id"],
            remote_model=row["remote_model"],
            remote_id=row["remote_id"],
            created_at=row["created_at"],
        )


class EntityMapRepository:
    """
    Repository for entity mappings.

    Example:
        entity_map = EntityMapRepository(db)

        entity_map.save("orders", "order", 42, 987, "sale.order")
        entity_map.get_remote_id("orders", "order", 42)    # 987
        entity_map.get_local_id("orders", "order", 987)    # 42
    """

    def __init__(
        self,
        db: SQLiteDatabase,
        clock: Clock = utc_now,
        cache_size: int = 5000,
    ) -> None:
        """
        Initialize the repository.

        Args:
            db: Shared SQLite database
            clock: Source of the current time
            cache_size: Maximum number of cached lookups
        """
        self.db = db
        self.clock = clock
        self.cache_size = cache_size
        self._by_local: OrderedDict[tuple[str, str, int], EntityMapping] = OrderedDict()
        self._by_remote: OrderedDict[tuple[str, str, int], EntityMapping] = OrderedDict()

    # ------------------------------------------------------------------
    # Cache
    # ------------------------------------------------------------------
    def _remember(self, mapping: EntityMapping) -> None:
        local_key = (mapping.module_id, mapping.entity_type, mapping.local_id)
        remote_key = (mapping.module_id, mapping.entity_type, mapping.remote_id)
        self._by_local[local_key] = mapping
        self._by_local.move_to_end(local_key)
        self._by_remote[remote_key] = mapping
        self._by_remote.move_to_end(remote_key)

        while len(self._by_local) > self.cache_size:
            self._by_local.popitem(last=False)
        while len(self._by_remote) > self.cache_size:
            self._by_remote.popitem(last=False)

    def _forget(self, mapping: EntityMapping) -> None:
        self._by_local.pop((mapping.module_id, mapping.entity_type, mapping.local_id), None)
        self._by_remote.pop((mapping.module_id, mapping.entity_type, mapping.remote_id), None)

    def clear_cache(self) -> None:
        """Drop every cached lookup."""
        self._by_local.clear()
        self._by_remote.clear()

    # ------------------------------------------------------------------
    # Lookups
    # ------------------------------------------------------------------
    def get(self, module: str, entity_type: str, local_id: int) -> EntityMapping | None:
        """Get the mapping for a local entity."""
        key = (module, entity_type, local_id)
        cached = self._by_local.get(key)
        if cached is not None:
            self._by_local.move_to_end(key)
            return cached

        row = self.db.fetch_one(
            "SELECT * FROM entity_map WHERE module_id = ? AND entity_type = ? AND local_id = ?",
            (module, entity_type, local_id),
        )
        if row is None:
            return None
        mapping = EntityMapping.from_row(row)
        self._remember(mapping)
        return mapping

    def get_by_remote(
        self,
        module: str,
        entity_type: str,
        remote_id: int,
    ) -> EntityMapping | None:
        """Get the mapping for a remote record."""
        key = (module, entity_type, remote_id)
        cached = self._by_remote.get(key)
        if cached is not None:
            self._by_remote.move_to_end(key)
            return cached

        row = self.db.fetch_one(
            "SELECT * FROM entity_map WHERE module_id = ? AND entity_type = ? AND remote_id = ?",
            (module, entity_type, remote_id),
        )
        if row is None:
            return None
        mapping = EntityMapping.from_row(row)
        self._remember(mapping)
        return mapping

    def get_remote_id(self, module: str, entity_type: str, local_id: int) -> int | None:
        mapping = self.get(module, entity_type, local_id)
        return mapping.remote_id if mapping else None

    def get_local_id(self, module: str, entity_type: str, remote_id: int) -> int | None:
        mapping = self.get_by_remote(module, entity_type, remote_id)
        return mapping.local_id if mapping else None

    def get_remote_ids_batch(
        self,
        module: str,
        entity_type: str,
        local_ids: Iterable[int],
    ) -> dict[int, int]:
        """
        Resolve many local ids in one query.

        Returns:
            Dict of local_id -> remote_id for the ids that are mapped
        """
        ids = sorted(set(local_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        rows = self.db.fetch_all(
            f"SELECT * FROM entity_map WHERE module_id = ? AND entity_type = ? "
            f"AND local_id IN ({placeholders})",
            (module, entity_type, *ids),
        )
        result: dict[int, int] = {}
        for row in rows:
            mapping = EntityMapping.from_row(row)
            self._remember(mapping)
            result[mapping.local_id] = mapping.remote_id
        return result

    def get_local_ids_batch(
        self,
        module: str,
        entity_type: str,
        remote_ids: Iterable[int],
    ) -> dict[int, int]:
        """
        Resolve many remote ids in one query.

        Returns:
            Dict of remote_id -> local_id for the ids that are mapped
        """
        ids = sorted(set(remote_ids))
        if not ids:
            return {}
        placeholders = ", ".join("?" for _ in ids)
        rows = self.db.fetch_all(
            f"SELECT * FROM entity_map WHERE module_id = ? AND entity_type = ? "
            f"AND remote_id IN ({placeholders})",
            (module, entity_type, *ids),
        )
        result: dict[int, int] = {}
        for row in rows:
            mapping = EntityMapping.from_row(row)
            self._remember(mapping)
            result[mapping.remote_id] = mapping.local_id
        return result

    def list_mappings(self, module: str, entity_type: str) -> list[EntityMapping]:
        """All mappings of one entity type, oldest first."""
        rows = self.db.fetch_all(
            "SELECT * FROM entity_map WHERE module_id = ? AND entity_type = ? ORDER BY id",
            (module, entity_type),
        )
        return [EntityMapping.from_row(row) for row in rows]

    def count(self, module: str | None = None) -> int:
        """Number of stored mappings, optionally for one module."""
        if module is None:
            row = self.db.fetch_one("SELECT COUNT(*) AS n FROM entity_map")
        else:
            row = self.db.fetch_one(
                "SELECT COUNT(*) AS n FROM entity_map WHERE module_id = ?",
                (module,),
            )
        return int(row["n"]) if row else 0

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def save(
        self,
        module: str,
        entity_type: str,
        local_id: int,
        remote_id: int,
        remote_model: str,
    ) -> EntityMapping:
        """
        Record a new mapping.

        Saving a mapping identical to the stored one is a no-op. Anything
        that would give a local entity a second remote id, or a remote
        record a second local entity, is rejected.

        Raises:
            ConflictError: Either uniqueness constraint would be violated;
                ``existing`` holds the mapping already in place
        """
        with self.db.transaction() as conn:
            row = conn.execute(
                "SELECT * FROM entity_map WHERE module_id = ? AND entity_type = ? "
                "AND (local_id = ? OR remote_id = ?) ORDER BY id LIMIT 1",
                (module, entity_type, local_id, remote_id),
            ).fetchone()

            if row is not None:
                existing = EntityMapping.from_row(row)
                if (
                    existing.local_id == local_id
                    and existing.remote_id == remote_id
                    and existing.remote_model == remote_model
                ):
                    self._remember(existing)
                    return existing
                raise ConflictError(
                    f"{module}/{entity_type}: local #{local_id} -> remote #{remote_id} "
                    f"conflicts with existing local #{existing.local_id} -> "
                    f"remote #{existing.remote_id}",
                    existing=existing,
                )

            created_at = to_iso(self.clock())
            conn.execute(
                "INSERT INTO entity_map "
                "(module_id, entity_type, local_id, remote_model, remote_id, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?)",
                (module, entity_type, local_id, remote_model, remote_id, created_at),
            )

        mapping = EntityMapping(
            module_id=module,
            entity_type=entity_type,
            local_id=local_id,
            remote_model=remote_model,
            remote_id=remote_id,
            created_at=created_at,
        )
        self._remember(mapping)
        logger.debug(
            "Mapped %s/%s #%s -> %s #%s",
            module, entity_type, local_id, remote_model, remote_id,
        )
        return mapping

    @contextmanager
    def push_lock(
        self,
        module: str,
        entity_type: str,
        local_id: int,
        ttl_seconds: float = 60,
    ) -> Generator[None, None, None]:
        """
        Hold the create lock of one local entity.

        Only one worker at a time may create the remote counterpart of an
        entity. The lock lives in ``engine_state`` so it is shared between
        processes; it expires after ``ttl_seconds`` in case its holder dies.

        Raises:
            EntityLockedError: Another live holder has the lock
        """
        key = f"push_lock:{module}:{entity_type}:{local_id}"
        token = uuid.uuid4().hex
        now = self.clock()

        with self.db.transaction() as conn:
            row = conn.execute("SELECT value FROM engine_state WHERE key = ?", (key,)).fetchone()
            if row is not None and json.loads(row["value"])["expires_at"] > to_iso(now):
                raise EntityLockedError(module, entity_type, local_id)
            conn.execute(
                "INSERT INTO engine_state (key, value) VALUES (?, ?) "
                "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
                (
                    key,
                    json.dumps({
                        "token": token,
                        "expires_at": to_iso(now + timedelta(seconds=ttl_seconds)),
                    }),
                ),
            )

        try:
            yield
        finally:
            with self.db.transaction() as conn:
                row = conn.execute("SELECT value FROM engine_state WHERE key = ?", (key,)).fetchone()
                if row is not None and json.loads(row["value"])["token"] == token:
                    conn.execute("DELETE FROM engine_state WHERE key = ?", (key,))

    def delete(self, module: str, entity_type: str, local_id: int) -> bool:
        """
        Remove the mapping of a local entity.

        Returns:
            True if a mapping was removed, False if none existed
        """
        mapping = self.get(module, entity_type, local_id)
        if mapping is not None:
            self._forget(mapping)
        removed = self.db.execute(
            "DELETE FROM entity_map WHERE module_id = ? AND entity_type = ? AND local_id = ?",
            (module, entity_type, local_id),
        )
        return removed > 0

    def delete_by_remote(self, module: str, entity_type: str, remote_id: int) -> bool:
        """Remove the mapping of a remote record."""
        mapping = self.get_by_remote(module, entity_type, remote_id)
        if mapping is None:
            return False
        return self.delete(module, entity_type, mapping.local_id)
