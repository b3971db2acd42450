"""Shared fixtures: fake clock, fake remote system, fake local store."""

from __future__ import annotations

import os
import random
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Iterator

import pytest

from sync_bridge.config import Settings
from sync_bridge.connectors.remote import RemoteRecordNotFoundError
from sync_bridge.connectors.sqlite import SQLiteDatabase
from sync_bridge.core.context import SyncContext
from sync_bridge.core.engine import SyncEngine
from sync_bridge.core.entity_map import EntityMapRepository
from sync_bridge.core.module import Module, ModuleBuilder, SyncDirection, field_mapping
from sync_bridge.core.queue import JobQueue
from sync_bridge.core.registry import ModuleRegistry


class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeRemote:
    """In-memory remote system recording every call."""

    def __init__(self, next_id: int = 1) -> None:
        self.records: dict[str, dict[int, dict[str, Any]]] = {}
        self.calls: list[tuple[str, str]] = []
        self.next_id = next_id
        self._failures: dict[str, list[Exception]] = {}

    def fail(self, method: str, exc: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls of ``method`` raise ``exc``."""
        self._failures.setdefault(method, []).extend([exc] * times)

    def _record(self, method: str, model: str) -> None:
        self.calls.append((method, model))
        pending = self._failures.get(method)
        if pending:
            raise pending.pop(0)

    def count(self, method: str, model: str | None = None) -> int:
        return sum(1 for m, mod in self.calls if m == method and (model is None or mod == model))

    def seed(self, model: str, values: dict[str, Any], record_id: int | None = None) -> int:
        """Insert a record without counting it as a call."""
        if record_id is None:
            record_id = self.next_id
            self.next_id += 1
        self.records.setdefault(model, {})[record_id] = dict(values)
        return record_id

    def create(self, model: str, values: dict[str, Any]) -> int:
        self._record("create", model)
        record_id = self.next_id
        self.next_id += 1
        self.records.setdefault(model, {})[record_id] = dict(values)
        return record_id

    def write(self, model: str, record_id: int, values: dict[str, Any]) -> bool:
        self._record("write", model)
        table = self.records.get(model, {})
        if record_id not in table:
            raise RemoteRecordNotFoundError(f"{model} #{record_id} does not exist")
        table[record_id].update(values)
        return True

    def unlink(self, model: str, record_id: int) -> bool:
        self._record("unlink", model)
        return self.records.get(model, {}).pop(record_id, None) is not None

    def search(self, model: str, domain: list[Any], limit: int | None = None) -> list[int]:
        self._record("search", model)
        found = []
        for record_id, values in sorted(self.records.get(model, {}).items()):
            if all(self._matches(record_id, values, clause) for clause in domain):
                found.append(record_id)
        return found[:limit] if limit else found

    @staticmethod
    def _matches(record_id: int, values: dict[str, Any], clause: list[Any]) -> bool:
        field_name, operator, expected = clause
        actual = record_id if field_name == "id" else values.get(field_name)
        if operator == "=":
            return actual == expected
        if operator == "in":
            return actual in expected
        raise ValueError(f"Unsupported operator {operator}")

    def read(
        self,
        model: str,
        ids: list[int],
        fields: list[str] | None = None,
    ) -> list[dict[str, Any]]:
        self._record("read", model)
        table = self.records.get(model, {})
        result = []
        for record_id in ids:
            if record_id in table:
                values = table[record_id]
                if fields:
                    values = {k: v for k, v in values.items() if k in fields}
                result.append({"id": record_id, **values})
        return result

    def execute(self, model: str, method: str, args: list[Any]) -> Any:
        self._record("execute", model)
        return True


class FakeStore:
    """Local application storage keyed by entity type."""

    def __init__(self) -> None:
        self.data: dict[str, dict[int, dict[str, Any]]] = {}
        self._next_id = 1000

    def add(self, entity_type: str, local_id: int, **fields: Any) -> int:
        self.data.setdefault(entity_type, {})[local_id] = dict(fields)
        return local_id

    def load(self, entity_type: str, local_id: int) -> dict[str, Any] | None:
        record = self.data.get(entity_type, {}).get(local_id)
        return dict(record) if record is not None else None

    def save(self, entity_type: str, fields: dict[str, Any], local_id: int | None = None) -> int:
        if local_id is None:
            local_id = self._next_id
            self._next_id += 1
        self.data.setdefault(entity_type, {}).setdefault(local_id, {}).update(fields)
        return local_id

    def delete(self, entity_type: str, local_id: int) -> bool:
        return self.data.get(entity_type, {}).pop(local_id, None) is not None


def build_catalog(store: FakeStore) -> Module:
    """Bidirectional product module deduplicating on the product name."""
    to_remote, from_remote = field_mapping({"name": "name", "sku": "default_code", "price": "list_price"})

    def dedup(values: dict[str, Any]) -> list[Any] | None:
        if not values.get("name"):
            return None
        return [["name", "=", values["name"]]]

    return (
        ModuleBuilder("catalog", name="Catalog")
        .entity(
            "product",
            remote_model="product.product",
            load=lambda ctx, local_id: store.load("product", local_id),
            map_to_remote=to_remote,
            map_from_remote=from_remote,
            save_local=lambda ctx, data, local_id: store.save("product", data, local_id),
            delete_local=lambda ctx, local_id: store.delete("product", local_id),
            dedup_domain=dedup,
        )
        .build()
    )


def build_bookings(store: FakeStore) -> Module:
    """Push-only module where a booking depends on its service."""

    def map_booking(ctx: SyncContext, data: dict[str, Any]) -> dict[str, Any]:
        module = ctx.registry.resolve("bookings")
        return {
            "name": data["name"],
            "product_id": module.reference(ctx, "service", data["service_id"]),
        }

    def booking_dependencies(ctx: SyncContext, local_id: int) -> list[tuple[str, int]]:
        booking = store.load("booking", local_id) or {}
        return [("service", booking["service_id"])] if booking.get("service_id") else []

    return (
        ModuleBuilder("bookings", name="Bookings")
        .direction(SyncDirection.PUSH_ONLY)
        .entity(
            "service",
            remote_model="product.product",
            load=lambda ctx, local_id: store.load("service", local_id),
            map_to_remote=lambda ctx, data: {"name": data["name"], "type": "service"},
        )
        .entity(
            "booking",
            remote_model="calendar.event",
            load=lambda ctx, local_id: store.load("booking", local_id),
            map_to_remote=map_booking,
            dependencies=booking_dependencies,
        )
        .build()
    )


@pytest.fixture(autouse=True)
def isolated_env(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep host env vars and .env files out of Settings()."""
    monkeypatch.chdir(tmp_path)
    for name in list(os.environ):
        if name.upper().startswith("SYNC_BRIDGE_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def remote() -> FakeRemote:
    return FakeRemote(next_id=100)


@pytest.fixture
def store() -> FakeStore:
    return FakeStore()


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        remote={
            "url": "https://erp.example.com",
            "database": "test",
            "username": "sync@example.com",
            "api_key": "secret",
        },
        queue={
            "database_path": tmp_path / "sync.db",
            "backoff_jitter": 0.0,
            "push_debounce_seconds": 0,
        },
    )


@pytest.fixture
def db(settings: Settings) -> Iterator[SQLiteDatabase]:
    database = SQLiteDatabase(settings.queue.database_path)
    yield database
    database.close()


@pytest.fixture
def registry(store: FakeStore) -> ModuleRegistry:
    registry = ModuleRegistry()
    registry.register(build_catalog(store))
    registry.register(build_bookings(store))
    return registry


@pytest.fixture
def ctx(
    db: SQLiteDatabase,
    settings: Settings,
    remote: FakeRemote,
    registry: ModuleRegistry,
    clock: FakeClock,
) -> SyncContext:
    return SyncContext(
        queue=JobQueue(db, clock=clock, options=settings.queue),
        entity_map=EntityMapRepository(db, clock=clock),
        remote=remote,
        registry=registry,
        settings=settings,
        clock=clock,
    )


@pytest.fixture
def engine(ctx: SyncContext) -> SyncEngine:
    return SyncEngine(ctx, worker_id="test-worker", rng=random.Random(7))
