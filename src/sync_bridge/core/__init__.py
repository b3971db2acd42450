"""Core sync engine components for Sync Bridge."""

from sync_bridge.core.circuit_breaker import CircuitBreaker, ModuleCircuitBreaker
from sync_bridge.core.context import SyncContext
from sync_bridge.core.engine import DispatchStats, SyncEngine
from sync_bridge.core.entity_map import EntityMapping, EntityMapRepository
from sync_bridge.core.errors import (
    ConfigurationError,
    ConflictError,
    DependencyNotSyncedError,
    EntityLockedError,
    SyncBridgeError,
    classify_exception,
)
from sync_bridge.core.module import (
    EntityHandler,
    Module,
    ModuleBuilder,
    SyncDirection,
    field_mapping,
)
from sync_bridge.core.queue import Job, JobAction, JobDirection, JobQueue, JobStatus
from sync_bridge.core.reconciler import Reconciler, ReconcileReport
from sync_bridge.core.registry import ModuleRegistration, ModuleRegistry
from sync_bridge.core.resolver import DependencyResolver
from sync_bridge.core.results import ErrorKind, SyncResult

__all__ = [
    "CircuitBreaker",
    "ConfigurationError",
    "ConflictError",
    "DependencyNotSyncedError",
    "DependencyResolver",
    "DispatchStats",
    "EntityHandler",
    "EntityLockedError",
    "EntityMapping",
    "EntityMapRepository",
    "ErrorKind",
    "Job",
    "JobAction",
    "JobDirection",
    "JobQueue",
    "JobStatus",
    "Module",
    "ModuleBuilder",
    "ModuleCircuitBreaker",
    "ModuleRegistration",
    "ModuleRegistry",
    "Reconciler",
    "ReconcileReport",
    "SyncBridgeError",
    "SyncContext",
    "SyncDirection",
    "SyncEngine",
    "SyncResult",
    "classify_exception",
    "field_mapping",
]
