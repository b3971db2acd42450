"""Storage and remote connectors for Sync Bridge."""

from sync_bridge.connectors.sqlite import SQLiteDatabase
from sync_bridge.connectors.remote import JsonRpcClient, RemoteClient

__all__ = ["SQLiteDatabase", "JsonRpcClient", "RemoteClient"]
