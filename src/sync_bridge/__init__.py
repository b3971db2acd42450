"""Sync Bridge - durable bidirectional sync between a local app and a remote business API."""

__version__ = "1.0.0"
__author__ = "Sync Bridge Contributors"

from sync_bridge.config import Settings

__all__ = ["Settings", "__version__"]
