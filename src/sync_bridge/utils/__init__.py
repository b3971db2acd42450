"""Utility modules for Sync Bridge."""

from sync_bridge.utils.logger import get_logger, log_event, setup_logging

__all__ = ["setup_logging", "get_logger", "log_event"]
