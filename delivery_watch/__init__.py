"""Top-level package for the delivery dashboard monitor."""

from typing import Any

__all__ = ["MonitorService"]


def __getattr__(name: str) -> Any:
    if name == "MonitorService":
        from delivery_watch.monitor.service import MonitorService as _MonitorService

        return _MonitorService
    raise AttributeError(name)
