"""Shared helpers for logging, time handling and database access."""

from typing import Any

__all__ = [
    "JsonLogger",
    "get_logger",
    "log_event",
    "session_scope",
]


def __getattr__(name: str) -> Any:
    if name in {"JsonLogger", "get_logger", "log_event"}:
        from . import json_logger as _json_logger

        return getattr(_json_logger, name)
    if name == "session_scope":
        from .db import session_scope as _session_scope

        return _session_scope
    raise AttributeError(name)
