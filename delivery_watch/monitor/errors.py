from __future__ import annotations


class MonitorError(Exception):
    """Base class for failures raised inside a monitor cycle."""


class ResourceExhausted(MonitorError):
    """The profile pool has no free slot."""


class NavigationFailure(MonitorError):
    """The dashboard could not be loaded or the list view could not be reached."""


class ParseFailure(MonitorError):
    """A time or status value read from the dashboard could not be interpreted."""

    def __init__(self, field: str, raw_value: object) -> None:
        self.field = field
        self.raw_value = raw_value
        super().__init__(f"unparseable {field}: {raw_value!r}")


class ActionFailure(MonitorError):
    """An action attempt on an order did not complete."""

    def __init__(self, order_id: str, detail: str) -> None:
        self.order_id = order_id
        self.detail = detail
        super().__init__(f"action on {order_id} failed: {detail}")


class PersistenceFailure(MonitorError):
    """The ledger could not be written durably."""


class PhaseTimeout(MonitorError):
    """A cycle phase did not finish within its budget."""

    def __init__(self, phase: str, timeout_seconds: float) -> None:
        self.phase = phase
        self.timeout_seconds = timeout_seconds
        super().__init__(f"phase {phase} timed out after {timeout_seconds:g}s")


class ProcessLivenessFailure(MonitorError):
    """A profile's bound process is still alive after an attempted close."""

    def __init__(self, pid: int | None, detail: str) -> None:
        self.pid = pid
        super().__init__(detail)
