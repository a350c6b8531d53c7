from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List


class OrderStatus(str, Enum):
    EN_ROUTE = "EnRoute"
    SCHEDULED = "Scheduled"
    EXPIRED = "Expired"


class ActionType(str, Enum):
    NONE = "None"
    PARTIAL_ADVANCE = "PartialAdvance"
    FULL_PROCESS = "FullProcess"


# Chip labels shown on the dashboard, lower-cased.
STATUS_LABELS: Dict[str, OrderStatus] = {
    "en route to customer": OrderStatus.EN_ROUTE,
    "enroute": OrderStatus.EN_ROUTE,
    "en route": OrderStatus.EN_ROUTE,
    "delivery scheduled": OrderStatus.SCHEDULED,
    "scheduled": OrderStatus.SCHEDULED,
    "expired": OrderStatus.EXPIRED,
    "finished": OrderStatus.EXPIRED,
}


def normalize_status(raw: str | None) -> OrderStatus | None:
    if not raw:
        return None
    return STATUS_LABELS.get(" ".join(raw.split()).lower())


@dataclass(frozen=True)
class RawOrder:
    """One order card as reported by the page adapter."""

    id: str
    display_time_text: str
    raw_status: str | None = None
    pickup_time_text: str | None = None


@dataclass(frozen=True)
class DetectedOrder:
    external_id: str
    delivery_time: datetime | None
    raw_status: str | None
    display_time_text: str
    pickup_time: datetime | None = None
    pickup_time_text: str | None = None

    @property
    def status(self) -> OrderStatus | None:
        return normalize_status(self.raw_status)


@dataclass(frozen=True)
class EligibilityDecision:
    order_id: str
    eligible: bool
    action_type: ActionType
    reason: str

    @classmethod
    def skip(cls, order_id: str, reason: str) -> "EligibilityDecision":
        return cls(order_id=order_id, eligible=False, action_type=ActionType.NONE, reason=reason)


@dataclass(frozen=True)
class LedgerEntry:
    order_id: str
    actioned_at: datetime
    display_time_text: str
    raw_status: str
    reason: str

    def audit_line(self) -> str:
        return " | ".join(
            [
                self.actioned_at.isoformat(),
                self.order_id,
                self.display_time_text,
                self.raw_status or "Unknown",
                self.reason,
            ]
        )


@dataclass
class CycleSummary:
    cycle_id: str
    target: str
    started_at: datetime
    finished_at: datetime | None = None
    outcome: str = "running"
    phase: str | None = None
    failed_phase: str | None = None
    detected: int = 0
    eligible: int = 0
    acted: int = 0
    failed: int = 0
    skipped_already_actioned: int = 0
    acted_orders: List[Dict[str, str]] = field(default_factory=list)
    phase_status: Dict[str, Dict[str, int]] = field(default_factory=dict)
    notes: List[str] = field(default_factory=list)

    def record_log_event(self, payload: Dict[str, Any]) -> None:
        phase = payload.get("phase")
        if not phase:
            return
        status = payload.get("status") or "ok"
        counters = self.phase_status.setdefault(phase, {"ok": 0, "warn": 0, "error": 0})
        counters[status if status in counters else "ok"] += 1

    def add_note(self, note: str) -> None:
        if note and note not in self.notes:
            self.notes.append(note)

    @property
    def overall_status(self) -> str:
        if self.outcome in {"failed", "timed_out"}:
            return "error"
        if self.failed or any(counts["error"] for counts in self.phase_status.values()):
            return "warning"
        if self.outcome != "completed":
            return "warning"
        return "ok"

    def as_dict(self) -> Dict[str, Any]:
        return {
            "cycle_id": self.cycle_id,
            "target": self.target,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "outcome": self.outcome,
            "failed_phase": self.failed_phase,
            "overall_status": self.overall_status,
            "detected": self.detected,
            "eligible": self.eligible,
            "acted": self.acted,
            "failed": self.failed,
            "skipped_already_actioned": self.skipped_already_actioned,
            "acted_orders": list(self.acted_orders),
            "notes": list(self.notes),
        }
