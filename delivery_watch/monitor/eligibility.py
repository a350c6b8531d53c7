"""Time-window rules deciding whether and how to act on a detected order.

The engine is a pure function of ``(now, order)``. Rules are evaluated in a
fixed order and the first one that matches wins:

1. Expired orders are never eligible.
2. Rule A: ``now`` inside the delivery window and the order is en route
   -> FullProcess.
3. Rule B: ``now`` inside the secondary window and the order is scheduled
   -> PartialAdvance.
4. Rule C: the secondary window has passed but the delivery window has not
   opened and the order is still scheduled -> PartialAdvance.
5. Rule D: the delivery time has passed and the order is en route or
   scheduled -> FullProcess.

The secondary window is centred either on ``delivery_time - offset`` or on
the order's own pickup time, depending on :attr:`EligibilityConfig.secondary_anchor`.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, NamedTuple

from delivery_watch.common.date_utils import parse_order_time
from delivery_watch.monitor.models import (
    ActionType,
    DetectedOrder,
    EligibilityDecision,
    OrderStatus,
    RawOrder,
    normalize_status,
)

REASON_EXPIRED = "Expired"
REASON_RULE_A = "window1+EnRoute"
REASON_RULE_B = "window2+Scheduled"
REASON_RULE_C = "missed-window2-before-window1"
REASON_RULE_D = "overdue"

ANCHOR_DELIVERY_OFFSET = "delivery_offset"
ANCHOR_PICKUP = "pickup"


class Window(NamedTuple):
    start: datetime
    end: datetime

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment <= self.end


@dataclass(frozen=True)
class EligibilityConfig:
    before_minutes: int = 3
    after_minutes: int = 3
    secondary_anchor: str = ANCHOR_DELIVERY_OFFSET
    secondary_offset_minutes: int = 15

    def window_around(self, anchor: datetime) -> Window:
        return Window(
            start=anchor - timedelta(minutes=self.before_minutes),
            end=anchor + timedelta(minutes=self.after_minutes),
        )


def detect_order(raw: RawOrder, reference: datetime) -> DetectedOrder:
    """Turn an adapter record into a :class:`DetectedOrder` anchored on ``reference``'s day."""

    return DetectedOrder(
        external_id=raw.id,
        delivery_time=parse_order_time(raw.display_time_text, reference),
        raw_status=raw.raw_status,
        display_time_text=raw.display_time_text,
        pickup_time=parse_order_time(raw.pickup_time_text, reference),
        pickup_time_text=raw.pickup_time_text,
    )


class EligibilityEngine:
    def __init__(self, config: EligibilityConfig | None = None) -> None:
        self.config = config or EligibilityConfig()

    def secondary_window(self, order: DetectedOrder, delivery_time: datetime) -> Window | None:
        if self.config.secondary_anchor == ANCHOR_PICKUP and order.pickup_time_text:
            if order.pickup_time is None:
                return None
            return self.config.window_around(order.pickup_time)
        # No pickup timestamp on the card: fall back to the delivery-derived anchor.
        anchor = delivery_time - timedelta(minutes=self.config.secondary_offset_minutes)
        return self.config.window_around(anchor)

    def evaluate(self, now: datetime, order: DetectedOrder) -> EligibilityDecision:
        order_id = order.external_id
        status = normalize_status(order.raw_status)

        if status is OrderStatus.EXPIRED:
            return EligibilityDecision.skip(order_id, REASON_EXPIRED)
        if status is None:
            return EligibilityDecision.skip(order_id, f"unrecognized status {order.raw_status!r}")
        if order.delivery_time is None:
            return EligibilityDecision.skip(
                order_id, f"unparseable delivery time {order.display_time_text!r}"
            )

        window1 = self.config.window_around(order.delivery_time)
        window2 = self.secondary_window(order, order.delivery_time)
        if window2 is None:
            return EligibilityDecision.skip(
                order_id, f"unparseable pickup time {order.pickup_time_text!r}"
            )

        if window1.contains(now) and status is OrderStatus.EN_ROUTE:
            return EligibilityDecision(order_id, True, ActionType.FULL_PROCESS, REASON_RULE_A)
        if window2.contains(now) and status is OrderStatus.SCHEDULED:
            return EligibilityDecision(order_id, True, ActionType.PARTIAL_ADVANCE, REASON_RULE_B)
        if window2.end < now < window1.start and status is OrderStatus.SCHEDULED:
            return EligibilityDecision(order_id, True, ActionType.PARTIAL_ADVANCE, REASON_RULE_C)
        if now > order.delivery_time:
            return EligibilityDecision(order_id, True, ActionType.FULL_PROCESS, REASON_RULE_D)

        return EligibilityDecision.skip(order_id, f"outside action windows (status={status.value})")

    def evaluate_all(self, now: datetime, orders: Iterable[DetectedOrder]) -> List[EligibilityDecision]:
        return [self.evaluate(now, order) for order in orders]
