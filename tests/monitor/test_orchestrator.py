from __future__ import annotations

import asyncio
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterable, List, Optional
from zoneinfo import ZoneInfo

import pytest

from delivery_watch.browser.pool import ProfilePool
from delivery_watch.monitor.eligibility import EligibilityEngine
from delivery_watch.monitor.errors import ProcessLivenessFailure
from delivery_watch.monitor.ledger import ActionLedger
from delivery_watch.monitor.models import ActionType, CycleSummary, RawOrder
from delivery_watch.monitor.orchestrator import EXIT_CODE_BREAKER, CycleOrchestrator
from delivery_watch.monitor.policy import DEFAULT_POLICIES, Phase

EASTERN = ZoneInfo("America/New_York")
EN_ROUTE = "En Route to Customer"
SCHEDULED = "Delivery Scheduled"
FAST_POLICIES = {phase: replace(policy, backoff_seconds=0) for phase, policy in DEFAULT_POLICIES.items()}


def noon_plus_one() -> datetime:
    return datetime(2026, 1, 26, 12, 1, tzinfo=EASTERN)


class FakeAdapter:
    def __init__(
        self,
        orders: Iterable[RawOrder] = (),
        *,
        list_view: bool = True,
        empty_states: Iterable[bool] = (),
        expired_states: Iterable[bool] = (),
        failing_orders: Iterable[str] = (),
        statuses: Optional[Dict[str, str]] = None,
    ) -> None:
        self.orders = list(orders)
        self.list_view = list_view
        self._empty_states = iter(empty_states)
        self._expired_states = iter(expired_states)
        self.failing_orders = set(failing_orders)
        self.statuses = statuses or {}
        self.actions: List[tuple[str, ActionType]] = []
        self.reauth_secrets: List[str] = []
        self.reloads = 0
        self.navigations = 0
        self.status_lookups: List[str] = []
        self.closed = 0
        self.action_gate: Optional[asyncio.Event] = None

    async def reload(self) -> None:
        self.reloads += 1

    async def detect_open_orders(self) -> List[RawOrder]:
        return list(self.orders)

    async def get_status(self, order_id: str) -> Optional[str]:
        self.status_lookups.append(order_id)
        return self.statuses.get(order_id)

    async def perform_action(self, order_id: str, action_type: ActionType) -> bool:
        self.actions.append((order_id, action_type))
        if self.action_gate is not None:
            await self.action_gate.wait()
        if order_id in self.failing_orders:
            raise RuntimeError(f"button missing for {order_id}")
        return True

    async def navigate_to_list_view(self) -> bool:
        self.navigations += 1
        return self.list_view

    async def is_empty_state(self) -> bool:
        return next(self._empty_states, False)

    async def is_auth_expired(self) -> bool:
        return next(self._expired_states, False)

    async def submit_reauth(self, secret: str) -> bool:
        self.reauth_secrets.append(secret)
        return True

    async def close(self) -> None:
        self.closed += 1


def build(
    tmp_path: Path,
    adapter: FakeAdapter,
    logger,
    *,
    pool_size: int = 3,
    policies=None,
    **kwargs,
) -> CycleOrchestrator:
    pool = ProfilePool(pool_size, str(tmp_path / "profiles" / "{context}-{slot}"), logger=logger)

    async def _factory(profile, lease):
        return adapter

    kwargs.setdefault("cycle_interval_seconds", 0)
    kwargs.setdefault("breaker_backoff_seconds", 0)
    kwargs.setdefault("exit_hook", lambda code: None)
    return CycleOrchestrator(
        target="https://dashboard.example.com/deliveries",
        pool=pool,
        session_factory=_factory,
        engine=EligibilityEngine(),
        ledger=ActionLedger(tmp_path / "data"),
        logger=logger,
        policies=policies or FAST_POLICIES,
        clock=noon_plus_one,
        **kwargs,
    )


@pytest.mark.asyncio
async def test_breaker_exits_after_three_failed_navigations(tmp_path: Path, logger, events) -> None:
    exit_codes: List[int] = []
    adapter = FakeAdapter([RawOrder("#AAA-111", "12:00 PM", EN_ROUTE)], list_view=False)
    orchestrator = build(tmp_path, adapter, logger, breaker_threshold=3, exit_hook=exit_codes.append)

    await asyncio.wait_for(orchestrator.run_forever(asyncio.Event()), timeout=5)

    assert exit_codes == [EXIT_CODE_BREAKER]
    assert orchestrator.cycles_run == 3
    assert orchestrator.consecutive_failures == 3
    assert orchestrator.tripped is True
    assert adapter.actions == []
    assert orchestrator.pool.available_count == 3
    assert any(event["message"].startswith("circuit breaker tripped") for event in events())


@pytest.mark.asyncio
async def test_completed_cycle_resets_failure_counter(tmp_path: Path, logger) -> None:
    exit_codes: List[int] = []
    adapter = FakeAdapter(list_view=False)
    orchestrator = build(tmp_path, adapter, logger, breaker_threshold=3, exit_hook=exit_codes.append)

    first = await orchestrator.run_once()
    await orchestrator.run_once()
    assert first.failed_phase == "ENSURE_LIST_VIEW"
    assert orchestrator.consecutive_failures == 2

    adapter.list_view = True
    summary = await orchestrator.run_once()

    assert summary.outcome == "completed"
    assert orchestrator.consecutive_failures == 0
    assert exit_codes == []


@pytest.mark.asyncio
async def test_replayed_orders_are_actioned_once(tmp_path: Path, logger) -> None:
    adapter = FakeAdapter([RawOrder("#AAA-111", "12:00 PM", EN_ROUTE)])
    orchestrator = build(tmp_path, adapter, logger)

    first = await orchestrator.run_once()
    second = await orchestrator.run_once()

    assert adapter.actions == [("#AAA-111", ActionType.FULL_PROCESS)]
    assert first.acted == 1
    assert second.acted == 0
    assert second.skipped_already_actioned == 1

    restarted = build(tmp_path, adapter, logger)
    restarted.ledger.load()
    await restarted.run_once()
    assert len(adapter.actions) == 1


@pytest.mark.asyncio
async def test_one_failed_action_does_not_abort_the_cycle(tmp_path: Path, logger) -> None:
    adapter = FakeAdapter(
        [
            RawOrder("#AAA-111", "12:00 PM", EN_ROUTE),
            RawOrder("#BBB-222", "11:00 AM", SCHEDULED),
        ],
        failing_orders={"#AAA-111"},
    )
    orchestrator = build(tmp_path, adapter, logger)

    summary = await orchestrator.run_once()

    assert summary.outcome == "completed"
    assert summary.failed == 1
    assert summary.acted == 1
    assert [order_id for order_id, _ in adapter.actions] == ["#AAA-111", "#BBB-222"]
    assert orchestrator.ledger.has("#BBB-222")
    # ensure_list_view once, plus one restore after the failure
    assert adapter.navigations == 2
    assert orchestrator.consecutive_failures == 0


@pytest.mark.asyncio
async def test_failed_order_is_retried_next_cycle(tmp_path: Path, logger) -> None:
    adapter = FakeAdapter([RawOrder("#AAA-111", "12:00 PM", EN_ROUTE)], failing_orders={"#AAA-111"})
    orchestrator = build(tmp_path, adapter, logger)

    await orchestrator.run_once()
    adapter.failing_orders.clear()
    summary = await orchestrator.run_once()

    assert summary.acted == 1
    assert len(adapter.actions) == 2


@pytest.mark.asyncio
async def test_max_actions_per_cycle_limits_actions(tmp_path: Path, logger) -> None:
    adapter = FakeAdapter(
        [
            RawOrder("#AAA-111", "12:00 PM", EN_ROUTE),
            RawOrder("#BBB-222", "11:00 AM", EN_ROUTE),
            RawOrder("#CCC-333", "10:00 AM", SCHEDULED),
        ]
    )
    orchestrator = build(tmp_path, adapter, logger, max_actions_per_cycle=1)

    first = await orchestrator.run_once()
    second = await orchestrator.run_once()

    assert first.eligible == 3
    assert first.acted == 1
    assert [order_id for order_id, _ in adapter.actions] == ["#AAA-111", "#BBB-222"]
    assert second.acted == 1


@pytest.mark.asyncio
async def test_missing_status_is_looked_up(tmp_path: Path, logger) -> None:
    adapter = FakeAdapter(
        [RawOrder("#AAA-111", "12:00 PM", None)],
        statuses={"#AAA-111": EN_ROUTE},
    )
    orchestrator = build(tmp_path, adapter, logger)

    summary = await orchestrator.run_once()

    assert adapter.status_lookups == ["#AAA-111"]
    assert summary.acted == 1


@pytest.mark.asyncio
async def test_persistent_empty_state_abandons_without_tripping(tmp_path: Path, logger) -> None:
    adapter = FakeAdapter([RawOrder("#AAA-111", "12:00 PM", EN_ROUTE)], empty_states=[True] * 10)
    orchestrator = build(tmp_path, adapter, logger, state_check_retries=3)

    summary = await orchestrator.run_once()

    assert summary.outcome == "abandoned"
    assert adapter.reloads == 3
    assert adapter.actions == []
    assert orchestrator.consecutive_failures == 0
    assert orchestrator.pool.available_count == 3
    assert adapter.closed == 1


@pytest.mark.asyncio
async def test_empty_state_clears_after_reload(tmp_path: Path, logger) -> None:
    adapter = FakeAdapter([RawOrder("#AAA-111", "12:00 PM", EN_ROUTE)], empty_states=[True, False])
    orchestrator = build(tmp_path, adapter, logger)

    summary = await orchestrator.run_once()

    assert summary.outcome == "completed"
    assert adapter.reloads == 1
    assert summary.acted == 1


@pytest.mark.asyncio
async def test_expired_link_is_renewed_with_secret(tmp_path: Path, logger) -> None:
    adapter = FakeAdapter([RawOrder("#AAA-111", "12:00 PM", EN_ROUTE)], expired_states=[True, False])
    orchestrator = build(tmp_path, adapter, logger, reauth_secret="5551234567")

    summary = await orchestrator.run_once()

    assert adapter.reauth_secrets == ["5551234567"]
    assert summary.outcome == "completed"


@pytest.mark.asyncio
async def test_expired_link_without_secret_abandons(tmp_path: Path, logger) -> None:
    adapter = FakeAdapter(expired_states=[True, True])
    orchestrator = build(tmp_path, adapter, logger)

    summary = await orchestrator.run_once()

    assert summary.outcome == "abandoned"
    assert adapter.reauth_secrets == []


@pytest.mark.asyncio
async def test_cycle_is_skipped_when_pool_is_empty(tmp_path: Path, logger) -> None:
    adapter = FakeAdapter([RawOrder("#AAA-111", "12:00 PM", EN_ROUTE)])
    orchestrator = build(tmp_path, adapter, logger, pool_size=1)
    held = await orchestrator.pool.acquire("other")
    assert held is not None

    summary = await orchestrator.run_once()

    assert summary.outcome == "skipped"
    assert adapter.actions == []
    assert orchestrator.consecutive_failures == 0


@pytest.mark.asyncio
async def test_late_action_is_recorded_and_not_repeated(tmp_path: Path, logger) -> None:
    adapter = FakeAdapter([RawOrder("#AAA-111", "12:00 PM", EN_ROUTE)])
    adapter.action_gate = asyncio.Event()
    policies = dict(FAST_POLICIES)
    policies[Phase.ACT] = replace(policies[Phase.ACT], timeout_seconds=0.05)
    orchestrator = build(tmp_path, adapter, logger, policies=policies)

    first = await orchestrator.run_once()
    assert first.failed == 1
    assert orchestrator.ledger.has("#AAA-111") is False

    # still in flight: the next cycle must not start a second attempt
    second = await orchestrator.run_once()
    assert second.skipped_already_actioned == 1

    adapter.action_gate.set()
    for _ in range(10):
        await asyncio.sleep(0)

    assert orchestrator.ledger.has("#AAA-111")
    await orchestrator.run_once()
    assert len(adapter.actions) == 1


@pytest.mark.asyncio
async def test_summaries_and_notifications_are_emitted(tmp_path: Path, logger) -> None:
    stored: List[CycleSummary] = []
    notified: List[CycleSummary] = []

    async def _store(summary: CycleSummary) -> None:
        stored.append(summary)

    class _Notifier:
        async def notify_cycle_actions(self, summary: CycleSummary) -> None:
            notified.append(summary)

        async def notify_breaker_trip(self, **kwargs) -> None:
            raise AssertionError("breaker should not trip")

    adapter = FakeAdapter([RawOrder("#AAA-111", "12:00 PM", EN_ROUTE)])
    orchestrator = build(tmp_path, adapter, logger, summary_store=_store, notifier=_Notifier())

    await orchestrator.run_once()
    await orchestrator.run_once()

    assert [summary.acted for summary in stored] == [1, 0]
    assert len(notified) == 1
    assert notified[0].acted_orders[0]["order_id"] == "#AAA-111"
    assert stored[0].phase_status["act"]["ok"] >= 1


@pytest.mark.asyncio
async def test_detection_log_receives_each_cycle(tmp_path: Path, logger) -> None:
    from delivery_watch.monitor.detection_log import DetectionLog

    log = DetectionLog(tmp_path / "logs")
    adapter = FakeAdapter([RawOrder("#AAA-111", "12:00 PM", SCHEDULED)])
    orchestrator = build(tmp_path, adapter, logger, detection_log=log)

    await orchestrator.run_once()
    await orchestrator.run_once()

    assert log.path.read_text().count("# Total orders detected: 1") == 2


@pytest.mark.asyncio
async def test_live_stale_process_is_terminated_and_slot_evicted(tmp_path: Path, logger) -> None:
    class _Handle:
        pid = 31337

        def __init__(self) -> None:
            self.alive = True

        def is_alive(self) -> bool:
            return self.alive

        def terminate(self) -> None:
            self.alive = False

        def kill(self) -> None:
            self.alive = False

        def wait_exit(self, timeout: float) -> bool:
            return True

    handle = _Handle()
    pool = ProfilePool(
        1,
        str(tmp_path / "profiles" / "{context}-{slot}"),
        logger=logger,
        handle_factory=lambda path: handle if path.exists() else None,
    )

    async def _factory(profile, lease):
        profile.pid_file_path.parent.mkdir(parents=True, exist_ok=True)
        profile.pid_file_path.write_text(str(handle.pid))
        raise ProcessLivenessFailure(handle.pid, "slot still owned by a live browser")

    orchestrator = CycleOrchestrator(
        target="https://dashboard.example.com/deliveries",
        pool=pool,
        session_factory=_factory,
        engine=EligibilityEngine(),
        ledger=ActionLedger(tmp_path / "data"),
        logger=logger,
        policies=FAST_POLICIES,
        clock=noon_plus_one,
        exit_hook=lambda code: None,
    )

    summary = await orchestrator.run_once()

    assert summary.outcome == "failed"
    assert summary.failed_phase == "RELOAD"
    assert orchestrator.consecutive_failures == 1
    assert handle.alive is False
    assert pool.available_count == 1
    assert not list((tmp_path / "profiles").glob("*/pid.txt"))


@pytest.mark.asyncio
async def test_breaker_ignores_failures_of_non_critical_phases(tmp_path: Path, logger) -> None:
    exit_codes: List[int] = []
    adapter = FakeAdapter(list_view=False)
    policies = dict(FAST_POLICIES)
    policies[Phase.ENSURE_LIST_VIEW] = replace(policies[Phase.ENSURE_LIST_VIEW], critical=False)
    orchestrator = build(
        tmp_path, adapter, logger, policies=policies, breaker_threshold=1, exit_hook=exit_codes.append
    )

    summary = await orchestrator.run_once()

    assert summary.outcome == "failed"
    assert summary.failed_phase == "ENSURE_LIST_VIEW"
    assert orchestrator.consecutive_failures == 0
    assert orchestrator.tripped is False
    assert exit_codes == []


@pytest.mark.asyncio
async def test_breaker_counts_phases_marked_critical_by_policy(tmp_path: Path, logger) -> None:
    class _BrokenEngine(EligibilityEngine):
        def evaluate_all(self, now, orders):
            raise RuntimeError("rule table unavailable")

    exit_codes: List[int] = []
    adapter = FakeAdapter([RawOrder("#AAA-111", "12:00 PM", EN_ROUTE)])
    policies = dict(FAST_POLICIES)
    orchestrator = build(tmp_path, adapter, logger, policies=policies, exit_hook=exit_codes.append)
    orchestrator.engine = _BrokenEngine()

    summary = await orchestrator.run_once()
    assert summary.failed_phase == "EVALUATE"
    assert orchestrator.consecutive_failures == 0

    orchestrator.policies[Phase.EVALUATE] = replace(FAST_POLICIES[Phase.DETECT], critical=True)
    await orchestrator.run_once()

    assert orchestrator.consecutive_failures == 1
    assert exit_codes == []
