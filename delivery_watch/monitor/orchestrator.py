"""Poll -> evaluate -> act loop for one monitored dashboard.

One cycle runs at a time. Each cycle leases a profile from the pool, opens a
page adapter on it, walks the phases below under the timeouts of the phase
policy table, and always returns the profile before finishing::

    RELOAD -> CHECK_EMPTY_STATE -> CHECK_AUTH_EXPIRED -> ENSURE_LIST_VIEW
           -> DETECT -> EVALUATE -> ACT(0..k) -> SLEEP

Failures of phases whose policy is marked ``critical`` (by default RELOAD,
ENSURE_LIST_VIEW, DETECT and the outer CYCLE guard) feed a consecutive-failure
counter. When it reaches the breaker threshold the exit hook is invoked and the
process is expected to be restarted by its supervisor.
"""
from __future__ import annotations

import asyncio
import os
from dataclasses import replace
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Set

from delivery_watch.browser.pool import Profile, ProfilePool
from delivery_watch.common.date_utils import aware_now, format_display_time
from delivery_watch.common.json_logger import JsonLogger, log_event, timed_event
from delivery_watch.monitor.adapter import PageAdapter, SessionFactory
from delivery_watch.monitor.detection_log import DetectionLog
from delivery_watch.monitor.eligibility import EligibilityEngine, detect_order
from delivery_watch.monitor.errors import (
    ActionFailure,
    NavigationFailure,
    ParseFailure,
    PersistenceFailure,
    PhaseTimeout,
    ProcessLivenessFailure,
    ResourceExhausted,
)
from delivery_watch.monitor.ledger import ActionLedger
from delivery_watch.monitor.models import (
    CycleSummary,
    DetectedOrder,
    EligibilityDecision,
    RawOrder,
)
from delivery_watch.monitor.policy import (
    Phase,
    PhasePolicy,
    build_policies,
    run_phase,
    run_with_timeout,
)

EXIT_CODE_BREAKER = 75
NOTIFY_TIMEOUT_SECONDS = 30

OUTCOME_COMPLETED = "completed"
OUTCOME_ABANDONED = "abandoned"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"
OUTCOME_TIMED_OUT = "timed_out"

ExitHook = Callable[[int], None]
SummaryStore = Callable[[CycleSummary], Awaitable[None]]


class CycleNotifier(Protocol):
    async def notify_cycle_actions(self, summary: CycleSummary) -> None: ...

    async def notify_breaker_trip(self, *, target: str, consecutive_failures: int, summary: CycleSummary) -> None: ...


def default_exit_hook(logger: JsonLogger) -> ExitHook:
    def _exit(code: int) -> None:
        logger.flush()
        logger.close()
        os._exit(code)

    return _exit


class CycleOrchestrator:
    def __init__(
        self,
        *,
        target: str,
        pool: ProfilePool,
        session_factory: SessionFactory,
        engine: EligibilityEngine,
        ledger: ActionLedger,
        logger: JsonLogger,
        profile_context: str = "default",
        policies: Optional[Mapping[Phase, PhasePolicy]] = None,
        clock: Callable[[], datetime] = aware_now,
        cycle_interval_seconds: float = 60,
        breaker_backoff_seconds: float = 10,
        breaker_threshold: int = 3,
        state_check_retries: int = 3,
        max_actions_per_cycle: Optional[int] = None,
        reauth_secret: Optional[str] = None,
        detection_log: Optional[DetectionLog] = None,
        notifier: Optional[CycleNotifier] = None,
        summary_store: Optional[SummaryStore] = None,
        exit_hook: Optional[ExitHook] = None,
    ) -> None:
        self.target = target
        self.pool = pool
        self.session_factory = session_factory
        self.engine = engine
        self.ledger = ledger
        self.logger = logger.bind(target=target)
        self.profile_context = profile_context
        retry_overrides = {"max_attempts": state_check_retries + 1}
        self.policies: Dict[Phase, PhasePolicy] = build_policies(
            {Phase.CHECK_EMPTY_STATE: retry_overrides, Phase.CHECK_AUTH_EXPIRED: retry_overrides},
            base=policies,
        )
        self.clock = clock
        self.cycle_interval_seconds = cycle_interval_seconds
        self.breaker_backoff_seconds = breaker_backoff_seconds
        self.breaker_threshold = breaker_threshold
        self.max_actions_per_cycle = max_actions_per_cycle
        self.reauth_secret = reauth_secret
        self.detection_log = detection_log
        self.notifier = notifier
        self.summary_store = summary_store
        self.exit_hook = exit_hook or default_exit_hook(logger)

        self.consecutive_failures = 0
        self.cycles_run = 0
        self.last_summary: Optional[CycleSummary] = None
        self.tripped = False
        self._cycle_lock = asyncio.Lock()
        self._stale_cycle: Optional[asyncio.Future] = None
        self._inflight_orders: Set[str] = set()

    @property
    def busy(self) -> bool:
        return self._cycle_lock.locked()

    # ------------------------------------------------------------------ loop

    async def run_forever(self, stop_event: asyncio.Event) -> None:
        log_event(
            logger=self.logger,
            phase="orchestrator",
            message="monitor loop started",
            interval_seconds=self.cycle_interval_seconds,
            breaker_threshold=self.breaker_threshold,
        )
        while not stop_event.is_set():
            summary = await self.run_once()
            if self.tripped:
                return
            delay = (
                self.breaker_backoff_seconds
                if self._is_critical(summary)
                else self.cycle_interval_seconds
            )
            log_event(
                logger=self.logger,
                phase=Phase.SLEEP.value.lower(),
                message="sleeping until next cycle",
                seconds=delay,
                consecutive_failures=self.consecutive_failures,
            )
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=delay)
            except asyncio.TimeoutError:
                continue
        log_event(logger=self.logger, phase="orchestrator", message="monitor loop stopped")

    async def run_once(self) -> CycleSummary:
        """Run one cycle and feed its outcome to the circuit breaker."""

        summary = await self.run_cycle()
        await self._update_breaker(summary)
        return summary

    def _is_critical(self, summary: CycleSummary) -> bool:
        if summary.outcome not in (OUTCOME_FAILED, OUTCOME_TIMED_OUT) or summary.failed_phase is None:
            return False
        try:
            phase = Phase(summary.failed_phase)
        except ValueError:
            return False
        policy = self.policies.get(phase)
        return policy is not None and policy.critical

    async def _update_breaker(self, summary: CycleSummary) -> None:
        if summary.outcome == OUTCOME_COMPLETED:
            if self.consecutive_failures:
                log_event(
                    logger=self.logger,
                    phase="breaker",
                    message="critical phases recovered; failure counter reset",
                    previous_failures=self.consecutive_failures,
                )
            self.consecutive_failures = 0
            return
        if not self._is_critical(summary):
            return

        self.consecutive_failures += 1
        log_event(
            logger=self.logger,
            phase="breaker",
            status="warn",
            message="critical cycle failure",
            consecutive_failures=self.consecutive_failures,
            threshold=self.breaker_threshold,
            cycle_id=summary.cycle_id,
            failed_phase=summary.failed_phase,
        )
        if self.consecutive_failures < self.breaker_threshold:
            return

        self.tripped = True
        log_event(
            logger=self.logger,
            phase="breaker",
            status="error",
            message="circuit breaker tripped; exiting for supervised restart",
            consecutive_failures=self.consecutive_failures,
            exit_code=EXIT_CODE_BREAKER,
        )
        if self.notifier is not None:
            try:
                await run_with_timeout(
                    self.notifier.notify_breaker_trip(
                        target=self.target,
                        consecutive_failures=self.consecutive_failures,
                        summary=summary,
                    ),
                    phase="breaker",
                    timeout_seconds=NOTIFY_TIMEOUT_SECONDS,
                    logger=self.logger,
                )
            except Exception as exc:
                log_event(
                    logger=self.logger,
                    phase="breaker",
                    status="warn",
                    message="breaker notification failed",
                    error=str(exc),
                )
        self.logger.flush()
        self.exit_hook(EXIT_CODE_BREAKER)

    # ----------------------------------------------------------------- cycle

    async def run_cycle(self) -> CycleSummary:
        async with self._cycle_lock:
            self.cycles_run += 1
            summary = CycleSummary(
                cycle_id=f"{self.logger.run_id}-{self.cycles_run:04d}",
                target=self.target,
                started_at=self.clock(),
            )
            cycle_logger = self.logger.bind(cycle_id=summary.cycle_id)
            cycle_logger.attach_sink(summary)
            self.ledger.begin_cycle()
            try:
                await self._guarded_cycle(summary, cycle_logger)
            finally:
                summary.finished_at = self.clock()
                log_event(
                    logger=cycle_logger,
                    phase="cycle",
                    status="ok" if summary.overall_status == "ok" else "warn",
                    message="cycle finished",
                    outcome=summary.outcome,
                    detected=summary.detected,
                    eligible=summary.eligible,
                    acted=summary.acted,
                    failed=summary.failed,
                )
                cycle_logger.detach_sink(summary)
                self.last_summary = summary
            await self._after_cycle(summary, cycle_logger)
            return summary

    async def _guarded_cycle(self, summary: CycleSummary, logger: JsonLogger) -> None:
        if self._stale_cycle is not None and not self._stale_cycle.done():
            summary.outcome = OUTCOME_FAILED
            summary.failed_phase = Phase.CYCLE.value
            summary.add_note("previous cycle is still running after its timeout")
            log_event(
                logger=logger,
                phase="cycle",
                status="error",
                message="previous timed-out cycle has not finished; skipping this pass",
            )
            return

        cycle_task = asyncio.ensure_future(self._run_phases(summary, logger))
        try:
            await run_with_timeout(
                cycle_task,
                phase=Phase.CYCLE,
                timeout_seconds=self.policies[Phase.CYCLE].timeout_seconds,
                logger=logger,
            )
        except PhaseTimeout as exc:
            self._stale_cycle = cycle_task
            summary.outcome = OUTCOME_TIMED_OUT
            summary.failed_phase = exc.phase
            summary.add_note(str(exc))
            log_event(logger=logger, phase="cycle", status="error", message=str(exc))
        except ResourceExhausted as exc:
            summary.outcome = OUTCOME_SKIPPED
            summary.add_note(str(exc))
            log_event(logger=logger, phase="pool", status="warn", message="cycle skipped", error=str(exc))
        except Exception as exc:
            summary.outcome = OUTCOME_FAILED
            summary.failed_phase = summary.phase
            summary.add_note(str(exc))
            log_event(
                logger=logger,
                phase="cycle",
                status="error",
                message="phase failed",
                failed_phase=summary.phase,
                error=str(exc),
                error_type=type(exc).__name__,
            )

    async def _after_cycle(self, summary: CycleSummary, logger: JsonLogger) -> None:
        if self.summary_store is not None:
            try:
                await self.summary_store(summary)
            except Exception as exc:
                log_event(
                    logger=logger,
                    phase="run_summary",
                    status="warn",
                    message="could not persist cycle summary",
                    error=str(exc),
                )
        if self.notifier is not None and summary.acted:
            try:
                await run_with_timeout(
                    self.notifier.notify_cycle_actions(summary),
                    phase="notify",
                    timeout_seconds=NOTIFY_TIMEOUT_SECONDS,
                    logger=logger,
                )
            except Exception as exc:
                log_event(logger=logger, phase="notify", status="warn", message="notification failed", error=str(exc))

    async def _run_phases(self, summary: CycleSummary, logger: JsonLogger) -> None:
        profile = await self.pool.acquire(self.profile_context)
        if profile is None:
            raise ResourceExhausted(f"no free profile for {self.target}")
        lease = profile.lease
        logger = logger.bind(slot_id=profile.slot_id)
        adapter: Optional[PageAdapter] = None
        terminate = False
        try:
            summary.phase = Phase.RELOAD.value
            adapter = await self._open_session(profile, lease, logger)

            summary.phase = Phase.CHECK_EMPTY_STATE.value
            if not await self._clear_empty_state(adapter, logger):
                summary.outcome = OUTCOME_ABANDONED
                summary.add_note("dashboard kept showing the empty state")
                return
            summary.phase = Phase.CHECK_AUTH_EXPIRED.value
            if not await self._clear_auth_expired(adapter, logger):
                summary.outcome = OUTCOME_ABANDONED
                summary.add_note("dashboard link expired and could not be renewed")
                return

            summary.phase = Phase.ENSURE_LIST_VIEW.value
            await self._ensure_list_view(adapter, logger)
            summary.phase = Phase.DETECT.value
            now, orders = await self._detect(adapter, logger)
            summary.detected = len(orders)
            self._write_detection_log(orders, logger)

            summary.phase = Phase.EVALUATE.value
            decisions = self._evaluate(now, orders, logger)
            summary.eligible = sum(1 for decision in decisions if decision.eligible)
            summary.phase = Phase.ACT.value
            await self._act(adapter, orders, decisions, summary, logger)
            summary.outcome = OUTCOME_COMPLETED
        except ProcessLivenessFailure as exc:
            log_event(
                logger=logger,
                phase="session",
                status="error",
                message="slot still owned by a live process; terminating before release",
                pid=exc.pid,
            )
            terminate = True
            raise
        finally:
            if adapter is not None:
                try:
                    await run_with_timeout(
                        adapter.close(),
                        phase=Phase.RESTORE,
                        timeout_seconds=self.policies[Phase.RESTORE].timeout_seconds,
                        logger=logger,
                    )
                except Exception as exc:
                    log_event(logger=logger, phase="session", status="warn", message="session close failed", error=str(exc))
            if terminate:
                await self.pool.terminate_process(profile, lease=lease)
            else:
                await self.pool.release(profile, evict=True, lease=lease)

    # ---------------------------------------------------------------- phases

    async def _open_session(self, profile: Profile, lease: int, logger: JsonLogger) -> PageAdapter:
        def _close_orphan(adapter: PageAdapter) -> None:
            asyncio.ensure_future(adapter.close())

        with timed_event(logger=logger, phase=Phase.RELOAD.value.lower(), message="dashboard loaded"):
            return await run_with_timeout(
                self.session_factory(profile, lease),
                phase=Phase.RELOAD,
                timeout_seconds=self.policies[Phase.RELOAD].timeout_seconds,
                logger=logger,
                on_late_result=_close_orphan,
            )

    async def _clear_empty_state(self, adapter: PageAdapter, logger: JsonLogger) -> bool:
        attempts = 0

        async def _check() -> bool:
            nonlocal attempts
            attempts += 1
            if attempts > 1:
                await adapter.reload()
            return await adapter.is_empty_state()

        try:
            empty = await run_phase(
                _check,
                phase=Phase.CHECK_EMPTY_STATE,
                policy=self.policies[Phase.CHECK_EMPTY_STATE],
                logger=logger,
                accept=lambda is_empty: not is_empty,
            )
        except Exception as exc:
            log_event(
                logger=logger,
                phase="check_empty_state",
                status="warn",
                message="empty-state check failed; abandoning this pass",
                error=str(exc),
            )
            return False
        if empty:
            log_event(
                logger=logger,
                phase="check_empty_state",
                status="warn",
                message="no deliveries shown after reload retries; abandoning this pass",
                reloads=attempts - 1,
            )
            return False
        return True

    async def _clear_auth_expired(self, adapter: PageAdapter, logger: JsonLogger) -> bool:
        attempts = 0
        policy = self.policies[Phase.CHECK_AUTH_EXPIRED]
        if not self.reauth_secret:
            policy = replace(policy, max_attempts=1, backoff_seconds=0.0)

        async def _check() -> bool:
            nonlocal attempts
            attempts += 1
            if attempts > 1:
                log_event(logger=logger, phase="check_auth_expired", status="warn", message="dashboard link expired; requesting a new one")
                await adapter.submit_reauth(self.reauth_secret or "")
                await adapter.reload()
            return await adapter.is_auth_expired()

        try:
            expired = await run_phase(
                _check,
                phase=Phase.CHECK_AUTH_EXPIRED,
                policy=policy,
                logger=logger,
                accept=lambda is_expired: not is_expired,
            )
        except Exception as exc:
            log_event(
                logger=logger,
                phase="check_auth_expired",
                status="warn",
                message="expired-link check failed; abandoning this pass",
                error=str(exc),
            )
            return False
        if expired:
            log_event(
                logger=logger,
                phase="check_auth_expired",
                status="warn",
                message="dashboard link still expired; abandoning this pass",
                reauth_configured=bool(self.reauth_secret),
            )
            return False
        return True

    async def _ensure_list_view(self, adapter: PageAdapter, logger: JsonLogger) -> None:
        on_list = await run_phase(
            adapter.navigate_to_list_view,
            phase=Phase.ENSURE_LIST_VIEW,
            policy=self.policies[Phase.ENSURE_LIST_VIEW],
            logger=logger,
            accept=bool,
        )
        if not on_list:
            raise NavigationFailure("could not reach the deliveries list view")
        log_event(logger=logger, phase="ensure_list_view", message="on deliveries list")

    async def _detect(self, adapter: PageAdapter, logger: JsonLogger) -> tuple[datetime, List[DetectedOrder]]:
        async def _scan() -> List[RawOrder]:
            raw_orders = await adapter.detect_open_orders()
            completed: List[RawOrder] = []
            for raw in raw_orders:
                if raw.raw_status is None:
                    status = await adapter.get_status(raw.id)
                    raw = RawOrder(
                        id=raw.id,
                        display_time_text=raw.display_time_text,
                        raw_status=status,
                        pickup_time_text=raw.pickup_time_text,
                    )
                completed.append(raw)
            return completed

        with timed_event(logger=logger, phase=Phase.DETECT.value.lower(), message="orders detected"):
            raw_orders = await run_with_timeout(
                _scan(),
                phase=Phase.DETECT,
                timeout_seconds=self.policies[Phase.DETECT].timeout_seconds,
                logger=logger,
            )
        now = self.clock()
        orders = [detect_order(raw, now) for raw in raw_orders]
        for order in orders:
            if order.delivery_time is None:
                log_event(
                    logger=logger,
                    phase="detect",
                    status="warn",
                    message="order time could not be parsed",
                    order_id=order.external_id,
                    error=str(ParseFailure("delivery time", order.display_time_text)),
                )
        log_event(logger=logger, phase="detect", message="scan complete", count=len(orders))
        return now, orders

    def _write_detection_log(self, orders: List[DetectedOrder], logger: JsonLogger) -> None:
        if self.detection_log is None:
            return
        try:
            self.detection_log.write_cycle(orders)
        except OSError as exc:
            log_event(logger=logger, phase="detect", status="warn", message="detection log write failed", error=str(exc))

    def _evaluate(self, now: datetime, orders: List[DetectedOrder], logger: JsonLogger) -> List[EligibilityDecision]:
        decisions = self.engine.evaluate_all(now, orders)
        for order, decision in zip(orders, decisions):
            log_event(
                logger=logger,
                phase="evaluate",
                message="eligible" if decision.eligible else "not eligible",
                order_id=decision.order_id,
                eligible=decision.eligible,
                action_type=decision.action_type.value,
                reason=decision.reason,
                raw_status=order.raw_status,
                display_time=order.display_time_text,
                delivery_time=format_display_time(order.delivery_time) if order.delivery_time else None,
                evaluated_at=format_display_time(now),
            )
        return decisions

    async def _act(
        self,
        adapter: PageAdapter,
        orders: List[DetectedOrder],
        decisions: List[EligibilityDecision],
        summary: CycleSummary,
        logger: JsonLogger,
    ) -> None:
        by_id = {order.external_id: order for order in orders}
        for decision in decisions:
            if not decision.eligible:
                continue
            if self.max_actions_per_cycle is not None and summary.acted >= self.max_actions_per_cycle:
                log_event(
                    logger=logger,
                    phase="act",
                    message="per-cycle action limit reached",
                    limit=self.max_actions_per_cycle,
                )
                break
            order_id = decision.order_id
            if self.ledger.has(order_id) or order_id in self._inflight_orders:
                summary.skipped_already_actioned += 1
                log_event(logger=logger, phase="act", message="already actioned; skipping", order_id=order_id)
                continue

            order = by_id[order_id]
            self.ledger.mark_in_cycle(order_id)
            try:
                completed = await run_with_timeout(
                    self._act_and_record(adapter, order, decision, logger),
                    phase=Phase.ACT,
                    timeout_seconds=self.policies[Phase.ACT].timeout_seconds,
                    logger=logger,
                )
                if not completed:
                    raise ActionFailure(order_id, "adapter reported the action did not complete")
            except Exception as exc:
                summary.failed += 1
                log_event(
                    logger=logger,
                    phase="act",
                    status="error",
                    message="action failed; continuing with next order",
                    order_id=order_id,
                    action_type=decision.action_type.value,
                    error=str(exc),
                )
                await self._restore_list_view(adapter, logger)
                continue

            summary.acted += 1
            summary.acted_orders.append(
                {
                    "order_id": order_id,
                    "action_type": decision.action_type.value,
                    "reason": decision.reason,
                    "display_time": order.display_time_text,
                }
            )

    async def _act_and_record(
        self,
        adapter: PageAdapter,
        order: DetectedOrder,
        decision: EligibilityDecision,
        logger: JsonLogger,
    ) -> bool:
        # Also runs to completion when ACT times out, so the ledger sees late successes.
        order_id = order.external_id
        self._inflight_orders.add(order_id)
        try:
            completed = await adapter.perform_action(order_id, decision.action_type)
            if not completed:
                return False
            log_event(
                logger=logger,
                phase="act",
                message="action completed",
                order_id=order_id,
                action_type=decision.action_type.value,
                reason=decision.reason,
            )
            try:
                self.ledger.record(order_id, order.display_time_text, order.raw_status, decision.reason)
            except PersistenceFailure as exc:
                log_event(logger=logger, phase="ledger", status="error", message=str(exc), order_id=order_id)
            return True
        finally:
            self._inflight_orders.discard(order_id)

    async def _restore_list_view(self, adapter: PageAdapter, logger: JsonLogger) -> None:
        try:
            restored = await run_with_timeout(
                adapter.navigate_to_list_view(),
                phase=Phase.RESTORE,
                timeout_seconds=self.policies[Phase.RESTORE].timeout_seconds,
                logger=logger,
            )
        except Exception as exc:
            log_event(logger=logger, phase="restore", status="warn", message="could not restore list view", error=str(exc))
            return
        if not restored:
            log_event(logger=logger, phase="restore", status="warn", message="list view not restored")
