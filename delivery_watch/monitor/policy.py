"""Per-phase timeout and retry policy, consumed uniformly by the orchestrator.

Timeouts are cooperative: when a phase overruns, the orchestrator stops
waiting and raises :class:`PhaseTimeout`, but the underlying call keeps running
in the background. Browser automation calls cannot be interrupted safely
mid-flight, so a late completion is routed to an ``on_late_result`` callback
which must re-validate its context before touching shared state.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, TypeVar

from delivery_watch.common.json_logger import JsonLogger, log_event
from delivery_watch.monitor.errors import PhaseTimeout

T = TypeVar("T")


class Phase(str, Enum):
    RELOAD = "RELOAD"
    CHECK_EMPTY_STATE = "CHECK_EMPTY_STATE"
    CHECK_AUTH_EXPIRED = "CHECK_AUTH_EXPIRED"
    ENSURE_LIST_VIEW = "ENSURE_LIST_VIEW"
    DETECT = "DETECT"
    EVALUATE = "EVALUATE"
    ACT = "ACT"
    RESTORE = "RESTORE"
    CYCLE = "CYCLE"
    SLEEP = "SLEEP"


@dataclass(frozen=True)
class PhasePolicy:
    timeout_seconds: float
    max_attempts: int = 1
    backoff_seconds: float = 0.0
    critical: bool = False


DEFAULT_POLICIES: Dict[Phase, PhasePolicy] = {
    Phase.RELOAD: PhasePolicy(timeout_seconds=30, critical=True),
    Phase.CHECK_EMPTY_STATE: PhasePolicy(timeout_seconds=30, max_attempts=4, backoff_seconds=2),
    Phase.CHECK_AUTH_EXPIRED: PhasePolicy(timeout_seconds=30, max_attempts=4, backoff_seconds=2),
    Phase.ENSURE_LIST_VIEW: PhasePolicy(timeout_seconds=30, max_attempts=2, backoff_seconds=2, critical=True),
    Phase.DETECT: PhasePolicy(timeout_seconds=120, critical=True),
    Phase.ACT: PhasePolicy(timeout_seconds=90),
    Phase.RESTORE: PhasePolicy(timeout_seconds=30),
    Phase.CYCLE: PhasePolicy(timeout_seconds=300, critical=True),
}


def build_policies(
    overrides: Optional[Mapping[Phase, Mapping[str, Any]]] = None,
    *,
    base: Optional[Mapping[Phase, PhasePolicy]] = None,
) -> Dict[Phase, PhasePolicy]:
    policies = {**DEFAULT_POLICIES, **(base or {})}
    for phase, fields in (overrides or {}).items():
        policies[phase] = replace(policies[phase], **dict(fields))
    return policies


def _on_late_completion(
    task: "asyncio.Future[Any]",
    *,
    phase: str,
    logger: Optional[JsonLogger],
    on_late_result: Optional[Callable[[Any], None]],
) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        if logger:
            log_event(
                logger=logger,
                phase=phase.lower(),
                status="warn",
                message="timed-out call failed after the orchestrator moved on",
                error=repr(exc),
            )
        return
    result = task.result()
    if logger:
        log_event(
            logger=logger,
            phase=phase.lower(),
            status="warn",
            message="timed-out call completed late",
            result=repr(result),
        )
    if on_late_result is not None:
        on_late_result(result)


async def run_with_timeout(
    awaitable: Awaitable[T],
    *,
    phase: Phase | str,
    timeout_seconds: float,
    logger: Optional[JsonLogger] = None,
    on_late_result: Optional[Callable[[Any], None]] = None,
) -> T:
    phase_name = phase.value if isinstance(phase, Phase) else str(phase)
    task = asyncio.ensure_future(awaitable)
    done, _ = await asyncio.wait({task}, timeout=timeout_seconds)
    if task in done:
        return task.result()
    task.add_done_callback(
        lambda fut: _on_late_completion(
            fut, phase=phase_name, logger=logger, on_late_result=on_late_result
        )
    )
    raise PhaseTimeout(phase_name, timeout_seconds)


async def run_phase(
    factory: Callable[[], Awaitable[T]],
    *,
    phase: Phase,
    policy: PhasePolicy,
    logger: Optional[JsonLogger] = None,
    accept: Callable[[T], bool] = lambda result: True,
) -> T:
    """Run ``factory`` under ``policy``; retries until ``accept(result)`` or attempts run out.

    Returns the last result (accepted or not). Re-raises the last exception
    when every attempt failed with one.
    """

    attempts = max(1, policy.max_attempts)
    last_exc: BaseException | None = None
    result: Any = None
    for attempt in range(1, attempts + 1):
        try:
            result = await run_with_timeout(
                factory(), phase=phase, timeout_seconds=policy.timeout_seconds, logger=logger
            )
            last_exc = None
            if accept(result):
                return result
        except Exception as exc:
            last_exc = exc
            if logger:
                log_event(
                    logger=logger,
                    phase=phase.value.lower(),
                    status="warn",
                    message="phase attempt failed",
                    attempt=attempt,
                    max_attempts=attempts,
                    error=str(exc),
                )
        if attempt < attempts and policy.backoff_seconds:
            await asyncio.sleep(policy.backoff_seconds)
    if last_exc is not None:
        raise last_exc
    return result
