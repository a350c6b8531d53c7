"""Long-lived monitor service: one orchestrator, the shared pool and its age sweep."""
from __future__ import annotations

import asyncio
import re
from typing import Any, Awaitable, Callable, Dict, Optional
from urllib.parse import urlparse

from delivery_watch.browser.pool import ProfilePool
from delivery_watch.common.date_utils import aware_now, get_timezone
from delivery_watch.common.json_logger import JsonLogger, log_event
from delivery_watch.config import Config
from delivery_watch.monitor.adapter import SessionFactory
from delivery_watch.monitor.detection_log import DetectionLog, prune_detection_logs
from delivery_watch.monitor.eligibility import EligibilityConfig, EligibilityEngine
from delivery_watch.monitor.ledger import ActionLedger
from delivery_watch.monitor.orchestrator import CycleOrchestrator, ExitHook

LOG_SUBDIR = "logs"


class ServiceConflict(RuntimeError):
    """The requested control action does not fit the service's current state."""


def target_slug(url: str) -> str:
    parsed = urlparse(url)
    raw = f"{parsed.netloc}{parsed.path}" if parsed.netloc else url
    slug = re.sub(r"[^A-Za-z0-9]+", "-", raw).strip("-").lower()
    return slug or "default"


class MonitorService:
    def __init__(
        self,
        *,
        orchestrator: CycleOrchestrator,
        pool: ProfilePool,
        logger: JsonLogger,
        age_sweep_interval_seconds: float = 10,
        profile_max_age_seconds: float = 900,
        on_open: Optional[Callable[["MonitorService"], Awaitable[None]]] = None,
        on_close: Optional[Callable[[], Awaitable[None]]] = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.pool = pool
        self.logger = logger
        self.age_sweep_interval_seconds = age_sweep_interval_seconds
        self.profile_max_age_seconds = profile_max_age_seconds
        self._on_open = on_open
        self._on_close = on_close
        self._opened = False
        self._sweep_stop: Optional[asyncio.Event] = None
        self._sweep_task: Optional[asyncio.Task] = None
        self._loop_stop: Optional[asyncio.Event] = None
        self._loop_task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done()

    async def open(self) -> None:
        """Load the ledger and start the age sweep; idempotent."""

        if self._opened:
            return
        loaded = self.orchestrator.ledger.load()
        log_event(
            logger=self.logger,
            phase="startup",
            message="ledger loaded",
            acted_orders=loaded,
            ledger=str(self.orchestrator.ledger.ledger_path),
        )
        self._sweep_stop = asyncio.Event()
        self._sweep_task = asyncio.create_task(
            self.pool.run_age_sweep(
                interval_seconds=self.age_sweep_interval_seconds,
                max_age_seconds=self.profile_max_age_seconds,
                stop_event=self._sweep_stop,
            )
        )
        self._opened = True
        if self._on_open is not None:
            await self._on_open(self)

    async def close(self) -> None:
        if self.running:
            await self.stop()
        if self._sweep_stop is not None:
            self._sweep_stop.set()
        if self._sweep_task is not None:
            await self._sweep_task
            self._sweep_task = None
        if self._opened and self._on_close is not None:
            await self._on_close()
        self._opened = False

    async def start(self) -> Dict[str, Any]:
        if self.running:
            raise ServiceConflict("monitor is already running")
        if self.orchestrator.tripped:
            raise ServiceConflict("circuit breaker has tripped; restart the process")
        await self.open()
        self._loop_stop = asyncio.Event()
        self._loop_task = asyncio.create_task(self.orchestrator.run_forever(self._loop_stop))
        log_event(logger=self.logger, phase="control", message="monitor started")
        return self.status()

    async def stop(self) -> Dict[str, Any]:
        stop_event, task = self._loop_stop, self._loop_task
        if stop_event is None or task is None or task.done():
            raise ServiceConflict("monitor is not running")
        stop_event.set()
        await task
        self._loop_task = None
        log_event(logger=self.logger, phase="control", message="monitor stopped")
        return self.status()

    async def run_once(self) -> Dict[str, Any]:
        if self.orchestrator.busy:
            raise ServiceConflict("a cycle is already in progress")
        await self.open()
        summary = await self.orchestrator.run_once()
        return summary.as_dict()

    async def wait(self) -> None:
        """Block until the monitor loop ends (stop or breaker)."""

        if self._loop_task is not None:
            await self._loop_task

    def status(self) -> Dict[str, Any]:
        last = self.orchestrator.last_summary
        return {
            "target": self.orchestrator.target,
            "running": self.running,
            "cycle_in_progress": self.orchestrator.busy,
            "cycles_run": self.orchestrator.cycles_run,
            "consecutive_failures": self.orchestrator.consecutive_failures,
            "breaker_threshold": self.orchestrator.breaker_threshold,
            "acted_orders": len(self.orchestrator.ledger),
            "pool": {
                "size": self.pool.size,
                "available": self.pool.available_count,
                "in_use": self.pool.in_use_count,
                "profiles": self.pool.snapshot(),
            },
            "last_cycle": last.as_dict() if last else None,
        }


def build_service(
    config: Config,
    *,
    logger: JsonLogger,
    session_factory: Optional[SessionFactory] = None,
    exit_hook: Optional[ExitHook] = None,
) -> MonitorService:
    """Wire the production service from ``config``."""

    # Imported here so the core stays importable without a browser stack.
    from delivery_watch.monitor.playwright_adapter import PlaywrightSessions
    from delivery_watch.notifications import EmailNotifier, SmtpConfig
    from delivery_watch.run_summary import create_tables, summary_store

    tz = get_timezone(config.pipeline_timezone)
    slug = target_slug(config.dashboard_url)
    pool = ProfilePool(
        config.pool_size,
        config.profile_dir_template,
        logger=logger,
        close_grace_seconds=config.profile_close_grace_seconds,
    )
    if session_factory is None:
        session_factory = PlaywrightSessions(
            pool=pool,
            dashboard_url=config.dashboard_url,
            logger=logger,
            executable_path=config.browser_executable,
            headless=config.browser_headless,
        )
    engine = EligibilityEngine(
        EligibilityConfig(
            before_minutes=config.window_before_minutes,
            after_minutes=config.window_after_minutes,
            secondary_anchor=config.secondary_anchor,
            secondary_offset_minutes=config.secondary_offset_minutes,
        )
    )
    log_dir = config.data_dir / LOG_SUBDIR
    notifier = EmailNotifier(SmtpConfig.from_config(config), run_env=config.run_env)
    orchestrator = CycleOrchestrator(
        target=config.dashboard_url,
        pool=pool,
        session_factory=session_factory,
        engine=engine,
        ledger=ActionLedger(config.data_dir),
        logger=logger,
        profile_context=slug,
        clock=lambda: aware_now(tz),
        cycle_interval_seconds=config.cycle_interval_seconds,
        breaker_backoff_seconds=config.breaker_backoff_seconds,
        breaker_threshold=config.breaker_threshold,
        state_check_retries=config.state_check_retries,
        max_actions_per_cycle=config.max_actions_per_cycle,
        reauth_secret=config.reauth_secret or None,
        detection_log=DetectionLog(log_dir),
        notifier=notifier,
        summary_store=summary_store(config.database_url, run_env=config.run_env) if config.database_url else None,
        exit_hook=exit_hook,
    )

    async def _on_open(service: MonitorService) -> None:
        prune_detection_logs(log_dir, retention_days=config.detection_log_retention_days, logger=logger)
        if config.database_url:
            try:
                await create_tables(config.database_url)
            except Exception as exc:
                log_event(
                    logger=logger,
                    phase="run_summary",
                    status="warn",
                    message="could not prepare summary table; summaries may not persist",
                    error=str(exc),
                )
        await notifier.notify_startup(
            target=config.dashboard_url,
            interval_seconds=config.cycle_interval_seconds,
            pool_size=config.pool_size,
            ledger_size=len(orchestrator.ledger),
        )

    async def _on_close() -> None:
        aclose = getattr(session_factory, "aclose", None)
        if aclose is not None:
            await aclose()

    return MonitorService(
        orchestrator=orchestrator,
        pool=pool,
        logger=logger,
        age_sweep_interval_seconds=config.age_sweep_interval_seconds,
        profile_max_age_seconds=config.profile_max_age_seconds,
        on_open=_on_open,
        on_close=_on_close,
    )
