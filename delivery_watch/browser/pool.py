"""Fixed-size pool of browser profiles with age-based forced reclamation.

Every mutation of the available/in-use sets happens under one ``asyncio.Lock``
shared by the orchestrators and the age sweep. Closing sessions, grace waits
and process termination run outside the lock; the final release re-checks the
profile's lease so a slot that was recycled in the meantime is left alone.
"""
from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, NamedTuple, Optional

from delivery_watch.browser.process import ProcessHandle, handle_from_pid_file
from delivery_watch.common.json_logger import JsonLogger, log_event

PID_FILENAME = "pid.txt"
DEFAULT_CONTEXT = "default"

CloseHook = Callable[[], Awaitable[None]]


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(eq=False)
class Profile:
    slot_id: int
    session_path: Optional[Path] = None
    pid_file_path: Optional[Path] = None
    process: Optional[ProcessHandle] = None
    acquired_at: Optional[datetime] = None
    context: Optional[str] = None
    lease: int = 0
    close_hook: Optional[CloseHook] = None

    @property
    def in_use(self) -> bool:
        return self.acquired_at is not None

    def age_seconds(self, now: datetime) -> float:
        if self.acquired_at is None:
            return 0.0
        return (now - self.acquired_at).total_seconds()

    def describe(self, now: datetime) -> Dict[str, Any]:
        return {
            "slot_id": self.slot_id,
            "in_use": self.in_use,
            "context": self.context,
            "session_path": str(self.session_path) if self.session_path else None,
            "pid": getattr(self.process, "pid", None),
            "age_seconds": round(self.age_seconds(now), 1) if self.in_use else None,
        }


class SweepResult(NamedTuple):
    processed: int
    closed: int


class ProfilePool:
    def __init__(
        self,
        size: int,
        path_template: str,
        *,
        logger: JsonLogger | None = None,
        clock: Callable[[], datetime] = _utc_now,
        close_grace_seconds: float = 2.0,
        handle_factory: Callable[[Path], Optional[ProcessHandle]] = handle_from_pid_file,
    ) -> None:
        if size < 1:
            raise ValueError("pool size must be at least 1")
        if "{slot}" not in path_template:
            raise ValueError("profile path template must contain '{slot}'")
        self.size = size
        self.path_template = path_template
        self.logger = logger
        self._clock = clock
        self._close_grace_seconds = close_grace_seconds
        self._handle_factory = handle_factory
        self._lock = asyncio.Lock()
        self._leases = itertools.count(1)
        self._profiles = [Profile(slot_id=slot) for slot in range(1, size + 1)]
        self._available: List[Profile] = list(self._profiles)
        self._in_use: List[Profile] = []

    def _log(self, *, status: str = "ok", message: str, **extras: Any) -> None:
        if self.logger is not None:
            log_event(logger=self.logger, phase="pool", status=status, message=message, **extras)

    def session_path_for(self, slot_id: int, context: str) -> Path:
        return Path(self.path_template.format(slot=slot_id, context=context)).expanduser()

    @property
    def available_count(self) -> int:
        return len(self._available)

    @property
    def in_use_count(self) -> int:
        return len(self._in_use)

    def snapshot(self) -> List[Dict[str, Any]]:
        now = self._clock()
        return [profile.describe(now) for profile in self._profiles]

    async def acquire(self, context: str = DEFAULT_CONTEXT) -> Profile | None:
        """Move a free slot to in-use; ``None`` when every slot is taken."""

        async with self._lock:
            if not self._available:
                self._log(
                    status="warn",
                    message="no free profile slot",
                    context=context,
                    in_use=len(self._in_use),
                )
                return None
            profile = self._available.pop(0)
            session_path = self.session_path_for(profile.slot_id, context)
            profile.context = context
            profile.session_path = session_path
            profile.pid_file_path = session_path / PID_FILENAME
            profile.acquired_at = self._clock()
            profile.lease = next(self._leases)
            self._in_use.append(profile)
        self._log(
            message="profile acquired",
            slot_id=profile.slot_id,
            context=context,
            lease=profile.lease,
            session_path=str(profile.session_path),
        )
        return profile

    async def bind(
        self,
        profile: Profile,
        *,
        lease: int,
        process: Optional[ProcessHandle] = None,
        close_hook: Optional[CloseHook] = None,
    ) -> bool:
        async with self._lock:
            if profile.lease != lease or profile not in self._in_use:
                return False
            if process is not None:
                profile.process = process
            if close_hook is not None:
                profile.close_hook = close_hook
            return True

    async def release(self, profile: Profile, *, evict: bool = False, lease: int | None = None) -> bool:
        """Return ``profile`` to the available set.

        Releasing a profile that is already available, or whose lease no longer
        matches ``lease``, is a no-op and returns ``False``.
        """

        async with self._lock:
            if profile not in self._in_use:
                return False
            if lease is not None and profile.lease != lease:
                return False
            pid_file = profile.pid_file_path
            if evict and pid_file is not None:
                try:
                    pid_file.unlink(missing_ok=True)
                except OSError as exc:
                    self._log(
                        status="warn",
                        message="could not remove pid file",
                        slot_id=profile.slot_id,
                        pid_file=str(pid_file),
                        error=str(exc),
                    )
            released_lease = profile.lease
            profile.process = None
            profile.acquired_at = None
            profile.close_hook = None
            profile.context = None
            self._in_use.remove(profile)
            self._available.append(profile)
        self._log(message="profile released", slot_id=profile.slot_id, lease=released_lease, evict=evict)
        return True

    async def force_close_older_than(self, max_age_seconds: float) -> SweepResult:
        """Close, terminate and evict every in-use profile held for at least ``max_age_seconds``."""

        async with self._lock:
            now = self._clock()
            in_use = list(self._in_use)
            stale = [
                (profile, profile.lease, profile.process, profile.close_hook, profile.pid_file_path)
                for profile in in_use
                if profile.age_seconds(now) >= max_age_seconds
            ]

        closed = 0
        for profile, lease, process, close_hook, pid_file in stale:
            self._log(
                status="warn",
                message="reclaiming profile held past max age",
                slot_id=profile.slot_id,
                lease=lease,
                max_age_seconds=max_age_seconds,
            )
            try:
                if close_hook is not None:
                    try:
                        await close_hook()
                    except Exception as exc:
                        self._log(
                            status="warn",
                            message="close hook failed during reclamation",
                            slot_id=profile.slot_id,
                            error=str(exc),
                        )
                await asyncio.sleep(self._close_grace_seconds)
                await self._terminate_if_alive(profile, process, pid_file)
            finally:
                if await self.release(profile, evict=True, lease=lease):
                    closed += 1

        return SweepResult(processed=len(in_use), closed=closed)

    async def terminate_process(self, profile: Profile, *, lease: int) -> bool:
        """Terminate whatever process the slot's handle or pid file points at, then evict the slot."""

        try:
            await self._terminate_if_alive(profile, profile.process, profile.pid_file_path)
        finally:
            released = await self.release(profile, evict=True, lease=lease)
        return released

    async def _terminate_if_alive(
        self,
        profile: Profile,
        process: Optional[ProcessHandle],
        pid_file: Optional[Path],
    ) -> None:
        """Terminate, then kill, the slot's process; never raises."""

        pid = getattr(process, "pid", None)
        try:
            handle = process
            if handle is None and pid_file is not None:
                handle = self._handle_factory(pid_file)
            if handle is None or not handle.is_alive():
                return
            pid = getattr(handle, "pid", None)
            self._log(
                status="warn",
                message="profile process still alive after close; terminating",
                slot_id=profile.slot_id,
                pid=pid,
            )
            wait_seconds = max(self._close_grace_seconds, 1.0)
            handle.terminate()
            if await asyncio.to_thread(handle.wait_exit, wait_seconds):
                return
            self._log(
                status="warn",
                message="profile process survived terminate; killing",
                slot_id=profile.slot_id,
                pid=pid,
            )
            handle.kill()
            if await asyncio.to_thread(handle.wait_exit, wait_seconds):
                return
            self._log(
                status="error",
                message="profile process survived kill",
                slot_id=profile.slot_id,
                pid=pid,
            )
        except Exception as exc:
            self._log(
                status="error",
                message="could not terminate profile process",
                slot_id=profile.slot_id,
                pid=pid,
                error=str(exc),
            )

    async def run_age_sweep(
        self,
        *,
        interval_seconds: float,
        max_age_seconds: float,
        stop_event: asyncio.Event,
    ) -> None:
        while not stop_event.is_set():
            try:
                result = await self.force_close_older_than(max_age_seconds)
            except Exception as exc:
                self._log(status="error", message="age sweep failed", error=str(exc))
            else:
                if result.closed:
                    self._log(
                        message="age sweep reclaimed profiles",
                        processed=result.processed,
                        closed=result.closed,
                    )
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                continue
