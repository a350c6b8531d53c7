from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List

import pytest

from delivery_watch.browser.pool import PID_FILENAME, ProfilePool


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 1, 26, 17, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeHandle:
    def __init__(
        self,
        pid: int = 4242,
        *,
        survives_terminate: bool = False,
        survives_kill: bool = False,
        terminate_error: Exception | None = None,
    ) -> None:
        self.pid = pid
        self.alive = True
        self.survives_terminate = survives_terminate
        self.survives_kill = survives_kill
        self.terminate_error = terminate_error
        self.terminated = 0
        self.killed = 0

    def is_alive(self) -> bool:
        return self.alive

    def terminate(self) -> None:
        self.terminated += 1
        if self.terminate_error is not None:
            raise self.terminate_error
        if not self.survives_terminate:
            self.alive = False

    def kill(self) -> None:
        self.killed += 1
        if not self.survives_kill:
            self.alive = False

    def wait_exit(self, timeout: float) -> bool:
        return not self.alive


def make_pool(tmp_path: Path, size: int = 3, **kwargs) -> ProfilePool:
    kwargs.setdefault("close_grace_seconds", 0)
    return ProfilePool(size, str(tmp_path / "{context}" / "slot-{slot}"), **kwargs)


@pytest.mark.asyncio
async def test_pool_hands_out_exactly_size_profiles(tmp_path: Path) -> None:
    pool = make_pool(tmp_path)

    profiles = [await pool.acquire("dash") for _ in range(3)]
    assert all(profile is not None for profile in profiles)
    assert await pool.acquire("dash") is None

    await pool.release(profiles[1])
    again = await pool.acquire("dash")
    assert again is profiles[1]
    assert await pool.acquire("dash") is None


@pytest.mark.asyncio
async def test_paths_derive_from_slot_and_context(tmp_path: Path) -> None:
    pool = make_pool(tmp_path)

    profile = await pool.acquire("dash")

    assert profile.session_path == tmp_path / "dash" / "slot-1"
    assert profile.pid_file_path == tmp_path / "dash" / "slot-1" / PID_FILENAME
    assert profile.acquired_at is not None


@pytest.mark.asyncio
async def test_release_resets_binding_and_is_idempotent(tmp_path: Path) -> None:
    pool = make_pool(tmp_path, size=1)
    profile = await pool.acquire("dash")
    await pool.bind(profile, lease=profile.lease, process=FakeHandle())

    assert await pool.release(profile) is True
    assert await pool.release(profile) is False
    assert profile.process is None
    assert profile.acquired_at is None
    assert pool.available_count == 1
    assert pool.in_use_count == 0


@pytest.mark.asyncio
async def test_evict_removes_pid_file(tmp_path: Path) -> None:
    pool = make_pool(tmp_path, size=1)
    profile = await pool.acquire("dash")
    profile.pid_file_path.parent.mkdir(parents=True)
    profile.pid_file_path.write_text("4242")

    await pool.release(profile, evict=True)

    assert not (tmp_path / "dash" / "slot-1" / PID_FILENAME).exists()


@pytest.mark.asyncio
async def test_stale_lease_cannot_release_recycled_slot(tmp_path: Path) -> None:
    pool = make_pool(tmp_path, size=1)
    profile = await pool.acquire("dash")
    old_lease = profile.lease
    await pool.release(profile)
    reacquired = await pool.acquire("dash")

    assert await pool.release(reacquired, lease=old_lease) is False
    assert pool.in_use_count == 1
    assert await pool.bind(reacquired, lease=old_lease, process=FakeHandle()) is False


@pytest.mark.asyncio
async def test_force_close_skips_young_profiles(tmp_path: Path) -> None:
    clock = FakeClock()
    pool = make_pool(tmp_path, clock=clock)
    closed_hooks: List[int] = []
    young = await pool.acquire("dash")

    async def _hook() -> None:
        closed_hooks.append(young.slot_id)

    await pool.bind(young, lease=young.lease, process=FakeHandle(), close_hook=_hook)
    clock.advance(899)

    result = await pool.force_close_older_than(900)

    assert result.processed == 1
    assert result.closed == 0
    assert closed_hooks == []
    assert young.in_use


@pytest.mark.asyncio
async def test_force_close_reclaims_old_profiles(tmp_path: Path) -> None:
    clock = FakeClock()
    pool = make_pool(tmp_path, clock=clock)
    old = await pool.acquire("dash")
    handle = FakeHandle()
    hook_calls: List[str] = []

    async def _hook() -> None:
        hook_calls.append("closed")

    await pool.bind(old, lease=old.lease, process=handle, close_hook=_hook)
    clock.advance(600)
    young = await pool.acquire("dash")
    clock.advance(300)

    result = await pool.force_close_older_than(900)

    assert result.processed == 2
    assert result.closed == 1
    assert hook_calls == ["closed"]
    assert handle.terminated == 1
    assert not old.in_use
    assert young.in_use


@pytest.mark.asyncio
async def test_force_close_does_not_terminate_exited_process(tmp_path: Path) -> None:
    clock = FakeClock()
    pool = make_pool(tmp_path, clock=clock)
    profile = await pool.acquire("dash")
    handle = FakeHandle()

    async def _hook() -> None:
        handle.alive = False

    await pool.bind(profile, lease=profile.lease, process=handle, close_hook=_hook)
    clock.advance(1000)

    result = await pool.force_close_older_than(900)

    assert result.closed == 1
    assert handle.terminated == 0


@pytest.mark.asyncio
async def test_force_close_kills_process_that_survives_terminate(tmp_path: Path, logger, events) -> None:
    clock = FakeClock()
    pool = make_pool(tmp_path, clock=clock, logger=logger)
    profile = await pool.acquire("dash")
    handle = FakeHandle(survives_terminate=True)
    await pool.bind(profile, lease=profile.lease, process=handle)
    clock.advance(1000)

    result = await pool.force_close_older_than(900)

    assert result.closed == 1
    assert handle.terminated == 1
    assert handle.killed == 1
    assert handle.alive is False
    messages = [event["message"] for event in events()]
    assert "profile process survived terminate; killing" in messages
    assert "profile process survived kill" not in messages


@pytest.mark.asyncio
async def test_force_close_reports_survivor_of_kill_and_still_releases(tmp_path: Path, logger, events) -> None:
    clock = FakeClock()
    pool = make_pool(tmp_path, clock=clock, logger=logger)
    profile = await pool.acquire("dash")
    handle = FakeHandle(survives_terminate=True, survives_kill=True)
    await pool.bind(profile, lease=profile.lease, process=handle)
    clock.advance(1000)

    result = await pool.force_close_older_than(900)

    assert result.closed == 1
    assert handle.killed == 1
    assert pool.in_use_count == 0
    survivor = [event for event in events() if event["message"] == "profile process survived kill"]
    assert survivor and survivor[0]["status"] == "error"


@pytest.mark.asyncio
async def test_force_close_keeps_sweeping_when_terminate_is_denied(tmp_path: Path, logger, events) -> None:
    clock = FakeClock()
    pool = make_pool(tmp_path, size=2, clock=clock, logger=logger)
    first = await pool.acquire("dash")
    second = await pool.acquire("dash")
    denied = FakeHandle(pid=1, terminate_error=PermissionError("access denied"))
    ordinary = FakeHandle(pid=5151)
    await pool.bind(first, lease=first.lease, process=denied)
    await pool.bind(second, lease=second.lease, process=ordinary)
    clock.advance(1000)

    result = await pool.force_close_older_than(900)

    assert result.processed == 2
    assert result.closed == 2
    assert ordinary.terminated == 1
    assert pool.in_use_count == 0
    assert pool.available_count == 2
    failures = [event for event in events() if event["message"] == "could not terminate profile process"]
    assert [event["pid"] for event in failures] == [1]


@pytest.mark.asyncio
async def test_terminate_process_evicts_even_when_terminate_fails(tmp_path: Path) -> None:
    pool = make_pool(tmp_path, size=1)
    profile = await pool.acquire("dash")
    await pool.bind(profile, lease=profile.lease, process=FakeHandle(terminate_error=PermissionError("denied")))

    assert await pool.terminate_process(profile, lease=profile.lease) is True
    assert pool.in_use_count == 0
    assert pool.available_count == 1


@pytest.mark.asyncio
async def test_force_close_uses_pid_file_when_no_handle_bound(tmp_path: Path) -> None:
    clock = FakeClock()
    handles: List[FakeHandle] = []

    def _from_pid_file(path: Path) -> FakeHandle:
        handle = FakeHandle(pid=int(path.read_text()))
        handles.append(handle)
        return handle

    pool = make_pool(tmp_path, clock=clock, handle_factory=_from_pid_file)
    profile = await pool.acquire("dash")
    profile.pid_file_path.parent.mkdir(parents=True)
    profile.pid_file_path.write_text("777")
    clock.advance(1000)

    await pool.force_close_older_than(900)

    assert [handle.pid for handle in handles] == [777]
    assert handles[0].terminated == 1
    assert not profile.pid_file_path.exists()


@pytest.mark.asyncio
async def test_sweep_and_orchestrator_race_leave_pool_consistent(tmp_path: Path) -> None:
    clock = FakeClock()
    pool = make_pool(tmp_path, size=1, clock=clock, close_grace_seconds=0.01)
    profile = await pool.acquire("dash")
    lease = profile.lease
    clock.advance(1000)

    sweep = asyncio.create_task(pool.force_close_older_than(900))
    await asyncio.sleep(0)
    await pool.release(profile, lease=lease)
    reacquired = await pool.acquire("dash")
    result = await sweep

    assert reacquired is profile
    assert reacquired.lease != lease
    assert result.closed == 0
    assert reacquired.in_use
    assert pool.in_use_count == 1
    assert pool.available_count == 0


@pytest.mark.asyncio
async def test_age_sweep_loop_stops_on_event(tmp_path: Path) -> None:
    clock = FakeClock()
    pool = make_pool(tmp_path, clock=clock)
    profile = await pool.acquire("dash")
    clock.advance(1000)
    stop = asyncio.Event()

    task = asyncio.create_task(pool.run_age_sweep(interval_seconds=0.01, max_age_seconds=900, stop_event=stop))
    for _ in range(20):
        await asyncio.sleep(0.01)
        if not profile.in_use:
            break
    stop.set()
    await asyncio.wait_for(task, timeout=1)

    assert not profile.in_use


def test_template_requires_slot_placeholder(tmp_path: Path) -> None:
    with pytest.raises(ValueError):
        ProfilePool(3, str(tmp_path / "profile"))


@pytest.mark.asyncio
async def test_terminate_process_kills_bound_process_and_evicts(tmp_path: Path) -> None:
    pool = make_pool(tmp_path, size=1)
    profile = await pool.acquire("dash")
    handle = FakeHandle()
    await pool.bind(profile, lease=profile.lease, process=handle)
    profile.pid_file_path.parent.mkdir(parents=True)
    profile.pid_file_path.write_text("4242")

    assert await pool.terminate_process(profile, lease=profile.lease) is True

    assert handle.terminated == 1
    assert not profile.pid_file_path.exists()
    assert pool.available_count == 1
