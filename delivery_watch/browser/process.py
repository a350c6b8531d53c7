"""Process handles bound to pool profiles.

All operations are idempotent: signalling or waiting on a process that has
already exited, or that this user may not signal, is a no-op rather than an
error.
"""
from __future__ import annotations

from pathlib import Path
from typing import Iterable, Protocol, runtime_checkable

import psutil


@runtime_checkable
class ProcessHandle(Protocol):
    pid: int | None

    def is_alive(self) -> bool: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...

    def wait_exit(self, timeout: float) -> bool: ...


class PsutilProcessHandle:
    def __init__(self, pid: int) -> None:
        self.pid = pid
        self._process: psutil.Process | None
        try:
            self._process = psutil.Process(pid)
        except psutil.Error:
            self._process = None

    def __repr__(self) -> str:
        return f"PsutilProcessHandle(pid={self.pid})"

    def is_alive(self) -> bool:
        if self._process is None:
            return False
        try:
            return self._process.is_running() and self._process.status() != psutil.STATUS_ZOMBIE
        except psutil.NoSuchProcess:
            return False
        except psutil.AccessDenied:
            # Exists but owned by someone else.
            return True
        except psutil.Error:
            return False

    def terminate(self) -> None:
        if self._process is None:
            return
        try:
            self._process.terminate()
        except psutil.Error:
            return

    def kill(self) -> None:
        if self._process is None:
            return
        try:
            self._process.kill()
        except psutil.Error:
            return

    def wait_exit(self, timeout: float) -> bool:
        if self._process is None:
            return True
        try:
            self._process.wait(timeout=timeout)
        except psutil.NoSuchProcess:
            return True
        except psutil.TimeoutExpired:
            return not self.is_alive()
        except psutil.Error:
            return not self.is_alive()
        return True


def read_pid_file(path: Path) -> int | None:
    try:
        raw = Path(path).read_text(encoding="utf-8").strip()
    except (FileNotFoundError, NotADirectoryError):
        return None
    try:
        return int(raw)
    except ValueError:
        return None


def write_pid_file(path: Path, pid: int) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(f"{pid}", encoding="utf-8")


def is_profile_browser(cmdline: Iterable[str], session_path: Path) -> bool:
    """True for the Chromium main process (not a ``--type=`` helper) rooted at ``session_path``."""

    args = list(cmdline)
    needle = f"--user-data-dir={Path(session_path)}"
    return needle in args and not any(arg.startswith("--type=") for arg in args)


def process_uses_profile(pid: int, session_path: Path) -> bool:
    try:
        cmdline = psutil.Process(pid).cmdline()
    except psutil.Error:
        return False
    return is_profile_browser(cmdline, session_path)


def handle_from_pid_file(path: Path) -> PsutilProcessHandle | None:
    """Handle for the browser recorded in ``path``.

    The pid file sits inside the profile directory; a recorded pid whose
    command line does not use that directory belongs to an unrelated process
    (the pid was reused) and yields ``None``.
    """

    pid = read_pid_file(path)
    if pid is None:
        return None
    if not process_uses_profile(pid, Path(path).parent):
        return None
    return PsutilProcessHandle(pid)


def find_browser_pid(session_path: Path) -> int | None:
    """Return the pid of the Chromium main process using ``session_path`` as its profile."""

    try:
        candidates = psutil.Process().children(recursive=True)
    except psutil.Error:
        return None
    for child in candidates:
        try:
            cmdline = child.cmdline()
        except psutil.Error:
            continue
        if is_profile_browser(cmdline, session_path):
            return child.pid
    return None
