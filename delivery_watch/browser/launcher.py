from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, Optional

from playwright.async_api import BrowserContext, Page

from delivery_watch.browser.pool import Profile, ProfilePool
from delivery_watch.browser.process import (
    PsutilProcessHandle,
    find_browser_pid,
    handle_from_pid_file,
    read_pid_file,
    write_pid_file,
)
from delivery_watch.common.json_logger import JsonLogger, log_event
from delivery_watch.monitor.errors import NavigationFailure, ProcessLivenessFailure

NAVIGATION_TIMEOUT_MS = 30_000


class ProfileSession:
    """A live persistent browser context bound to one leased profile."""

    def __init__(
        self,
        *,
        profile: Profile,
        lease: int,
        context: BrowserContext,
        page: Page,
        logger: JsonLogger,
    ) -> None:
        self.profile = profile
        self.lease = lease
        self.context = context
        self.page = page
        self.logger = logger
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            await self.context.close()
        except Exception as exc:
            log_event(
                logger=self.logger,
                phase="session",
                status="warn",
                message="browser context close raised; treating as closed",
                slot_id=self.profile.slot_id,
                error=str(exc),
            )
        else:
            log_event(logger=self.logger, phase="session", message="browser context closed", slot_id=self.profile.slot_id)


def _clear_stale_pid_file(profile: Profile, logger: JsonLogger) -> None:
    pid_file = profile.pid_file_path
    if pid_file is None:
        return
    pid = read_pid_file(pid_file)
    if pid is None:
        pid_file.unlink(missing_ok=True)
        return
    handle = handle_from_pid_file(pid_file)
    if handle is not None and handle.is_alive():
        raise ProcessLivenessFailure(
            pid, f"profile slot {profile.slot_id} is still owned by live process {pid}"
        )
    log_event(
        logger=logger,
        phase="session",
        status="warn",
        message="removing stale pid file; recorded browser is gone",
        slot_id=profile.slot_id,
        pid=pid,
    )
    pid_file.unlink(missing_ok=True)


async def _launch_context(
    *,
    playwright: Any,
    session_path: Path,
    executable_path: Optional[str],
    headless: bool,
    logger: JsonLogger,
) -> BrowserContext:
    chrome_exec = (executable_path or "").strip() or None
    launch_kwargs: Dict[str, Any] = {
        "headless": headless,
        "viewport": {"width": 1280, "height": 900},
        "args": ["--no-first-run", "--no-default-browser-check"],
    }
    if chrome_exec and Path(chrome_exec).is_file():
        launch_kwargs["executable_path"] = chrome_exec
        log_event(
            logger=logger,
            phase="session",
            message="Launching persistent context with local Chrome executable",
            executable_path=chrome_exec,
            headless=headless,
        )
    elif chrome_exec:
        log_event(
            logger=logger,
            phase="session",
            status="warn",
            message="Configured Chrome executable missing; falling back to bundled Chromium",
            executable_path=chrome_exec,
            headless=headless,
        )

    try:
        return await playwright.chromium.launch_persistent_context(str(session_path), **launch_kwargs)
    except Exception as exc:
        if launch_kwargs.pop("executable_path", None) is not None:
            log_event(
                logger=logger,
                phase="session",
                status="warn",
                message="Local Chrome launch failed; retrying with bundled Chromium",
                executable_path=chrome_exec,
                error=str(exc),
            )
            return await playwright.chromium.launch_persistent_context(str(session_path), **launch_kwargs)
        raise


async def launch_profile_session(
    *,
    playwright: Any,
    pool: ProfilePool,
    profile: Profile,
    lease: int,
    url: str,
    logger: JsonLogger,
    executable_path: Optional[str] = None,
    headless: bool = True,
) -> ProfileSession:
    """Open ``profile``'s persistent context, bind its process to the pool and load ``url``."""

    if profile.session_path is None:
        raise ValueError(f"profile slot {profile.slot_id} must be acquired before launch")
    session_logger = logger.bind(slot_id=profile.slot_id)
    _clear_stale_pid_file(profile, session_logger)
    profile.session_path.mkdir(parents=True, exist_ok=True)

    context = await _launch_context(
        playwright=playwright,
        session_path=profile.session_path,
        executable_path=executable_path,
        headless=headless,
        logger=session_logger,
    )
    pages = list(context.pages)
    page = pages[0] if pages else await context.new_page()
    for extra in pages[1:]:
        await extra.close()

    session = ProfileSession(profile=profile, lease=lease, context=context, page=page, logger=session_logger)
    handle = None
    pid = find_browser_pid(profile.session_path)
    if pid is not None and profile.pid_file_path is not None:
        write_pid_file(profile.pid_file_path, pid)
        handle = PsutilProcessHandle(pid)
    else:
        log_event(
            logger=session_logger,
            phase="session",
            status="warn",
            message="could not locate browser process for profile; liveness checks disabled",
        )

    if not await pool.bind(profile, lease=lease, process=handle, close_hook=session.close):
        # The age sweep reclaimed the slot while the browser was starting.
        await session.close()
        raise NavigationFailure(f"profile slot {profile.slot_id} was reclaimed during launch")

    try:
        await page.goto(url, wait_until="domcontentloaded", timeout=NAVIGATION_TIMEOUT_MS)
    except Exception as exc:
        await session.close()
        raise NavigationFailure(f"could not open {url}: {exc}") from exc

    log_event(
        logger=session_logger,
        phase="session",
        message="profile session ready",
        pid=pid,
        url=url,
    )
    return session
