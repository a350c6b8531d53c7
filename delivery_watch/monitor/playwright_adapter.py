"""Playwright implementation of the page adapter for the delivery dashboard."""
from __future__ import annotations

import re
from typing import Any, Dict, List, Optional

from playwright.async_api import Page, async_playwright
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from delivery_watch.browser.launcher import ProfileSession, launch_profile_session
from delivery_watch.browser.pool import Profile, ProfilePool
from delivery_watch.common.json_logger import JsonLogger, log_event
from delivery_watch.monitor import page_selectors as selectors
from delivery_watch.monitor.adapter import PageAdapter
from delivery_watch.monitor.models import ActionType, RawOrder

NAV_TIMEOUT_MS = 30_000
BUTTON_TIMEOUT_MS = 10_000
SETTLE_MS = 1_000

# Walks the "Today" section only; cards under "Upcoming" belong to later days.
_DETECT_SCRIPT = """
(sel) => {
  const headings = Array.from(document.querySelectorAll('h2'));
  const today = headings.find(h => (h.textContent || '').trim() === sel.today);
  if (!today) return [];
  const upcoming = headings.find(h => (h.textContent || '').trim() === sel.upcoming);
  let section = today.parentElement;
  while (section && section !== document.body && section.firstElementChild !== today) {
    section = section.parentElement;
  }
  const scope = section && section.parentElement ? section.parentElement : document.body;
  const ticketRe = new RegExp(sel.ticketPattern);
  const out = [];
  for (const span of Array.from(scope.querySelectorAll(sel.time))) {
    if (upcoming && upcoming.parentElement && upcoming.parentElement.contains(span)) continue;
    const timeText = (span.textContent || '').trim();
    let card = span.parentElement;
    let ticket = '';
    while (card && card !== document.body) {
      const ticketDiv = card.querySelector(sel.ticket);
      if (ticketDiv) { ticket = (ticketDiv.textContent || '').trim(); break; }
      card = card.parentElement;
    }
    if (!ticket && card) {
      const match = (card.textContent || '').match(ticketRe);
      if (match) ticket = match[0];
    }
    if (!ticket) continue;
    let status = null;
    if (card) {
      const statusBox = card.querySelector(sel.statusContainer) || card;
      const chip = statusBox.querySelector(sel.chip);
      if (chip) status = (chip.textContent || '').trim();
    }
    out.push({id: ticket, timeText: timeText, status: status});
  }
  return out;
}
"""

_STATUS_SCRIPT = """
([sel, orderId]) => {
  for (const card of Array.from(document.querySelectorAll(sel.card))) {
    const ticket = card.querySelector(sel.ticket);
    if (!ticket || (ticket.textContent || '').trim() !== orderId) continue;
    const statusBox = card.querySelector(sel.statusContainer) || card;
    const chip = statusBox.querySelector(sel.chip);
    return chip ? (chip.textContent || '').trim() : null;
  }
  return null;
}
"""

_SELECTOR_ARGS: Dict[str, str] = {
    "today": selectors.TODAY_HEADING,
    "upcoming": selectors.UPCOMING_HEADING,
    "time": selectors.ORDER_TIME,
    "ticket": selectors.ORDER_TICKET,
    "card": selectors.ORDER_CARD,
    "statusContainer": selectors.ORDER_STATUS_CONTAINER,
    "chip": selectors.STATUS_CHIP,
    "ticketPattern": selectors.TICKET_PATTERN,
}


class PlaywrightPageAdapter:
    def __init__(self, session: ProfileSession, *, dashboard_url: str, logger: JsonLogger) -> None:
        self.session = session
        self.dashboard_url = dashboard_url
        self.logger = logger

    @property
    def page(self) -> Page:
        return self.session.page

    async def reload(self) -> None:
        await self.page.reload(wait_until="domcontentloaded", timeout=NAV_TIMEOUT_MS)
        await self.page.wait_for_timeout(SETTLE_MS)

    async def _body_text(self) -> str:
        text = await self.page.evaluate("() => document.body ? document.body.innerText : ''")
        return (text or "").lower()

    async def is_empty_state(self) -> bool:
        return selectors.EMPTY_STATE_TEXT in await self._body_text()

    async def is_auth_expired(self) -> bool:
        if await self.page.locator(selectors.EXPIRED_LINK_HEADING).count():
            return True
        return selectors.EXPIRED_LINK_TEXT in await self._body_text()

    async def submit_reauth(self, secret: str) -> bool:
        field = self.page.locator(selectors.REAUTH_PHONE_INPUT).first
        try:
            await field.wait_for(state="visible", timeout=BUTTON_TIMEOUT_MS)
        except PlaywrightTimeoutError:
            log_event(
                logger=self.logger,
                phase="check_auth_expired",
                status="warn",
                message="link request form not found",
            )
            return False
        await field.click()
        await field.press_sequentially(secret, delay=50)
        submit = self.page.locator(selectors.REAUTH_SUBMIT).first
        if await submit.count():
            await submit.click()
        else:
            await field.press("Enter")
        log_event(logger=self.logger, phase="check_auth_expired", message="requested a new dashboard link")
        return True

    async def navigate_to_list_view(self) -> bool:
        if selectors.LIST_VIEW_URL_FRAGMENT in self.page.url:
            return True
        link = self.page.locator(selectors.DELIVERIES_LINK).first
        if await link.count():
            await link.click()
        else:
            await self.page.goto(self.dashboard_url, wait_until="domcontentloaded", timeout=NAV_TIMEOUT_MS)
        try:
            await self.page.wait_for_url(
                re.compile(re.escape(selectors.LIST_VIEW_URL_FRAGMENT)), timeout=NAV_TIMEOUT_MS
            )
        except PlaywrightTimeoutError:
            return False
        return selectors.LIST_VIEW_URL_FRAGMENT in self.page.url

    async def detect_open_orders(self) -> List[RawOrder]:
        items: List[Dict[str, Any]] = await self.page.evaluate(_DETECT_SCRIPT, _SELECTOR_ARGS) or []
        orders: List[RawOrder] = []
        seen = set()
        for item in items:
            order_id = (item.get("id") or "").strip()
            if not order_id or order_id in seen:
                continue
            seen.add(order_id)
            orders.append(
                RawOrder(
                    id=order_id,
                    display_time_text=(item.get("timeText") or "").strip(),
                    raw_status=item.get("status") or None,
                )
            )
        return orders

    async def get_status(self, order_id: str) -> Optional[str]:
        return await self.page.evaluate(_STATUS_SCRIPT, [_SELECTOR_ARGS, order_id])

    async def _click_button(self, text: str, *, required: bool) -> bool:
        if text == selectors.ON_MY_WAY_TEXT:
            button = self.page.locator(selectors.ON_MY_WAY_CONTAINER_BUTTON, has_text=text).first
        else:
            button = self.page.get_by_role("button", name=text, exact=True).first
        try:
            await button.wait_for(state="visible", timeout=BUTTON_TIMEOUT_MS)
        except PlaywrightTimeoutError:
            if required:
                log_event(
                    logger=self.logger,
                    phase="act",
                    status="warn",
                    message="action button not found",
                    button=text,
                )
            return False
        await button.click()
        await self.page.wait_for_timeout(SETTLE_MS)
        return True

    async def perform_action(self, order_id: str, action_type: ActionType) -> bool:
        card = self.page.locator(selectors.ORDER_CARD).filter(
            has=self.page.locator(selectors.ORDER_TICKET, has_text=order_id)
        ).first
        if not await card.count():
            log_event(logger=self.logger, phase="act", status="warn", message="order card not found", order_id=order_id)
            return False
        await card.click()
        try:
            await self.page.get_by_text(order_id).first.wait_for(timeout=BUTTON_TIMEOUT_MS)
        except PlaywrightTimeoutError:
            return False

        on_my_way = await self._click_button(
            selectors.ON_MY_WAY_TEXT, required=action_type is ActionType.PARTIAL_ADVANCE
        )
        if action_type is ActionType.PARTIAL_ADVANCE:
            completed = on_my_way
        else:
            # An en-route order has already passed the first step.
            completed = await self._click_button(selectors.DELIVERY_DONE_TEXT, required=True)
            if completed:
                await self._click_button(selectors.CONFIRM_TEXT, required=False)

        await self.navigate_to_list_view()
        return completed

    async def close(self) -> None:
        await self.session.close()


class PlaywrightSessions:
    """Session factory for the orchestrator; starts Playwright on first use."""

    def __init__(
        self,
        *,
        pool: ProfilePool,
        dashboard_url: str,
        logger: JsonLogger,
        executable_path: Optional[str] = None,
        headless: bool = True,
    ) -> None:
        self.pool = pool
        self.dashboard_url = dashboard_url
        self.logger = logger
        self.executable_path = executable_path
        self.headless = headless
        self._playwright: Any = None

    async def __call__(self, profile: Profile, lease: int) -> PageAdapter:
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        session = await launch_profile_session(
            playwright=self._playwright,
            pool=self.pool,
            profile=profile,
            lease=lease,
            url=self.dashboard_url,
            logger=self.logger,
            executable_path=self.executable_path,
            headless=self.headless,
        )
        return PlaywrightPageAdapter(session, dashboard_url=self.dashboard_url, logger=session.logger)

    async def aclose(self) -> None:
        if self._playwright is not None:
            playwright, self._playwright = self._playwright, None
            await playwright.stop()
