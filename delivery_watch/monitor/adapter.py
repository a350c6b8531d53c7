"""Contract between the orchestrator and whatever drives the dashboard page."""
from __future__ import annotations

from typing import Awaitable, Callable, List, Optional, Protocol

from delivery_watch.browser.pool import Profile
from delivery_watch.monitor.models import ActionType, RawOrder


class PageAdapter(Protocol):
    async def reload(self) -> None: ...

    async def detect_open_orders(self) -> List[RawOrder]: ...

    async def get_status(self, order_id: str) -> Optional[str]: ...

    async def perform_action(self, order_id: str, action_type: ActionType) -> bool: ...

    async def navigate_to_list_view(self) -> bool: ...

    async def is_empty_state(self) -> bool: ...

    async def is_auth_expired(self) -> bool: ...

    async def submit_reauth(self, secret: str) -> bool: ...

    async def close(self) -> None: ...


# Opens a page adapter on a freshly acquired profile; receives the profile and its lease.
SessionFactory = Callable[[Profile, int], Awaitable[PageAdapter]]
