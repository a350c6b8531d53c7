"""Durable at-most-once record of orders that have already been actioned.

Two plain files back the ledger:

* ``acted_orders.json`` – a JSON array of order ids, rewritten atomically on
  every successful action and read in full at startup.
* ``acted_orders.log`` – one ``timestamp | orderId | displayTimeText | status | reason``
  line per action, append-only.

Both are flushed and fsynced before :meth:`ActionLedger.record` returns.
"""
from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Set

from delivery_watch.monitor.errors import PersistenceFailure
from delivery_watch.monitor.models import LedgerEntry

LEDGER_FILENAME = "acted_orders.json"
AUDIT_FILENAME = "acted_orders.log"


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ActionLedger:
    def __init__(
        self,
        directory: Path,
        *,
        clock: Callable[[], datetime] = _utc_now,
    ) -> None:
        self.directory = Path(directory)
        self.ledger_path = self.directory / LEDGER_FILENAME
        self.audit_path = self.directory / AUDIT_FILENAME
        self._clock = clock
        self._order_ids: List[str] = []
        self._known: Set[str] = set()
        self._working_set: Set[str] = set()

    def load(self) -> int:
        """Read the durable ledger back into memory; returns the number of ids loaded."""

        self._order_ids = []
        self._known = set()
        if not self.ledger_path.exists():
            return 0
        try:
            payload = json.loads(self.ledger_path.read_text(encoding="utf-8") or "[]")
        except (OSError, json.JSONDecodeError) as exc:
            raise PersistenceFailure(f"cannot read ledger {self.ledger_path}: {exc}") from exc
        if not isinstance(payload, list):
            raise PersistenceFailure(f"ledger {self.ledger_path} is not a JSON array")
        for item in payload:
            order_id = str(item)
            if order_id not in self._known:
                self._known.add(order_id)
                self._order_ids.append(order_id)
        return len(self._order_ids)

    def __len__(self) -> int:
        return len(self._order_ids)

    def __contains__(self, order_id: object) -> bool:
        return isinstance(order_id, str) and self.has(order_id)

    def has(self, order_id: str) -> bool:
        return order_id in self._known or order_id in self._working_set

    def begin_cycle(self) -> None:
        self._working_set.clear()

    def mark_in_cycle(self, order_id: str) -> None:
        self._working_set.add(order_id)

    def record(self, order_id: str, display_time_text: str, status: str | None, reason: str) -> LedgerEntry:
        entry = LedgerEntry(
            order_id=order_id,
            actioned_at=self._clock(),
            display_time_text=display_time_text,
            raw_status=status or "Unknown",
            reason=reason,
        )
        self._working_set.add(order_id)
        if order_id in self._known:
            return entry

        try:
            self.directory.mkdir(parents=True, exist_ok=True)
            self._write_ids([*self._order_ids, order_id])
            self._append_audit(entry)
        except OSError as exc:
            # Keep the id in memory so this process never repeats the action.
            self._remember(order_id)
            raise PersistenceFailure(f"cannot persist ledger entry for {order_id}: {exc}") from exc
        self._remember(order_id)
        return entry

    def _remember(self, order_id: str) -> None:
        if order_id not in self._known:
            self._known.add(order_id)
            self._order_ids.append(order_id)

    def _write_ids(self, order_ids: List[str]) -> None:
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=".acted_orders.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(order_ids, handle, indent=2)
                handle.write("\n")
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, self.ledger_path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def _append_audit(self, entry: LedgerEntry) -> None:
        with open(self.audit_path, "a", encoding="utf-8") as handle:
            handle.write(entry.audit_line() + "\n")
            handle.flush()
            os.fsync(handle.fileno())
