from __future__ import annotations

import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable

from delivery_watch.common.json_logger import JsonLogger, log_event
from delivery_watch.monitor.models import DetectedOrder

SEPARATOR = "=" * 80
FILENAME_PREFIX = "detected_orders_"


class DetectionLog:
    """Human-readable trail of every order seen by every cycle of this process."""

    def __init__(self, directory: Path, *, started_at: datetime | None = None) -> None:
        self.directory = Path(directory)
        stamp = (started_at or datetime.now()).strftime("%Y-%m-%d_%H-%M-%S")
        self.path = self.directory / f"{FILENAME_PREFIX}{stamp}.log"

    def open(self) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        if not self.path.exists():
            self.path.write_text(
                f"# Detection session started: {datetime.now(timezone.utc).isoformat()}\n",
                encoding="utf-8",
            )
        return self.path

    def write_cycle(self, orders: Iterable[DetectedOrder]) -> None:
        orders = list(orders)
        timestamp = datetime.now(timezone.utc).isoformat()
        lines = [
            "",
            SEPARATOR,
            f"# Total orders detected: {len(orders)} | Timestamp: {timestamp}",
            SEPARATOR,
        ]
        for order in orders:
            lines.append(
                f"{timestamp} | {order.external_id} | {order.display_time_text} | {order.raw_status or 'N/A'}"
            )
        self.open()
        with open(self.path, "a", encoding="utf-8") as handle:
            handle.write("\n".join(lines) + "\n")


def prune_detection_logs(directory: Path, *, retention_days: int, logger: JsonLogger) -> int:
    """Delete detection logs older than ``retention_days``; ``0`` keeps everything."""

    directory = Path(directory)
    if retention_days <= 0 or not directory.exists():
        return 0
    cutoff = time.time() - retention_days * 86_400
    removed = 0
    for path in directory.glob(f"{FILENAME_PREFIX}*.log"):
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        except FileNotFoundError:
            continue
    log_event(
        logger=logger,
        phase="cleanup",
        message="pruned old detection logs",
        directory=str(directory),
        removed=removed,
        retention_days=retention_days,
    )
    return removed
