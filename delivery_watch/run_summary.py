from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Mapping

import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

from delivery_watch.common.db import get_engine, session_scope
from delivery_watch.monitor.models import CycleSummary

metadata = sa.MetaData()

_JSON = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")

cycle_run_summaries = sa.Table(
    "cycle_run_summaries",
    metadata,
    sa.Column("id", sa.BigInteger().with_variant(sa.Integer(), "sqlite"), primary_key=True, autoincrement=True),
    sa.Column("cycle_id", sa.String(length=64), nullable=False, unique=True),
    sa.Column("target", sa.String(length=255), nullable=False),
    sa.Column("run_env", sa.String(length=32)),
    sa.Column("started_at", sa.DateTime(timezone=True)),
    sa.Column("finished_at", sa.DateTime(timezone=True)),
    sa.Column("total_time_taken", sa.String(length=8)),
    sa.Column("outcome", sa.String(length=32)),
    sa.Column("overall_status", sa.String(length=32)),
    sa.Column("detected", sa.Integer()),
    sa.Column("eligible", sa.Integer()),
    sa.Column("acted", sa.Integer()),
    sa.Column("failed", sa.Integer()),
    sa.Column("skipped_already_actioned", sa.Integer()),
    sa.Column("phases_json", _JSON),
    sa.Column("metrics_json", _JSON),
    sa.Column("created_at", sa.DateTime(timezone=True), server_default=sa.func.now()),
)


def _format_duration(seconds: int) -> str:
    seconds = max(0, seconds)
    hh = seconds // 3600
    mm = (seconds % 3600) // 60
    ss = seconds % 60
    return f"{hh:02d}:{mm:02d}:{ss:02d}"


def build_record(summary: CycleSummary, *, run_env: str) -> Dict[str, Any]:
    finished_at = summary.finished_at or datetime.now(timezone.utc)
    return {
        "cycle_id": summary.cycle_id,
        "target": summary.target,
        "run_env": run_env,
        "started_at": summary.started_at,
        "finished_at": finished_at,
        "total_time_taken": _format_duration(int((finished_at - summary.started_at).total_seconds())),
        "outcome": summary.outcome,
        "overall_status": summary.overall_status,
        "detected": summary.detected,
        "eligible": summary.eligible,
        "acted": summary.acted,
        "failed": summary.failed,
        "skipped_already_actioned": summary.skipped_already_actioned,
        "phases_json": {phase: dict(counts) for phase, counts in summary.phase_status.items()},
        "metrics_json": {"acted_orders": list(summary.acted_orders), "notes": list(summary.notes)},
    }


async def create_tables(database_url: str) -> None:
    async with get_engine(database_url).begin() as connection:
        await connection.run_sync(metadata.create_all)


async def insert_cycle_summary(database_url: str, record: Mapping[str, Any]) -> None:
    async with session_scope(database_url) as session:
        await session.execute(sa.insert(cycle_run_summaries).values(**record))
        await session.commit()


async def fetch_summary_for_cycle(database_url: str, cycle_id: str) -> Mapping[str, Any] | None:
    async with session_scope(database_url) as session:
        result = await session.execute(
            sa.select(cycle_run_summaries).where(cycle_run_summaries.c.cycle_id == cycle_id).limit(1)
        )
        return result.mappings().first()


def summary_store(database_url: str, *, run_env: str):
    """Build the orchestrator's ``summary_store`` callback for ``database_url``."""

    async def _store(summary: CycleSummary) -> None:
        await insert_cycle_summary(database_url, build_record(summary, run_env=run_env))

    return _store
