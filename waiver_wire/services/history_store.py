"""
Execution history for pipeline runs.

SqliteHistoryStore persists runs across restarts; InMemoryHistoryStore is
used for dry runs and tests. Both keep newest runs first.
"""

import json
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, List, Optional, Protocol

import aiosqlite

from waiver_wire.models.execution import PipelineRun, RunOutcome


class HistoryStore(Protocol):
    async def record(self, run: PipelineRun) -> None:
        ...

    async def list(self, limit: int = 10) -> List[PipelineRun]:
        ...

    async def cleanup(self, retention_days: int = 30) -> int:
        ...


def summarize_runs(runs: List[PipelineRun]) -> Dict[str, Any]:
    """Success rate and average duration over the given runs."""
    total = len(runs)
    completed = [r for r in runs if r.outcome == RunOutcome.COMPLETED]
    return {
        'total_runs': total,
        'successful_runs': len(completed),
        'failed_runs': sum(1 for r in runs if r.outcome == RunOutcome.FAILED),
        'stopped_runs': sum(1 for r in runs if r.outcome == RunOutcome.STOPPED_BY_USER),
        'success_rate': round(len(completed) / total * 100, 1) if total else 0.0,
        'average_duration_seconds': (
            round(sum(r.duration_seconds for r in runs) / total, 1) if total else 0.0
        ),
        'last_run_at': runs[0].started_at if runs else None,
    }


class InMemoryHistoryStore:

    def __init__(self, max_runs: int = 100):
        self.max_runs = max_runs
        self._runs: List[PipelineRun] = []

    async def record(self, run: PipelineRun) -> None:
        self._runs.insert(0, run)
        del self._runs[self.max_runs:]

    async def list(self, limit: int = 10) -> List[PipelineRun]:
        return list(self._runs[:limit])

    async def cleanup(self, retention_days: int = 30) -> int:
        cutoff = datetime.now() - timedelta(days=retention_days)
        kept = [r for r in self._runs if r.started_at >= cutoff]
        removed = len(self._runs) - len(kept)
        self._runs = kept
        return removed


class SqliteHistoryStore:
    """
    SQLite-backed run history.

    Call `await initialize_db()` once before use.
    """

    def __init__(self, db_path: str = "data/history.db"):
        self.db_path = db_path
        self.logger = logging.getLogger(__name__)

    async def initialize_db(self) -> None:
        Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                CREATE TABLE IF NOT EXISTS pipeline_runs (
                    run_id TEXT PRIMARY KEY,
                    trigger TEXT,
                    started_at TEXT NOT NULL,
                    ended_at TEXT,
                    outcome TEXT,
                    payload_json TEXT NOT NULL
                );
                """
            )
            await db.execute(
                "CREATE INDEX IF NOT EXISTS idx_runs_started ON pipeline_runs(started_at);"
            )
            await db.commit()

    async def record(self, run: PipelineRun) -> None:
        payload = run.to_dict()
        async with aiosqlite.connect(self.db_path) as db:
            await db.execute(
                """
                INSERT OR REPLACE INTO pipeline_runs
                    (run_id, trigger, started_at, ended_at, outcome, payload_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    run.run_id,
                    run.trigger,
                    payload['started_at'],
                    payload['ended_at'],
                    payload['outcome'],
                    json.dumps(payload),
                ),
            )
            await db.commit()
        self.logger.debug(f"Recorded run {run.run_id} ({payload['outcome']})")

    async def list(self, limit: int = 10) -> List[PipelineRun]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cur = await db.execute(
                "SELECT payload_json FROM pipeline_runs ORDER BY started_at DESC LIMIT ?",
                (limit,),
            )
            rows = await cur.fetchall()
        return [PipelineRun.from_dict(json.loads(row["payload_json"])) for row in rows]

    async def get(self, run_id: str) -> Optional[PipelineRun]:
        async with aiosqlite.connect(self.db_path) as db:
            db.row_factory = aiosqlite.Row
            cur = await db.execute(
                "SELECT payload_json FROM pipeline_runs WHERE run_id = ?", (run_id,)
            )
            row = await cur.fetchone()
        return PipelineRun.from_dict(json.loads(row["payload_json"])) if row else None

    async def cleanup(self, retention_days: int = 30) -> int:
        cutoff = (datetime.now() - timedelta(days=retention_days)).isoformat()
        async with aiosqlite.connect(self.db_path) as db:
            cur = await db.execute("DELETE FROM pipeline_runs WHERE started_at < ?", (cutoff,))
            await db.commit()
            removed = cur.rowcount
        if removed:
            self.logger.info(f"🧹 Removed {removed} runs older than {retention_days} days")
        return removed
