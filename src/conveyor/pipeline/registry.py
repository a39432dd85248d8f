"""Run registry — SQLite persistence for completed pipeline runs.

Key exports:
    RunRegistry — stores each run's node-status tree, captured outputs and
        post-action records keyed by run id (tables pipeline_runs,
        node_runs, post_action_runs).
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

import aiosqlite

from conveyor.pipeline.models import NodeRun, NodeStatus, PostActionResult, PostTrigger, RunResult
from conveyor.pipeline.plan import ExecutionPlan

logger = logging.getLogger("conveyor.pipeline.registry")


class RunRegistry:
    """SQLite-backed audit store for pipeline runs.

    Takes an already-open aiosqlite connection. Call `initialize()` to create tables.
    """

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def initialize(self) -> None:
        """Create all registry tables if they don't exist."""
        await self._db.executescript(_SCHEMA_SQL)
        await self._db.commit()
        logger.info("Run registry tables initialized")

    # ── Runs ─────────────────────────────────────────────────────────────────

    async def save_run(self, result: RunResult, plan: ExecutionPlan | None = None) -> None:
        """Insert (or replace) a completed run with its nodes and post-actions."""
        snapshot = plan.model_dump_json() if plan is not None else "{}"
        await self._delete_children(result.run_id)
        await self._db.execute(
            """
            INSERT OR REPLACE INTO pipeline_runs (
                run_id, pipeline_name, status, reason,
                parameters, warnings, plan_snapshot,
                started_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                result.run_id,
                result.pipeline_name,
                result.status.value,
                result.reason,
                json.dumps(result.parameters),
                json.dumps(result.warnings),
                snapshot,
                _dt_to_str(result.started_at),
                _dt_to_str(result.completed_at),
            ),
        )
        await self._db.executemany(
            """
            INSERT INTO node_runs (
                run_id, path, name, kind, status, reason, output,
                timed_out, attempts, agent, failed_leaf,
                started_at, completed_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    result.run_id,
                    node.path,
                    node.name,
                    node.kind,
                    node.status.value,
                    node.reason,
                    node.output,
                    int(node.timed_out),
                    node.attempts,
                    node.agent,
                    node.failed_leaf,
                    _dt_to_str(node.started_at),
                    _dt_to_str(node.completed_at),
                )
                for node in result.nodes.values()
            ],
        )
        await self._db.executemany(
            """
            INSERT INTO post_action_runs (
                run_id, seq, scope, post_trigger, step, status, output, error
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            [
                (
                    result.run_id,
                    seq,
                    post.scope,
                    post.trigger.value,
                    post.step,
                    post.status.value,
                    post.output,
                    post.error,
                )
                for seq, post in enumerate(result.post_actions)
            ],
        )
        await self._db.commit()
        logger.debug("Saved run %s (%d nodes)", result.run_id, len(result.nodes))

    async def get_run(self, run_id: str) -> RunResult | None:
        """Fetch a run with its full node tree and post-action records."""
        cursor = await self._db.execute("SELECT * FROM pipeline_runs WHERE run_id = ?", (run_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        nodes = await self.get_node_runs(run_id)
        posts = await self.get_post_actions(run_id)
        return _row_to_run(row, nodes=nodes, post_actions=posts)

    async def get_plan_snapshot(self, run_id: str) -> dict[str, Any] | None:
        """The compiled plan the run executed, as stored at save time."""
        cursor = await self._db.execute(
            "SELECT plan_snapshot FROM pipeline_runs WHERE run_id = ?", (run_id,)
        )
        row = await cursor.fetchone()
        if not row:
            return None
        return json.loads(row["plan_snapshot"] or "{}")

    async def get_node_runs(self, run_id: str) -> list[NodeRun]:
        cursor = await self._db.execute(
            "SELECT * FROM node_runs WHERE run_id = ? ORDER BY id", (run_id,)
        )
        rows = await cursor.fetchall()
        return [_row_to_node_run(r) for r in rows]

    async def get_post_actions(self, run_id: str) -> list[PostActionResult]:
        cursor = await self._db.execute(
            "SELECT * FROM post_action_runs WHERE run_id = ? ORDER BY seq", (run_id,)
        )
        rows = await cursor.fetchall()
        return [_row_to_post_action(r) for r in rows]

    async def list_runs(
        self,
        *,
        pipeline_name: str | None = None,
        status: NodeStatus | None = None,
        limit: int = 50,
    ) -> list[RunResult]:
        """Recent runs, newest first. Node trees are not loaded."""
        clauses: list[str] = []
        args: list[Any] = []
        if pipeline_name:
            clauses.append("pipeline_name = ?")
            args.append(pipeline_name)
        if status:
            clauses.append("status = ?")
            args.append(status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        cursor = await self._db.execute(
            f"SELECT * FROM pipeline_runs {where} ORDER BY started_at DESC, run_id LIMIT ?",
            (*args, limit),
        )
        rows = await cursor.fetchall()
        return [_row_to_run(r) for r in rows]

    async def delete_run(self, run_id: str) -> None:
        """Delete a run and all of its node and post-action records."""
        await self._delete_children(run_id)
        await self._db.execute("DELETE FROM pipeline_runs WHERE run_id = ?", (run_id,))
        await self._db.commit()

    async def _delete_children(self, run_id: str) -> None:
        await self._db.execute("DELETE FROM node_runs WHERE run_id = ?", (run_id,))
        await self._db.execute("DELETE FROM post_action_runs WHERE run_id = ?", (run_id,))


# ── SQL Schema ───────────────────────────────────────────────────────────────

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS pipeline_runs (
    run_id TEXT PRIMARY KEY,
    pipeline_name TEXT NOT NULL,
    status TEXT NOT NULL,
    reason TEXT,

    parameters TEXT DEFAULT '{}',
    warnings TEXT DEFAULT '[]',
    plan_snapshot TEXT NOT NULL DEFAULT '{}',

    created_at TEXT DEFAULT CURRENT_TIMESTAMP,
    started_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_pipeline_runs_name
    ON pipeline_runs(pipeline_name, status);

CREATE TABLE IF NOT EXISTS node_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES pipeline_runs(run_id) ON DELETE CASCADE,
    path TEXT NOT NULL,
    name TEXT NOT NULL,
    kind TEXT NOT NULL,

    status TEXT NOT NULL,
    reason TEXT,
    output TEXT DEFAULT '',
    timed_out INTEGER DEFAULT 0,
    attempts INTEGER DEFAULT 0,
    agent TEXT,
    failed_leaf TEXT,

    started_at TEXT,
    completed_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_node_runs_run
    ON node_runs(run_id);

CREATE TABLE IF NOT EXISTS post_action_runs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    run_id TEXT NOT NULL REFERENCES pipeline_runs(run_id) ON DELETE CASCADE,
    seq INTEGER NOT NULL,
    scope TEXT NOT NULL,
    post_trigger TEXT NOT NULL,
    step TEXT NOT NULL,
    status TEXT NOT NULL,
    output TEXT DEFAULT '',
    error TEXT
);

CREATE INDEX IF NOT EXISTS idx_post_action_runs_run
    ON post_action_runs(run_id);
"""


# ── Row-to-Model Converters ─────────────────────────────────────────────────


def _dt_to_str(dt: datetime | None) -> str | None:
    """Convert datetime to ISO string for SQLite storage."""
    if dt is None:
        return None
    return dt.isoformat()


def _str_to_dt(s: str | None) -> datetime | None:
    """Parse ISO string from SQLite back to datetime."""
    if not s:
        return None
    try:
        return datetime.fromisoformat(s)
    except (ValueError, TypeError):
        return None


def _row_to_run(
    row: aiosqlite.Row,
    *,
    nodes: list[NodeRun] | None = None,
    post_actions: list[PostActionResult] | None = None,
) -> RunResult:
    return RunResult(
        run_id=row["run_id"],
        pipeline_name=row["pipeline_name"],
        status=NodeStatus(row["status"]),
        reason=row["reason"],
        parameters=json.loads(row["parameters"] or "{}"),
        warnings=json.loads(row["warnings"] or "[]"),
        nodes={n.path: n for n in nodes or []},
        post_actions=post_actions or [],
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
    )


def _row_to_node_run(row: aiosqlite.Row) -> NodeRun:
    return NodeRun(
        path=row["path"],
        name=row["name"],
        kind=row["kind"],
        status=NodeStatus(row["status"]),
        reason=row["reason"],
        output=row["output"] or "",
        timed_out=bool(row["timed_out"]),
        attempts=row["attempts"] or 0,
        agent=row["agent"],
        failed_leaf=row["failed_leaf"],
        started_at=_str_to_dt(row["started_at"]),
        completed_at=_str_to_dt(row["completed_at"]),
    )


def _row_to_post_action(row: aiosqlite.Row) -> PostActionResult:
    return PostActionResult(
        scope=row["scope"],
        trigger=PostTrigger(row["post_trigger"]),
        step=row["step"],
        status=NodeStatus(row["status"]),
        output=row["output"] or "",
        error=row["error"],
    )
