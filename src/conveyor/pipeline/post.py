"""Post-Action Dispatcher — runs ``post`` blocks once a scope's status is fixed.

Matching triggers run in declaration order, with ``cleanup`` last. A failing
post-action is recorded as a :class:`PostActionResult` and never raised, so
it cannot change the status of the scope it belongs to.
"""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Sequence

from conveyor.pipeline.context import ExecutionContext
from conveyor.pipeline.errors import PostActionFailure
from conveyor.pipeline.interfaces import AgentHandle
from conveyor.pipeline.models import NodeStatus, PostActionResult, PostTrigger
from conveyor.pipeline.plan import PostActionPlan, StepPlan

if TYPE_CHECKING:
    from conveyor.pipeline.steps import StepExecutor

logger = logging.getLogger("conveyor.pipeline.post")


class PostActionDispatcher:
    def __init__(self, executor: StepExecutor):
        self._executor = executor

    async def dispatch(
        self,
        post_actions: Sequence[PostActionPlan],
        final_status: NodeStatus,
        context: ExecutionContext,
        *,
        scope: str = "",
        agent: AgentHandle | None = None,
    ) -> list[PostActionResult]:
        """Run every post block whose trigger matches ``final_status``."""
        ordered = [p for p in post_actions if p.trigger != PostTrigger.CLEANUP]
        ordered += [p for p in post_actions if p.trigger == PostTrigger.CLEANUP]

        results: list[PostActionResult] = []
        for block in ordered:
            if not block.trigger.matches(final_status):
                continue
            for step in block.steps:
                results.append(await self._run(step, block.trigger, scope, context, agent))
        return results

    async def _run(
        self,
        step: StepPlan,
        trigger: PostTrigger,
        scope: str,
        context: ExecutionContext,
        agent: AgentHandle | None,
    ) -> PostActionResult:
        result = None
        error: str | None = None
        for attempt in range(1 + step.retry):
            if step.timeout_seconds is not None:
                try:
                    result = await asyncio.wait_for(
                        self._executor.execute(step, context, agent), step.timeout_seconds
                    )
                except asyncio.TimeoutError:
                    result = None
                    error = f"Timed out after {step.timeout_seconds:g}s"
            else:
                result = await self._executor.execute(step, context, agent)
            if result is not None and result.status != NodeStatus.FAILURE:
                break
            if attempt < step.retry:
                logger.info("Retrying post-action '%s' (attempt %d)", step.path, attempt + 2)

        if result is None:
            status, output = NodeStatus.FAILURE, ""
        else:
            status, output = result.status, result.output
            error = result.reason if status != NodeStatus.SUCCESS else None

        if status == NodeStatus.FAILURE:
            failure = PostActionFailure(scope or context.pipeline_name, trigger.value, error or "")
            logger.warning("%s (step '%s')", failure, step.path)
        return PostActionResult(
            scope=scope,
            trigger=trigger,
            step=step.path,
            status=status,
            output=output,
            error=error,
        )
