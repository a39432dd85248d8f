"""Pipeline engine — runs compiled execution plans.

Key exports:
    PipelineEngine — executes an ExecutionPlan and returns a RunResult
    resolve_parameters — validates and coerces invocation parameters

Each node moves ``pending → running → {success, failure, unstable, aborted}``
or straight to ``skipped``; a terminal status is never overwritten. Status
lives in the per-run ExecutionContext, so a plan can be run any number of
times.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Mapping, Sequence

from conveyor.pipeline.conditions import ConditionEvaluator
from conveyor.pipeline.context import CancellationToken, Clock, EnvironmentScope, ExecutionContext, SystemClock
from conveyor.pipeline.errors import CancellationRequested, ParameterError, TimeoutExceeded
from conveyor.pipeline.interfaces import AgentHandle, AgentPool, EnvSecretStore, LocalAgentPool, SecretStore
from conveyor.pipeline.models import (
    ChildMode,
    EnvValue,
    NodeStatus,
    ParameterDefinition,
    ParameterType,
    PostActionResult,
    RunResult,
    SecretRef,
    StepResult,
    worst_status,
)
from conveyor.pipeline.plan import ExecutionPlan, StagePlan, StepPlan
from conveyor.pipeline.post import PostActionDispatcher
from conveyor.pipeline.steps import StepExecutor
from conveyor.redaction import Redactor

logger = logging.getLogger("conveyor.pipeline.engine")

_TRUE_STRINGS = {"true", "1", "yes", "on"}
_FALSE_STRINGS = {"false", "0", "no", "off", ""}


# ── Pipeline Engine ──────────────────────────────────────────────────────────


class PipelineEngine:
    """Runs execution plans against a set of capability implementations.

    Usage::

        engine = PipelineEngine(StepExecutor(), agent_pool=LocalAgentPool())
        result = await engine.run(plan, {"TARGET": "staging"})

    ``max_parallel`` bounds how many leaf steps execute at once across the
    whole run (``None`` means unbounded).
    """

    def __init__(
        self,
        executor: StepExecutor | None = None,
        *,
        agent_pool: AgentPool | None = None,
        secrets: SecretStore | None = None,
        registry: Any = None,
        evaluator: ConditionEvaluator | None = None,
        max_parallel: int | None = None,
        redactor: Redactor | None = None,
    ):
        self.executor = executor or StepExecutor()
        self.agent_pool = agent_pool or LocalAgentPool()
        self.secrets = secrets or EnvSecretStore()
        self.registry = registry
        self.evaluator = evaluator or ConditionEvaluator()
        self.post = PostActionDispatcher(self.executor)
        self.max_parallel = max_parallel
        # Accumulates the secrets resolved by every run of this engine
        self.redactor = redactor or Redactor()
        self._active: dict[str, CancellationToken] = {}

    async def run(
        self,
        plan: ExecutionPlan,
        parameters: Mapping[str, Any] | None = None,
        *,
        environment: Mapping[str, str] | None = None,
        clock: Clock | None = None,
        cancellation: CancellationToken | None = None,
        run_id: str | None = None,
    ) -> RunResult:
        """Execute ``plan`` to completion.

        ``environment`` seeds run-level bindings such as ``BRANCH_NAME`` and
        ``TAG_NAME``. Raises ParameterError before anything runs if
        ``parameters`` do not match the plan's declarations.
        """
        params = resolve_parameters(plan.parameters, parameters or {})
        run_id = run_id or f"run-{uuid.uuid4().hex[:12]}"
        token = cancellation or CancellationToken()

        root = {"RUN_ID": run_id, "PIPELINE_NAME": plan.name}
        root.update({k: str(v) for k, v in (environment or {}).items()})
        context = ExecutionContext(
            run_id=run_id,
            pipeline_name=plan.name,
            parameters=params,
            env=EnvironmentScope([("root", root)]),
            cancellation=token,
            clock=clock or SystemClock(),
            redactor=self.redactor,
        )

        self._active[run_id] = token
        try:
            result = await _Run(self, plan, context).execute()
        finally:
            self._active.pop(run_id, None)

        if self.registry is not None:
            try:
                await self.registry.save_run(result, plan)
            except Exception:
                logger.exception("Failed to persist run %s", run_id)
        return result

    def cancel(self, run_id: str, reason: str = "Cancelled") -> bool:
        """Request cancellation of an in-flight run. Returns False if unknown."""
        token = self._active.get(run_id)
        if token is None:
            return False
        token.cancel(reason)
        return True

    @property
    def active_runs(self) -> list[str]:
        return list(self._active)


# ── Parameters ───────────────────────────────────────────────────────────────


def resolve_parameters(
    declared: Sequence[ParameterDefinition], supplied: Mapping[str, Any]
) -> dict[str, Any]:
    """Apply defaults and coerce supplied values to their declared types."""
    known = {p.name for p in declared}
    unknown = sorted(set(supplied) - known)
    if unknown:
        msg = f"Unknown parameter(s): {', '.join(unknown)}"
        raise ParameterError(msg)

    resolved: dict[str, Any] = {}
    for param in declared:
        value = supplied.get(param.name, param.default)
        resolved[param.name] = _coerce_parameter(param, value)
    return resolved


def _coerce_parameter(param: ParameterDefinition, value: Any) -> Any:
    match param.type:
        case ParameterType.BOOLEAN:
            if value is None or isinstance(value, bool):
                return bool(value)
            text = str(value).strip().lower()
            if text in _TRUE_STRINGS:
                return True
            if text in _FALSE_STRINGS:
                return False
        case ParameterType.INTEGER:
            if value is None:
                msg = f"Parameter '{param.name}' requires a value"
                raise ParameterError(msg)
            if not isinstance(value, bool):
                try:
                    return int(value)
                except (TypeError, ValueError):
                    pass
        case ParameterType.CHOICE:
            if value is None:
                return param.choices[0] if param.choices else ""
            if str(value) in param.choices:
                return str(value)
            msg = f"Parameter '{param.name}' must be one of {param.choices}, got {value!r}"
            raise ParameterError(msg)
        case _:
            return "" if value is None else str(value)
    msg = f"Parameter '{param.name}' expects {param.type.value}, got {value!r}"
    raise ParameterError(msg)


# ── Run execution ────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class _Deadline:
    at: float
    seconds: float
    scope: str


class _Run:
    """State for one engine.run() call."""

    def __init__(self, engine: PipelineEngine, plan: ExecutionPlan, context: ExecutionContext):
        self._engine = engine
        self._plan = plan
        self._context = context
        self._clock = context.clock
        self._token = context.cancellation
        self._post_results: list[PostActionResult] = []
        self._slots = (
            asyncio.Semaphore(engine.max_parallel) if engine.max_parallel else None
        )

    async def execute(self) -> RunResult:
        plan, context = self._plan, self._context
        for node in plan.walk():
            context.register(node.path, node.name, "stage" if isinstance(node, StagePlan) else "step")

        started_at = self._clock.now()
        logger.info("Starting pipeline '%s' run %s", plan.name, context.run_id)

        deadlines: tuple[_Deadline, ...] = ()
        if plan.timeout_seconds is not None:
            deadlines = (self._deadline(plan.timeout_seconds, f"pipeline '{plan.name}'"),)

        reason: str | None = None
        agent: AgentHandle | None = None
        try:
            bindings = await self._resolve_bindings(plan.environment, context)
            for name, value in bindings.items():
                context.env.set(name, value, root=True)
            if plan.agent is not None and not plan.agent.none:
                agent = await self._engine.agent_pool.acquire(plan.agent)
                context.agent = agent
        except Exception as exc:
            logger.exception("Pipeline '%s' setup failed", plan.name)
            reason = f"Pipeline setup failed: {exc}"
            for node in plan.walk():
                self._finish(node.path, NodeStatus.SKIPPED, reason="Pipeline setup failed")
            status = NodeStatus.FAILURE
        else:
            try:
                status = await self._run_sequence(
                    plan.stages, context, deadlines, continue_on_failure=plan.continue_on_failure
                )
                if self._token.cancelled:
                    status = NodeStatus.ABORTED
                reason = self._summarize(plan.stages, status)[0]
                self._post_results += await self._engine.post.dispatch(
                    plan.post, status, context, scope="", agent=agent
                )
            finally:
                if agent is not None:
                    await self._release(agent)

        if self._token.cancelled:
            status = NodeStatus.ABORTED
            reason = _cancelled(self._token)
        if (
            plan.unstable_on_post_failure
            and status == NodeStatus.SUCCESS
            and any(p.status == NodeStatus.FAILURE for p in self._post_results)
        ):
            status = NodeStatus.UNSTABLE
            reason = "Post-action failure"

        result = RunResult(
            run_id=context.run_id,
            pipeline_name=plan.name,
            status=status,
            parameters=dict(context.parameters),
            nodes={path: node.model_copy() for path, node in context.nodes.items()},
            post_actions=self._post_results,
            warnings=list(plan.warnings),
            reason=reason,
            started_at=started_at,
            completed_at=self._clock.now(),
        )
        log = logger.info if status == NodeStatus.SUCCESS else logger.warning
        log("Pipeline '%s' run %s finished: %s", plan.name, context.run_id, status.value)
        return result

    # ── Stages ───────────────────────────────────────────────────────────────

    async def _run_stage(
        self,
        stage: StagePlan,
        context: ExecutionContext,
        deadlines: tuple[_Deadline, ...],
    ) -> NodeStatus:
        if self._token.cancelled:
            self._mark_subtree(stage, NodeStatus.ABORTED, _cancelled(self._token))
            return NodeStatus.ABORTED

        try:
            bindings = await self._resolve_bindings(stage.environment, context)
        except Exception as exc:
            logger.exception("Stage '%s' environment could not be resolved", stage.path)
            context.start(stage.path)
            self._finish(stage.path, NodeStatus.FAILURE, reason=f"Environment resolution failed: {exc}")
            self._mark_subtree(stage, NodeStatus.SKIPPED, "Parent stage failed", include_root=False)
            return NodeStatus.FAILURE

        with context.env.frame(stage.path, bindings):
            if not self._engine.evaluator.evaluate(stage.when, context):
                logger.info("Stage '%s' skipped: condition not met", stage.path)
                self._mark_subtree(stage, NodeStatus.SKIPPED, "Condition not met")
                return NodeStatus.SKIPPED

            previous_agent = context.agent
            agent: AgentHandle | None = None
            try:
                if stage.agent is not None:
                    if stage.agent.none:
                        context.agent = None
                    else:
                        agent = await self._engine.agent_pool.acquire(stage.agent)
                        context.agent = agent
            except Exception as exc:
                logger.exception("Stage '%s' could not acquire agent", stage.path)
                context.start(stage.path)
                self._finish(stage.path, NodeStatus.FAILURE, reason=f"Agent acquisition failed: {exc}")
                self._mark_subtree(stage, NodeStatus.SKIPPED, "Parent stage failed", include_root=False)
                context.agent = previous_agent
                return NodeStatus.FAILURE

            try:
                return await self._run_started_stage(stage, context, deadlines)
            finally:
                context.agent = previous_agent
                if agent is not None:
                    await self._release(agent)

    async def _run_started_stage(
        self,
        stage: StagePlan,
        context: ExecutionContext,
        deadlines: tuple[_Deadline, ...],
    ) -> NodeStatus:
        context.start(stage.path, agent=context.agent.name if context.agent else None)
        logger.info("Stage '%s' started", stage.path)

        stage_deadline = None
        if stage.timeout_seconds is not None:
            stage_deadline = self._deadline(stage.timeout_seconds, f"stage '{stage.path}'")
            deadlines = (*deadlines, stage_deadline)

        if stage.steps:
            status = await self._run_steps(stage, context, deadlines)
        elif stage.mode == ChildMode.PARALLEL:
            status = await self._run_parallel(stage.stages, context, deadlines)
        else:
            status = await self._run_sequence(
                stage.stages, context, deadlines, continue_on_failure=stage.continue_on_failure
            )

        reason, output, failed_leaf = self._summarize(stage.children, status)
        timed_out = (
            status == NodeStatus.FAILURE
            and stage_deadline is not None
            and self._clock.monotonic() >= stage_deadline.at
        )
        self._finish(
            stage.path,
            status,
            reason=reason,
            output=output,
            timed_out=timed_out,
            failed_leaf=failed_leaf,
        )
        log = logger.info if status == NodeStatus.SUCCESS else logger.warning
        log("Stage '%s' finished: %s", stage.path, status.value)

        # Post-actions run in the stage's frame, under its agent.
        self._post_results += await self._engine.post.dispatch(
            stage.post, status, context, scope=stage.path, agent=context.agent
        )
        return status

    async def _run_sequence(
        self,
        stages: Sequence[StagePlan],
        context: ExecutionContext,
        deadlines: tuple[_Deadline, ...],
        *,
        continue_on_failure: bool,
    ) -> NodeStatus:
        statuses: list[NodeStatus] = []
        for i, stage in enumerate(stages):
            status = await self._run_stage(stage, context, deadlines)
            statuses.append(status)
            if self._token.cancelled:
                continue
            if _stops_sequence(status, continue_on_failure):
                for rest in stages[i + 1 :]:
                    self._mark_subtree(rest, NodeStatus.SKIPPED, f"Skipped after '{stage.path}' {status.value}")
                break
        return _aggregate(statuses)

    async def _run_parallel(
        self,
        stages: Sequence[StagePlan],
        context: ExecutionContext,
        deadlines: tuple[_Deadline, ...],
    ) -> NodeStatus:
        # Every branch runs to completion; a failed sibling does not cancel the others.
        results = await asyncio.gather(
            *(self._run_stage(stage, context.fork(), deadlines) for stage in stages),
            return_exceptions=True,
        )
        statuses: list[NodeStatus] = []
        for stage, result in zip(stages, results):
            if isinstance(result, BaseException):
                if isinstance(result, asyncio.CancelledError):
                    raise result
                logger.error(
                    "Parallel branch '%s' crashed", stage.path, exc_info=result
                )
                self._finish(stage.path, NodeStatus.FAILURE, reason=f"Internal error: {result}")
                self._mark_subtree(stage, NodeStatus.ABORTED, "Branch crashed", include_root=False)
                statuses.append(NodeStatus.FAILURE)
            else:
                statuses.append(result)
        return _aggregate(statuses)

    # ── Steps ────────────────────────────────────────────────────────────────

    async def _run_steps(
        self,
        stage: StagePlan,
        context: ExecutionContext,
        deadlines: tuple[_Deadline, ...],
    ) -> NodeStatus:
        statuses: list[NodeStatus] = []
        for i, step in enumerate(stage.steps):
            status = await self._run_step(step, context, deadlines)
            statuses.append(status)
            if self._token.cancelled:
                continue
            if _stops_sequence(status, stage.continue_on_failure):
                for rest in stage.steps[i + 1 :]:
                    self._finish(rest.path, NodeStatus.SKIPPED, reason=f"Skipped after '{step.path}' {status.value}")
                break
        return _aggregate(statuses)

    async def _run_step(
        self,
        step: StepPlan,
        context: ExecutionContext,
        deadlines: tuple[_Deadline, ...],
    ) -> NodeStatus:
        if self._token.cancelled:
            self._finish(step.path, NodeStatus.ABORTED, reason=_cancelled(self._token))
            return NodeStatus.ABORTED

        context.start(step.path, agent=context.agent.name if context.agent else None)
        node = context.node(step.path)
        attempts = 1 + step.retry
        result = StepResult.failure("Step did not run")
        for attempt in range(1, attempts + 1):
            node.attempts = attempt
            result = await self._attempt(step, context, deadlines)
            if result.status != NodeStatus.FAILURE or self._token.cancelled:
                break
            if attempt < attempts:
                if _expired(deadlines, self._clock.monotonic()):
                    break
                logger.info(
                    "Step '%s' failed (attempt %d/%d): %s; retrying",
                    step.path,
                    attempt,
                    attempts,
                    result.reason,
                )

        self._finish(
            step.path,
            result.status,
            reason=result.reason,
            output=result.output,
            timed_out=result.timed_out,
            failed_leaf=step.path if result.status == NodeStatus.FAILURE else None,
        )
        if result.status == NodeStatus.FAILURE:
            logger.warning("Step '%s' failed: %s", step.path, result.reason)
        return result.status

    async def _attempt(
        self,
        step: StepPlan,
        context: ExecutionContext,
        deadlines: tuple[_Deadline, ...],
    ) -> StepResult:
        """One executor invocation, raced against the deadline and cancellation."""
        slot = self._slots if self._slots is not None else contextlib.nullcontext()
        async with slot:
            limits = list(deadlines)
            if step.timeout_seconds is not None:
                limits.append(self._deadline(step.timeout_seconds, f"step '{step.path}'"))
            limit = min(limits, key=lambda d: d.at) if limits else None

            remaining = None
            if limit is not None:
                remaining = limit.at - self._clock.monotonic()
                if remaining <= 0:
                    return _timed_out(limit)

            task = asyncio.create_task(
                self._engine.executor.execute(step, context, context.agent)
            )
            cancelled = asyncio.create_task(self._token.wait())
            try:
                done, _ = await asyncio.wait(
                    {task, cancelled}, timeout=remaining, return_when=asyncio.FIRST_COMPLETED
                )
            finally:
                cancelled.cancel()
                if not task.done():
                    task.cancel()
                    await asyncio.gather(task, return_exceptions=True)

            if task in done and not task.cancelled():
                return task.result()
            if self._token.cancelled:
                return StepResult(
                    status=NodeStatus.ABORTED, reason=_cancelled(self._token)
                )
            return _timed_out(limit)

    # ── Helpers ──────────────────────────────────────────────────────────────

    def _deadline(self, seconds: float, scope: str) -> _Deadline:
        return _Deadline(at=self._clock.monotonic() + seconds, seconds=seconds, scope=scope)

    async def _resolve_bindings(
        self, bindings: Mapping[str, EnvValue], context: ExecutionContext
    ) -> dict[str, str]:
        """Resolve a frame's bindings against the enclosing scope."""
        if not bindings:
            return {}
        resolver = context.resolver(missing="")
        resolved: dict[str, str] = {}
        for name, value in bindings.items():
            if isinstance(value, SecretRef):
                secret = await self._engine.secrets.resolve(value.credentials)
                context.redactor.add(secret)
                resolved[name] = secret
            elif isinstance(value, bool):
                resolved[name] = "true" if value else "false"
            else:
                rendered = resolver.resolve(value)
                resolved[name] = "" if rendered is None else str(rendered)
        return resolved

    async def _release(self, agent: AgentHandle) -> None:
        try:
            await self._engine.agent_pool.release(agent)
        except Exception:
            logger.exception("Failed to release agent %s", agent.name)

    def _finish(self, path: str, status: NodeStatus, **kwargs: Any) -> None:
        if not self._context.nodes[path].status.is_terminal:
            self._context.finish(path, status, **kwargs)

    def _mark_subtree(
        self, stage: StagePlan, status: NodeStatus, reason: str, *, include_root: bool = True
    ) -> None:
        if include_root:
            self._finish(stage.path, status, reason=reason)
        for child in stage.stages:
            self._mark_subtree(child, status, reason)
        for step in stage.steps:
            self._finish(step.path, status, reason=reason)

    def _summarize(
        self, children: Sequence[StagePlan | StepPlan], status: NodeStatus
    ) -> tuple[str | None, str | None, str | None]:
        """Reason, output and failing leaf for a scope that ended in ``status``."""
        if status in (NodeStatus.SUCCESS, NodeStatus.SKIPPED):
            return None, None, None
        for child in children:
            node = self._context.nodes[child.path]
            if node.status != status:
                continue
            leaf_path = node.failed_leaf or child.path
            leaf = self._context.nodes.get(leaf_path, node)
            if leaf_path == child.path:
                reason = node.reason
            else:
                reason = f"'{leaf_path}': {leaf.reason}"
            return reason, leaf.output, node.failed_leaf if status == NodeStatus.FAILURE else None
        return None, None, None


def _stops_sequence(status: NodeStatus, continue_on_failure: bool) -> bool:
    if status == NodeStatus.ABORTED:
        return True
    return status == NodeStatus.FAILURE and not continue_on_failure


def _aggregate(statuses: Sequence[NodeStatus]) -> NodeStatus:
    """FAILURE iff any child failed; otherwise the worst executed status."""
    if NodeStatus.FAILURE in statuses:
        return NodeStatus.FAILURE
    return worst_status(statuses)


def _expired(deadlines: Sequence[_Deadline], now: float) -> bool:
    return any(d.at <= now for d in deadlines)


def _timed_out(limit: _Deadline) -> StepResult:
    error = TimeoutExceeded(limit.seconds, limit.scope)
    return StepResult(status=NodeStatus.FAILURE, reason=str(error), timed_out=True)


def _cancelled(token: CancellationToken) -> str:
    return str(CancellationRequested(token.reason))
