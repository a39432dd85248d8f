"""Step Executor — pluggable leaf actions for pipelines.

Provides a registry of named action handlers with built-in kinds and
support for user-extensible actions via Python modules.

Built-in actions:
    - ``sh``        — run a shell command; exit status decides the outcome
    - ``echo``      — write a message to the step output
    - ``notify``    — best-effort message to a notification sink
    - ``archive``   — store matching files in the artifact store
    - ``input``     — approval gate; waits for an external decision
    - ``checkout``  — fetch a repository into the workspace
    - ``setenv``    — bind environment variables in the current scope
    - ``sleep``     — wait for a duration
    - ``unstable``  — mark the step (and so the build) unstable
    - ``error``     — fail with a message

Each handler receives an :class:`ActionContext` and returns a
:class:`StepResult`. Handlers can be synchronous or async.
"""

from __future__ import annotations

import asyncio
import importlib
import logging
import os
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Union

from conveyor.pipeline.context import ExecutionContext
from conveyor.pipeline.errors import StepFailure
from conveyor.pipeline.interfaces import (
    AgentHandle,
    ApprovalBroker,
    ArtifactStore,
    LocalArtifactStore,
    LocalSourceControl,
    LoggingNotificationSink,
    NotificationSink,
    SourceControlProvider,
)
from conveyor.pipeline.models import NodeStatus, StepResult, _parse_duration_seconds
from conveyor.pipeline.plan import StepPlan

logger = logging.getLogger("conveyor.pipeline.steps")

BUILTIN_ACTIONS = (
    "sh",
    "echo",
    "notify",
    "archive",
    "input",
    "checkout",
    "setenv",
    "sleep",
    "unstable",
    "error",
)


# ── Action Context ───────────────────────────────────────────────────────────


@dataclass
class ActionContext:
    """Runtime context passed to each action handler."""

    step: StepPlan
    # Inputs after template resolution against the current scope
    inputs: dict[str, Any]
    context: ExecutionContext
    agent: AgentHandle | None
    executor: StepExecutor = field(repr=False)

    @property
    def path(self) -> str:
        return self.step.path

    def require(self, name: str) -> Any:
        value = self.inputs.get(name)
        if value is None or value == "":
            msg = f"Missing required input '{name}' for '{self.step.kind}' step"
            raise StepFailure(msg)
        return value


ActionHandler = Callable[[ActionContext], Union[Awaitable[StepResult], StepResult]]


# ── Step Executor ────────────────────────────────────────────────────────────


class StepExecutor:
    """Registry mapping action kinds to handlers, and the single entry point
    for running a leaf step.

    Usage::

        executor = StepExecutor()

        @executor.register("deploy")
        async def deploy(ctx: ActionContext) -> StepResult:
            ...

    Built-in actions are pre-registered at construction time.
    """

    def __init__(
        self,
        *,
        source_control: SourceControlProvider | None = None,
        artifacts: ArtifactStore | None = None,
        notifications: dict[str, NotificationSink] | None = None,
        approvals: ApprovalBroker | None = None,
        shell: str | None = None,
    ) -> None:
        self.source_control = source_control or LocalSourceControl()
        self.artifacts = artifacts or LocalArtifactStore()
        self.notifications: dict[str, NotificationSink] = notifications or {
            "default": LoggingNotificationSink()
        }
        self.approvals = approvals or ApprovalBroker()
        self.shell = shell
        self._handlers: dict[str, ActionHandler] = {}
        self._register_builtin_actions()

    # ── Registration ──────────────────────────────────────────────────────────

    def register(self, kind: str) -> Callable[[ActionHandler], ActionHandler]:
        """Decorator to register an action handler under ``kind``."""

        def decorator(fn: ActionHandler) -> ActionHandler:
            self._handlers[kind] = fn
            logger.debug("Registered step action: %s", kind)
            return fn

        return decorator

    def register_fn(self, kind: str, fn: ActionHandler) -> None:
        """Directly register an action handler by kind."""
        self._handlers[kind] = fn

    def load_plugin(self, module_path: str) -> int:
        """Load actions from a Python module exposing ``register_actions(executor)``.

        Returns:
            Number of actions registered from the module.
        """
        before = set(self._handlers)
        module = importlib.import_module(module_path)
        if hasattr(module, "register_actions"):
            module.register_actions(self)
        added = len(set(self._handlers) - before)
        logger.info("Loaded %d step actions from plugin: %s", added, module_path)
        return added

    def has(self, kind: str) -> bool:
        return kind in self._handlers

    def list_actions(self) -> list[str]:
        return sorted(self._handlers)

    # ── Execution ─────────────────────────────────────────────────────────────

    async def execute(
        self,
        step: StepPlan,
        context: ExecutionContext,
        agent: AgentHandle | None = None,
    ) -> StepResult:
        """Run one step once. Never raises except for task cancellation."""
        started = context.clock.monotonic()
        handler = self._handlers.get(step.kind)
        if handler is None:
            result = StepResult.failure(
                f"Unsupported action '{step.kind}'. Available: {self.list_actions()}"
            )
        else:
            inputs = context.resolver().resolve(step.inputs)
            action_ctx = ActionContext(
                step=step, inputs=inputs, context=context, agent=agent, executor=self
            )
            try:
                if asyncio.iscoroutinefunction(handler):
                    result = await handler(action_ctx)
                else:
                    result = handler(action_ctx)
                    if asyncio.iscoroutine(result):
                        result = await result
            except StepFailure as exc:
                result = StepResult.failure(str(exc), exc.output)
            except Exception as exc:
                logger.exception("Step '%s' (%s) raised an exception", step.path, step.kind)
                result = StepResult.failure(f"{type(exc).__name__}: {exc}")

        redactor = context.redactor
        result.output = redactor.redact(result.output)
        if result.reason:
            result.reason = redactor.redact(result.reason)
        result.duration_ms = int((context.clock.monotonic() - started) * 1000)
        return result

    # ── Built-in Actions ──────────────────────────────────────────────────────

    def _register_builtin_actions(self) -> None:
        self.register_fn("sh", _action_sh)
        self.register_fn("echo", _action_echo)
        self.register_fn("notify", _action_notify)
        self.register_fn("archive", _action_archive)
        self.register_fn("input", _action_input)
        self.register_fn("checkout", _action_checkout)
        self.register_fn("setenv", _action_setenv)
        self.register_fn("sleep", _action_sleep)
        self.register_fn("unstable", _action_unstable)
        self.register_fn("error", _action_error)


# ── Built-in Action Implementations ──────────────────────────────────────────


async def _action_sh(ctx: ActionContext) -> StepResult:
    """Run a shell command.

    Inputs:
        command: Command string to execute.
        cwd: Optional working directory (default: workspace).
        unstable_exit_codes: Exit codes that mark the step unstable instead of failed.
    """
    command = str(ctx.require("command"))
    unstable_codes = {int(c) for c in ctx.inputs.get("unstable_exit_codes", [])}

    cwd = ctx.inputs.get("cwd") or ctx.context.workspace
    if cwd is None and ctx.agent is not None:
        cwd = ctx.agent.workspace
    env = {**os.environ, **ctx.context.environment()}

    proc = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        cwd=str(cwd) if cwd else None,
        env=env,
        executable=ctx.executor.shell,
    )
    try:
        stdout, _ = await proc.communicate()
    except asyncio.CancelledError:
        # Kill the child before propagating the cancellation
        if proc.returncode is None:
            proc.kill()
            await proc.wait()
        raise

    output = stdout.decode("utf-8", errors="replace")
    exit_code = proc.returncode
    if exit_code == 0:
        return StepResult.success(output, exit_code=exit_code)
    if exit_code in unstable_codes:
        return StepResult(
            status=NodeStatus.UNSTABLE,
            output=output,
            reason=f"Command exited with {exit_code} (unstable)",
            data={"exit_code": exit_code},
        )
    return StepResult.failure(f"Command failed with exit code {exit_code}", output, exit_code=exit_code)


def _action_echo(ctx: ActionContext) -> StepResult:
    message = "" if ctx.inputs.get("message") is None else str(ctx.inputs["message"])
    logger.info("[%s] %s", ctx.path, ctx.context.redactor.redact(message))
    return StepResult.success(message)


async def _action_notify(ctx: ActionContext) -> StepResult:
    """Send a notification. Best-effort unless ``fail_on_error`` is set.

    Inputs:
        message: Text to send.
        target: Recipient (channel, address); default ``"default"``.
        sink: Name of the configured sink; default ``"default"``.
        fail_on_error: Fail the step when delivery fails (default: false).
    """
    message = ctx.context.redactor.redact(str(ctx.require("message")))
    target = str(ctx.inputs.get("target") or "default")
    sink_name = str(ctx.inputs.get("sink") or "default")
    fail_on_error = bool(ctx.inputs.get("fail_on_error", False))

    sink = ctx.executor.notifications.get(sink_name)
    if sink is None:
        reason = f"No notification sink named '{sink_name}'"
        if fail_on_error:
            return StepResult.failure(reason)
        logger.warning("%s (step '%s'); message dropped", reason, ctx.path)
        return StepResult.success(reason, delivered=False)

    try:
        await sink.send(target, message)
    except Exception as exc:
        reason = f"Notification to '{target}' via '{sink_name}' failed: {exc}"
        if fail_on_error:
            return StepResult.failure(reason)
        logger.warning("%s (step '%s')", reason, ctx.path)
        return StepResult.success(reason, delivered=False)
    return StepResult.success(f"Notified {target} via {sink_name}", delivered=True)


async def _action_archive(ctx: ActionContext) -> StepResult:
    """Store files matching ``artifacts`` in the artifact store.

    Inputs:
        artifacts: Glob pattern relative to the workspace.
        allow_empty: Succeed when nothing matches (default: false).
    """
    pattern = str(ctx.require("artifacts"))
    allow_empty = bool(ctx.inputs.get("allow_empty", False))
    workspace = ctx.context.workspace or (ctx.agent.workspace if ctx.agent else None)
    metadata = {
        "run_id": ctx.context.run_id,
        "path": ctx.path,
        "workspace": str(workspace) if workspace else None,
    }
    manifest = await ctx.executor.artifacts.store(pattern, metadata)
    files = manifest.get("files", [])
    if not files and not allow_empty:
        return StepResult.failure(f"No artifacts matched '{pattern}'", manifest=manifest)
    return StepResult.success(f"Archived {len(files)} file(s) matching '{pattern}'", manifest=manifest)


async def _action_input(ctx: ActionContext) -> StepResult:
    """Approval gate: suspend until the approval broker resolves a decision."""
    message = str(ctx.inputs.get("message") or "Proceed?")
    decision = await ctx.executor.approvals.request(ctx.context.run_id, ctx.path, message)
    by = decision.by or "unknown"
    if decision.approved:
        return StepResult.success(f"Approved by {by}", approved_by=by, comment=decision.comment)
    return StepResult(
        status=NodeStatus.ABORTED,
        output=decision.comment,
        reason=f"Rejected by {by}",
        data={"rejected_by": by},
    )


async def _action_checkout(ctx: ActionContext) -> StepResult:
    repo = str(ctx.require("repo"))
    revision = ctx.inputs.get("revision")
    workspace = await ctx.executor.source_control.fetch(repo, revision=revision)
    ctx.context.workspace = workspace.path
    ctx.context.env.set("WORKSPACE", str(workspace.path))
    return StepResult.success(
        f"Checked out {repo} into {workspace.path}",
        workspace=str(workspace.path),
        revision=workspace.revision,
    )


def _action_setenv(ctx: ActionContext) -> StepResult:
    """Bind environment variables in the current stage frame.

    Bindings disappear when the stage exits; nothing set here is visible to
    sibling or enclosing stages.

    Inputs:
        name/value: a single binding, or any other keys as bindings.
    """
    if "name" in ctx.inputs:
        bindings = {str(ctx.inputs["name"]): ctx.inputs.get("value", "")}
    else:
        bindings = dict(ctx.inputs)
    if not bindings:
        raise StepFailure("setenv requires at least one binding")
    for name, value in bindings.items():
        ctx.context.env.set(name, "" if value is None else str(value))
    return StepResult.success(f"Set {', '.join(sorted(bindings))}")


async def _action_sleep(ctx: ActionContext) -> StepResult:
    seconds = _parse_duration_seconds(ctx.require("duration"))
    await asyncio.sleep(seconds)
    return StepResult.success(f"Slept {seconds:g}s")


def _action_unstable(ctx: ActionContext) -> StepResult:
    message = str(ctx.inputs.get("message") or "Marked unstable")
    return StepResult(status=NodeStatus.UNSTABLE, output=message, reason=message)


def _action_error(ctx: ActionContext) -> StepResult:
    message = str(ctx.inputs.get("message") or "Error step")
    return StepResult.failure(message)
