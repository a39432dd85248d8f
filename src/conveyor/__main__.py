"""Conveyor CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import json
import logging
import signal
import sys
import threading
from pathlib import Path

import aiosqlite

from conveyor.config import EngineConfig, load_config, load_pipeline_definition
from conveyor.pipeline import (
    ApprovalBroker,
    CancellationToken,
    CompileError,
    EnvSecretStore,
    ExecutionPlan,
    LocalAgentPool,
    LocalArtifactStore,
    LocalSourceControl,
    LoggingNotificationSink,
    NodeStatus,
    NotificationSink,
    ParameterError,
    PipelineEngine,
    RunRegistry,
    RunResult,
    StageGraphBuilder,
    StepExecutor,
    StepPlan,
    WebhookNotificationSink,
)
from conveyor.pipeline.interfaces import PendingApproval
from conveyor.redaction import RedactingFilter

logger = logging.getLogger("conveyor.cli")

EXIT_CODES = {
    NodeStatus.SUCCESS: 0,
    NodeStatus.FAILURE: 1,
    NodeStatus.ABORTED: 2,
    NodeStatus.UNSTABLE: 3,
}


# ── Wiring ───────────────────────────────────────────────────────────────────


def build_executor(config: EngineConfig, approvals: ApprovalBroker) -> StepExecutor:
    """Step executor with the sinks, stores and plugins named in ``config``."""
    notifications: dict[str, NotificationSink] = {"default": LoggingNotificationSink()}
    for name, sink in config.notifications.items():
        if sink.webhook_url:
            notifications[name] = WebhookNotificationSink(
                sink.webhook_url, headers=sink.headers, timeout=sink.timeout
            )
        else:
            notifications[name] = LoggingNotificationSink(name)

    workspace = Path(config.workspace_dir) if config.workspace_dir else None
    executor = StepExecutor(
        source_control=LocalSourceControl(workspace),
        artifacts=LocalArtifactStore(Path(config.artifact_dir) if config.artifact_dir else None),
        notifications=notifications,
        approvals=approvals,
    )
    for module_path in config.action_plugins:
        executor.load_plugin(module_path)
    return executor


def compile_file(path: Path, executor: StepExecutor) -> ExecutionPlan:
    builder = StageGraphBuilder(actions=executor.list_actions())
    return builder.compile(load_pipeline_definition(path))


def _parse_assignments(values: list[str] | None, flag: str) -> dict[str, str]:
    result: dict[str, str] = {}
    for item in values or []:
        name, sep, value = item.partition("=")
        if not sep or not name:
            raise ValueError(f"{flag} expects NAME=VALUE, got {item!r}")
        result[name] = value
    return result


# ── Commands ─────────────────────────────────────────────────────────────────


def _validate(args: argparse.Namespace, config: EngineConfig) -> int:
    executor = build_executor(config, ApprovalBroker())
    try:
        plan = compile_file(args.file, executor)
    except (CompileError, FileNotFoundError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print(f"OK: pipeline '{plan.name}' ({sum(1 for _ in plan.walk())} nodes)")
    for warning in plan.warnings:
        print(f"  warning: {warning}")
    return 0


class _LineReader:
    """Feeds stdin lines into an asyncio queue from a daemon thread.

    A read that is still blocked when the run finishes never holds up
    interpreter exit, unlike a read parked in the default executor.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop
        self.lines: asyncio.Queue[str] = asyncio.Queue()
        self._thread: threading.Thread | None = None
        self.closed = False

    def start(self) -> None:
        if self._thread is None:
            self._thread = threading.Thread(target=self._read, name="conveyor-stdin", daemon=True)
            self._thread.start()

    def discard_buffered(self) -> None:
        while not self.lines.empty():
            self.lines.get_nowait()

    def _close(self) -> None:
        self.closed = True
        self.lines.put_nowait("")

    def _read(self) -> None:
        try:
            for line in sys.stdin:
                self._loop.call_soon_threadsafe(self.lines.put_nowait, line)
            self._loop.call_soon_threadsafe(self._close)
        except (OSError, ValueError):
            logger.debug("stdin is not readable; approval prompts need --auto-approve")
        except RuntimeError:
            # Event loop closed while a line was arriving
            pass


async def _await_answer(
    broker: ApprovalBroker, pending: PendingApproval, reader: _LineReader
) -> str | None:
    """Wait for a line, or return None once the gate stops waiting.

    End of input answers with an empty line, which rejects the gate.
    """
    while pending in broker.pending():
        if reader.closed and reader.lines.empty():
            return ""
        try:
            return await asyncio.wait_for(reader.lines.get(), timeout=0.2)
        except asyncio.TimeoutError:
            continue
    return None


async def _prompt_approvals(broker: ApprovalBroker, reader: _LineReader | None = None) -> None:
    """Ask on the terminal for every approval gate that is waiting."""
    reader = reader or _LineReader(asyncio.get_running_loop())
    while True:
        for pending in broker.pending():
            reader.discard_buffered()
            print(f"[{pending.path}] {pending.message} [y/N] ", end="", flush=True)
            reader.start()
            answer = await _await_answer(broker, pending, reader)
            if answer is None:
                print()
                logger.info("Approval prompt for '%s' withdrawn", pending.path)
                continue
            broker.decide(
                pending.run_id,
                pending.path,
                approved=answer.strip().lower() in ("y", "yes"),
                by="cli",
            )
        await asyncio.sleep(0.2)


async def _run(args: argparse.Namespace, config: EngineConfig) -> int:
    try:
        parameters = _parse_assignments(args.param, "--param")
        environment = _parse_assignments(args.env, "--env")
    except ValueError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    approvals = ApprovalBroker(auto_approve=args.auto_approve)
    executor = build_executor(config, approvals)
    try:
        plan = compile_file(args.file, executor)
    except (CompileError, FileNotFoundError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    for warning in plan.warnings:
        logger.warning("%s", warning)

    token = CancellationToken()
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGINT, token.cancel, "Interrupted")

    db_path = Path(args.db or config.db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        registry = RunRegistry(db)
        await registry.initialize()
        engine = PipelineEngine(
            executor,
            agent_pool=LocalAgentPool(Path(config.workspace_dir) if config.workspace_dir else None),
            secrets=EnvSecretStore(config.secret_env_prefix),
            registry=registry,
            max_parallel=config.max_parallel,
        )
        for handler in logging.getLogger().handlers:
            handler.addFilter(RedactingFilter(engine.redactor))
        prompter = asyncio.create_task(_prompt_approvals(approvals))
        try:
            result = await engine.run(
                plan, parameters, environment=environment, cancellation=token
            )
        except ParameterError as exc:
            print(f"Error: {exc}", file=sys.stderr)
            return 1
        finally:
            prompter.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await prompter

    _print_result(result, plan)
    return EXIT_CODES.get(result.status, 1)


async def _list_runs(args: argparse.Namespace, config: EngineConfig) -> int:
    db_path = Path(args.db or config.db_path)
    if not db_path.exists():
        print("No runs recorded.")
        return 0
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        registry = RunRegistry(db)
        await registry.initialize()
        status = NodeStatus(args.status) if args.status else None
        runs = await registry.list_runs(pipeline_name=args.pipeline, status=status, limit=args.limit)
    if not runs:
        print("No runs recorded.")
        return 0
    for run in runs:
        started = run.started_at.strftime("%Y-%m-%d %H:%M:%S") if run.started_at else "-"
        print(f"{run.run_id}  {run.pipeline_name:<24} {run.status.value:<9} {started}")
    return 0


async def _show_run(args: argparse.Namespace, config: EngineConfig) -> int:
    db_path = Path(args.db or config.db_path)
    if not db_path.exists():
        print(f"Error: no run registry at {db_path}", file=sys.stderr)
        return 1
    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        registry = RunRegistry(db)
        await registry.initialize()
        run = await registry.get_run(args.run_id)
    if run is None:
        print(f"Error: run not found: {args.run_id}", file=sys.stderr)
        return 1
    if args.json:
        print(json.dumps(run.to_audit_record(), indent=2))
    else:
        _print_result(run)
    return 0


def _print_result(result: RunResult, plan: ExecutionPlan | None = None) -> None:
    print(f"Run {result.run_id} of '{result.pipeline_name}': {result.status.value.upper()}")
    if result.reason:
        print(f"  reason: {result.reason}")
    for path, node in result.nodes.items():
        depth = path.count("/")
        line = f"  {'  ' * depth}{node.name:<30} {node.status.value}"
        if node.timed_out:
            line += " (timed out)"
        if node.attempts > 1:
            line += f" [{node.attempts} attempts]"
        print(line)
    for post in result.post_failures:
        print(f"  post-action failed: {post.step}: {post.error}")
    if plan is not None and result.status == NodeStatus.FAILURE:
        leaf = next((n.failed_leaf for n in result.nodes.values() if n.failed_leaf), None)
        step = plan.find(leaf) if leaf else None
        if isinstance(step, StepPlan):
            print(f"  failed step: {leaf} ({step.kind})")


# ── Entry point ──────────────────────────────────────────────────────────────


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="conveyor",
        description="Conveyor — declarative pipeline execution engine",
    )
    parser.add_argument(
        "--config",
        type=Path,
        help="Engine config YAML (default: built-in defaults + CONVEYOR_* env vars)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: from config, INFO)",
    )

    subparsers = parser.add_subparsers(dest="command")

    # conveyor validate
    validate_parser = subparsers.add_parser("validate", help="Compile a pipeline and report problems")
    validate_parser.add_argument("file", type=Path, help="Pipeline definition YAML")

    # conveyor run
    run_parser = subparsers.add_parser("run", help="Run a pipeline")
    run_parser.add_argument("file", type=Path, help="Pipeline definition YAML")
    run_parser.add_argument(
        "-p",
        "--param",
        action="append",
        metavar="NAME=VALUE",
        help="Pipeline parameter (repeatable)",
    )
    run_parser.add_argument(
        "-e",
        "--env",
        action="append",
        metavar="NAME=VALUE",
        help="Run-level environment binding such as BRANCH_NAME (repeatable)",
    )
    run_parser.add_argument(
        "--auto-approve",
        action="store_true",
        help="Grant every approval gate without prompting",
    )
    run_parser.add_argument("--db", help="Run registry database path")

    # conveyor runs
    runs_parser = subparsers.add_parser("runs", help="List recorded runs")
    runs_parser.add_argument("--pipeline", help="Only runs of this pipeline")
    runs_parser.add_argument(
        "--status",
        choices=[s.value for s in NodeStatus if s.is_terminal],
        help="Only runs that finished with this status",
    )
    runs_parser.add_argument("--limit", type=int, default=20)
    runs_parser.add_argument("--db", help="Run registry database path")

    # conveyor show
    show_parser = subparsers.add_parser("show", help="Show one recorded run")
    show_parser.add_argument("run_id")
    show_parser.add_argument("--json", action="store_true", help="Print the audit record as JSON")
    show_parser.add_argument("--db", help="Run registry database path")

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 1

    try:
        config = load_config(args.config)
    except (FileNotFoundError, ValueError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    logging.basicConfig(
        level=getattr(logging, args.log_level or config.log_level),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    if args.command == "validate":
        return _validate(args, config)
    if args.command == "run":
        return asyncio.run(_run(args, config))
    if args.command == "runs":
        return asyncio.run(_list_runs(args, config))
    return asyncio.run(_show_run(args, config))


if __name__ == "__main__":
    sys.exit(main())
