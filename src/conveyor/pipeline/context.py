"""Per-run execution context: environment scope stack, parameters, node statuses.

Key exports:
    ExecutionContext — mutable state for one pipeline run
    EnvironmentScope — stack of environment frames with copy-on-fork
    CancellationToken — cooperative run cancellation
    Clock, SystemClock — time source used for timestamps and durations
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from types import MappingProxyType
from typing import TYPE_CHECKING, Any, Iterator, Mapping, Protocol

from conveyor.pipeline.models import NodeRun, NodeStatus, worst_status
from conveyor.pipeline.templates import TemplateResolver
from conveyor.redaction import Redactor

if TYPE_CHECKING:
    from conveyor.pipeline.interfaces import AgentHandle

logger = logging.getLogger("conveyor.pipeline.context")


# ── Clock ────────────────────────────────────────────────────────────────────


class Clock(Protocol):
    def now(self) -> datetime:
        ...

    def monotonic(self) -> float:
        ...


class SystemClock:
    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    def monotonic(self) -> float:
        return time.monotonic()


# ── Cancellation ─────────────────────────────────────────────────────────────


class CancellationToken:
    """Set once to request that a run stop at the next node boundary."""

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason = ""

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Cancelled") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
            logger.info("Cancellation requested: %s", reason)

    async def wait(self) -> None:
        await self._event.wait()


# ── Environment scope ────────────────────────────────────────────────────────


class EnvironmentScope:
    """Stack of environment frames. Inner frames shadow outer ones.

    A frame pushed for a stage is popped when the stage exits, so nothing
    bound inside a stage is visible to its parent or siblings afterwards.
    Parallel branches get a :meth:`fork` (a deep copy of every frame).
    """

    def __init__(self, frames: list[tuple[str, dict[str, str]]] | None = None):
        self._frames: list[tuple[str, dict[str, str]]] = frames or [("root", {})]

    def push(self, label: str, bindings: Mapping[str, str] | None = None) -> None:
        self._frames.append((label, dict(bindings or {})))

    def pop(self, label: str | None = None) -> dict[str, str]:
        if len(self._frames) == 1:
            msg = "Cannot pop the root environment frame"
            raise RuntimeError(msg)
        top_label, bindings = self._frames.pop()
        if label is not None and top_label != label:
            msg = f"Environment frame mismatch: expected '{label}', popped '{top_label}'"
            raise RuntimeError(msg)
        return bindings

    @contextmanager
    def frame(self, label: str, bindings: Mapping[str, str] | None = None) -> Iterator[None]:
        """Push a frame for the duration of the block, popping it even on error."""
        self.push(label, bindings)
        try:
            yield
        finally:
            self.pop(label)

    def set(self, name: str, value: str, *, root: bool = False) -> None:
        """Bind a name in the innermost frame (or the root frame)."""
        frame = self._frames[0] if root else self._frames[-1]
        frame[1][name] = value

    def get(self, name: str, default: str = "") -> str:
        for _, bindings in reversed(self._frames):
            if name in bindings:
                return bindings[name]
        return default

    def __contains__(self, name: object) -> bool:
        return any(name in bindings for _, bindings in self._frames)

    def as_dict(self) -> dict[str, str]:
        merged: dict[str, str] = {}
        for _, bindings in self._frames:
            merged.update(bindings)
        return merged

    def fork(self) -> EnvironmentScope:
        return EnvironmentScope([(label, dict(bindings)) for label, bindings in self._frames])


# ── Execution context ────────────────────────────────────────────────────────


class ExecutionContext:
    """Mutable state for one pipeline run.

    ``nodes`` and ``outputs`` are shared between the context and all of its
    forks; each task writes only the keys of its own subtree. The environment
    scope, workspace and agent are per-fork.
    """

    def __init__(
        self,
        *,
        run_id: str,
        pipeline_name: str,
        parameters: Mapping[str, Any] | None = None,
        env: EnvironmentScope | None = None,
        cancellation: CancellationToken | None = None,
        clock: Clock | None = None,
        redactor: Redactor | None = None,
        nodes: dict[str, NodeRun] | None = None,
        outputs: dict[str, str] | None = None,
        workspace: Path | None = None,
        agent: AgentHandle | None = None,
    ):
        self.run_id = run_id
        self.pipeline_name = pipeline_name
        self.parameters: Mapping[str, Any] = MappingProxyType(dict(parameters or {}))
        self.env = env or EnvironmentScope()
        self.cancellation = cancellation or CancellationToken()
        self.clock: Clock = clock or SystemClock()
        self.redactor = redactor or Redactor()
        self.nodes: dict[str, NodeRun] = nodes if nodes is not None else {}
        self.outputs: dict[str, str] = outputs if outputs is not None else {}
        self.workspace = workspace
        self.agent = agent

    def fork(self) -> ExecutionContext:
        """Copy-on-fork for a parallel branch."""
        return ExecutionContext(
            run_id=self.run_id,
            pipeline_name=self.pipeline_name,
            parameters=self.parameters,
            env=self.env.fork(),
            cancellation=self.cancellation,
            clock=self.clock,
            redactor=self.redactor,
            nodes=self.nodes,
            outputs=self.outputs,
            workspace=self.workspace,
            agent=self.agent,
        )

    # ── Namespace ────────────────────────────────────────────────────────────

    def environment(self) -> dict[str, str]:
        return self.env.as_dict()

    def build_info(self) -> dict[str, Any]:
        finished = [n.status for n in self.nodes.values() if n.status.is_terminal]
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline_name,
            "result": worst_status(finished).value.upper(),
        }

    def namespace(self) -> dict[str, Any]:
        return {
            "env": self.environment(),
            "params": dict(self.parameters),
            "build": self.build_info(),
        }

    def resolver(self, *, missing: Any = None) -> TemplateResolver:
        return TemplateResolver(self.namespace(), missing=missing)

    # ── Node status table ────────────────────────────────────────────────────

    def register(self, path: str, name: str, kind: str) -> NodeRun:
        node = NodeRun(path=path, name=name, kind=kind)
        self.nodes[path] = node
        return node

    def node(self, path: str) -> NodeRun:
        return self.nodes[path]

    def start(self, path: str, *, agent: str | None = None) -> None:
        node = self.nodes[path]
        if node.status.is_terminal:
            return
        node.status = NodeStatus.RUNNING
        node.started_at = self.clock.now()
        if agent:
            node.agent = agent

    def finish(
        self,
        path: str,
        status: NodeStatus,
        *,
        reason: str | None = None,
        output: str | None = None,
        timed_out: bool = False,
        failed_leaf: str | None = None,
    ) -> bool:
        """Record a terminal status. Returns False if the node was already terminal."""
        node = self.nodes[path]
        if node.status.is_terminal:
            logger.warning(
                "Ignoring %s for '%s': already %s", status.value, path, node.status.value
            )
            return False
        node.status = status
        node.reason = reason
        node.timed_out = timed_out
        node.failed_leaf = failed_leaf
        if output is not None:
            node.output = output
            self.outputs[path] = output
        node.completed_at = self.clock.now()
        return True
