"""Pipeline Pydantic models — definitions and runtime state.

Key exports:
    Definition models: PipelineDefinition, StageDefinition, StepDefinition,
        WhenConfig, AgentSpec, SecretRef, StageOptions, PipelineOptions,
        ParameterDefinition
    Runtime state models: StepResult, NodeRun, PostActionResult, RunResult
    Enums: NodeStatus, ChildMode, PostTrigger, ParameterType
"""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from typing import Any, Iterable, Union

from pydantic import BaseModel, ConfigDict, Field, model_validator


# ── Enums ────────────────────────────────────────────────────────────────────


class NodeStatus(str, Enum):
    """Per-node lifecycle states for a single run."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    UNSTABLE = "unstable"
    ABORTED = "aborted"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self not in (NodeStatus.PENDING, NodeStatus.RUNNING)


# SKIPPED counts as neither success nor failure and is left out of aggregation.
STATUS_SEVERITY: dict[NodeStatus, int] = {
    NodeStatus.SUCCESS: 0,
    NodeStatus.UNSTABLE: 1,
    NodeStatus.FAILURE: 2,
    NodeStatus.ABORTED: 3,
}


def worst_status(statuses: Iterable[NodeStatus]) -> NodeStatus:
    """Aggregate terminal statuses: success < unstable < failure < aborted.

    An empty input (nothing executed) aggregates to SUCCESS.
    """
    worst = NodeStatus.SUCCESS
    for status in statuses:
        severity = STATUS_SEVERITY.get(status)
        if severity is not None and severity > STATUS_SEVERITY[worst]:
            worst = status
    return worst


class ChildMode(str, Enum):
    """How a stage executes its children."""

    SEQUENTIAL = "sequential"
    PARALLEL = "parallel"


class PostTrigger(str, Enum):
    """Status conditions a post-action can be bound to."""

    ALWAYS = "always"
    SUCCESS = "success"
    FAILURE = "failure"
    UNSTABLE = "unstable"
    ABORTED = "aborted"
    UNSUCCESSFUL = "unsuccessful"
    CLEANUP = "cleanup"

    def matches(self, status: NodeStatus) -> bool:
        match self:
            case PostTrigger.ALWAYS | PostTrigger.CLEANUP:
                return True
            case PostTrigger.UNSUCCESSFUL:
                return status != NodeStatus.SUCCESS
            case _:
                return self.value == status.value


class ParameterType(str, Enum):
    STRING = "string"
    TEXT = "text"
    BOOLEAN = "boolean"
    INTEGER = "integer"
    CHOICE = "choice"


# ── Definition Models (parsed from YAML) ─────────────────────────────────────


class _Strict(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class SecretRef(_Strict):
    """Environment value that is resolved from the secret store at run time."""

    credentials: str


EnvValue = Union[SecretRef, str, int, float, bool]


class AgentSpec(_Strict):
    """Where a stage runs. ``"any"`` → no constraint, ``"none"`` → no agent."""

    label: str | None = None
    image: str | None = None
    none: bool = False

    @model_validator(mode="before")
    @classmethod
    def _from_shorthand(cls, data: Any) -> Any:
        if isinstance(data, str):
            if data == "none":
                return {"none": True}
            if data == "any":
                return {}
            return {"label": data}
        return data

    def describe(self) -> str:
        if self.none:
            return "none"
        if self.image:
            return f"image:{self.image}"
        if self.label:
            return f"label:{self.label}"
        return "any"


# Scalar shorthand (``- sh: make``) maps onto the kind's primary input.
_PRIMARY_INPUTS = {
    "sh": "command",
    "echo": "message",
    "archive": "artifacts",
    "input": "message",
    "checkout": "repo",
    "sleep": "duration",
    "unstable": "message",
    "error": "message",
    "notify": "message",
}

_STEP_FIELDS = {"kind", "name", "inputs", "timeout", "retry"}


class StepDefinition(_Strict):
    """A single leaf action."""

    kind: str
    name: str | None = None
    inputs: dict[str, Any] = {}
    timeout: str | float | None = None
    retry: int | None = None

    @model_validator(mode="before")
    @classmethod
    def _from_shorthand(cls, data: Any) -> Any:
        if not isinstance(data, dict) or "kind" in data:
            return data
        action_keys = [k for k in data if k not in _STEP_FIELDS]
        if len(action_keys) != 1:
            return data
        kind = action_keys[0]
        raw = data[kind]
        result = {k: v for k, v in data.items() if k != kind}
        result["kind"] = kind
        if isinstance(raw, dict):
            result["inputs"] = raw
        elif raw is None:
            result["inputs"] = {}
        else:
            result["inputs"] = {_PRIMARY_INPUTS.get(kind, "value"): raw}
        return result

    @property
    def label(self) -> str:
        return self.name or self.kind


class EnvironmentCondition(_Strict):
    name: str
    value: str


class EqualsCondition(_Strict):
    actual: Any
    expected: Any


class WhenConfig(_Strict):
    """Predicate tree deciding whether a stage runs.

    Several predicates in one mapping are combined with AND.
    """

    branch: str | None = None
    tag: str | None = None
    environment: EnvironmentCondition | None = None
    env_exists: str | None = None
    equals: EqualsCondition | None = None
    expression: str | None = None
    all_of: list[WhenConfig] | None = None
    any_of: list[WhenConfig] | None = None
    not_: WhenConfig | None = Field(None, alias="not")

    @model_validator(mode="after")
    def _require_predicate(self) -> WhenConfig:
        if not self.model_fields_set:
            msg = "'when' requires at least one predicate"
            raise ValueError(msg)
        return self


class StageOptions(_Strict):
    timeout: str | float | None = None
    retry: int | None = None
    continue_on_failure: bool = False


class PipelineOptions(StageOptions):
    unstable_on_post_failure: bool = False


class ParameterDefinition(_Strict):
    name: str
    type: ParameterType = ParameterType.STRING
    default: Any = None
    description: str = ""
    choices: list[str] = []


class StageDefinition(_Strict):
    """A node in the stage tree.

    Children are given as exactly one of ``steps``, ``stages`` (sequential)
    or ``parallel``. A ``generate`` entry is a placeholder that the builder
    expands into concrete stages at compile time.
    """

    name: str = ""
    agent: AgentSpec | None = None
    environment: dict[str, EnvValue] = {}
    when: WhenConfig | None = None

    steps: list[StepDefinition] | None = None
    stages: list[StageDefinition] | None = None
    parallel: list[StageDefinition] | None = None

    generate: str | None = None
    generate_args: dict[str, Any] = Field(default_factory=dict, alias="with")

    post: dict[PostTrigger, list[StepDefinition]] = {}
    options: StageOptions = Field(default_factory=StageOptions)

    @model_validator(mode="after")
    def validate_stage(self) -> StageDefinition:
        if self.generate:
            return self
        if not self.name:
            msg = "stages require a 'name'"
            raise ValueError(msg)
        given = [
            field_name
            for field_name in ("steps", "stages", "parallel")
            if getattr(self, field_name) is not None
        ]
        if len(given) != 1:
            msg = (
                f"Stage '{self.name}': exactly one of 'steps', 'stages' or "
                f"'parallel' is required (got {given or 'none'})"
            )
            raise ValueError(msg)
        return self

    @property
    def mode(self) -> ChildMode:
        return ChildMode.PARALLEL if self.parallel is not None else ChildMode.SEQUENTIAL

    @property
    def child_stages(self) -> list[StageDefinition]:
        if self.parallel is not None:
            return self.parallel
        return self.stages or []


class PipelineDefinition(_Strict):
    """Complete pipeline definition parsed from YAML."""

    name: str = "pipeline"
    description: str = ""
    agent: AgentSpec | None = None
    environment: dict[str, EnvValue] = {}
    parameters: list[ParameterDefinition] = []
    options: PipelineOptions = Field(default_factory=PipelineOptions)
    stages: list[StageDefinition] = Field(min_length=1)
    post: dict[PostTrigger, list[StepDefinition]] = {}

    def get_parameter(self, name: str) -> ParameterDefinition | None:
        for param in self.parameters:
            if param.name == name:
                return param
        return None


# ── Runtime State Models ─────────────────────────────────────────────────────


class StepResult(BaseModel):
    """Outcome of one Step Executor invocation."""

    status: NodeStatus
    output: str = ""
    duration_ms: int = 0
    reason: str | None = None
    timed_out: bool = False
    data: dict[str, Any] = {}

    @classmethod
    def success(cls, output: str = "", **data: Any) -> StepResult:
        return cls(status=NodeStatus.SUCCESS, output=output, data=data)

    @classmethod
    def failure(cls, reason: str, output: str = "", **data: Any) -> StepResult:
        return cls(status=NodeStatus.FAILURE, output=output, reason=reason, data=data)


class NodeRun(BaseModel):
    """Runtime state of a single stage or step within one run."""

    path: str
    name: str
    kind: str  # "stage" or "step"
    status: NodeStatus = NodeStatus.PENDING
    reason: str | None = None
    output: str = ""
    timed_out: bool = False
    attempts: int = 0
    agent: str | None = None
    failed_leaf: str | None = None

    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at and self.completed_at:
            return (self.completed_at - self.started_at).total_seconds()
        return None


class PostActionResult(BaseModel):
    """Record of one post-action step."""

    scope: str  # node path, or "" for the pipeline
    trigger: PostTrigger
    step: str
    status: NodeStatus
    output: str = ""
    error: str | None = None


class RunResult(BaseModel):
    """Outcome of a complete pipeline run."""

    run_id: str
    pipeline_name: str
    status: NodeStatus
    parameters: dict[str, Any] = {}
    nodes: dict[str, NodeRun] = {}
    post_actions: list[PostActionResult] = []
    warnings: list[str] = []
    reason: str | None = None

    started_at: datetime | None = None
    completed_at: datetime | None = None

    def node(self, path: str) -> NodeRun:
        return self.nodes[path]

    @property
    def post_failures(self) -> list[PostActionResult]:
        return [p for p in self.post_actions if p.status == NodeStatus.FAILURE]

    def to_audit_record(self) -> dict[str, Any]:
        """Nested mapping of node path → status/timestamps/output, for external tooling."""
        return {
            "run_id": self.run_id,
            "pipeline": self.pipeline_name,
            "status": self.status.value,
            "started_at": _dt_iso(self.started_at),
            "completed_at": _dt_iso(self.completed_at),
            "nodes": {
                path: {
                    "kind": node.kind,
                    "status": node.status.value,
                    "reason": node.reason,
                    "timed_out": node.timed_out,
                    "attempts": node.attempts,
                    "started_at": _dt_iso(node.started_at),
                    "completed_at": _dt_iso(node.completed_at),
                    "output": node.output,
                }
                for path, node in self.nodes.items()
            },
            "post_actions": [p.model_dump(mode="json") for p in self.post_actions],
        }


# ── Helpers ──────────────────────────────────────────────────────────────────


def _dt_iso(dt: datetime | None) -> str | None:
    return dt.isoformat() if dt else None


def _parse_duration_seconds(duration: str | int | float) -> float:
    """Parse a duration like '250ms', '30s', '5m', '2h', '1d' to seconds.

    Bare numbers are taken as seconds. Raises ValueError on invalid format
    or negative values.
    """
    if isinstance(duration, bool):
        msg = f"Invalid duration: {duration!r}"
        raise ValueError(msg)
    if isinstance(duration, (int, float)):
        if duration < 0:
            msg = f"Duration must be non-negative, got {duration}"
            raise ValueError(msg)
        return float(duration)
    match = re.match(r"^(\d+(?:\.\d+)?)\s*(ms|s|m|h|d)$", duration.strip())
    if not match:
        msg = f"Invalid duration format: '{duration}'. Expected <number><ms|s|m|h|d>"
        raise ValueError(msg)
    value = float(match.group(1))
    unit = match.group(2)
    multipliers = {"ms": 0.001, "s": 1, "m": 60, "h": 3600, "d": 86400}
    return value * multipliers[unit]
