"""Compiled execution plan — the immutable output of the Stage Graph Builder.

Plans are frozen Pydantic models: they compare structurally, serialize to
JSON for the run audit snapshot, and are never mutated by a run. All
per-run state lives in :class:`~conveyor.pipeline.context.ExecutionContext`.
"""

from __future__ import annotations

from types import MappingProxyType
from typing import Annotated, Any, Iterator, Mapping

from pydantic import AfterValidator, BaseModel, ConfigDict, Field, PlainSerializer

from conveyor.pipeline.models import (
    AgentSpec,
    ChildMode,
    EnvValue,
    ParameterDefinition,
    PostTrigger,
    WhenConfig,
)


def _freeze(value: Any) -> Any:
    if isinstance(value, Mapping):
        return MappingProxyType({key: _freeze(item) for key, item in value.items()})
    if isinstance(value, (list, tuple)):
        return tuple(_freeze(item) for item in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _thaw(item) for key, item in value.items()}
    if isinstance(value, tuple):
        return [_thaw(item) for item in value]
    return value


# Read-only all the way down; dumps back to plain dicts and lists
StepInputs = Annotated[Mapping[str, Any], AfterValidator(_freeze), PlainSerializer(_thaw)]
Bindings = Annotated[Mapping[str, EnvValue], AfterValidator(_freeze), PlainSerializer(_thaw)]


def _empty() -> Mapping[str, Any]:
    return MappingProxyType({})


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class StepPlan(_Frozen):
    path: str
    name: str
    kind: str
    inputs: StepInputs = Field(default_factory=_empty)
    timeout_seconds: float | None = None
    retry: int = 0


class PostActionPlan(_Frozen):
    trigger: PostTrigger
    steps: tuple[StepPlan, ...] = ()


class StagePlan(_Frozen):
    path: str
    name: str
    mode: ChildMode = ChildMode.SEQUENTIAL

    # Agent declared on this stage (acquired for its extent) and the
    # effective agent after inheritance.
    agent: AgentSpec | None = None
    effective_agent: AgentSpec | None = None

    # Unresolved bindings; resolved when the stage's frame is pushed.
    environment: Bindings = Field(default_factory=_empty)
    # Paths of the enclosing scopes whose frames are visible here, outermost first.
    scope_chain: tuple[str, ...] = ()

    when: WhenConfig | None = None
    stages: tuple[StagePlan, ...] = ()
    steps: tuple[StepPlan, ...] = ()
    post: tuple[PostActionPlan, ...] = ()

    timeout_seconds: float | None = None
    continue_on_failure: bool = False

    @property
    def children(self) -> tuple[StagePlan, ...] | tuple[StepPlan, ...]:
        return self.stages if self.stages else self.steps


class ExecutionPlan(_Frozen):
    name: str
    description: str = ""
    agent: AgentSpec | None = None
    environment: Bindings = Field(default_factory=_empty)
    parameters: tuple[ParameterDefinition, ...] = ()
    stages: tuple[StagePlan, ...] = ()
    post: tuple[PostActionPlan, ...] = ()
    timeout_seconds: float | None = None
    continue_on_failure: bool = False
    unstable_on_post_failure: bool = False
    warnings: tuple[str, ...] = ()

    def walk(self) -> Iterator[StagePlan | StepPlan]:
        """Yield every stage and step in document order (depth-first)."""

        def _walk(stage: StagePlan) -> Iterator[StagePlan | StepPlan]:
            yield stage
            for child in stage.stages:
                yield from _walk(child)
            yield from stage.steps

        for stage in self.stages:
            yield from _walk(stage)

    def find(self, path: str) -> StagePlan | StepPlan | None:
        for node in self.walk():
            if node.path == path:
                return node
        return None
