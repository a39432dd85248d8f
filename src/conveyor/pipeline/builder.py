"""Stage Graph Builder — compiles pipeline definitions into immutable plans.

Key exports:
    StageGraphBuilder — validates a definition and produces an ExecutionPlan
    compile — module-level convenience wrapper around StageGraphBuilder
    StageGenerator, GenerationContext — compile-time dynamic stage expansion

Compilation either returns a complete plan or raises CompileError; it never
returns a partial plan. Compiling the same input twice yields equal plans.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Protocol, Sequence, Union

from pydantic import ValidationError

from conveyor.pipeline.conditions import iter_expressions
from conveyor.pipeline.errors import CompileError, CompileErrorKind, UnsupportedAction
from conveyor.pipeline.models import (
    AgentSpec,
    ParameterDefinition,
    ParameterType,
    PipelineDefinition,
    PostTrigger,
    StageDefinition,
    StepDefinition,
    WhenConfig,
    _parse_duration_seconds,
)
from conveyor.pipeline.plan import ExecutionPlan, PostActionPlan, StagePlan, StepPlan
from conveyor.pipeline.steps import BUILTIN_ACTIONS
from conveyor.pipeline.templates import KNOWN_ROOTS, expression_paths, template_expressions

logger = logging.getLogger("conveyor.pipeline.builder")

# Generators may produce further ``generate`` entries up to this depth
MAX_GENERATION_DEPTH = 5

# Environment names the engine always binds
BUILTIN_ENV = frozenset({"RUN_ID", "PIPELINE_NAME", "WORKSPACE", "BRANCH_NAME", "TAG_NAME"})

_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


# ── Dynamic generation ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class GenerationContext:
    """What a generator sees when it is expanded."""

    generator: str
    args: Mapping[str, Any]
    parent_path: str
    depth: int
    parameters: tuple[ParameterDefinition, ...] = ()
    environment: Mapping[str, Any] = field(default_factory=dict)


class StageGenerator(Protocol):
    def produce(self, context: GenerationContext) -> Sequence[StageDefinition | Mapping[str, Any]]:
        ...


GeneratorLike = Union[
    StageGenerator,
    Callable[[GenerationContext], Sequence[Union[StageDefinition, Mapping[str, Any]]]],
]


# ── Builder ──────────────────────────────────────────────────────────────────


class StageGraphBuilder:
    """Validates pipeline definitions and compiles them into execution plans.

    Usage::

        builder = StageGraphBuilder(actions=executor.list_actions())
        plan = builder.compile(yaml.safe_load(text))
    """

    def __init__(
        self,
        *,
        actions: Iterable[str] | None = None,
        generators: Mapping[str, GeneratorLike] | None = None,
    ):
        if actions is None:
            actions = BUILTIN_ACTIONS
        elif hasattr(actions, "list_actions"):
            actions = actions.list_actions()
        self._actions = frozenset(actions)
        self._generators: dict[str, GeneratorLike] = dict(generators or {})

    def register_generator(self, name: str, generator: GeneratorLike) -> None:
        self._generators[name] = generator

    def compile(self, definition: PipelineDefinition | Mapping[str, Any]) -> ExecutionPlan:
        if isinstance(definition, PipelineDefinition):
            pipeline = definition
        elif isinstance(definition, Mapping):
            pipeline = _validate_model(PipelineDefinition, dict(definition), "")
        else:
            raise CompileError(
                CompileErrorKind.INVALID_OPTION,
                "",
                f"Expected a pipeline mapping, got {type(definition).__name__}",
            )
        plan = _Compilation(self, pipeline).run()
        logger.debug(
            "Compiled pipeline '%s' (%d top-level stages, %d warnings)",
            plan.name,
            len(plan.stages),
            len(plan.warnings),
        )
        return plan


def compile(
    definition: PipelineDefinition | Mapping[str, Any],
    *,
    actions: Iterable[str] | None = None,
    generators: Mapping[str, GeneratorLike] | None = None,
) -> ExecutionPlan:
    """Compile a definition with a one-off :class:`StageGraphBuilder`."""
    return StageGraphBuilder(actions=actions, generators=generators).compile(definition)


# ── Compilation pass ─────────────────────────────────────────────────────────


class _Compilation:
    """State for a single compile call."""

    def __init__(self, builder: StageGraphBuilder, pipeline: PipelineDefinition):
        self._builder = builder
        self._pipeline = pipeline
        self._warnings: list[str] = []
        # setenv steps may bind names anywhere; their targets count as declared
        self._runtime_env = _setenv_names(pipeline)

    def run(self) -> ExecutionPlan:
        pipeline = self._pipeline
        self._check_parameters(pipeline.parameters)

        options = pipeline.options
        timeout = _parse_timeout(options.timeout, "options.timeout")
        retry = _check_retry(options.retry, "options.retry")
        env_names = set(BUILTIN_ENV) | self._check_environment(pipeline.environment, "environment", set(BUILTIN_ENV))

        stages = self._expand(pipeline.stages, parent_path="", location="stages", depth=0)
        self._check_duplicates(stages, "stages")
        stage_plans = tuple(
            self._stage(
                stage,
                parent_path="",
                location=f"stages[{i}]",
                scope_chain=(),
                inherited_agent=pipeline.agent,
                inherited_retry=retry or 0,
                env_names=env_names,
            )
            for i, stage in enumerate(stages)
        )
        post = self._post(pipeline.post, scope="", location="post", retry=retry or 0, env_names=env_names)

        return ExecutionPlan(
            name=pipeline.name,
            description=pipeline.description,
            agent=pipeline.agent,
            environment=dict(pipeline.environment),
            parameters=tuple(pipeline.parameters),
            stages=stage_plans,
            post=post,
            timeout_seconds=timeout,
            continue_on_failure=options.continue_on_failure,
            unstable_on_post_failure=options.unstable_on_post_failure,
            warnings=tuple(dict.fromkeys(self._warnings)),
        )

    # ── Stages ───────────────────────────────────────────────────────────────

    def _stage(
        self,
        stage: StageDefinition,
        *,
        parent_path: str,
        location: str,
        scope_chain: tuple[str, ...],
        inherited_agent: AgentSpec | None,
        inherited_retry: int,
        env_names: set[str],
    ) -> StagePlan:
        if "/" in stage.name:
            raise CompileError(
                CompileErrorKind.INVALID_OPTION,
                location,
                f"Stage name '{stage.name}' must not contain '/'",
            )
        path = f"{parent_path}/{stage.name}" if parent_path else stage.name

        timeout = _parse_timeout(stage.options.timeout, f"{path}.options.timeout")
        retry = _check_retry(stage.options.retry, f"{path}.options.retry")
        effective_retry = inherited_retry if retry is None else retry

        # Values resolve against the enclosing scope, so names bound by this
        # same frame are checked before being added.
        own_env = self._check_environment(stage.environment, f"{path}.environment", env_names)
        visible_env = env_names | own_env

        if stage.when is not None:
            self._check_condition(stage.when, f"{path}.when", visible_env)

        effective_agent = stage.agent or inherited_agent
        child_chain = (*scope_chain, path)

        children: tuple[StagePlan, ...] = ()
        steps: tuple[StepPlan, ...] = ()
        if stage.steps is not None:
            steps = tuple(
                self._step(
                    step,
                    path=f"{path}/steps[{i}]",
                    inherited_retry=effective_retry,
                    env_names=visible_env,
                )
                for i, step in enumerate(stage.steps)
            )
        else:
            field_name = "parallel" if stage.parallel is not None else "stages"
            expanded = self._expand(
                stage.child_stages, parent_path=path, location=f"{path}.{field_name}", depth=0
            )
            self._check_duplicates(expanded, f"{path}.{field_name}")
            children = tuple(
                self._stage(
                    child,
                    parent_path=path,
                    location=f"{path}.{field_name}[{i}]",
                    scope_chain=child_chain,
                    inherited_agent=effective_agent,
                    inherited_retry=effective_retry,
                    env_names=visible_env,
                )
                for i, child in enumerate(expanded)
            )

        post = self._post(
            stage.post,
            scope=path,
            location=f"{path}.post",
            retry=effective_retry,
            env_names=visible_env,
        )

        return StagePlan(
            path=path,
            name=stage.name,
            mode=stage.mode,
            agent=stage.agent,
            effective_agent=effective_agent,
            environment=dict(stage.environment),
            scope_chain=scope_chain,
            when=stage.when,
            stages=children,
            steps=steps,
            post=post,
            timeout_seconds=timeout,
            continue_on_failure=stage.options.continue_on_failure,
        )

    def _step(
        self,
        step: StepDefinition,
        *,
        path: str,
        inherited_retry: int,
        env_names: set[str],
    ) -> StepPlan:
        if step.kind not in self._builder._actions:
            raise UnsupportedAction(path, step.kind, sorted(self._builder._actions))
        timeout = _parse_timeout(step.timeout, f"{path}.timeout")
        retry = _check_retry(step.retry, f"{path}.retry")
        self._check_templates(step.inputs, f"{path}.inputs", env_names)
        return StepPlan(
            path=path,
            name=step.label,
            kind=step.kind,
            inputs=dict(step.inputs),
            timeout_seconds=timeout,
            retry=inherited_retry if retry is None else retry,
        )

    def _post(
        self,
        post: Mapping[PostTrigger, list[StepDefinition]],
        *,
        scope: str,
        location: str,
        retry: int,
        env_names: set[str],
    ) -> tuple[PostActionPlan, ...]:
        ordered = [t for t in post if t != PostTrigger.CLEANUP]
        if PostTrigger.CLEANUP in post:
            ordered.append(PostTrigger.CLEANUP)
        prefix = f"{scope}/post" if scope else "post"
        plans = []
        for trigger in ordered:
            steps = tuple(
                self._step(
                    step,
                    path=f"{prefix}.{trigger.value}[{i}]",
                    inherited_retry=retry,
                    env_names=env_names,
                )
                for i, step in enumerate(post[trigger])
            )
            plans.append(PostActionPlan(trigger=trigger, steps=steps))
        return tuple(plans)

    # ── Generation ───────────────────────────────────────────────────────────

    def _expand(
        self,
        stages: Sequence[StageDefinition],
        *,
        parent_path: str,
        location: str,
        depth: int,
    ) -> list[StageDefinition]:
        expanded: list[StageDefinition] = []
        for i, stage in enumerate(stages):
            if not stage.generate:
                expanded.append(stage)
                continue
            where = f"{location}[{i}]"
            if depth >= MAX_GENERATION_DEPTH:
                raise CompileError(
                    CompileErrorKind.INVALID_OPTION,
                    where,
                    f"Stage generation nested deeper than {MAX_GENERATION_DEPTH} levels",
                )
            produced = self._generate(stage, parent_path=parent_path, location=where, depth=depth)
            expanded.extend(
                self._expand(produced, parent_path=parent_path, location=where, depth=depth + 1)
            )
        return expanded

    def _generate(
        self,
        stage: StageDefinition,
        *,
        parent_path: str,
        location: str,
        depth: int,
    ) -> list[StageDefinition]:
        name = stage.generate or ""
        generator = self._builder._generators.get(name)
        if generator is None:
            raise CompileError(
                CompileErrorKind.UNKNOWN_DIRECTIVE,
                location,
                f"Unknown stage generator '{name}'. Available: {sorted(self._builder._generators)}",
            )
        context = GenerationContext(
            generator=name,
            args=dict(stage.generate_args),
            parent_path=parent_path,
            depth=depth,
            parameters=tuple(self._pipeline.parameters),
            environment=dict(self._pipeline.environment),
        )
        try:
            if hasattr(generator, "produce"):
                produced = generator.produce(context)
            else:
                produced = generator(context)
            items = list(produced)
        except CompileError:
            raise
        except Exception as exc:
            raise CompileError(
                CompileErrorKind.INVALID_OPTION,
                location,
                f"Stage generator '{name}' failed: {exc}",
            ) from exc

        stages: list[StageDefinition] = []
        for j, item in enumerate(items):
            if isinstance(item, StageDefinition):
                stages.append(item)
            elif isinstance(item, Mapping):
                stages.append(_validate_model(StageDefinition, dict(item), f"{location}.{name}[{j}]"))
            else:
                raise CompileError(
                    CompileErrorKind.INVALID_OPTION,
                    f"{location}.{name}[{j}]",
                    f"Generator produced {type(item).__name__}, expected a stage",
                )
        logger.debug("Generator '%s' produced %d stage(s) at %s", name, len(stages), location)
        return stages

    # ── Validation ───────────────────────────────────────────────────────────

    def _check_duplicates(self, stages: Sequence[StageDefinition], location: str) -> None:
        seen: set[str] = set()
        for stage in stages:
            if stage.name in seen:
                raise CompileError(
                    CompileErrorKind.DUPLICATE_STAGE_NAME,
                    location,
                    f"Duplicate stage name '{stage.name}'",
                )
            seen.add(stage.name)

    def _check_parameters(self, parameters: Sequence[ParameterDefinition]) -> None:
        seen: set[str] = set()
        for i, param in enumerate(parameters):
            where = f"parameters[{i}]"
            if param.name in seen:
                raise CompileError(
                    CompileErrorKind.INVALID_OPTION, where, f"Duplicate parameter '{param.name}'"
                )
            seen.add(param.name)
            if param.type == ParameterType.CHOICE:
                if not param.choices:
                    raise CompileError(
                        CompileErrorKind.INVALID_OPTION,
                        where,
                        f"Choice parameter '{param.name}' requires 'choices'",
                    )
                if param.default is not None and str(param.default) not in param.choices:
                    raise CompileError(
                        CompileErrorKind.INVALID_OPTION,
                        where,
                        f"Default {param.default!r} of '{param.name}' is not one of {param.choices}",
                    )
            elif param.choices:
                raise CompileError(
                    CompileErrorKind.INVALID_OPTION,
                    where,
                    f"'choices' is only valid for choice parameters ('{param.name}')",
                )
            if param.default is None:
                continue
            if param.type == ParameterType.BOOLEAN and not isinstance(param.default, bool):
                raise CompileError(
                    CompileErrorKind.INVALID_OPTION,
                    where,
                    f"Boolean parameter '{param.name}' has non-boolean default {param.default!r}",
                )
            if param.type == ParameterType.INTEGER and (
                isinstance(param.default, bool) or not isinstance(param.default, int)
            ):
                raise CompileError(
                    CompileErrorKind.INVALID_OPTION,
                    where,
                    f"Integer parameter '{param.name}' has non-integer default {param.default!r}",
                )

    def _check_environment(
        self, bindings: Mapping[str, Any], location: str, env_names: set[str]
    ) -> set[str]:
        for name, value in bindings.items():
            if not _ENV_NAME_RE.match(name):
                raise CompileError(
                    CompileErrorKind.INVALID_OPTION,
                    f"{location}.{name}",
                    f"Invalid environment variable name '{name}'",
                )
            self._check_templates(value, f"{location}.{name}", env_names)
        return set(bindings)

    def _check_condition(self, predicate: WhenConfig, location: str, env_names: set[str]) -> None:
        for expr in iter_expressions(predicate):
            self._check_expression(expr, location, env_names)
        self._warn_env(_condition_env_names(predicate), location, env_names)

    def _check_templates(self, value: Any, location: str, env_names: set[str]) -> None:
        for expr in template_expressions(value):
            self._check_expression(expr, location, env_names)

    def _check_expression(self, expr: str, location: str, env_names: set[str]) -> None:
        try:
            paths = expression_paths(expr)
        except ValueError as exc:
            raise CompileError(CompileErrorKind.INVALID_OPTION, location, str(exc)) from exc
        for path in paths:
            root, _, rest = path.partition(".")
            root = root.split("[", 1)[0]
            if root not in KNOWN_ROOTS:
                raise CompileError(
                    CompileErrorKind.UNKNOWN_DIRECTIVE,
                    location,
                    f"Unknown reference '{path}' (expected one of {sorted(KNOWN_ROOTS)})",
                )
            name = rest.split(".", 1)[0].split("[", 1)[0]
            if not name:
                continue
            if root == "env":
                self._warn_env([name], location, env_names)
            elif root == "params" and self._pipeline.get_parameter(name) is None:
                self._warnings.append(f"{location}: undeclared parameter 'params.{name}'")

    def _warn_env(self, names: Iterable[str], location: str, env_names: set[str]) -> None:
        for name in names:
            if name not in env_names and name not in self._runtime_env:
                self._warnings.append(f"{location}: undeclared environment variable 'env.{name}'")


# ── Helpers ──────────────────────────────────────────────────────────────────


def _validate_model(model: type, data: dict[str, Any], prefix: str) -> Any:
    """Validate ``data`` as ``model``, translating pydantic errors to CompileError."""
    try:
        return model.model_validate(data)
    except ValidationError as exc:
        raise _compile_error_from(exc, prefix) from exc


def _compile_error_from(exc: ValidationError, prefix: str) -> CompileError:
    errors = exc.errors()
    extra = [e for e in errors if e["type"] == "extra_forbidden"]
    error = extra[0] if extra else errors[0]
    loc = ".".join(str(part) for part in error["loc"])
    location = ".".join(part for part in (prefix, loc) if part)
    if extra:
        return CompileError(
            CompileErrorKind.UNKNOWN_DIRECTIVE,
            location,
            f"Unknown directive '{error['loc'][-1]}'",
        )
    return CompileError(CompileErrorKind.INVALID_OPTION, location, error["msg"])


def _parse_timeout(value: str | float | None, location: str) -> float | None:
    if value is None:
        return None
    try:
        return _parse_duration_seconds(value)
    except (TypeError, ValueError) as exc:
        raise CompileError(CompileErrorKind.INVALID_OPTION, location, str(exc)) from exc


def _check_retry(value: int | None, location: str) -> int | None:
    if value is not None and value < 0:
        raise CompileError(
            CompileErrorKind.INVALID_OPTION, location, f"retry must be >= 0, got {value}"
        )
    return value


def _condition_env_names(predicate: WhenConfig) -> list[str]:
    names: list[str] = []
    if predicate.environment is not None:
        names.append(predicate.environment.name)
    for child in (predicate.all_of or []) + (predicate.any_of or []):
        names.extend(_condition_env_names(child))
    if predicate.not_ is not None:
        names.extend(_condition_env_names(predicate.not_))
    return names


def _setenv_names(pipeline: PipelineDefinition) -> set[str]:
    names: set[str] = set()

    def _from_steps(steps: Iterable[StepDefinition]) -> None:
        for step in steps:
            if step.kind != "setenv":
                continue
            if "name" in step.inputs:
                names.add(str(step.inputs["name"]))
            else:
                names.update(step.inputs)

    def _from_stage(stage: StageDefinition) -> None:
        _from_steps(stage.steps or [])
        for steps in stage.post.values():
            _from_steps(steps)
        for child in stage.child_stages:
            _from_stage(child)

    for stage in pipeline.stages:
        _from_stage(stage)
    for steps in pipeline.post.values():
        _from_steps(steps)
    return names
