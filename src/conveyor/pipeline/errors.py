"""Pipeline error taxonomy.

Key exports:
    CompileError, CompileErrorKind — structural/validation errors raised by the builder
    StepFailure, TimeoutExceeded — leaf outcomes (recorded, then retried per policy)
    CancellationRequested — run cancellation, surfaces as ABORTED
    PostActionFailure — recorded, never alters a scope's terminal status
    ParameterError — invocation parameters that violate their declarations
"""

from __future__ import annotations

from enum import Enum


class PipelineError(Exception):
    """Base class for all pipeline errors."""


class CompileErrorKind(str, Enum):
    DUPLICATE_STAGE_NAME = "duplicate_stage_name"
    UNKNOWN_DIRECTIVE = "unknown_directive"
    INVALID_OPTION = "invalid_option"
    UNSUPPORTED_ACTION = "unsupported_action"


class CompileError(PipelineError):
    """A pipeline definition cannot be compiled into a plan."""

    def __init__(self, kind: CompileErrorKind, location: str, message: str):
        self.kind = kind
        self.location = location
        self.message = message
        super().__init__(f"{kind.value} at '{location}': {message}")


class UnsupportedAction(CompileError):
    """A step references an action kind with no registered handler."""

    def __init__(self, location: str, kind: str, available: list[str]):
        self.action_kind = kind
        super().__init__(
            CompileErrorKind.UNSUPPORTED_ACTION,
            location,
            f"Unknown step kind '{kind}'. Available: {available}",
        )


class ParameterError(PipelineError, ValueError):
    """Run parameters do not match the pipeline's declared parameters."""


class StepFailure(PipelineError):
    """A leaf action finished unsuccessfully."""

    def __init__(self, message: str, *, output: str = ""):
        self.output = output
        super().__init__(message)


class TimeoutExceeded(StepFailure):
    """A leaf action ran past its deadline."""

    def __init__(self, seconds: float, scope: str, *, output: str = ""):
        self.seconds = seconds
        self.scope = scope
        super().__init__(f"Timed out after {seconds:g}s ({scope})", output=output)


class ConditionEvaluationError(PipelineError):
    """A `when` predicate could not be evaluated. The evaluator reports it as false."""


class CancellationRequested(PipelineError):
    """The run's cancellation token fired."""

    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(f"Cancelled: {reason}")


class PostActionFailure(PipelineError):
    """A post-action step failed. Collected, never re-opens the scope status."""

    def __init__(self, scope: str, trigger: str, message: str):
        self.scope = scope
        self.trigger = trigger
        super().__init__(f"Post-action '{trigger}' for '{scope}' failed: {message}")
