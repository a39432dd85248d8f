"""Declarative pipeline engine.

Definitions (YAML or mappings) are compiled by the Stage Graph Builder into
an immutable ExecutionPlan, which the PipelineEngine runs any number of
times against pluggable capability interfaces.

Key exports:
    compile, StageGraphBuilder — definition → ExecutionPlan
    PipelineEngine — runs a plan and returns a RunResult
    StepExecutor — action registry for leaf steps
    ConditionEvaluator — ``when`` predicate evaluation
    PostActionDispatcher — ``post`` block execution
    RunRegistry — SQLite persistence for completed runs
"""

from conveyor.pipeline.builder import (
    GenerationContext,
    StageGenerator,
    StageGraphBuilder,
    compile,
)
from conveyor.pipeline.conditions import ConditionEvaluator
from conveyor.pipeline.context import (
    CancellationToken,
    Clock,
    EnvironmentScope,
    ExecutionContext,
    SystemClock,
)
from conveyor.pipeline.engine import PipelineEngine, resolve_parameters
from conveyor.pipeline.errors import (
    CancellationRequested,
    CompileError,
    CompileErrorKind,
    ConditionEvaluationError,
    ParameterError,
    PipelineError,
    PostActionFailure,
    StepFailure,
    TimeoutExceeded,
    UnsupportedAction,
)
from conveyor.pipeline.interfaces import (
    AgentHandle,
    AgentPool,
    ApprovalBroker,
    ApprovalDecision,
    ArtifactStore,
    EnvSecretStore,
    LocalAgentPool,
    LocalArtifactStore,
    LocalSourceControl,
    LoggingNotificationSink,
    MappingSecretStore,
    NotificationSink,
    SecretStore,
    SourceControlProvider,
    WebhookNotificationSink,
    WorkspaceHandle,
)
from conveyor.pipeline.models import (
    AgentSpec,
    NodeRun,
    NodeStatus,
    PipelineDefinition,
    PostActionResult,
    PostTrigger,
    RunResult,
    SecretRef,
    StageDefinition,
    StepDefinition,
    StepResult,
    WhenConfig,
    worst_status,
)
from conveyor.pipeline.plan import ExecutionPlan, PostActionPlan, StagePlan, StepPlan
from conveyor.pipeline.post import PostActionDispatcher
from conveyor.pipeline.registry import RunRegistry
from conveyor.pipeline.steps import ActionContext, StepExecutor

__all__ = [
    "ActionContext",
    "AgentHandle",
    "AgentPool",
    "AgentSpec",
    "ApprovalBroker",
    "ApprovalDecision",
    "ArtifactStore",
    "CancellationRequested",
    "CancellationToken",
    "Clock",
    "CompileError",
    "CompileErrorKind",
    "ConditionEvaluationError",
    "ConditionEvaluator",
    "EnvSecretStore",
    "EnvironmentScope",
    "ExecutionContext",
    "ExecutionPlan",
    "GenerationContext",
    "LocalAgentPool",
    "LocalArtifactStore",
    "LocalSourceControl",
    "LoggingNotificationSink",
    "MappingSecretStore",
    "NodeRun",
    "NodeStatus",
    "NotificationSink",
    "ParameterError",
    "PipelineDefinition",
    "PipelineEngine",
    "PipelineError",
    "PostActionDispatcher",
    "PostActionFailure",
    "PostActionPlan",
    "PostActionResult",
    "PostTrigger",
    "RunRegistry",
    "RunResult",
    "SecretRef",
    "SecretStore",
    "SourceControlProvider",
    "StageDefinition",
    "StageGenerator",
    "StageGraphBuilder",
    "StagePlan",
    "StepDefinition",
    "StepExecutor",
    "StepFailure",
    "StepPlan",
    "StepResult",
    "SystemClock",
    "TimeoutExceeded",
    "UnsupportedAction",
    "WebhookNotificationSink",
    "WhenConfig",
    "WorkspaceHandle",
    "compile",
    "resolve_parameters",
    "worst_status",
]
