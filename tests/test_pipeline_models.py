"""Tests for pipeline definition and runtime models."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from pydantic import ValidationError

from conveyor.pipeline.models import (
    AgentSpec,
    ChildMode,
    NodeRun,
    NodeStatus,
    PipelineDefinition,
    PostActionResult,
    PostTrigger,
    RunResult,
    SecretRef,
    StageDefinition,
    StepDefinition,
    WhenConfig,
    _parse_duration_seconds,
    worst_status,
)


# ── Status aggregation ───────────────────────────────────────────────────────


class TestWorstStatus:
    def test_empty_is_success(self):
        assert worst_status([]) == NodeStatus.SUCCESS

    def test_ordering(self):
        assert worst_status([NodeStatus.SUCCESS, NodeStatus.UNSTABLE]) == NodeStatus.UNSTABLE
        assert (
            worst_status([NodeStatus.UNSTABLE, NodeStatus.FAILURE, NodeStatus.SUCCESS])
            == NodeStatus.FAILURE
        )
        assert worst_status([NodeStatus.FAILURE, NodeStatus.ABORTED]) == NodeStatus.ABORTED

    def test_skipped_is_neutral(self):
        assert worst_status([NodeStatus.SKIPPED, NodeStatus.SKIPPED]) == NodeStatus.SUCCESS
        assert worst_status([NodeStatus.SKIPPED, NodeStatus.UNSTABLE]) == NodeStatus.UNSTABLE

    def test_terminal_states(self):
        assert not NodeStatus.PENDING.is_terminal
        assert not NodeStatus.RUNNING.is_terminal
        assert NodeStatus.SKIPPED.is_terminal
        assert NodeStatus.ABORTED.is_terminal


class TestPostTrigger:
    def test_always_and_cleanup_match_everything(self):
        for status in (NodeStatus.SUCCESS, NodeStatus.FAILURE, NodeStatus.ABORTED):
            assert PostTrigger.ALWAYS.matches(status)
            assert PostTrigger.CLEANUP.matches(status)

    def test_exact_triggers(self):
        assert PostTrigger.FAILURE.matches(NodeStatus.FAILURE)
        assert not PostTrigger.FAILURE.matches(NodeStatus.UNSTABLE)
        assert PostTrigger.UNSTABLE.matches(NodeStatus.UNSTABLE)

    def test_unsuccessful(self):
        assert PostTrigger.UNSUCCESSFUL.matches(NodeStatus.FAILURE)
        assert PostTrigger.UNSUCCESSFUL.matches(NodeStatus.ABORTED)
        assert not PostTrigger.UNSUCCESSFUL.matches(NodeStatus.SUCCESS)


# ── Definition models ────────────────────────────────────────────────────────


class TestStepDefinition:
    def test_scalar_shorthand(self):
        step = StepDefinition.model_validate({"sh": "make build"})
        assert step.kind == "sh"
        assert step.inputs == {"command": "make build"}
        assert step.label == "sh"

    def test_mapping_shorthand_keeps_step_fields(self):
        step = StepDefinition.model_validate(
            {"echo": {"message": "hi"}, "name": "greet", "retry": 2, "timeout": "5s"}
        )
        assert step.kind == "echo"
        assert step.inputs == {"message": "hi"}
        assert step.retry == 2
        assert step.timeout == "5s"
        assert step.label == "greet"

    def test_custom_kind_uses_value_input(self):
        step = StepDefinition.model_validate({"deploy": "prod"})
        assert step.kind == "deploy"
        assert step.inputs == {"value": "prod"}

    def test_explicit_form(self):
        step = StepDefinition.model_validate({"kind": "sleep", "inputs": {"duration": "1s"}})
        assert step.kind == "sleep"

    def test_unknown_field_rejected(self):
        with pytest.raises(ValidationError):
            StepDefinition.model_validate({"kind": "sh", "inputs": {}, "bogus": 1})


class TestAgentSpec:
    def test_shorthands(self):
        assert AgentSpec.model_validate("none").none is True
        assert AgentSpec.model_validate("any").describe() == "any"
        assert AgentSpec.model_validate("linux").label == "linux"

    def test_describe(self):
        assert AgentSpec(image="python:3.12").describe() == "image:python:3.12"
        assert AgentSpec(label="gpu").describe() == "label:gpu"


class TestStageDefinition:
    def test_requires_exactly_one_child_kind(self):
        with pytest.raises(ValidationError):
            StageDefinition.model_validate({"name": "Build"})
        with pytest.raises(ValidationError):
            StageDefinition.model_validate(
                {"name": "Build", "steps": [{"sh": "make"}], "parallel": []}
            )

    def test_mode(self):
        seq = StageDefinition.model_validate({"name": "A", "stages": []})
        par = StageDefinition.model_validate({"name": "B", "parallel": []})
        assert seq.mode == ChildMode.SEQUENTIAL
        assert par.mode == ChildMode.PARALLEL

    def test_generate_placeholder_needs_no_children(self):
        stage = StageDefinition.model_validate({"generate": "matrix", "with": {"axes": [1, 2]}})
        assert stage.generate == "matrix"
        assert stage.generate_args == {"axes": [1, 2]}

    def test_secret_environment_value(self):
        stage = StageDefinition.model_validate(
            {
                "name": "Deploy",
                "environment": {"TOKEN": {"credentials": "deploy-token"}, "TARGET": "prod"},
                "steps": [{"sh": "deploy"}],
            }
        )
        assert stage.environment["TOKEN"] == SecretRef(credentials="deploy-token")
        assert stage.environment["TARGET"] == "prod"

    def test_post_triggers_parsed(self):
        stage = StageDefinition.model_validate(
            {
                "name": "Test",
                "steps": [{"sh": "pytest"}],
                "post": {"always": [{"echo": "done"}], "failure": [{"echo": "boom"}]},
            }
        )
        assert list(stage.post) == [PostTrigger.ALWAYS, PostTrigger.FAILURE]


class TestWhenConfig:
    def test_empty_predicate_rejected(self):
        with pytest.raises(ValidationError):
            WhenConfig.model_validate({})

    def test_not_alias(self):
        when = WhenConfig.model_validate({"not": {"branch": "main"}})
        assert when.not_ is not None
        assert when.not_.branch == "main"


class TestPipelineDefinition:
    def test_requires_stages(self):
        with pytest.raises(ValidationError):
            PipelineDefinition.model_validate({"name": "empty", "stages": []})

    def test_get_parameter(self):
        pipeline = PipelineDefinition.model_validate(
            {
                "parameters": [{"name": "TARGET", "default": "staging"}],
                "stages": [{"name": "A", "steps": [{"echo": "hi"}]}],
            }
        )
        assert pipeline.get_parameter("TARGET").default == "staging"
        assert pipeline.get_parameter("MISSING") is None


# ── Durations ────────────────────────────────────────────────────────────────


class TestParseDuration:
    @pytest.mark.parametrize(
        ("value", "expected"),
        [("250ms", 0.25), ("30s", 30.0), ("5m", 300.0), ("2h", 7200.0), ("1d", 86400.0), (12, 12.0)],
    )
    def test_valid(self, value, expected):
        assert _parse_duration_seconds(value) == pytest.approx(expected)

    @pytest.mark.parametrize("value", ["soon", "-1s", "10 minutes", -3, True])
    def test_invalid(self, value):
        with pytest.raises(ValueError):
            _parse_duration_seconds(value)


# ── Runtime models ───────────────────────────────────────────────────────────


class TestRunResult:
    def _result(self) -> RunResult:
        start = datetime(2026, 1, 1, tzinfo=timezone.utc)
        return RunResult(
            run_id="run-1",
            pipeline_name="demo",
            status=NodeStatus.FAILURE,
            nodes={
                "Build": NodeRun(
                    path="Build",
                    name="Build",
                    kind="stage",
                    status=NodeStatus.FAILURE,
                    started_at=start,
                    completed_at=start + timedelta(seconds=3),
                ),
            },
            post_actions=[
                PostActionResult(
                    scope="", trigger=PostTrigger.ALWAYS, step="post.always[0]", status=NodeStatus.SUCCESS
                ),
                PostActionResult(
                    scope="",
                    trigger=PostTrigger.FAILURE,
                    step="post.failure[0]",
                    status=NodeStatus.FAILURE,
                    error="smtp down",
                ),
            ],
            started_at=start,
        )

    def test_post_failures(self):
        failures = self._result().post_failures
        assert [p.step for p in failures] == ["post.failure[0]"]

    def test_node_duration(self):
        assert self._result().node("Build").duration_seconds == 3.0

    def test_audit_record(self):
        record = self._result().to_audit_record()
        assert record["status"] == "failure"
        assert record["nodes"]["Build"]["status"] == "failure"
        assert record["started_at"].startswith("2026-01-01")
        assert record["completed_at"] is None
        assert record["post_actions"][1]["error"] == "smtp down"
