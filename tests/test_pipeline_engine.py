"""Tests for the Pipeline Engine."""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from unittest.mock import AsyncMock

import pytest

from conveyor.pipeline.builder import compile
from conveyor.pipeline.engine import PipelineEngine, resolve_parameters
from conveyor.pipeline.errors import ParameterError
from conveyor.pipeline.interfaces import ApprovalBroker, LocalAgentPool, MappingSecretStore
from conveyor.pipeline.models import NodeStatus, ParameterDefinition, PostTrigger, StepResult
from conveyor.pipeline.steps import ActionContext, StepExecutor


class Recorder:
    """Custom actions that record what they saw."""

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.env: dict[str, str] = {}
        self.snapshots: dict[str, dict[str, str]] = {}
        self.failures_left: dict[str, int] = {}
        self.running = 0
        self.max_running = 0

    def install(self, executor: StepExecutor) -> StepExecutor:
        executor.register_fn("record", self.record)
        executor.register_fn("flaky", self.flaky)
        executor.register_fn("busy", self.busy)
        executor.register_fn("snapshot", self.snapshot)
        executor.register_fn("abort", lambda ctx: StepResult(status=NodeStatus.ABORTED, reason="Rejected"))
        return executor

    def record(self, ctx: ActionContext) -> StepResult:
        self.calls.append(ctx.path)
        name = ctx.inputs.get("env")
        if name:
            self.env[ctx.path] = ctx.context.env.get(name, "<unset>")
        return StepResult.success(str(ctx.inputs.get("value", "")))

    def snapshot(self, ctx: ActionContext) -> StepResult:
        self.snapshots[ctx.path] = ctx.context.env.as_dict()
        return StepResult.success()

    def flaky(self, ctx: ActionContext) -> StepResult:
        self.calls.append(ctx.path)
        left = self.failures_left.setdefault(ctx.path, int(ctx.inputs["failures"]))
        if left > 0:
            self.failures_left[ctx.path] = left - 1
            return StepResult.failure("transient")
        return StepResult.success("ok")

    async def busy(self, ctx: ActionContext) -> StepResult:
        self.running += 1
        self.max_running = max(self.max_running, self.running)
        try:
            await asyncio.sleep(0.05)
        finally:
            self.running -= 1
        self.calls.append(ctx.path)
        return StepResult.success()


@pytest.fixture
def recorder() -> Recorder:
    return Recorder()


@pytest.fixture
def executor(recorder) -> StepExecutor:
    return recorder.install(StepExecutor())


@pytest.fixture
def engine(executor) -> PipelineEngine:
    return PipelineEngine(executor)


def build(executor: StepExecutor, *stages: dict[str, Any], **extra: Any):
    return compile({"name": "demo", "stages": list(stages), **extra}, actions=executor)


def stage(name: str, *steps: Any, **extra: Any) -> dict[str, Any]:
    return {"name": name, "steps": list(steps), **extra}


# ── Status propagation ───────────────────────────────────────────────────────


class TestStatusPropagation:
    async def test_build_test_deploy(self, engine, executor, recorder):
        plan = build(
            executor,
            stage("Build", {"record": None}),
            {
                "name": "Test",
                "parallel": [
                    stage("Unit", {"record": None}),
                    stage("Integration", {"error": "boom"}),
                ],
            },
            stage("Deploy", {"record": None}),
            post={"always": [{"record": None}]},
        )
        result = await engine.run(plan)

        assert result.status == NodeStatus.FAILURE
        assert result.node("Build").status == NodeStatus.SUCCESS
        assert result.node("Test").status == NodeStatus.FAILURE
        assert result.node("Test/Unit").status == NodeStatus.SUCCESS
        assert result.node("Test/Integration").status == NodeStatus.FAILURE
        assert result.node("Deploy").status == NodeStatus.SKIPPED
        assert result.node("Deploy/steps[0]").status == NodeStatus.SKIPPED
        assert "Deploy/steps[0]" not in recorder.calls
        assert recorder.calls[-1] == "post.always[0]"
        assert [p.status for p in result.post_actions] == [NodeStatus.SUCCESS]
        assert result.reason == "'Test/Integration/steps[0]': boom"
        assert result.node("Test").failed_leaf == "Test/Integration/steps[0]"

    async def test_parallel_drains_all_branches(self, engine, executor, recorder):
        plan = build(
            executor,
            {
                "name": "Test",
                "parallel": [
                    stage("Fast", {"error": "boom"}),
                    stage("Slow", {"busy": None}),
                ],
            },
        )
        result = await engine.run(plan)
        assert result.node("Test").status == NodeStatus.FAILURE
        assert result.node("Test/Slow").status == NodeStatus.SUCCESS
        assert "Test/Slow/steps[0]" in recorder.calls

    @pytest.mark.parametrize(
        ("branch_steps", "expected"),
        [
            ([{"record": None}, {"record": None}], NodeStatus.SUCCESS),
            ([{"record": None}, {"unstable": "flaky"}], NodeStatus.UNSTABLE),
            ([{"unstable": "flaky"}, {"error": "boom"}], NodeStatus.FAILURE),
        ],
    )
    async def test_parallel_status(self, engine, executor, branch_steps, expected):
        plan = build(
            executor,
            {"name": "P", "parallel": [stage(f"B{i}", s) for i, s in enumerate(branch_steps)]},
        )
        result = await engine.run(plan)
        assert result.node("P").status == expected
        assert result.status == expected

    async def test_unstable_does_not_stop_sequence(self, engine, executor, recorder):
        plan = build(executor, stage("Build", {"unstable": "warnings"}), stage("Deploy", {"record": None}))
        result = await engine.run(plan)
        assert result.status == NodeStatus.UNSTABLE
        assert "Deploy/steps[0]" in recorder.calls

    async def test_failure_skips_remaining_steps(self, engine, executor, recorder):
        plan = build(executor, stage("Build", {"error": "boom"}, {"record": None}))
        result = await engine.run(plan)
        assert result.node("Build/steps[1]").status == NodeStatus.SKIPPED
        assert recorder.calls == []

    async def test_continue_on_failure(self, engine, executor, recorder):
        plan = build(
            executor,
            stage("Build", {"error": "boom"}),
            stage("Report", {"record": None}),
            options={"continue_on_failure": True},
        )
        result = await engine.run(plan)
        assert result.status == NodeStatus.FAILURE
        assert result.node("Report").status == NodeStatus.SUCCESS

    async def test_aborted_stops_even_with_continue_on_failure(self, engine, executor, recorder):
        plan = build(
            executor,
            stage("Gate", {"abort": None}),
            stage("Deploy", {"record": None}),
            options={"continue_on_failure": True},
        )
        result = await engine.run(plan)
        assert result.status == NodeStatus.ABORTED
        assert result.node("Deploy").status == NodeStatus.SKIPPED
        assert recorder.calls == []

    async def test_condition_false_skips_without_running(self, engine, executor, recorder):
        plan = build(
            executor,
            stage("Build", {"record": None}),
            stage(
                "Deploy",
                {"record": None},
                when={"branch": "main"},
                post={"always": [{"record": None}]},
            ),
        )
        result = await engine.run(plan, environment={"BRANCH_NAME": "feature/x"})
        assert result.status == NodeStatus.SUCCESS
        assert result.node("Deploy").status == NodeStatus.SKIPPED
        assert recorder.calls == ["Build/steps[0]"]
        assert result.post_actions == []

    async def test_condition_true_runs(self, engine, executor, recorder):
        plan = build(executor, stage("Deploy", {"record": None}, when={"branch": "main"}))
        result = await engine.run(plan, environment={"BRANCH_NAME": "main"})
        assert result.node("Deploy").status == NodeStatus.SUCCESS

    async def test_plan_can_run_twice(self, engine, executor):
        plan = build(executor, stage("Build", {"record": None}))
        first = await engine.run(plan)
        second = await engine.run(plan)
        assert first.run_id != second.run_id
        assert first.status == second.status == NodeStatus.SUCCESS
        assert first.nodes is not second.nodes


# ── Environment scoping ──────────────────────────────────────────────────────


class TestEnvironment:
    async def test_inner_frame_shadows_and_pops(self, engine, executor, recorder):
        plan = build(
            executor,
            stage("A", {"record": {"env": "X"}}, environment={"X": "inner"}),
            stage("B", {"record": {"env": "X"}}),
            environment={"X": "outer"},
        )
        await engine.run(plan)
        assert recorder.env == {"A/steps[0]": "inner", "B/steps[0]": "outer"}

    async def test_bindings_resolve_against_enclosing_scope(self, engine, executor, recorder):
        plan = build(
            executor,
            stage(
                "A",
                {"record": {"env": "URL"}},
                environment={"URL": "https://{{ env.HOST }}/{{ params.TARGET }}"},
            ),
            environment={"HOST": "example.com"},
            parameters=[{"name": "TARGET", "default": "qa"}],
        )
        await engine.run(plan, {"TARGET": "prod"})
        assert recorder.env["A/steps[0]"] == "https://example.com/prod"

    async def test_setenv_is_local_to_stage(self, engine, executor, recorder):
        plan = build(
            executor,
            stage("A", {"setenv": {"name": "VERSION", "value": "1.2"}}, {"record": {"env": "VERSION"}}),
            stage("B", {"record": {"env": "VERSION"}}),
        )
        await engine.run(plan)
        assert recorder.env == {"A/steps[1]": "1.2", "B/steps[0]": "<unset>"}

    async def test_checkout_workspace_binding_is_local_to_stage(self, engine, executor, recorder, tmp_path):
        plan = build(
            executor,
            stage("Checkout", {"checkout": str(tmp_path)}, {"record": {"env": "WORKSPACE"}}),
            stage("Build", {"record": {"env": "WORKSPACE"}}),
        )
        result = await engine.run(plan)
        assert result.status == NodeStatus.SUCCESS
        assert recorder.env == {
            "Checkout/steps[1]": str(tmp_path.resolve()),
            "Build/steps[0]": "<unset>",
        }

    async def test_parallel_branches_do_not_see_each_other(self, engine, executor, recorder):
        plan = build(
            executor,
            {
                "name": "P",
                "parallel": [
                    stage("A", {"setenv": {"X": "a"}}, {"busy": None}, {"record": {"env": "X"}}),
                    stage("B", {"setenv": {"X": "b"}}, {"busy": None}, {"record": {"env": "X"}}),
                ],
            },
            stage("After", {"record": {"env": "X"}}),
        )
        result = await engine.run(plan)
        assert result.status == NodeStatus.SUCCESS
        assert recorder.env == {
            "P/A/steps[2]": "a",
            "P/B/steps[2]": "b",
            "After/steps[0]": "<unset>",
        }

    async def test_parent_bindings_restored_after_child_exits(self, engine, executor, recorder):
        plan = build(
            executor,
            {
                "name": "Outer",
                "environment": {"X": "outer"},
                "stages": [
                    stage("Before", {"snapshot": None}),
                    stage(
                        "Inner",
                        {"setenv": {"Y": "set-in-inner"}},
                        {"snapshot": None},
                        environment={"X": "inner"},
                    ),
                    stage("After", {"snapshot": None}),
                ],
            },
        )
        result = await engine.run(plan)
        assert result.status == NodeStatus.SUCCESS
        before = recorder.snapshots["Outer/Before/steps[0]"]
        inner = recorder.snapshots["Outer/Inner/steps[1]"]
        after = recorder.snapshots["Outer/After/steps[0]"]
        assert (inner["X"], inner["Y"]) == ("inner", "set-in-inner")
        assert before["X"] == "outer"
        assert after == before

    async def test_builtin_bindings(self, engine, executor, recorder):
        plan = build(executor, stage("A", {"record": {"env": "PIPELINE_NAME"}}))
        result = await engine.run(plan, run_id="run-fixed")
        assert result.run_id == "run-fixed"
        assert recorder.env["A/steps[0]"] == "demo"

    async def test_secrets_are_redacted(self, executor):
        engine = PipelineEngine(executor, secrets=MappingSecretStore({"deploy-token": "s3cr3t-value"}))
        plan = build(
            executor,
            stage("Deploy", {"echo": "token={{ env.TOKEN }}"}, environment={"TOKEN": {"credentials": "deploy-token"}}),
        )
        result = await engine.run(plan)
        assert result.status == NodeStatus.SUCCESS
        assert result.node("Deploy/steps[0]").output == "token=****"

    async def test_secrets_never_logged(self, executor, caplog):
        caplog.set_level(logging.DEBUG, logger="conveyor")
        engine = PipelineEngine(executor, secrets=MappingSecretStore({"deploy-token": "s3cr3t-value"}))
        plan = build(
            executor,
            stage(
                "Deploy",
                {"echo": "token={{ env.TOKEN }}"},
                {"notify": {"message": "deploying with {{ env.TOKEN }}", "target": "#ci"}},
                environment={"TOKEN": {"credentials": "deploy-token"}},
            ),
        )
        result = await engine.run(plan)
        assert result.status == NodeStatus.SUCCESS
        assert "token=****" in caplog.text
        assert "deploying with ****" in caplog.text
        assert "s3cr3t-value" not in caplog.text

    async def test_missing_secret_fails_stage(self, engine, executor, recorder):
        plan = build(
            executor,
            stage("Deploy", {"record": None}, environment={"TOKEN": {"credentials": "nope"}}),
        )
        result = await engine.run(plan)
        assert result.status == NodeStatus.FAILURE
        assert result.node("Deploy").reason.startswith("Environment resolution failed")
        assert result.node("Deploy/steps[0]").status == NodeStatus.SKIPPED
        assert recorder.calls == []

    async def test_pipeline_setup_failure(self, engine, executor, recorder):
        plan = build(
            executor,
            stage("Build", {"record": None}),
            environment={"TOKEN": {"credentials": "nope"}},
        )
        result = await engine.run(plan)
        assert result.status == NodeStatus.FAILURE
        assert result.reason.startswith("Pipeline setup failed")
        assert all(node.status == NodeStatus.SKIPPED for node in result.nodes.values())
        assert recorder.calls == []


# ── Retries and deadlines ────────────────────────────────────────────────────


class TestRetryAndTimeout:
    async def test_retry_until_success(self, engine, executor, recorder):
        plan = build(executor, stage("Build", {"flaky": {"failures": 2}, "retry": 2}))
        result = await engine.run(plan)
        assert result.status == NodeStatus.SUCCESS
        assert recorder.calls == ["Build/steps[0]"] * 3
        assert result.node("Build/steps[0]").attempts == 3

    async def test_retries_exhausted(self, engine, executor, recorder):
        plan = build(executor, stage("Build", {"flaky": {"failures": 5}}, options={"retry": 1}))
        result = await engine.run(plan)
        assert result.status == NodeStatus.FAILURE
        assert len(recorder.calls) == 2
        assert result.node("Build/steps[0]").reason == "transient"

    async def test_step_timeout(self, engine, executor):
        plan = build(executor, stage("Build", {"sleep": "5s", "timeout": "200ms"}))
        result = await asyncio.wait_for(engine.run(plan), 3)
        step = result.node("Build/steps[0]")
        assert step.status == NodeStatus.FAILURE
        assert step.timed_out
        assert step.reason == "Timed out after 0.2s (step 'Build/steps[0]')"
        assert result.status == NodeStatus.FAILURE

    async def test_stage_deadline_bounds_approval_gate(self, executor):
        broker = ApprovalBroker()
        executor.approvals = broker
        engine = PipelineEngine(executor)
        plan = build(
            executor,
            stage("Approve", {"input": "Ship it?"}, options={"timeout": "200ms"}),
            stage("Deploy", {"record": None}),
        )
        result = await asyncio.wait_for(engine.run(plan), 3)
        approve = result.node("Approve")
        assert approve.status == NodeStatus.FAILURE
        assert approve.timed_out
        assert result.node("Approve/steps[0]").reason == "Timed out after 0.2s (stage 'Approve')"
        assert result.node("Deploy").status == NodeStatus.SKIPPED
        assert broker.pending() == []

    async def test_post_actions_run_after_timeout(self, engine, executor, recorder):
        plan = build(
            executor,
            stage(
                "Build",
                {"sleep": "5s"},
                options={"timeout": "100ms"},
                post={"failure": [{"record": None}]},
            ),
        )
        result = await asyncio.wait_for(engine.run(plan), 3)
        assert recorder.calls == ["Build/post.failure[0]"]
        assert result.post_actions[0].status == NodeStatus.SUCCESS


# ── Cancellation and slots ───────────────────────────────────────────────────


class TestCancellation:
    async def test_cancel_in_flight_run(self, engine, executor, recorder):
        plan = build(
            executor,
            stage("Build", {"sleep": "5s"}),
            stage("Deploy", {"record": None}),
            post={"always": [{"record": None}]},
        )
        task = asyncio.create_task(engine.run(plan, run_id="run-cancel"))
        while "run-cancel" not in engine.active_runs:
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)
        assert engine.cancel("run-cancel", "user request")

        result = await asyncio.wait_for(task, 3)
        assert result.status == NodeStatus.ABORTED
        assert result.reason == "Cancelled: user request"
        assert result.node("Build/steps[0]").status == NodeStatus.ABORTED
        assert result.node("Deploy").status == NodeStatus.ABORTED
        assert "Deploy/steps[0]" not in recorder.calls
        assert recorder.calls == ["post.always[0]"]
        assert engine.active_runs == []

    def test_cancel_unknown_run(self, engine):
        assert not engine.cancel("run-missing")

    @pytest.mark.parametrize(("max_parallel", "expected"), [(1, 1), (None, 3)])
    async def test_max_parallel(self, executor, recorder, max_parallel, expected):
        engine = PipelineEngine(executor, max_parallel=max_parallel)
        plan = build(
            executor,
            {"name": "Fan", "parallel": [stage(f"B{i}", {"busy": None}) for i in range(3)]},
        )
        result = await engine.run(plan)
        assert result.status == NodeStatus.SUCCESS
        assert recorder.max_running == expected


# ── Agents ───────────────────────────────────────────────────────────────────


class TestAgents:
    async def test_agents_acquired_and_released(self, executor):
        pool = LocalAgentPool()
        engine = PipelineEngine(executor, agent_pool=pool)
        plan = build(
            executor,
            stage("Docker", {"record": None}, agent="docker"),
            stage("Inherit", {"record": None}),
            stage("Local", {"record": None}, agent="none"),
            agent="linux",
        )
        result = await engine.run(plan)
        assert pool.acquired_total == 2
        assert pool.active == {}
        assert result.node("Docker").agent == "local-2"
        assert result.node("Docker/steps[0]").agent == "local-2"
        assert result.node("Inherit").agent == "local-1"
        assert result.node("Local").agent is None

    async def test_agent_released_on_failure(self, executor):
        pool = LocalAgentPool()
        engine = PipelineEngine(executor, agent_pool=pool)
        plan = build(executor, stage("Build", {"error": "boom"}, agent="linux"))
        await engine.run(plan)
        assert pool.acquired_total == 1
        assert pool.active == {}

    async def test_acquisition_failure(self, executor, recorder):
        class NoAgents:
            async def acquire(self, spec):
                raise RuntimeError("no capacity")

            async def release(self, handle):
                pass

        engine = PipelineEngine(executor, agent_pool=NoAgents())
        plan = build(executor, stage("Build", {"record": None}, agent="gpu"))
        result = await engine.run(plan)
        assert result.node("Build").status == NodeStatus.FAILURE
        assert "no capacity" in result.node("Build").reason
        assert result.node("Build/steps[0]").status == NodeStatus.SKIPPED


# ── Post actions ─────────────────────────────────────────────────────────────


class TestPostActions:
    async def test_triggers_and_cleanup_order(self, engine, executor, recorder):
        plan = build(
            executor,
            stage(
                "Build",
                {"error": "boom"},
                post={
                    "cleanup": [{"record": None}],
                    "success": [{"record": None}],
                    "failure": [{"record": None}],
                    "always": [{"record": None}],
                },
            ),
        )
        result = await engine.run(plan)
        assert recorder.calls == [
            "Build/post.failure[0]",
            "Build/post.always[0]",
            "Build/post.cleanup[0]",
        ]
        assert [p.trigger for p in result.post_actions] == [
            PostTrigger.FAILURE,
            PostTrigger.ALWAYS,
            PostTrigger.CLEANUP,
        ]

    async def test_post_failure_does_not_change_status(self, engine, executor):
        plan = build(executor, stage("Build", {"record": None}), post={"always": [{"error": "mail down"}]})
        result = await engine.run(plan)
        assert result.status == NodeStatus.SUCCESS
        assert [p.error for p in result.post_failures] == ["mail down"]

    async def test_unstable_on_post_failure(self, engine, executor):
        plan = build(
            executor,
            stage("Build", {"record": None}),
            post={"always": [{"error": "mail down"}]},
            options={"unstable_on_post_failure": True},
        )
        result = await engine.run(plan)
        assert result.status == NodeStatus.UNSTABLE


# ── Parameters and persistence ───────────────────────────────────────────────


class TestParameters:
    async def test_parameters_available_to_steps(self, engine, executor):
        plan = build(
            executor,
            stage("Deploy", {"echo": "to {{ params.TARGET }}"}),
            parameters=[{"name": "TARGET", "type": "choice", "choices": ["qa", "prod"]}],
        )
        result = await engine.run(plan)
        assert result.node("Deploy/steps[0]").output == "to qa"
        assert result.parameters == {"TARGET": "qa"}

    async def test_invalid_parameters_raise_before_running(self, engine, executor, recorder):
        plan = build(executor, stage("Build", {"record": None}), parameters=[{"name": "N", "type": "integer", "default": 1}])
        with pytest.raises(ParameterError):
            await engine.run(plan, {"N": "many"})
        with pytest.raises(ParameterError):
            await engine.run(plan, {"OTHER": "x"})
        assert recorder.calls == []

    def test_resolve_parameters(self):
        declared = [
            ParameterDefinition(name="DRY_RUN", type="boolean"),
            ParameterDefinition(name="COUNT", type="integer", default=2),
            ParameterDefinition(name="NOTE"),
        ]
        assert resolve_parameters(declared, {"DRY_RUN": "yes", "COUNT": "5"}) == {
            "DRY_RUN": True,
            "COUNT": 5,
            "NOTE": "",
        }
        with pytest.raises(ParameterError):
            resolve_parameters(declared, {"DRY_RUN": "maybe"})
        with pytest.raises(ParameterError):
            resolve_parameters([ParameterDefinition(name="N", type="integer")], {})


class TestPersistence:
    async def test_run_saved_to_registry(self, executor):
        registry = AsyncMock()
        engine = PipelineEngine(executor, registry=registry)
        plan = build(executor, stage("Build", {"record": None}))
        result = await engine.run(plan)
        registry.save_run.assert_awaited_once_with(result, plan)

    async def test_registry_failure_does_not_fail_run(self, executor):
        registry = AsyncMock()
        registry.save_run.side_effect = OSError("disk full")
        engine = PipelineEngine(executor, registry=registry)
        result = await engine.run(build(executor, stage("Build", {"record": None})))
        assert result.status == NodeStatus.SUCCESS
