"""Tests for the pipeline orchestrator."""

import json
import logging
import threading

import pytest

from prompt_chain.errors import ConfigurationError, PipelineValidationError
from prompt_chain.pipelines import (
    PipelineRunner,
    RunState,
    create_runner,
    resolve_input_bindings,
)

from conftest import FakeCompletionClient


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def make_runner(settings, sleeps):
    def _make(client=None, **kwargs):
        return PipelineRunner(
            completion_client=client,
            settings=kwargs.pop("settings", settings),
            sleep=sleeps.append,
            **kwargs,
        )

    return _make


class TestDataFlow:

    def test_two_step_chain(self, make_pipeline, make_runner):
        pipeline = make_pipeline([
            {"name": "first", "prompt": "Say hi to {{who}}", "output": "greeting"},
            {"name": "second", "prompt": "Translate: {{greeting}}", "output": "translated"},
        ])
        client = FakeCompletionClient(replies=["hello Ada", "hola Ada"])

        result = make_runner(client).run(pipeline, {"who": "Ada"})

        assert result.state == RunState.COMPLETED
        assert result.success is True
        assert client.prompts == ["Say hi to Ada", "Translate: hello Ada"]
        assert result.final_output == {
            "who": "Ada",
            "greeting": "hello Ada",
            "translated": "hola Ada",
        }
        assert [r.step_name for r in result.step_results] == ["first", "second"]
        assert all(r.attempts == 1 for r in result.step_results)

    def test_initial_variables_override_pipeline_variables(self, make_pipeline, make_runner):
        pipeline = make_pipeline(
            [{"name": "a", "prompt": "{{tone}}", "output": "x"}],
            variables={"tone": "formal"},
        )
        client = FakeCompletionClient()

        make_runner(client).run(pipeline, {"tone": "casual"})

        assert client.prompts == ["casual"]

    def test_step_model_and_token_settings_are_passed(self, make_pipeline, make_runner, settings):
        pipeline = make_pipeline([
            {"name": "a", "prompt": "p", "output": "x"},
            {"name": "b", "prompt": "{{x}}", "output": "y", "model": "small-model",
             "maxTokens": 50, "temperature": 0.2},
        ])
        client = FakeCompletionClient()

        make_runner(client).run(pipeline)

        assert client.calls[0]["model"] == settings.default_model
        assert client.calls[0]["max_tokens"] == 2000
        assert client.calls[1] == {
            "prompt": "completion for: p",
            "model": "small-model",
            "max_tokens": 50,
            "temperature": 0.2,
        }

    def test_dollar_input_exposed_as_input(self, make_pipeline, make_runner):
        pipeline = make_pipeline(
            [{"name": "a", "prompt": "Review: {{input}}", "input": "$code", "output": "x"}],
            variables={"code": "print(1)"},
        )
        client = FakeCompletionClient()

        result = make_runner(client).run(pipeline)

        assert client.prompts == ["Review: print(1)"]
        assert "input" not in result.final_output

    def test_input_mapping_bindings(self, make_pipeline):
        pipeline = make_pipeline(
            [{
                "name": "a",
                "prompt": "{{lang}} {{source}}",
                "input": {"lang": "Python {{version}}", "source": "$code", "gone": "$absent"},
                "output": "x",
            }],
            variables={"code": "x = 1", "version": "3"},
        )

        bindings = resolve_input_bindings(pipeline.steps[0], pipeline.variables)

        assert bindings == {"lang": "Python 3", "source": "x = 1"}


class TestErrorPolicies:

    def test_stop_policy_fails_pipeline(self, make_pipeline, make_runner):
        pipeline = make_pipeline([
            {"name": "a", "prompt": "p", "output": "x"},
            {"name": "b", "prompt": "{{x}}", "output": "y"},
        ])
        client = FakeCompletionClient(fail_times=1)

        result = make_runner(client).run(pipeline)

        assert result.state == RunState.FAILED
        assert result.success is False
        assert len(result.step_results) == 1
        assert "Step 'a' failed" in result.error
        assert "completion service unavailable" in result.error
        assert len(client.calls) == 1

    def test_continue_on_error_skips_and_proceeds(self, make_pipeline, make_runner):
        pipeline = make_pipeline([
            {"name": "a", "prompt": "p", "output": "x", "continueOnError": True},
            {"name": "b", "prompt": "next", "output": "y"},
        ])
        client = FakeCompletionClient(fail_times=1, replies=["done"])

        result = make_runner(client).run(pipeline)

        assert result.state == RunState.COMPLETED
        first, second = result.step_results
        assert first.success is False
        assert first.skipped is True
        assert first.skip_reason
        assert second.success is True
        assert "x" not in result.final_output
        assert result.final_output["y"] == "done"

    def test_continue_policy_keeps_going(self, make_pipeline, make_runner):
        pipeline = make_pipeline(
            [
                {"name": "a", "prompt": "p", "output": "x"},
                {"name": "b", "prompt": "q", "output": "y"},
            ],
            onError="continue",
        )
        client = FakeCompletionClient(fail_times=1)

        result = make_runner(client).run(pipeline)

        assert len(result.step_results) == 2
        assert result.step_results[0].success is False
        assert result.step_results[0].skipped is False
        assert result.step_results[1].success is True

    def test_retry_policy_exhausts_attempts(self, make_pipeline, make_runner, sleeps):
        pipeline = make_pipeline(
            [{"name": "a", "prompt": "p", "output": "x"}],
            onError="retry",
            maxRetries=2,
        )
        client = FakeCompletionClient(fail_times=10)

        result = make_runner(client).run(pipeline)

        assert len(client.calls) == 3
        assert result.state == RunState.FAILED
        assert result.step_results[0].attempts == 3
        assert len(sleeps) == 2

    def test_retry_recovers(self, make_pipeline, make_runner):
        pipeline = make_pipeline(
            [{"name": "a", "prompt": "p", "output": "x"}],
            onError="retry",
            maxRetries=3,
        )
        client = FakeCompletionClient(fail_times=2, replies=["finally"])

        result = make_runner(client).run(pipeline)

        assert result.success is True
        assert result.step_results[0].attempts == 3
        assert result.final_output["x"] == "finally"

    def test_retry_backoff_is_exponential_and_capped(self, make_pipeline, make_runner, sleeps):
        from prompt_chain.config import Settings

        pipeline = make_pipeline(
            [{"name": "a", "prompt": "p", "output": "x"}],
            onError="retry",
            maxRetries=4,
        )
        settings = Settings(retry_backoff_base_s=1, retry_backoff_max_s=5)

        make_runner(FakeCompletionClient(fail_times=10), settings=settings).run(pipeline)

        assert sleeps == [1, 2, 4, 5]

    def test_continue_on_error_bypasses_retry(self, make_pipeline, make_runner):
        pipeline = make_pipeline(
            [{"name": "a", "prompt": "p", "output": "x", "continueOnError": True}],
            onError="retry",
            maxRetries=5,
        )
        client = FakeCompletionClient(fail_times=10)

        result = make_runner(client).run(pipeline)

        assert len(client.calls) == 1
        assert result.step_results[0].skipped is True


class TestDryRun:

    def test_dry_run_makes_no_calls(self, make_pipeline, make_runner):
        pipeline = make_pipeline([
            {"name": "a", "prompt": "Hello {{who}}", "output": "x"},
            {"name": "b", "prompt": "Then {{x}}", "output": "y"},
        ])
        client = FakeCompletionClient()

        result = make_runner(client, dry_run=True).run(pipeline, {"who": "Ada"})

        assert client.calls == []
        assert result.success is True
        assert result.final_output["y"] == "Then Hello Ada"
        assert all(r.attempts == 0 for r in result.step_results)

    def test_dry_run_needs_no_client(self, make_pipeline, make_runner):
        pipeline = make_pipeline([{"name": "a", "prompt": "p", "output": "x"}])

        assert make_runner(None, dry_run=True).run(pipeline).success is True

    def test_real_run_requires_client(self, make_pipeline, make_runner):
        pipeline = make_pipeline([{"name": "a", "prompt": "p", "output": "x"}])

        with pytest.raises(ConfigurationError):
            make_runner(None).run(pipeline)


class TestConditions:

    @pytest.fixture
    def branching(self, make_pipeline):
        return make_pipeline([
            {
                "name": "classify",
                "prompt": "Classify {{text}}",
                "output": "label",
                "condition": {"if": "label.includes('bug')", "then": "fix", "else": "thank"},
            },
            {"name": "fix", "prompt": "Fix {{label}}", "output": "fixed"},
            {"name": "thank", "prompt": "Thank for {{label}}", "output": "thanks"},
        ])

    def test_then_branch(self, branching, make_runner):
        client = FakeCompletionClient(replies=["bug report", "patched", "thanked"])

        result = make_runner(client).run(branching, {"text": "it crashes"})

        assert [r.step_name for r in result.step_results] == ["classify", "fix", "thank"]

    def test_else_branch_skips_ahead(self, branching, make_runner):
        client = FakeCompletionClient(replies=["praise", "thanked"])

        result = make_runner(client).run(branching, {"text": "love it"})

        assert [r.step_name for r in result.step_results] == ["classify", "thank"]
        assert "fixed" not in result.final_output

    def test_backward_jump_repeats_a_step(self, make_pipeline, make_runner):
        pipeline = make_pipeline([
            {
                "name": "draft",
                "prompt": "Draft",
                "output": "text",
                "condition": {"if": "text == 'ok'", "then": "publish", "else": "draft"},
            },
            {"name": "publish", "prompt": "Publish {{text}}", "output": "published"},
        ])
        client = FakeCompletionClient(replies=["meh", "meh", "ok", "live"])

        result = make_runner(client).run(pipeline)

        assert [r.step_name for r in result.step_results] == [
            "draft", "draft", "draft", "publish"
        ]
        assert result.get_step_result("draft").output == "ok"

    def test_cyclic_jumps_hit_execution_budget(self, make_pipeline, make_runner):
        from prompt_chain.config import Settings

        pipeline = make_pipeline([
            {
                "name": "spin",
                "prompt": "again",
                "output": "x",
                "condition": {"if": "true", "then": "spin"},
            },
        ])
        settings = Settings(max_step_executions=5, retry_backoff_base_s=0)

        result = make_runner(FakeCompletionClient(), settings=settings).run(pipeline)

        assert result.state == RunState.FAILED
        assert len(result.step_results) == 5
        assert "step executions" in result.error

    def test_condition_error_fails_step(self, make_pipeline, make_runner):
        pipeline = make_pipeline([
            {
                "name": "a",
                "prompt": "p",
                "output": "x",
                "condition": {"if": "x > 3", "then": "a"},
            },
        ])
        client = FakeCompletionClient(replies=["not a number"])

        result = make_runner(client).run(pipeline)

        assert result.state == RunState.FAILED
        assert "non-numeric" in result.step_results[0].error

    def test_deeply_nested_condition_fails_step(self, make_pipeline, make_runner):
        pipeline = make_pipeline([
            {
                "name": "a",
                "prompt": "p",
                "output": "x",
                "condition": {"if": "!" * 3000 + "x", "then": "a"},
            },
        ])

        result = make_runner(FakeCompletionClient(replies=["yes"])).run(pipeline)

        assert result.state == RunState.FAILED
        assert result.step_results[0].success is False
        assert "nested too deeply" in result.step_results[0].error

    def test_condition_failure_does_not_bind_output(self, make_pipeline, make_runner):
        pipeline = make_pipeline(
            [
                {
                    "name": "a",
                    "prompt": "p",
                    "output": "x",
                    "condition": {"if": "x > 3", "then": "b"},
                },
                {"name": "b", "prompt": "Use {{x}}", "output": "y"},
            ],
            onError="continue",
        )
        client = FakeCompletionClient(replies=["nope"])

        result = make_runner(client).run(pipeline)

        assert result.state == RunState.COMPLETED
        assert result.step_results[0].success is False
        assert "non-numeric" in result.step_results[0].error
        assert "x" not in result.final_output
        assert client.prompts[1] == "Use {{x}}"
        assert result.final_output["y"] == "nope"

    def test_condition_failure_with_continue_on_error_skips(self, make_pipeline, make_runner):
        pipeline = make_pipeline([
            {
                "name": "a",
                "prompt": "p",
                "output": "x",
                "continueOnError": True,
                "condition": {"if": "x > 3", "then": "b"},
            },
            {"name": "b", "prompt": "Use {{x}}", "output": "y"},
        ])
        client = FakeCompletionClient(replies=["nope"])

        result = make_runner(client).run(pipeline)

        assert result.state == RunState.COMPLETED
        assert result.step_results[0].skipped is True
        assert "x" not in result.final_output
        assert client.prompts[1] == "Use {{x}}"


class TestLoops:

    def test_loop_step_collects_outputs(self, make_pipeline, make_runner):
        pipeline = make_pipeline(
            [
                {
                    "name": "each",
                    "prompt": "Review {{file}} ({{_index}})",
                    "output": "reviews",
                    "loop": {"over": "files", "as": "file", "maxIterations": 3},
                },
                {"name": "merge", "prompt": "Merge {{reviews}}", "output": "report"},
            ],
            variables={"files": json.dumps([f"f{n}.py" for n in range(10)])},
        )
        client = FakeCompletionClient(replies=lambda prompt: prompt.upper())

        result = make_runner(client).run(pipeline)

        assert result.success is True
        assert len(client.calls) == 4
        reviews = json.loads(result.final_output["reviews"])
        assert reviews == ["REVIEW F0.PY (0)", "REVIEW F1.PY (1)", "REVIEW F2.PY (2)"]
        loop_result = result.get_step_result("each")
        assert [r.step_name for r in loop_result.iterations] == ["each[0]", "each[1]", "each[2]"]
        assert "file" not in result.final_output

    def test_missing_loop_source_is_fatal(self, make_pipeline, make_runner):
        pipeline = make_pipeline(
            [
                {
                    "name": "each",
                    "prompt": "{{item}}",
                    "output": "out",
                    "loop": {"over": "nothing", "as": "item"},
                    "continueOnError": True,
                },
                {"name": "after", "prompt": "{{out}}", "output": "final"},
            ],
            onError="continue",
        )
        client = FakeCompletionClient()

        result = make_runner(client).run(pipeline)

        assert result.state == RunState.FAILED
        assert len(result.step_results) == 1
        assert result.step_results[0].skipped is False
        assert client.calls == []

    def test_continue_on_error_loop_runs_every_iteration(self, make_pipeline, make_runner):
        pipeline = make_pipeline(
            [
                {
                    "name": "each",
                    "prompt": "Handle {{item}}",
                    "output": "outs",
                    "loop": {"over": "items", "as": "item"},
                    "continueOnError": True,
                },
                {"name": "merge", "prompt": "Merge {{outs}}", "output": "report"},
            ],
            variables={"items": json.dumps(["a", "b", "c"])},
        )

        def reply(prompt):
            if prompt == "Handle b":
                raise RuntimeError("b exploded")
            return prompt.upper()

        client = FakeCompletionClient(replies=reply)

        result = make_runner(client).run(pipeline)

        assert result.state == RunState.COMPLETED
        assert len(client.calls) == 4
        loop_result = result.get_step_result("each")
        assert loop_result.success is False
        assert loop_result.skipped is True
        assert [r.success for r in loop_result.iterations] == [True, False, True]
        assert "b exploded" in loop_result.error
        assert json.loads(result.final_output["outs"]) == ["HANDLE A", "HANDLE C"]
        assert client.prompts[3] == 'Merge ["HANDLE A", "HANDLE C"]'

    def test_failed_loop_without_continue_on_error_binds_nothing(
        self, make_pipeline, make_runner
    ):
        pipeline = make_pipeline(
            [
                {
                    "name": "each",
                    "prompt": "Handle {{item}}",
                    "output": "outs",
                    "loop": {"over": "items", "as": "item"},
                },
                {"name": "merge", "prompt": "Merge {{outs}}", "output": "report"},
            ],
            variables={"items": "a\nb\nc"},
            onError="continue",
        )
        client = FakeCompletionClient(fail_times=1, replies=["ok"])

        result = make_runner(client).run(pipeline)

        assert len(result.get_step_result("each").iterations) == 1
        assert "outs" not in result.final_output
        assert client.prompts[-1] == "Merge {{outs}}"


class TestLifecycle:

    def test_validation_errors_refuse_to_start(self, make_pipeline, make_runner):
        pipeline = make_pipeline([
            {"name": "a", "prompt": "p", "output": "x"},
            {"name": "a", "prompt": "q", "output": "y"},
        ])
        client = FakeCompletionClient()

        with pytest.raises(PipelineValidationError) as exc_info:
            make_runner(client).run(pipeline)

        assert exc_info.value.result.valid is False
        assert client.calls == []

    def test_cancel_before_start_aborts(self, make_pipeline, make_runner):
        pipeline = make_pipeline([{"name": "a", "prompt": "p", "output": "x"}])
        cancel = threading.Event()
        cancel.set()
        client = FakeCompletionClient()

        result = make_runner(client, cancel_event=cancel).run(pipeline)

        assert result.state == RunState.ABORTED
        assert result.success is False
        assert result.step_results == []
        assert client.calls == []

    def test_cancel_between_steps(self, make_pipeline, make_runner):
        pipeline = make_pipeline([
            {"name": "a", "prompt": "p", "output": "x"},
            {"name": "b", "prompt": "{{x}}", "output": "y"},
        ])
        cancel = threading.Event()
        runner = make_runner(FakeCompletionClient(), cancel_event=cancel)
        runner.on_step_complete(lambda result: cancel.set())

        result = runner.run(pipeline)

        assert result.state == RunState.ABORTED
        assert [r.step_name for r in result.step_results] == ["a"]
        assert result.final_output["x"]

    def test_progress_events_in_order(self, make_pipeline, make_runner):
        pipeline = make_pipeline([
            {"name": "a", "prompt": "p", "output": "x", "continueOnError": True},
            {"name": "b", "prompt": "q", "output": "y"},
        ])
        events = []
        runner = make_runner(
            FakeCompletionClient(fail_times=1),
            on_progress=lambda name, phase, message: events.append((name, phase)),
        )

        runner.run(pipeline)

        assert events == [("a", "start"), ("a", "error"), ("b", "start"), ("b", "complete")]

    def test_step_callbacks(self, make_pipeline, make_runner):
        pipeline = make_pipeline([{"name": "a", "prompt": "p", "output": "x"}])
        started, completed = [], []
        runner = make_runner(FakeCompletionClient())
        runner.on_step_start(lambda step: started.append(step.name))
        runner.on_step_complete(lambda result: completed.append(result.step_name))

        runner.run(pipeline)

        assert started == ["a"]
        assert completed == ["a"]

    def test_result_metadata(self, make_pipeline, make_runner):
        pipeline = make_pipeline([{"name": "a", "prompt": "p", "output": "x"}])

        result = make_runner(FakeCompletionClient()).run(pipeline, run_id="run-123")

        assert result.run_id == "run-123"
        assert result.pipeline_name == "test-pipeline"
        assert result.completed_at >= result.started_at
        assert result.duration_ms >= 0
        assert result.failed_steps() == []

    def test_step_events_carry_run_trace(self, make_pipeline, make_runner, caplog):
        pipeline = make_pipeline([
            {
                "name": "a",
                "prompt": "p",
                "output": "x",
                "condition": {"if": "true", "then": "b"},
            },
            {"name": "b", "prompt": "q", "output": "y"},
        ])
        caplog.set_level(logging.DEBUG, logger="prompt_chain.pipelines.runner")

        make_runner(FakeCompletionClient()).run(pipeline, run_id="run-456")

        events = [r for r in caplog.records
                  if r.getMessage() in ("step_start", "step_complete", "condition_jump")]
        assert {r.getMessage() for r in events} == {"step_start", "step_complete", "condition_jump"}
        for record in events:
            assert record.run_id == "run-456"
            assert record.pipeline_name == "test-pipeline"


class TestCreateRunner:

    def test_dry_run_runner_needs_no_key(self, monkeypatch, make_pipeline, settings):
        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        monkeypatch.delenv("PROMPT_CHAIN_ANTHROPIC_API_KEY", raising=False)
        pipeline = make_pipeline([{"name": "a", "prompt": "Hi {{who}}", "output": "x"}])

        runner = create_runner(dry_run=True, settings=settings)

        assert runner.completion_client is None
        assert runner.run(pipeline, {"who": "Ada"}).final_output["x"] == "Hi Ada"

    def test_real_runner_requires_key(self, monkeypatch):
        from prompt_chain.config import Settings

        monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
        monkeypatch.delenv("PROMPT_CHAIN_ANTHROPIC_API_KEY", raising=False)

        with pytest.raises(ConfigurationError):
            create_runner(settings=Settings())

    def test_real_runner_uses_anthropic_client(self, monkeypatch):
        from prompt_chain.completion import AnthropicCompletionClient
        from prompt_chain.config import Settings

        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")

        runner = create_runner(settings=Settings())

        assert isinstance(runner.completion_client, AnthropicCompletionClient)
