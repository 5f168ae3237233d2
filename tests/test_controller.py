import asyncio
import json
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from maestro.controller import RunController
from maestro.engine import ExecutionEngine
from maestro.executors import (
    AgentRegistry,
    Executor,
    ExecutorFault,
    ExecutorSynthesizer,
    MemoryRecorderAgent,
)
from maestro.executors.memory import EPISODES_KEY
from maestro.models import Plan, Step, Task
from maestro.oracle.base import Oracle, OracleError
from maestro.state import AuditTrail, JsonStore
from maestro.tracker import RunStateTracker

STEP_REVIEW = "You review the output of a single step"
RUN_REVIEW = "You review a completed run"


class SequencedOracle(Oracle):
    """Replies by system-prompt prefix; a list reply is consumed one item per call."""

    def __init__(self, replies: dict[str, Any]) -> None:
        self.replies = replies

    async def stream(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = user_prompt, context
        for marker, reply in self.replies.items():
            if system_prompt.startswith(marker):
                if isinstance(reply, list):
                    reply = reply.pop(0) if len(reply) > 1 else reply[0]
                yield reply
                return
        raise OracleError("no oracle available", retriable=False)


class ScriptedExecutor(Executor):
    def __init__(self, name: str, outcomes: list[Any]) -> None:
        self.name = name
        self.outcomes = list(outcomes)
        self.inputs: list[dict[str, Any]] = []
        self.contexts: list[dict[str, Any]] = []

    @property
    def calls(self) -> int:
        return len(self.inputs)

    async def run(self, input: dict[str, Any], context: dict[str, Any]) -> Any:
        self.inputs.append(input)
        self.contexts.append(context)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


TASK = Task(category="scripting", goal="Deduplicate rows", details={"input": "rows.csv"})


def _controller(
    tmp_path: Path,
    oracle: Oracle,
    executors: list[Executor],
    *,
    memory_executor: str = "MemoryRecorderAgent",
) -> tuple[RunController, JsonStore, AuditTrail]:
    store = JsonStore(tmp_path)
    audit = AuditTrail(store)
    builtins: dict[str, Any] = {"MemoryRecorderAgent": lambda: MemoryRecorderAgent(store)}
    for executor in executors:
        builtins[executor.name] = lambda executor=executor: executor
    registry = AgentRegistry(store, builtins=builtins)
    engine = ExecutionEngine(
        registry,
        ExecutorSynthesizer(oracle, store, registry, audit),
        oracle,
        audit,
        auto_heal=False,
    )
    controller = RunController(engine, oracle, audit, memory_executor=memory_executor)
    return controller, store, audit


def _plan(*steps: Step) -> Plan:
    return Plan(task_id=TASK.id, steps=steps)


def test_successful_run_threads_context_between_steps(tmp_path: Path) -> None:
    research = ScriptedExecutor("ResearchAgent", [{"answer": "use a set"}])
    code = ScriptedExecutor("CodeAgent", [{"code": "print(set(rows))"}])
    oracle = SequencedOracle({STEP_REVIEW: '{"ok": true, "reason": "fine"}'})
    controller, store, audit = _controller(tmp_path, oracle, [research, code])
    plan = _plan(
        Step(id="step_1", title="Research", executor_name="ResearchAgent"),
        Step(id="step_2", title="Code", executor_name="CodeAgent", input={"language": "python"}),
    )
    tracker = RunStateTracker("run-test", TASK.id)

    result = asyncio.run(controller.run(TASK, plan, tracker=tracker))

    assert result.status == "success"
    assert result.run_id == "run-test"
    assert result.failed_step_id is None
    assert result.context["step_2"].output == {"code": "print(set(rows))"}
    assert [log.attempts[0].outcome for log in result.step_logs] == ["accepted", "accepted"]

    code_input = code.inputs[0]
    assert code_input["language"] == "python"
    assert code_input["task_goal"] == "Deduplicate rows"
    assert code_input["task_details"] == {"input": "rows.csv"}
    assert code_input["step_id"] == "step_2"
    assert code_input["step_title"] == "Code"
    assert code_input["step_executor_name"] == "CodeAgent"
    expected_snapshot = {
        "step_1": {"success": True, "output": {"answer": "use a set"}, "error": None}
    }
    assert code_input["context_snapshot"] == expected_snapshot
    assert code.contexts[0] == expected_snapshot

    assert tracker.state == "completed"
    assert audit.entries("runs")[-1]["status"] == "success"
    assert len(audit.entries("step_reviews")) == 2
    assert store.read(EPISODES_KEY)[-1]["run_id"] == "run-test"


def test_faulting_step_uses_exact_budget_and_aborts(tmp_path: Path) -> None:
    flaky = ScriptedExecutor("CodeAgent", [ExecutorFault("boom", executor_name="CodeAgent")])
    never = ScriptedExecutor("ResearchAgent", [{"answer": "unused"}])
    controller, _, _ = _controller(tmp_path, SequencedOracle({}), [flaky, never])
    plan = _plan(
        Step(id="step_1", title="Code", executor_name="CodeAgent", retry_budget=3),
        Step(id="step_2", title="Research", executor_name="ResearchAgent"),
    )
    tracker = RunStateTracker("run-test", TASK.id)

    result = asyncio.run(controller.run(TASK, plan, tracker=tracker))

    assert flaky.calls == 3
    assert never.calls == 0
    assert result.status == "error"
    assert result.failed_step_id == "step_1"
    assert [attempt.outcome for attempt in result.step_logs[0].attempts] == [
        "faulted-retry",
        "faulted-retry",
        "faulted-giveup",
    ]
    assert result.context["step_1"].success is False
    assert "boom" in (result.context["step_1"].error or "")
    assert "step_2" not in result.context
    assert tracker.state == "failed"


def test_zero_retry_budget_still_runs_once(tmp_path: Path) -> None:
    crashing = ScriptedExecutor("CodeAgent", [RuntimeError("bad")])
    controller, _, _ = _controller(tmp_path, SequencedOracle({}), [crashing])
    plan = _plan(Step(id="step_1", title="Code", executor_name="CodeAgent", retry_budget=0))

    result = asyncio.run(controller.run(TASK, plan))

    assert crashing.calls == 1
    assert result.status == "error"
    assert result.step_logs[0].attempts[0].outcome == "faulted-giveup"


def test_rejected_attempt_is_retried_until_accepted(tmp_path: Path) -> None:
    code = ScriptedExecutor("CodeAgent", [{"code": "draft"}, {"code": "final"}])
    oracle = SequencedOracle(
        {STEP_REVIEW: ['{"ok": false, "reason": "incomplete"}', '{"ok": true}']}
    )
    controller, _, _ = _controller(tmp_path, oracle, [code])
    plan = _plan(Step(id="step_1", title="Code", executor_name="CodeAgent", retry_budget=2))

    result = asyncio.run(controller.run(TASK, plan))

    assert result.status == "success"
    attempts = result.step_logs[0].attempts
    assert [attempt.outcome for attempt in attempts] == ["rejected-retry", "accepted"]
    assert attempts[0].error == "Self-check failed for step_1: incomplete"
    assert result.context["step_1"].output == {"code": "final"}


def test_persistent_rejection_gives_up_with_last_output(tmp_path: Path) -> None:
    code = ScriptedExecutor("CodeAgent", [{"code": "draft"}])
    oracle = SequencedOracle({STEP_REVIEW: '{"ok": "no", "reason": "wrong file"}'})
    controller, _, _ = _controller(tmp_path, oracle, [code])
    plan = _plan(Step(id="step_1", title="Code", executor_name="CodeAgent", retry_budget=2))

    result = asyncio.run(controller.run(TASK, plan))

    assert code.calls == 2
    assert result.status == "error"
    assert result.step_logs[0].attempts[-1].outcome == "rejected-giveup"
    outcome = result.context["step_1"]
    assert outcome.success is False
    assert outcome.output == {"code": "draft"}
    assert outcome.error == "Self-check failed for step_1: wrong file"


def test_unparseable_step_review_accepts_output(tmp_path: Path) -> None:
    code = ScriptedExecutor("CodeAgent", [{"code": "x"}])
    controller, _, audit = _controller(
        tmp_path, SequencedOracle({STEP_REVIEW: "Looks good!"}), [code]
    )
    plan = _plan(Step(id="step_1", title="Code", executor_name="CodeAgent"))

    result = asyncio.run(controller.run(TASK, plan))

    assert result.status == "success"
    assert audit.entries("step_reviews")[-1]["reason"] == "parse fallback"


def test_step_review_without_ok_rejects_output(tmp_path: Path) -> None:
    code = ScriptedExecutor("CodeAgent", [{"code": ""}])
    oracle = SequencedOracle({STEP_REVIEW: '{"reason": "output is empty"}'})
    controller, _, _ = _controller(tmp_path, oracle, [code])
    plan = _plan(Step(id="step_1", title="Code", executor_name="CodeAgent", retry_budget=1))

    result = asyncio.run(controller.run(TASK, plan))

    assert result.status == "error"
    assert result.step_logs[0].attempts[0].outcome == "rejected-giveup"
    assert result.context["step_1"].error == "Self-check failed for step_1: output is empty"


def test_run_review_without_ok_keeps_summary(tmp_path: Path) -> None:
    code = ScriptedExecutor("CodeAgent", [{"code": "x"}])
    oracle = SequencedOracle({STEP_REVIEW: '{"ok": true}', RUN_REVIEW: '{"summary": "bad run"}'})
    controller, _, _ = _controller(tmp_path, oracle, [code])
    plan = _plan(Step(id="step_1", title="Code", executor_name="CodeAgent"))

    result = asyncio.run(controller.run(TASK, plan))

    assert result.status == "success"
    assert result.review == {"ok": True, "summary": "bad run"}


def test_review_prompts_carry_step_input_and_attempt_logs(tmp_path: Path) -> None:
    class RecordingOracle(SequencedOracle):
        def __init__(self, replies: dict[str, Any]) -> None:
            super().__init__(replies)
            self.prompts: dict[str, str] = {}

        async def stream(
            self,
            system_prompt: str,
            user_prompt: str,
            context: dict[str, Any],
        ) -> AsyncIterator[str]:
            for marker in (STEP_REVIEW, RUN_REVIEW):
                if system_prompt.startswith(marker):
                    self.prompts[marker] = user_prompt
            async for chunk in super().stream(system_prompt, user_prompt, context):
                yield chunk

    code = ScriptedExecutor("CodeAgent", [{"code": "x"}])
    oracle = RecordingOracle(
        {STEP_REVIEW: '{"ok": true}', RUN_REVIEW: '{"ok": true, "summary": "fine"}'}
    )
    controller, _, _ = _controller(tmp_path, oracle, [code])
    plan = _plan(
        Step(
            id="step_1",
            title="Code",
            executor_name="CodeAgent",
            input={"marker": "zebra-42"},
        )
    )

    asyncio.run(controller.run(TASK, plan))

    assert "zebra-42" in oracle.prompts[STEP_REVIEW]
    assert "rows.csv" in oracle.prompts[STEP_REVIEW]
    run_prompt = oracle.prompts[RUN_REVIEW]
    assert "Logs:" in run_prompt
    assert '"outcome": "accepted"' in run_prompt
    assert '"executor_name": "CodeAgent"' in run_prompt
    assert "rows.csv" in run_prompt


def test_run_review_never_changes_status(tmp_path: Path) -> None:
    code = ScriptedExecutor("CodeAgent", [{"code": "x"}])
    oracle = SequencedOracle(
        {
            STEP_REVIEW: '{"ok": true}',
            RUN_REVIEW: json.dumps({"ok": False, "summary": "Output misses edge cases."}),
        }
    )
    controller, _, _ = _controller(tmp_path, oracle, [code])
    plan = _plan(Step(id="step_1", title="Code", executor_name="CodeAgent"))

    result = asyncio.run(controller.run(TASK, plan))

    assert result.status == "success"
    assert result.review == {"ok": False, "summary": "Output misses edge cases."}
    assert result.review_summary == "Output misses edge cases."


def test_run_review_falls_back_when_oracle_is_down(tmp_path: Path) -> None:
    crashing = ScriptedExecutor("CodeAgent", [RuntimeError("bad")])
    controller, _, _ = _controller(tmp_path, SequencedOracle({}), [crashing])
    plan = _plan(Step(id="step_1", title="Code", executor_name="CodeAgent"))

    result = asyncio.run(controller.run(TASK, plan))

    assert result.review == {"ok": False, "summary": "self-check fallback"}


def test_memory_failure_does_not_affect_run(tmp_path: Path) -> None:
    code = ScriptedExecutor("CodeAgent", [{"code": "x"}])
    broken_memory = ScriptedExecutor("BrokenMemory", [RuntimeError("memory store offline")])
    controller, _, audit = _controller(
        tmp_path,
        SequencedOracle({STEP_REVIEW: '{"ok": true}'}),
        [code, broken_memory],
        memory_executor="BrokenMemory",
    )
    plan = _plan(Step(id="step_1", title="Code", executor_name="CodeAgent"))

    result = asyncio.run(controller.run(TASK, plan))

    assert result.status == "success"
    assert broken_memory.inputs[0]["run"]["run_id"] == result.run_id
    assert broken_memory.inputs[0]["task"]["id"] == TASK.id
    assert broken_memory.inputs[0]["task_details"] == {"input": "rows.csv"}
    assert broken_memory.inputs[0]["step_executor_name"] == "BrokenMemory"
    assert broken_memory.inputs[0]["context_snapshot"]["step_1"]["success"] is True
    errors = audit.entries("memory_errors")
    assert "memory store offline" in errors[-1]["error"]


def test_pause_holds_the_next_step_until_resume(tmp_path: Path) -> None:
    tracker_holder: dict[str, RunStateTracker] = {}

    class PausingExecutor(Executor):
        name = "ResearchAgent"

        async def run(self, input: dict[str, Any], context: dict[str, Any]) -> Any:
            tracker_holder["tracker"].pause("operator")
            return {"answer": "paused after me"}

    code = ScriptedExecutor("CodeAgent", [{"code": "x"}])
    controller, _, _ = _controller(
        tmp_path, SequencedOracle({STEP_REVIEW: '{"ok": true}'}), [PausingExecutor(), code]
    )
    plan = _plan(
        Step(id="step_1", title="Research", executor_name="ResearchAgent"),
        Step(id="step_2", title="Code", executor_name="CodeAgent"),
    )

    async def scenario() -> tuple[int, str, str]:
        tracker = RunStateTracker("run-test", TASK.id)
        tracker_holder["tracker"] = tracker
        running = asyncio.create_task(controller.run(TASK, plan, tracker=tracker))
        await asyncio.sleep(0.05)
        calls_while_paused = code.calls
        state_while_paused = tracker.state
        tracker.resume()
        result = await running
        return calls_while_paused, state_while_paused, result.status

    calls_while_paused, state_while_paused, status = asyncio.run(scenario())

    assert calls_while_paused == 0
    assert state_while_paused == "paused"
    assert status == "success"
    assert code.calls == 1
