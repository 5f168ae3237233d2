import asyncio
import json
from collections import Counter
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from maestro.arbitration import Arbiter
from maestro.blueprints import BlueprintStore
from maestro.models import Blueprint, BlueprintStep, Task
from maestro.oracle.base import Oracle, OracleError
from maestro.planner import PlanResolver, fallback_blueprint
from maestro.state import AuditTrail, JsonStore

SYNTHESIS = "You design reusable step blueprints"
SELF_CHECK = "You validate step blueprints"

BLUEPRINT = {
    "origin": "synthesized",
    "category": "scripting",
    "steps": [
        {"title": "Research the topic", "executor": "ResearchAgent", "input_template": {}},
        {
            "title": "Write the code",
            "executor": "CodeAgent",
            "input_template": {"language": "python"},
            "retry_budget": 2,
        },
    ],
}


class RoutingOracle(Oracle):
    """Answers by system-prompt prefix; unrouted or ``None`` replies mean the channel is down."""

    def __init__(self, replies: dict[str, str | None]) -> None:
        self.replies = replies
        self.calls: Counter[str] = Counter()

    async def stream(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        _ = user_prompt, context
        for marker, reply in self.replies.items():
            if system_prompt.startswith(marker):
                self.calls[marker] += 1
                if reply is None:
                    break
                yield reply
                return
        raise OracleError("no oracle available", retriable=False)


def _resolver(tmp_path: Path, oracle: Oracle) -> tuple[PlanResolver, BlueprintStore, AuditTrail]:
    store = JsonStore(tmp_path)
    audit = AuditTrail(store)
    blueprints = BlueprintStore(store)
    resolver = PlanResolver(blueprints, Arbiter(oracle, audit), oracle, audit)
    return resolver, blueprints, audit


def _task(goal: str = "Write a CSV deduplication script") -> Task:
    return Task(category="scripting", goal=goal, details={"input": "data.csv"})


def test_blueprint_is_synthesized_once_and_reused(tmp_path: Path) -> None:
    oracle = RoutingOracle(
        {
            SYNTHESIS: json.dumps(BLUEPRINT),
            SELF_CHECK: json.dumps({"valid": True, "blueprint": BLUEPRINT}),
        }
    )
    resolver, blueprints, audit = _resolver(tmp_path, oracle)

    first = asyncio.run(resolver.resolve(_task()))
    second = asyncio.run(resolver.resolve(_task("Write a JSON pretty printer")))

    assert oracle.calls[SYNTHESIS] == 1
    assert oracle.calls[SELF_CHECK] == 1
    assert blueprints.categories() == ["scripting"]
    assert [step.id for step in first.steps] == ["step_1", "step_2"]
    assert [step.executor_name for step in second.steps] == ["ResearchAgent", "CodeAgent"]
    assert first.metadata == {"category": "scripting", "blueprint_origin": "synthesized"}
    assert second.steps[0].input["task_goal"] == "Write a JSON pretty printer"
    assert len(audit.entries("plans")) == 2


def test_step_input_merges_template_task_and_arbitration(tmp_path: Path) -> None:
    oracle = RoutingOracle({SYNTHESIS: json.dumps(BLUEPRINT), SELF_CHECK: "{}"})
    resolver, _, _ = _resolver(tmp_path, oracle)

    plan = asyncio.run(resolver.resolve(_task()))
    code_step = plan.steps[1]

    assert code_step.title == "Write the code"
    assert code_step.retry_budget == 2
    assert code_step.input["language"] == "python"
    assert code_step.input["task_details"] == {"input": "data.csv"}
    assert code_step.input["blueprint_executor"] == "CodeAgent"
    assert code_step.input["arbitration"]["primary"] == "CodeAgent"
    assert code_step.metadata == {"arbitration_source": "heuristic_only"}


def test_undecodable_synthesis_uses_unpersisted_fallback(tmp_path: Path) -> None:
    oracle = RoutingOracle({SYNTHESIS: "Here are some steps: research, then code."})
    resolver, blueprints, _ = _resolver(tmp_path, oracle)

    plan = asyncio.run(resolver.resolve(_task()))

    assert [step.title for step in plan.steps] == [
        "Research underlying task",
        "Generate final output",
    ]
    assert [step.executor_name for step in plan.steps] == ["ResearchAgent", "CodeAgent"]
    assert plan.metadata["blueprint_origin"] == "fallback"
    assert blueprints.get("scripting") is None
    assert oracle.calls[SELF_CHECK] == 0

    asyncio.run(resolver.resolve(_task()))
    assert oracle.calls[SYNTHESIS] == 2


def test_unavailable_oracle_uses_fallback(tmp_path: Path) -> None:
    resolver, blueprints, _ = _resolver(tmp_path, RoutingOracle({}))

    plan = asyncio.run(resolver.resolve(_task()))

    assert plan.metadata["blueprint_origin"] == "fallback"
    assert len(plan.steps) == 2
    assert blueprints.categories() == []


def test_self_check_correction_is_stored(tmp_path: Path) -> None:
    broken = {
        "steps": [
            {"title": "Research the topic", "executor": "ResearchAgent"},
            {"title": "Write the code", "executor": "WizardAgent"},
        ]
    }
    corrected = {
        "valid": False,
        "blueprint": {
            "steps": [
                {"title": "Research the topic", "executor": "ResearchAgent"},
                {"title": "Write the code", "executor": "CodeAgent"},
            ]
        },
    }
    oracle = RoutingOracle({SYNTHESIS: json.dumps(broken), SELF_CHECK: json.dumps(corrected)})
    resolver, blueprints, audit = _resolver(tmp_path, oracle)

    asyncio.run(resolver.resolve(_task()))

    stored = blueprints.get("scripting")
    assert stored is not None
    assert [step.executor_name for step in stored.steps] == ["ResearchAgent", "CodeAgent"]
    check = audit.entries("blueprint_self_checks")[-1]
    assert check["corrected"] is True
    assert check["problems"] == []


def test_unusable_self_check_keeps_candidate(tmp_path: Path) -> None:
    candidate = {"steps": [{"title": "Summon the helper", "executor": "WizardAgent"}]}
    oracle = RoutingOracle({SYNTHESIS: json.dumps(candidate), SELF_CHECK: "looks fine to me"})
    resolver, blueprints, audit = _resolver(tmp_path, oracle)

    plan = asyncio.run(resolver.resolve(_task()))

    stored = blueprints.get("scripting")
    assert stored is not None
    assert stored.steps[0].executor_name == "WizardAgent"
    assert plan.steps[0].executor_name == "WizardAgent"
    check = audit.entries("blueprint_self_checks")[-1]
    assert check["corrected"] is False
    assert any("WizardAgent" in problem for problem in check["problems"])


def test_signals_pin_the_executor(tmp_path: Path) -> None:
    resolver, _, _ = _resolver(tmp_path, RoutingOracle({}))

    plan = asyncio.run(resolver.resolve(_task(), {"preferred_executor": "FixAgent"}))

    assert {step.executor_name for step in plan.steps} == {"FixAgent"}


def test_put_if_absent_keeps_first_writer(tmp_path: Path) -> None:
    blueprints = BlueprintStore(JsonStore(tmp_path))
    first = fallback_blueprint("scripting")
    second = Blueprint(
        category="scripting",
        steps=(BlueprintStep(title="Only step", executor_name="CodeAgent"),),
    )

    assert blueprints.put_if_absent("scripting", first) is True
    assert blueprints.put_if_absent("scripting", second) is False
    assert blueprints.get("scripting") == first
    assert blueprints.all() == {"scripting": first}


def test_unreadable_stored_blueprint_reads_as_missing(tmp_path: Path) -> None:
    store = JsonStore(tmp_path)
    store.write("blueprints", {"scripting": {"steps": "not a list"}})

    assert BlueprintStore(store).get("scripting") is None
