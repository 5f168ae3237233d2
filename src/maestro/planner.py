from __future__ import annotations

import logging
from typing import Any

from maestro.arbitration import Arbiter
from maestro.blueprints import BlueprintStore
from maestro.models import Blueprint, BlueprintStep, Plan, Step, Task, validate_blueprint
from maestro.oracle.base import Oracle, OracleError
from maestro.oracle.decode import decode_reply, dumps_for_prompt
from maestro.state.audit import AuditTrail

LOGGER = logging.getLogger(__name__)

DEFAULT_ALLOWED_EXECUTORS = ("CodeAgent", "FileAgent", "FixAgent", "ResearchAgent")

BLUEPRINT_SYSTEM_PROMPT = """
You design reusable step blueprints for a task orchestrator.
A blueprint is an ordered list of steps that solves any task of the given category.
Each step names one executor and a JSON input template.
Reply with JSON only:
{"origin": "synthesized", "category": "...", "steps": [
  {"title": "...", "executor": "...", "input_template": {}, "retry_budget": 1}
]}
""".strip()

SELF_CHECK_SYSTEM_PROMPT = """
You validate step blueprints for a task orchestrator.
Rules: between 1 and {max_steps} steps; every title is a non-empty string;
every executor is one of the allowed executors; every input_template is an object.
If the blueprint breaks a rule, correct it.
Reply with JSON only:
{{"valid": true, "blueprint": {{"origin": "...", "category": "...", "steps": [...]}}}}
""".strip()


def fallback_blueprint(category: str) -> Blueprint:
    return Blueprint(
        category=category,
        origin="fallback",
        steps=(
            BlueprintStep(
                title="Research underlying task",
                executor_name="ResearchAgent",
                input_template={},
                retry_budget=1,
            ),
            BlueprintStep(
                title="Generate final output",
                executor_name="CodeAgent",
                input_template={},
                retry_budget=1,
            ),
        ),
    )


class PlanResolver:
    """Resolves a Task into a concrete Plan via the category's Blueprint."""

    def __init__(
        self,
        blueprints: BlueprintStore,
        arbiter: Arbiter,
        oracle: Oracle,
        audit: AuditTrail,
        *,
        allowed_executors: list[str] | tuple[str, ...] = DEFAULT_ALLOWED_EXECUTORS,
        min_steps: int = 2,
        max_steps: int = 5,
        validation_max_steps: int = 8,
    ) -> None:
        self.blueprints = blueprints
        self.arbiter = arbiter
        self.oracle = oracle
        self.audit = audit
        self.allowed_executors = list(allowed_executors)
        self.min_steps = min_steps
        self.max_steps = max_steps
        self.validation_max_steps = validation_max_steps

    async def resolve(self, task: Task, signals: dict[str, Any] | None = None) -> Plan:
        blueprint = self.blueprints.get(task.category)
        if blueprint is None:
            blueprint = await self._derive_blueprint(task)
        else:
            LOGGER.debug("Reusing stored blueprint for %s", task.category)

        plan = await self._instantiate(task, blueprint, signals or {})
        self.audit.record(
            "plans",
            {
                "task_id": task.id,
                "category": task.category,
                "blueprint_origin": blueprint.origin,
                "plan": plan.to_dict(),
            },
        )
        return plan

    async def _derive_blueprint(self, task: Task) -> Blueprint:
        candidate = await self._synthesize(task)
        if candidate is None:
            # Not persisted, so the next task of this category retries synthesis.
            LOGGER.warning("Using fallback blueprint for %s", task.category)
            return fallback_blueprint(task.category)

        accepted = await self._self_check(task, candidate)
        if not self.blueprints.put_if_absent(task.category, accepted):
            stored = self.blueprints.get(task.category)
            if stored is not None:
                return stored
        LOGGER.info("Stored blueprint for %s (%d steps)", task.category, len(accepted.steps))
        return accepted

    async def _synthesize(self, task: Task) -> Blueprint | None:
        prompt = (
            f"Category: {task.category}\n"
            f"Example goal: {task.goal}\n"
            f"Example details:\n{dumps_for_prompt(task.details, 2000)}\n\n"
            f"Use between {self.min_steps} and {self.max_steps} steps.\n"
            f"Allowed executors: {', '.join(self.allowed_executors)}"
        )
        try:
            raw = await self.oracle.generate(BLUEPRINT_SYSTEM_PROMPT, prompt)
        except OracleError as exc:
            LOGGER.warning("Blueprint synthesis oracle unavailable: %s", exc)
            return None
        return decode_reply(
            raw,
            lambda payload: Blueprint.from_payload(payload, task.category),
            None,
            label="blueprint synthesis",
        )

    def _parse_self_check(self, payload: dict[str, Any], candidate: Blueprint) -> Blueprint:
        body = payload.get("blueprint", payload)
        corrected = Blueprint.from_payload(body, candidate.category)
        if not isinstance(body, dict) or body.get("origin") not in ("synthesized", "fallback"):
            corrected = Blueprint(
                category=corrected.category, steps=corrected.steps, origin=candidate.origin
            )
        return corrected

    async def _self_check(self, task: Task, candidate: Blueprint) -> Blueprint:
        system_prompt = SELF_CHECK_SYSTEM_PROMPT.format(max_steps=self.validation_max_steps)
        prompt = (
            f"Allowed executors: {', '.join(self.allowed_executors)}\n\n"
            f"Blueprint:\n{dumps_for_prompt(candidate.to_dict())}"
        )
        try:
            raw: str | None = await self.oracle.generate(system_prompt, prompt)
        except OracleError as exc:
            LOGGER.warning("Blueprint self-check oracle unavailable: %s", exc)
            raw = None

        corrected = decode_reply(
            raw,
            lambda payload: self._parse_self_check(payload, candidate),
            None,
            label="blueprint self-check",
        )
        accepted = corrected if corrected is not None else candidate
        problems = validate_blueprint(
            accepted, self.allowed_executors, max_steps=self.validation_max_steps
        )
        if problems:
            # Single pass only: a still-invalid blueprint is kept and flagged.
            LOGGER.warning(
                "Accepted blueprint for %s still breaks rules: %s",
                task.category,
                "; ".join(problems),
            )
        self.audit.record(
            "blueprint_self_checks",
            {
                "task_id": task.id,
                "category": task.category,
                "corrected": corrected is not None,
                "problems": problems,
                "blueprint": accepted.to_dict(),
            },
        )
        return accepted

    async def _instantiate(
        self, task: Task, blueprint: Blueprint, signals: dict[str, Any]
    ) -> Plan:
        steps: list[Step] = []
        for index, blueprint_step in enumerate(blueprint.steps, start=1):
            decision = await self.arbiter.decide(
                task,
                candidates=self.allowed_executors,
                signals={
                    **signals,
                    "blueprint_executor": blueprint_step.executor_name,
                    "step_title": blueprint_step.title,
                },
            )
            step_input = {
                **blueprint_step.input_template,
                "task_goal": task.goal,
                "task_details": dict(task.details),
                "blueprint_executor": blueprint_step.executor_name,
                "arbitration": decision.to_dict(),
            }
            steps.append(
                Step(
                    id=f"step_{index}",
                    title=blueprint_step.title.strip() or f"Step #{index}",
                    executor_name=decision.primary,
                    input=step_input,
                    retry_budget=blueprint_step.retry_budget,
                    metadata={"arbitration_source": decision.source},
                )
            )
        return Plan(
            task_id=task.id,
            steps=tuple(steps),
            metadata={"category": task.category, "blueprint_origin": blueprint.origin},
        )
