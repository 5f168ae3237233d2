from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from maestro.controller import RunController, new_run_id
from maestro.models import Plan, RunResult, Task
from maestro.oracle.base import Oracle, OracleError
from maestro.oracle.decode import dumps_for_prompt
from maestro.planner import PlanResolver
from maestro.state.audit import AuditTrail
from maestro.tracker import RunStateTracker

LOGGER = logging.getLogger(__name__)

SUMMARY_SYSTEM_PROMPT = """
You summarize a finished task run for the person who asked for it.
Write three to five plain sentences: what was done, what came out, what failed if anything.
""".strip()


@dataclass(slots=True)
class TaskRun:
    task: Task
    plan: Plan
    result: RunResult
    summary: str = ""


class Orchestrator:
    """Top-level flow: Task -> Plan -> Run, with pause/resume for active runs."""

    def __init__(
        self,
        resolver: PlanResolver,
        controller: RunController,
        audit: AuditTrail,
        *,
        oracle: Oracle | None = None,
    ) -> None:
        self.resolver = resolver
        self.controller = controller
        self.audit = audit
        self.oracle = oracle
        self._active: dict[str, RunStateTracker] = {}

    async def run_task(
        self,
        task: Task,
        *,
        signals: dict[str, Any] | None = None,
        summarize: bool = False,
    ) -> TaskRun:
        self.audit.record("tasks", task.to_dict())
        plan = await self.resolver.resolve(task, signals)

        tracker = RunStateTracker(new_run_id(), task.id, audit=self.audit)
        self._active[tracker.run_id] = tracker
        try:
            result = await self.controller.run(task, plan, tracker=tracker)
        finally:
            self._active.pop(tracker.run_id, None)

        summary = await self.summarize(task, result) if summarize else ""
        self.audit.record(
            "completed_runs",
            {
                "run_id": result.run_id,
                "task": task.to_dict(),
                "plan": plan.to_dict(),
                "status": result.status,
                "failed_step_id": result.failed_step_id,
                "review": result.review,
                "tracker": tracker.snapshot(),
            },
        )
        return TaskRun(task=task, plan=plan, result=result, summary=summary)

    async def summarize(self, task: Task, result: RunResult) -> str:
        fallback = (
            f"Run {result.run_id} for '{task.goal}' finished with status {result.status}."
        )
        if result.failed_step_id:
            fallback += f" It stopped at {result.failed_step_id}."
        if self.oracle is None:
            return fallback
        prompt = (
            f"Goal: {task.goal}\n"
            f"Status: {result.status}\n"
            f"Review: {result.review_summary}\n\n"
            f"Step results:\n{dumps_for_prompt(result.context_snapshot(), 6000)}"
        )
        try:
            summary = await self.oracle.generate(SUMMARY_SYSTEM_PROMPT, prompt)
        except OracleError as exc:
            LOGGER.warning("Run summary unavailable: %s", exc)
            return fallback
        return summary or fallback

    def active_runs(self) -> dict[str, dict[str, Any]]:
        return {run_id: tracker.snapshot() for run_id, tracker in self._active.items()}

    def tracker(self, run_id: str) -> RunStateTracker:
        tracker = self._active.get(run_id)
        if tracker is None:
            raise KeyError(f"No active run with id {run_id}")
        return tracker

    def pause(self, run_id: str, reason: str = "") -> bool:
        return self.tracker(run_id).pause(reason)

    def resume(self, run_id: str) -> bool:
        return self.tracker(run_id).resume()
