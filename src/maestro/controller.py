from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import uuid4

from maestro.engine import ExecutionEngine
from maestro.executors.base import ExecutorFault
from maestro.models import (
    AttemptRecord,
    Plan,
    RunResult,
    Step,
    StepLog,
    StepOutcome,
    Task,
    utcnow_iso,
)
from maestro.oracle.base import Oracle, OracleError
from maestro.oracle.decode import decode_reply, dumps_for_prompt
from maestro.state.audit import AuditTrail
from maestro.tracker import RunStateTracker

LOGGER = logging.getLogger(__name__)

STEP_REVIEW_SYSTEM_PROMPT = """
You review the output of a single step in a task run.
Decide whether the output actually accomplishes the step for the task goal.
Reply with JSON only:
{"ok": true, "reason": "..."}
""".strip()

RUN_REVIEW_SYSTEM_PROMPT = """
You review a completed run of a multi-step task.
Judge whether the run as a whole met the task goal and summarize it in two sentences.
Reply with JSON only:
{"ok": true, "summary": "..."}
""".strip()


class SelfCheckRejection(RuntimeError):
    """Raised when the step self-check rejects an executor's output."""

    def __init__(self, step_id: str, reason: str, *, output: Any = None) -> None:
        super().__init__(f"Self-check failed for {step_id}: {reason or 'no reason given'}")
        self.step_id = step_id
        self.reason = reason
        self.output = output


@dataclass(slots=True)
class StepReview:
    ok: bool
    reason: str = ""


@dataclass(slots=True)
class RunReview:
    ok: bool
    summary: str = ""


def new_run_id() -> str:
    return f"run-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


def _as_flag(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"true", "yes", "1", "ok"}
    return bool(value)


class RunController:
    """Executes a Plan step by step, gating every attempt with a self-check."""

    def __init__(
        self,
        engine: ExecutionEngine,
        oracle: Oracle,
        audit: AuditTrail,
        *,
        memory_executor: str = "MemoryRecorderAgent",
        record_memory: bool = True,
    ) -> None:
        self.engine = engine
        self.oracle = oracle
        self.audit = audit
        self.memory_executor = memory_executor
        self.record_memory = record_memory

    @staticmethod
    def build_step_input(task: Task, step: Step, result: RunResult) -> dict[str, Any]:
        return {
            **step.input,
            "task_goal": task.goal,
            "task_details": dict(task.details),
            "context_snapshot": result.context_snapshot(),
            "step_id": step.id,
            "step_title": step.title,
            "step_executor_name": step.executor_name,
        }

    async def run(
        self,
        task: Task,
        plan: Plan,
        *,
        tracker: RunStateTracker | None = None,
    ) -> RunResult:
        run_id = tracker.run_id if tracker is not None else new_run_id()
        result = RunResult(run_id=run_id, task_id=task.id)
        if tracker is not None:
            tracker.start({"steps": len(plan.steps)})
        LOGGER.info("Run %s started for %s (%d steps)", run_id, task.summary(), len(plan.steps))

        for step in plan.ordered_steps():
            if tracker is not None:
                if tracker.is_paused:
                    LOGGER.info("Run %s paused before %s", run_id, step.id)
                await tracker.wait_if_paused()
            step_log = await self._run_step(task, step, result, tracker)
            if not step_log.success:
                result.status = "error"
                result.failed_step_id = step.id
                LOGGER.warning("Run %s failed at %s", run_id, step.id)
                break
        else:
            result.status = "success"

        result.finished_at = utcnow_iso()
        review = await self._review_run(task, plan, result)
        result.review = asdict(review)

        if tracker is not None:
            if result.status == "success":
                tracker.complete({"review_ok": review.ok})
            else:
                tracker.fail({"failed_step_id": result.failed_step_id})

        await self._record_memory(task, result)
        self.audit.record(
            "runs",
            {
                "run_id": run_id,
                "task_id": task.id,
                "status": result.status,
                "failed_step_id": result.failed_step_id,
                "started_at": result.started_at,
                "finished_at": result.finished_at,
                "review": result.review,
            },
        )
        LOGGER.info("Run %s finished with status %s", run_id, result.status)
        return result

    async def _run_step(
        self,
        task: Task,
        step: Step,
        result: RunResult,
        tracker: RunStateTracker | None,
    ) -> StepLog:
        step_log = StepLog(
            step_id=step.id,
            title=step.title,
            executor_name=step.executor_name,
            started_at=utcnow_iso(),
        )
        result.step_logs.append(step_log)
        if tracker is not None:
            tracker.step_begin(step.id)

        budget = max(1, step.retry_budget)
        last_output: Any = None
        last_error: str | None = None
        for attempt in range(1, budget + 1):
            record = AttemptRecord(attempt=attempt, started_at=utcnow_iso())
            step_log.attempts.append(record)
            final_attempt = attempt == budget
            step_input = self.build_step_input(task, step, result)
            try:
                output = await self.engine.invoke(
                    step.executor_name, step_input, result.context_snapshot()
                )
                record.output = output
                review = await self._review_step(task, step, step_input, output)
                record.review = asdict(review)
                if not review.ok:
                    raise SelfCheckRejection(step.id, review.reason, output=output)
            except SelfCheckRejection as exc:
                last_output = exc.output
                last_error = str(exc)
                record.error = last_error
                record.outcome = "rejected-giveup" if final_attempt else "rejected-retry"
            except ExecutorFault as exc:
                last_error = str(exc)
                record.error = last_error
                record.outcome = "faulted-giveup" if final_attempt else "faulted-retry"
            else:
                record.outcome = "accepted"
                step_log.success = True
                last_output = output
                last_error = None
            record.finished_at = utcnow_iso()
            LOGGER.info(
                "Step %s attempt %d/%d: %s", step.id, attempt, budget, record.outcome
            )
            if step_log.success:
                break

        step_log.finished_at = utcnow_iso()
        result.context[step.id] = StepOutcome(
            success=step_log.success, output=last_output, error=last_error
        )
        if tracker is not None:
            tracker.step_end(step.id, "success" if step_log.success else "error")
        return step_log

    async def _review_step(
        self, task: Task, step: Step, step_input: dict[str, Any], output: Any
    ) -> StepReview:
        prompt = (
            f"Task:\n{dumps_for_prompt(task.to_dict(), 1500)}\n\n"
            f"Step: {step.title} ({step.executor_name})\n\n"
            f"Step input:\n{dumps_for_prompt(step_input, 3000)}\n\n"
            f"Step output:\n{dumps_for_prompt(output)}"
        )
        try:
            raw: str | None = await self.oracle.generate(STEP_REVIEW_SYSTEM_PROMPT, prompt)
        except OracleError as exc:
            LOGGER.warning("Step self-check oracle unavailable for %s: %s", step.id, exc)
            raw = None

        # A decoded reply without "ok" is a rejection; only undecodable text passes.
        review = decode_reply(
            raw,
            lambda payload: StepReview(
                ok=_as_flag(payload.get("ok")), reason=str(payload.get("reason") or "")
            ),
            StepReview(ok=True, reason="parse fallback"),
            label="step self-check",
        )
        self.audit.record(
            "step_reviews",
            {"task_id": task.id, "step_id": step.id, "ok": review.ok, "reason": review.reason},
        )
        return review

    async def _review_run(self, task: Task, plan: Plan, result: RunResult) -> RunReview:
        succeeded = result.status == "success"
        fallback = RunReview(ok=succeeded, summary="self-check fallback")
        prompt = (
            f"Run status: {result.status}\n"
            f"Failed step: {result.failed_step_id or '-'}\n\n"
            f"Task:\n{dumps_for_prompt(task.to_dict(), 1500)}\n\n"
            f"Plan:\n{dumps_for_prompt(plan.to_dict(), 3000)}\n\n"
            f"Step results:\n{dumps_for_prompt(result.context_snapshot(), 6000)}\n\n"
            f"Logs:\n{dumps_for_prompt([asdict(log) for log in result.step_logs], 6000)}"
        )
        try:
            raw = await self.oracle.generate(RUN_REVIEW_SYSTEM_PROMPT, prompt)
        except OracleError as exc:
            LOGGER.warning("Run self-check oracle unavailable: %s", exc)
            return fallback

        def _parse(payload: dict[str, Any]) -> RunReview:
            ok = payload.get("ok")
            return RunReview(
                ok=succeeded if ok is None else _as_flag(ok),
                summary=str(payload.get("summary") or ""),
            )

        return decode_reply(raw, _parse, fallback, label="run self-check")

    async def _record_memory(self, task: Task, result: RunResult) -> None:
        if not self.record_memory:
            return
        memory_step = Step(
            id="memory", title="Record run memory", executor_name=self.memory_executor
        )
        memory_input = {
            **self.build_step_input(task, memory_step, result),
            "run": result.to_dict(),
            "task": task.to_dict(),
        }
        try:
            await self.engine.invoke(
                self.memory_executor, memory_input, result.context_snapshot()
            )
        except Exception as exc:
            LOGGER.warning("Memory recording for run %s failed: %s", result.run_id, exc)
            self.audit.record(
                "memory_errors",
                {"run_id": result.run_id, "task_id": task.id, "error": str(exc)},
            )
