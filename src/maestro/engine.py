from __future__ import annotations

import asyncio
import logging
import time
from typing import Any

from maestro.executors.base import Executor, ExecutorFault, SynthesisFailure
from maestro.executors.declarative import DeclarativeExecutor
from maestro.executors.registry import (
    BUILTIN_SCHEME,
    DECLARATIVE_SCHEME,
    AgentRegistry,
    split_locator,
)
from maestro.executors.synthesizer import ExecutorSynthesizer
from maestro.models import utcnow_iso
from maestro.oracle.base import Oracle, OracleError
from maestro.oracle.decode import decode_reply, dumps_for_prompt, shorten
from maestro.state.audit import AuditTrail

LOGGER = logging.getLogger(__name__)

AUTO_HEAL_SYSTEM_PROMPT = """
You diagnose executor faults in a task orchestrator.
Given the executor name, its input and the error, explain the most likely root cause
and suggest a patch. Your suggestion is advisory and will not be applied automatically.
Reply with JSON only:
{"root_cause": "...", "patch_suggestion": "..."}
""".strip()


class ExecutionEngine:
    """Resolves executor names to instances and invokes them with auditing."""

    def __init__(
        self,
        registry: AgentRegistry,
        synthesizer: ExecutorSynthesizer,
        oracle: Oracle,
        audit: AuditTrail,
        *,
        auto_heal: bool = True,
        output_preview_chars: int = 2000,
    ) -> None:
        self.registry = registry
        self.synthesizer = synthesizer
        self.oracle = oracle
        self.audit = audit
        self.auto_heal = auto_heal
        self.output_preview_chars = output_preview_chars
        self._instances: dict[str, Executor] = {}
        self._name_locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, name: str) -> asyncio.Lock:
        lock = self._name_locks.get(name)
        if lock is None:
            lock = asyncio.Lock()
            self._name_locks[name] = lock
        return lock

    def _load(self, name: str, locator: str) -> Executor:
        scheme, target = split_locator(locator)
        if scheme == BUILTIN_SCHEME:
            factory = self.registry.builtin_factory(target)
            if factory is None:
                raise SynthesisFailure(
                    f"Executor {name} points at unknown built-in {target}", executor_name=name
                )
            return factory()
        if scheme == DECLARATIVE_SCHEME:
            return DeclarativeExecutor(self.synthesizer.load_spec(target), self.oracle)
        raise SynthesisFailure(
            f"Executor {name} has unsupported locator {locator}", executor_name=name
        )

    async def instance_for(self, name: str, hint_input: dict[str, Any]) -> Executor:
        async with self._lock_for(name):
            locator = self.registry.locate(name)
            if locator is None:
                LOGGER.info("Executor %s is not registered; synthesizing", name)
                locator = await self.synthesizer.synthesize(name, hint_input)
            cache_key = f"{name}@{locator}"
            instance = self._instances.get(cache_key)
            if instance is None:
                instance = self._load(name, locator)
                self._instances[cache_key] = instance
            return instance

    def cached_instances(self) -> list[str]:
        return sorted(self._instances)

    def _preview(self, value: Any) -> str:
        if isinstance(value, str):
            return shorten(value, self.output_preview_chars)
        return dumps_for_prompt(value, self.output_preview_chars)

    async def invoke(
        self, executor_name: str, input: dict[str, Any], run_context: dict[str, Any]
    ) -> Any:
        started_at = utcnow_iso()
        started = time.monotonic()
        input_summary = {
            "task_goal": input.get("task_goal"),
            "step_id": input.get("step_id"),
            "step_title": input.get("step_title"),
        }
        try:
            instance = await self.instance_for(executor_name, input)
            output = await instance.run(input, run_context)
        except Exception as exc:
            self.audit.record(
                "executor_runs",
                {
                    "executor_name": executor_name,
                    "input_summary": input_summary,
                    "status": "error",
                    "error": str(exc),
                    "started_at": started_at,
                    "finished_at": utcnow_iso(),
                    "duration_ms": int((time.monotonic() - started) * 1000),
                },
            )
            await self._auto_heal(executor_name, input, exc)
            if isinstance(exc, ExecutorFault):
                raise
            raise ExecutorFault(
                f"{executor_name} failed: {exc}", executor_name=executor_name
            ) from exc

        self.audit.record(
            "executor_runs",
            {
                "executor_name": executor_name,
                "input_summary": input_summary,
                "status": "success",
                "output_preview": self._preview(output),
                "started_at": started_at,
                "finished_at": utcnow_iso(),
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return output

    async def _auto_heal(self, executor_name: str, input: dict[str, Any], exc: Exception) -> None:
        if not self.auto_heal:
            return
        prompt = (
            f"Executor: {executor_name}\n"
            f"Error: {type(exc).__name__}: {exc}\n\n"
            f"Input:\n{dumps_for_prompt(input, 3000)}"
        )
        try:
            raw = await self.oracle.generate(AUTO_HEAL_SYSTEM_PROMPT, prompt)
        except OracleError as heal_exc:
            LOGGER.warning("Auto-heal for %s had no oracle reply: %s", executor_name, heal_exc)
            return

        diagnosis = decode_reply(
            raw,
            lambda payload: {
                "root_cause": str(payload.get("root_cause") or "unknown"),
                "patch_suggestion": str(payload.get("patch_suggestion") or ""),
            },
            {"root_cause": "unknown", "patch_suggestion": shorten(raw, 1000)},
            label="auto-heal diagnosis",
        )
        LOGGER.warning(
            "Executor %s faulted (%s). Suggested root cause: %s",
            executor_name,
            exc,
            diagnosis["root_cause"],
        )
        self.audit.record(
            "auto_heal",
            {
                "executor_name": executor_name,
                "error": str(exc),
                "root_cause": diagnosis["root_cause"],
                "patch_suggestion": diagnosis["patch_suggestion"],
                "applied": False,
            },
        )
