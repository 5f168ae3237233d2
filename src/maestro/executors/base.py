from __future__ import annotations

import json
from abc import ABC, abstractmethod
from typing import Any

from maestro.oracle.base import Oracle, OracleError
from maestro.oracle.decode import shorten

RESERVED_INPUT_KEYS = frozenset(
    {
        "task_goal",
        "task_details",
        "context_snapshot",
        "step_id",
        "step_title",
        "step_executor_name",
        "arbitration",
        "blueprint_executor",
    }
)


class ExecutorFault(RuntimeError):
    """Raised when an executor invocation fails; retried up to the step budget."""

    def __init__(self, message: str, *, executor_name: str | None = None) -> None:
        super().__init__(message)
        self.executor_name = executor_name


class SynthesisFailure(ExecutorFault):
    """Raised when a missing executor could not be synthesized or loaded."""


class Executor(ABC):
    name: str = "Executor"

    @abstractmethod
    async def run(self, input: dict[str, Any], context: dict[str, Any]) -> Any:
        """Produce the step output for ``input``; ``context`` holds prior step outcomes."""


class OracleExecutor(Executor):
    """Executor whose work is a single oracle call shaped into a typed payload."""

    system_prompt: str = "You are a helpful task executor."
    context_limit: int = 4000

    def __init__(self, oracle: Oracle, *, model: str | None = None) -> None:
        self.oracle = oracle
        self.model = model

    def build_user_prompt(self, input: dict[str, Any], context: dict[str, Any]) -> str:
        parts = [
            f"Step: {input.get('step_title', '')}",
            f"Goal: {input.get('task_goal', '')}",
        ]
        details = input.get("task_details")
        if details:
            parts.append(f"Details:\n{json.dumps(details, ensure_ascii=False, default=str)}")
        extra = {key: value for key, value in input.items() if key not in RESERVED_INPUT_KEYS}
        if extra:
            parts.append(f"Step input:\n{json.dumps(extra, ensure_ascii=False, default=str)}")
        if context:
            prior = json.dumps(context, ensure_ascii=False, default=str)
            parts.append(f"Previous step results:\n{shorten(prior, self.context_limit)}")
        return "\n\n".join(parts)

    def shape_output(self, answer: str, input: dict[str, Any]) -> Any:
        return {"type": self.name, "answer": answer}

    async def run(self, input: dict[str, Any], context: dict[str, Any]) -> Any:
        oracle_context = {"model": self.model} if self.model else {}
        try:
            answer = await self.oracle.generate(
                self.system_prompt,
                self.build_user_prompt(input, context),
                oracle_context,
            )
        except OracleError as exc:
            raise ExecutorFault(
                f"{self.name} oracle call failed: {exc}", executor_name=self.name
            ) from exc
        return self.shape_output(answer, input)
