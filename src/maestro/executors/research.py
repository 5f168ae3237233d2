from __future__ import annotations

from typing import Any

from maestro.executors.base import OracleExecutor


class ResearchAgent(OracleExecutor):
    name = "ResearchAgent"
    system_prompt = """
You are the research executor.
Investigate the step's question and answer with concrete, sourced reasoning.
Prefer short structured notes over prose.
""".strip()

    def shape_output(self, answer: str, input: dict[str, Any]) -> Any:
        return {
            "type": "research",
            "focus": input.get("focus") or input.get("step_title") or input.get("task_goal"),
            "answer": answer,
        }
