from __future__ import annotations

from typing import Any

from maestro.executors.base import OracleExecutor
from maestro.oracle.decode import strip_code_fences


class CodeAgent(OracleExecutor):
    name = "CodeAgent"
    system_prompt = """
You are the code executor.
Write the code the step asks for, complete and runnable.
Reply with the code only, optionally inside one fenced block.
""".strip()

    def shape_output(self, answer: str, input: dict[str, Any]) -> Any:
        return {
            "type": "code",
            "language": input.get("language", "python"),
            "file_path": input.get("file_path"),
            "operation": input.get("operation", "create"),
            "code": strip_code_fences(answer),
        }
