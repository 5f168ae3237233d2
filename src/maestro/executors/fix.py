from __future__ import annotations

from typing import Any

from maestro.executors.base import OracleExecutor
from maestro.oracle.decode import decode_reply


class FixAgent(OracleExecutor):
    name = "FixAgent"
    system_prompt = """
You are the fix executor.
Find the root cause of the reported problem and produce corrected code.
Reply with JSON only:
{"root_cause": "...", "explanation": "...", "fixed_code": "...", "file_path": "..."}
""".strip()

    def shape_output(self, answer: str, input: dict[str, Any]) -> Any:
        def _parse(payload: dict[str, Any]) -> dict[str, Any]:
            return {
                "type": "fix",
                "root_cause": str(payload.get("root_cause") or ""),
                "explanation": str(payload.get("explanation") or ""),
                "fixed_code": str(payload.get("fixed_code") or ""),
                "file_path": payload.get("file_path") or input.get("file_path"),
            }

        fallback = {
            "type": "fix",
            "root_cause": "unknown",
            "explanation": answer,
            "fixed_code": "",
            "file_path": input.get("file_path"),
        }
        return decode_reply(answer, _parse, fallback, label="fix reply")
