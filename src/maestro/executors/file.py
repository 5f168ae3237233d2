from __future__ import annotations

import logging
from pathlib import Path
from typing import Any

from maestro.executors.base import Executor, ExecutorFault
from maestro.oracle.base import Oracle, OracleError
from maestro.oracle.decode import strip_code_fences
from maestro.state.audit import AuditTrail

LOGGER = logging.getLogger(__name__)

OPERATIONS = ("read", "write", "patch")

PATCH_SYSTEM_PROMPT = """
You are the file patch executor.
Apply the patch instructions to the current file content.
Keep everything else unchanged.
Reply with the complete new file content only.
""".strip()


class FileAgent(Executor):
    """Reads, writes and oracle-patches text files under a base directory.

    Parameters come from the step input first, then from the task details:
    ``operation`` (default ``read``), ``file_path``, ``content`` and
    ``patch_instructions``. A malformed request comes back as a ``file_error``
    value; I/O and oracle failures raise ``ExecutorFault``.
    """

    name = "FileAgent"

    def __init__(
        self, oracle: Oracle, base_dir: Path, *, audit: AuditTrail | None = None
    ) -> None:
        self.oracle = oracle
        self.base_dir = base_dir.resolve()
        self.audit = audit

    @staticmethod
    def _param(input: dict[str, Any], key: str, default: Any = None) -> Any:
        if input.get(key) is not None:
            return input[key]
        details = input.get("task_details")
        if isinstance(details, dict) and details.get(key) is not None:
            return details[key]
        return default

    def _fault(self, message: str) -> ExecutorFault:
        return ExecutorFault(f"FileAgent: {message}", executor_name=self.name)

    def _read(self, path: Path) -> str:
        # A missing file reads as empty so that patch can create it.
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return ""
        except OSError as exc:
            raise self._fault(f"could not read {path}: {exc}") from exc

    def _write(self, path: Path, content: str) -> None:
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        except OSError as exc:
            raise self._fault(f"could not write {path}: {exc}") from exc

    async def _patched(self, old_content: str, instructions: str, goal: str) -> str:
        prompt = (
            f"Goal: {goal}\n\n"
            f"Patch instructions:\n{instructions}\n\n"
            f"Current file content:\n{old_content}"
        )
        try:
            reply = await self.oracle.generate(PATCH_SYSTEM_PROMPT, prompt)
        except OracleError as exc:
            raise self._fault(f"patch oracle call failed: {exc}") from exc
        return strip_code_fences(reply) + "\n"

    def _rejected(self, operation: str, message: str) -> dict[str, Any]:
        LOGGER.warning("FileAgent rejected %s request: %s", operation, message)
        return {"type": "file_error", "operation": operation, "error": message}

    async def run(self, input: dict[str, Any], context: dict[str, Any]) -> Any:
        operation = str(self._param(input, "operation", "read")).lower()
        if operation not in OPERATIONS:
            return self._rejected(operation, f"unknown operation: {operation}")
        file_path = self._param(input, "file_path")
        if not isinstance(file_path, str) or not file_path.strip():
            return self._rejected(operation, "file_path is required")
        path = (self.base_dir / file_path).resolve()
        if not path.is_relative_to(self.base_dir):
            return self._rejected(operation, f"{file_path} is outside {self.base_dir}")

        if operation == "read":
            content = self._read(path)
            result: dict[str, Any] = {"type": "file_read", "path": str(path), "content": content}
        elif operation == "write":
            content = str(self._param(input, "content", ""))
            self._write(path, content)
            result = {
                "type": "file_write",
                "path": str(path),
                "bytes": len(content.encode("utf-8")),
            }
        else:
            instructions = self._param(input, "patch_instructions")
            if not instructions:
                return self._rejected(operation, "patch_instructions are required for patch")
            old_content = self._read(path)
            new_content = await self._patched(
                old_content, str(instructions), str(input.get("task_goal") or "")
            )
            self._write(path, new_content)
            result = {
                "type": "file_patch",
                "path": str(path),
                "old_bytes": len(old_content.encode("utf-8")),
                "new_bytes": len(new_content.encode("utf-8")),
            }

        LOGGER.info("FileAgent %s %s", operation, path)
        if self.audit is not None:
            self.audit.record(
                "file_operations",
                {
                    "operation": operation,
                    "path": str(path),
                    "task_goal": input.get("task_goal"),
                    "step_id": input.get("step_id"),
                },
            )
        return result
