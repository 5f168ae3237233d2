from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from pathlib import Path
from typing import Any

from maestro.oracle.base import Oracle, OracleError, OracleProcessError

LOGGER = logging.getLogger(__name__)


def _text_of(event: dict[str, Any]) -> str:
    # "result" repeats the assistant text that was already streamed.
    if event.get("type") == "result":
        return ""
    message = event.get("message")
    body = message.get("content") if isinstance(message, dict) else event.get("content")
    if isinstance(body, list):
        return "".join(
            block["text"]
            for block in body
            if isinstance(block, dict) and isinstance(block.get("text"), str)
        )
    if isinstance(body, str):
        return body
    delta = event.get("delta")
    return delta if isinstance(delta, str) else ""


class _StreamJsonDecoder:
    """Turns ``stream-json`` stdout lines into text chunks.

    Events occasionally arrive split over several lines; unbalanced fragments
    are held back and joined with the following line.
    """

    def __init__(self) -> None:
        self.pending = ""

    @staticmethod
    def _unbalanced(raw: str) -> bool:
        return raw.count("{") > raw.count("}") or raw.count("[") > raw.count("]")

    def feed(self, line: str) -> str:
        joined = self.pending + line
        try:
            event = json.loads(joined)
        except json.JSONDecodeError:
            if self._unbalanced(joined):
                self.pending = joined
                return ""
            self.pending = ""
            return line
        self.pending = ""
        return _text_of(event) if isinstance(event, dict) else ""

    def flush(self) -> str:
        leftover, self.pending = self.pending, ""
        return leftover


class ClaudeCodeOracle(Oracle):
    """Oracle backed by the ``claude`` CLI in print mode."""

    def __init__(self, binary: str = "claude", working_directory: Path | None = None) -> None:
        self.binary = binary
        self.working_directory = working_directory

    def build_command(self, user_prompt: str, system_prompt: str = "") -> list[str]:
        command = [self.binary, "-p", user_prompt, "--output-format", "stream-json", "--verbose"]
        if system_prompt:
            command += ["--append-system-prompt", system_prompt]
        return command

    @staticmethod
    def _with_context(user_prompt: str, context: dict[str, Any]) -> str:
        if not context:
            return user_prompt
        rendered = json.dumps(context, ensure_ascii=False, indent=2, default=str)
        return f"{user_prompt}\n\nContext JSON:\n{rendered}"

    async def _spawn(self, command: list[str]) -> asyncio.subprocess.Process:
        try:
            return await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory) if self.working_directory else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise OracleProcessError(
                f"Claude binary not found: {self.binary}", backend="claude", retriable=False
            ) from exc

    async def stream(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        process = await self._spawn(
            self.build_command(self._with_context(user_prompt, context), system_prompt)
        )
        if process.stdout is None:
            raise OracleProcessError(
                "Claude process has no stdout pipe", backend="claude", retriable=False
            )

        decoder = _StreamJsonDecoder()
        async for raw_line in process.stdout:
            line = raw_line.decode("utf-8", errors="replace").strip()
            if line:
                chunk = decoder.feed(line)
                if chunk:
                    yield chunk
        leftover = decoder.flush()
        if leftover:
            LOGGER.debug("Claude stream ended inside an unfinished event")
            yield leftover

        exit_code = await process.wait()
        if exit_code == 0:
            return
        stderr = b"" if process.stderr is None else await process.stderr.read()
        raise OracleError(
            f"Claude exited with code {exit_code}: "
            f"{stderr.decode('utf-8', errors='replace').strip()}",
            backend="claude",
            exit_code=exit_code,
            retriable=True,
        )
