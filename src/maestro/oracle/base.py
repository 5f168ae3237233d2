from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from typing import Any


class OracleError(RuntimeError):
    """Raised when the text-generation channel fails to produce a reply."""

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable


class OracleTimeoutError(OracleError):
    """Raised when an oracle call exceeds the configured timeout."""


class OracleProcessError(OracleError):
    """Raised when an oracle subprocess cannot be started or read."""


class Oracle(ABC):
    @abstractmethod
    async def stream(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        """Stream textual chunks of a single reply."""

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any] | None = None,
    ) -> str:
        chunks: list[str] = []
        async for chunk in self.stream(system_prompt, user_prompt, context or {}):
            chunks.append(chunk)
        return "".join(chunks).strip()
