from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass
from typing import Any

from maestro.oracle.base import Oracle, OracleError, OracleTimeoutError

LOGGER = logging.getLogger(__name__)

OracleEventHook = Callable[[dict[str, Any]], None]

MAX_REPORTED_ERRORS = 6


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 120.0

    def delay_before(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1)) if attempt > 0 else 0.0


@dataclass(slots=True)
class _Channel:
    name: str
    oracle: Oracle


class ResilientOracle(Oracle):
    """Primary oracle with retries, then the fallback oracle, each call under a timeout.

    The whole reply is buffered before it is re-streamed, so a channel that
    dies halfway never leaks a partial answer to the caller.
    """

    def __init__(
        self,
        primary_name: str,
        primary: Oracle,
        fallback_name: str,
        fallback: Oracle,
        retry_policy: RetryPolicy,
        event_hook: OracleEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary = primary
        self.fallback_name = fallback_name
        self.fallback = fallback
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _channels(self) -> list[_Channel]:
        channels = [_Channel(self.primary_name, self.primary)]
        if self.fallback_name != self.primary_name:
            channels.append(_Channel(self.fallback_name, self.fallback))
        return channels

    def _emit(self, event: str, channel: _Channel, attempt: int, **fields: Any) -> None:
        if self.event_hook is not None:
            self.event_hook({"event": event, "oracle": channel.name, "attempt": attempt, **fields})

    async def _buffered_reply(
        self,
        channel: _Channel,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]:
        async def _drain() -> list[str]:
            return [
                chunk async for chunk in channel.oracle.stream(system_prompt, user_prompt, context)
            ]

        timeout = self.retry_policy.timeout_seconds
        try:
            return await asyncio.wait_for(_drain(), timeout=timeout)
        except TimeoutError as exc:
            raise OracleTimeoutError(
                f"{channel.name} gave no reply within {timeout:.1f}s", backend=channel.name
            ) from exc

    async def stream(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        failures: list[str] = []
        for channel in self._channels():
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt:
                    delay = self.retry_policy.delay_before(attempt)
                    self._emit("oracle_retry", channel, attempt, delay_seconds=delay)
                    await asyncio.sleep(delay)
                try:
                    chunks = await self._buffered_reply(
                        channel, system_prompt, user_prompt, context
                    )
                except Exception as exc:
                    retriable = exc.retriable if isinstance(exc, OracleError) else True
                    failures.append(f"{channel.name}[{attempt}]: {exc}")
                    self._emit(
                        "oracle_attempt_failed",
                        channel,
                        attempt,
                        error=str(exc),
                        retriable=retriable,
                    )
                    LOGGER.debug("Oracle %s attempt %d failed: %s", channel.name, attempt, exc)
                    if not retriable:
                        break
                    continue

                if channel.name != self.primary_name:
                    self._emit("oracle_fallback_success", channel, attempt)
                for chunk in chunks:
                    yield chunk
                return

        raise OracleError(
            "All oracle attempts failed. " + "; ".join(failures[-MAX_REPORTED_ERRORS:]),
            retriable=False,
        )
