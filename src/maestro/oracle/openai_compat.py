from __future__ import annotations

import asyncio
import json
import os
from collections.abc import AsyncIterator
from typing import Any

from openai import OpenAI, OpenAIError

from maestro.oracle.base import Oracle, OracleError


class OpenAICompatibleOracle(Oracle):
    """Chat-completions oracle for any OpenAI-compatible endpoint.

    DeepSeek, Ollama and LM Studio all expose this protocol, so switching
    providers is a matter of ``base_url`` and ``model``.
    """

    def __init__(
        self,
        *,
        model: str = "deepseek-chat",
        base_url: str | None = None,
        api_key_env: str = "OPENAI_API_KEY",
        temperature: float = 0.2,
    ) -> None:
        self.model = model
        self.base_url = base_url or None
        self.api_key_env = api_key_env
        self.temperature = temperature
        self._client: Any | None = None

    def _ensure_client(self) -> Any:
        if self._client is None:
            # Local servers (Ollama, LM Studio) accept any key.
            api_key = os.environ.get(self.api_key_env) or ("local" if self.base_url else None)
            try:
                self._client = OpenAI(api_key=api_key, base_url=self.base_url)
            except OpenAIError as exc:
                raise OracleError(
                    f"OpenAI-compatible client could not be configured: {exc}",
                    backend="openai",
                    retriable=False,
                ) from exc
        return self._client

    @staticmethod
    def _build_user_input(user_prompt: str, context: dict[str, Any]) -> str:
        payload = {key: value for key, value in context.items() if key != "model"}
        if not payload:
            return user_prompt
        return (
            f"{user_prompt}\n\nContext JSON:\n"
            f"{json.dumps(payload, ensure_ascii=False, indent=2, default=str)}"
        )

    @staticmethod
    def _extract_text(payload: Any) -> str:
        if payload is None:
            return ""
        if isinstance(payload, dict):
            choices = payload.get("choices") or []
            if choices and isinstance(choices[0], dict):
                message = choices[0].get("message") or {}
                content = message.get("content")
                return content if isinstance(content, str) else ""
            return ""
        choices = getattr(payload, "choices", None) or []
        if not choices:
            return ""
        message = getattr(choices[0], "message", None)
        content = getattr(message, "content", None)
        return content if isinstance(content, str) else ""

    async def stream(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        requested_model = context.get("model")
        model_name = (
            requested_model.strip()
            if isinstance(requested_model, str) and requested_model.strip()
            else self.model
        )
        client = self._ensure_client()
        prompt = self._build_user_input(user_prompt, context)

        def _request() -> Any:
            return client.chat.completions.create(
                model=model_name,
                temperature=self.temperature,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": prompt},
                ],
            )

        try:
            payload = await asyncio.to_thread(_request)
        except OpenAIError as exc:
            raise OracleError(
                f"OpenAI-compatible request failed: {exc}",
                backend="openai",
                retriable=True,
            ) from exc

        content = self._extract_text(payload).strip()
        if content:
            yield content
