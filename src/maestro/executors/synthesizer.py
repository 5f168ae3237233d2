from __future__ import annotations

import logging
from typing import Any

from maestro.executors.base import SynthesisFailure
from maestro.executors.declarative import ExecutorSpec, template_spec
from maestro.executors.registry import DECLARATIVE_SCHEME, AgentRegistry
from maestro.models import ValidationError
from maestro.oracle.base import Oracle, OracleError
from maestro.oracle.decode import decode_reply, dumps_for_prompt
from maestro.state.audit import AuditTrail
from maestro.state.store import JsonStore, StoreError

LOGGER = logging.getLogger(__name__)

SPECS_KEY = "executor_specs"

SYNTHESIS_SYSTEM_PROMPT = """
You define a new executor for a task orchestrator.
An executor receives a step input object and prior step results and returns one answer.
Describe it declaratively; do not write code.
Reply with JSON only:
{"description": "...", "system_prompt": "...", "output_key": "answer"}
""".strip()


class ExecutorSynthesizer:
    """Builds declarative executor specs for names nobody has registered yet."""

    def __init__(
        self,
        oracle: Oracle,
        store: JsonStore,
        registry: AgentRegistry,
        audit: AuditTrail,
        *,
        min_plausible_length: int = 20,
    ) -> None:
        self.oracle = oracle
        self.store = store
        self.registry = registry
        self.audit = audit
        self.min_plausible_length = min_plausible_length

    def _build_prompt(self, name: str, hint_input: dict[str, Any]) -> str:
        return (
            f"Executor name: {name}\n\n"
            f"Example step input:\n{dumps_for_prompt(hint_input, 3000)}"
        )

    def _is_plausible(self, spec: ExecutorSpec | None) -> bool:
        return spec is not None and len(spec.system_prompt) >= self.min_plausible_length

    async def _design(self, name: str, hint_input: dict[str, Any]) -> ExecutorSpec:
        try:
            raw = await self.oracle.generate(
                SYNTHESIS_SYSTEM_PROMPT, self._build_prompt(name, hint_input)
            )
        except OracleError as exc:
            LOGGER.warning("Executor synthesis for %s had no oracle reply: %s", name, exc)
            return template_spec(name)

        spec = decode_reply(
            raw,
            lambda payload: ExecutorSpec.from_payload(payload, name),
            None,
            label=f"executor spec for {name}",
        )
        if not self._is_plausible(spec):
            LOGGER.info("Synthesized spec for %s was unusable; using template executor", name)
            return template_spec(name)
        return spec

    def _persist(self, spec: ExecutorSpec) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = dict(payload) if isinstance(payload, dict) else {}
            result[spec.name] = spec.to_dict()
            return result

        self.store.update(SPECS_KEY, _updater, default={})

    async def synthesize(self, name: str, hint_input: dict[str, Any]) -> str:
        spec = await self._design(name, hint_input)
        locator = f"{DECLARATIVE_SCHEME}:{name}"
        try:
            self._persist(spec)
            self.registry.register(name, locator)
        except (StoreError, OSError) as exc:
            self.audit.record(
                "executor_synthesis",
                {"executor_name": name, "status": "error", "error": str(exc)},
            )
            raise SynthesisFailure(
                f"Could not persist synthesized executor {name}: {exc}", executor_name=name
            ) from exc

        self.audit.record(
            "executor_synthesis",
            {
                "executor_name": name,
                "locator": locator,
                "origin": spec.origin,
                "status": "success",
                "hint_input_keys": sorted(hint_input),
            },
        )
        LOGGER.info("Synthesized executor %s (%s)", name, spec.origin)
        return locator

    def load_spec(self, name: str) -> ExecutorSpec:
        payload = self.store.read(SPECS_KEY, default={})
        raw = payload.get(name) if isinstance(payload, dict) else None
        if raw is None:
            raise SynthesisFailure(f"No stored spec for executor {name}", executor_name=name)
        try:
            return ExecutorSpec.from_payload(raw, name)
        except ValidationError as exc:
            raise SynthesisFailure(
                f"Stored spec for executor {name} is malformed: {exc}", executor_name=name
            ) from exc

    def specs(self) -> dict[str, Any]:
        payload = self.store.read(SPECS_KEY, default={})
        return dict(payload) if isinstance(payload, dict) else {}
