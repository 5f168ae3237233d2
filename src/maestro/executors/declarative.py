from __future__ import annotations

from dataclasses import asdict, dataclass
from typing import Any

from maestro.executors.base import OracleExecutor
from maestro.models import ValidationError
from maestro.oracle.base import Oracle


@dataclass(slots=True, frozen=True)
class ExecutorSpec:
    """Declarative description of a synthesized executor.

    A synthesized executor is never generated code. It is a system prompt plus
    the key its answer is published under, run by :class:`DeclarativeExecutor`.
    """

    name: str
    system_prompt: str
    description: str = ""
    output_key: str = "answer"
    origin: str = "synthesized"

    @classmethod
    def from_payload(cls, payload: Any, name: str) -> ExecutorSpec:
        if not isinstance(payload, dict):
            raise ValidationError("executor spec must be an object")
        system_prompt = payload.get("system_prompt") or payload.get("systemPrompt")
        if not isinstance(system_prompt, str) or not system_prompt.strip():
            raise ValidationError("executor spec requires a system_prompt")
        output_key = payload.get("output_key") or payload.get("outputKey") or "answer"
        if not isinstance(output_key, str) or not output_key.isidentifier():
            output_key = "answer"
        if output_key == "type":
            output_key = "answer"
        return cls(
            name=name,
            system_prompt=system_prompt.strip(),
            description=str(payload.get("description") or ""),
            output_key=output_key,
            origin=str(payload.get("origin") or "synthesized"),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def template_spec(name: str) -> ExecutorSpec:
    return ExecutorSpec(
        name=name,
        system_prompt=(
            f"You are a dynamically created executor named {name}. "
            "Produce useful output for the given step input. Keep it concise."
        ),
        description=f"Template executor for {name}",
        output_key="answer",
        origin="template",
    )


class DeclarativeExecutor(OracleExecutor):
    def __init__(self, spec: ExecutorSpec, oracle: Oracle) -> None:
        super().__init__(oracle)
        self.spec = spec
        self.name = spec.name
        self.system_prompt = spec.system_prompt

    def shape_output(self, answer: str, input: dict[str, Any]) -> Any:
        return {"type": self.spec.name, self.spec.output_key: answer}
