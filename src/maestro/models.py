from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

BlueprintOrigin = Literal["synthesized", "fallback"]
RunStatus = Literal["running", "success", "error"]
AttemptOutcome = Literal[
    "accepted",
    "rejected-retry",
    "rejected-giveup",
    "faulted-retry",
    "faulted-giveup",
]

DEFAULT_RETRY_BUDGET = 1


class ValidationError(ValueError):
    """Raised when a value object is constructed with invalid fields."""


def utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _require_text(value: Any, field_name: str) -> str:
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} must be a non-empty string")
    return value.strip()


def _as_mapping(value: Any, field_name: str) -> dict[str, Any]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ValidationError(f"{field_name} must be an object")
    return dict(value)


def _as_budget(value: Any, field_name: str = "retry_budget") -> int:
    if isinstance(value, bool) or not isinstance(value, int | float | str):
        raise ValidationError(f"{field_name} must be an integer")
    try:
        budget = int(value)
    except ValueError as exc:
        raise ValidationError(f"{field_name} must be an integer") from exc
    if budget < 0:
        raise ValidationError(f"{field_name} must be >= 0")
    return budget


@dataclass(slots=True, frozen=True)
class Task:
    category: str
    goal: str
    details: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)
    source: str = "user"
    id: str = field(default_factory=lambda: f"task_{uuid4().hex[:12]}")
    created_at: str = field(default_factory=utcnow_iso)

    def __post_init__(self) -> None:
        object.__setattr__(self, "category", _require_text(self.category, "category"))
        object.__setattr__(self, "goal", _require_text(self.goal, "goal"))
        object.__setattr__(self, "id", _require_text(self.id, "id"))
        object.__setattr__(self, "details", _as_mapping(self.details, "details"))
        object.__setattr__(self, "metadata", _as_mapping(self.metadata, "metadata"))

    @classmethod
    def from_interpreter_output(cls, raw: Any) -> Task:
        """Build a task from an intent classifier's output.

        Accepts either ``category`` or the legacy ``type`` key for the category.
        """
        if not isinstance(raw, dict):
            raise ValidationError("interpreter output must be an object")
        return cls(
            category=raw.get("category") or raw.get("type"),
            goal=raw.get("goal"),
            details=raw.get("details") or {},
            metadata=raw.get("metadata") or {},
            source=str(raw.get("source") or "user"),
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Task:
        kwargs: dict[str, Any] = {
            "category": data.get("category"),
            "goal": data.get("goal"),
            "details": data.get("details") or {},
            "metadata": data.get("metadata") or {},
            "source": str(data.get("source") or "user"),
        }
        if data.get("id"):
            kwargs["id"] = data["id"]
        if data.get("created_at"):
            kwargs["created_at"] = data["created_at"]
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def summary(self) -> str:
        return f"[{self.category}] ({self.id}) {self.goal}"


@dataclass(slots=True, frozen=True)
class Step:
    id: str
    title: str
    executor_name: str
    input: dict[str, Any] = field(default_factory=dict)
    depends_on: tuple[str, ...] = ()
    retry_budget: int = DEFAULT_RETRY_BUDGET
    metadata: dict[str, Any] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "id", _require_text(self.id, "step id"))
        object.__setattr__(self, "title", _require_text(self.title, "step title"))
        object.__setattr__(
            self, "executor_name", _require_text(self.executor_name, "executor_name")
        )
        object.__setattr__(self, "input", _as_mapping(self.input, "step input"))
        object.__setattr__(self, "metadata", _as_mapping(self.metadata, "step metadata"))
        object.__setattr__(self, "depends_on", tuple(str(dep) for dep in self.depends_on))
        object.__setattr__(self, "retry_budget", _as_budget(self.retry_budget))

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Step:
        return cls(
            id=data.get("id"),
            title=data.get("title"),
            executor_name=data.get("executor_name"),
            input=data.get("input") or {},
            depends_on=tuple(data.get("depends_on") or ()),
            retry_budget=data.get("retry_budget", DEFAULT_RETRY_BUDGET),
            metadata=data.get("metadata") or {},
        )

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["depends_on"] = list(self.depends_on)
        return payload


@dataclass(slots=True, frozen=True)
class Plan:
    task_id: str
    steps: tuple[Step, ...] = ()
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utcnow_iso)

    def __post_init__(self) -> None:
        object.__setattr__(self, "task_id", _require_text(self.task_id, "task_id"))
        object.__setattr__(self, "steps", tuple(self.steps))
        object.__setattr__(self, "metadata", _as_mapping(self.metadata, "plan metadata"))
        seen: set[str] = set()
        for step in self.steps:
            if not isinstance(step, Step):
                raise ValidationError("plan steps must be Step instances")
            if step.id in seen:
                raise ValidationError(f"Duplicate step id in plan: {step.id}")
            seen.add(step.id)

    def get_step(self, step_id: str) -> Step | None:
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def ordered_steps(self) -> list[Step]:
        # depends_on is advisory; execution order is declaration order.
        return list(self.steps)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Plan:
        kwargs: dict[str, Any] = {
            "task_id": data.get("task_id"),
            "steps": tuple(Step.from_dict(item) for item in data.get("steps") or []),
            "metadata": data.get("metadata") or {},
        }
        if data.get("created_at"):
            kwargs["created_at"] = data["created_at"]
        return cls(**kwargs)

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "steps": [step.to_dict() for step in self.steps],
            "metadata": dict(self.metadata),
            "created_at": self.created_at,
        }


@dataclass(slots=True, frozen=True)
class BlueprintStep:
    title: str
    executor_name: str
    input_template: dict[str, Any] = field(default_factory=dict)
    retry_budget: int = DEFAULT_RETRY_BUDGET

    @classmethod
    def from_payload(cls, payload: Any) -> BlueprintStep:
        if not isinstance(payload, dict):
            raise ValidationError("blueprint step must be an object")
        executor = (
            payload.get("executor_name")
            or payload.get("executorName")
            or payload.get("executor")
            or payload.get("agent")
        )
        title = payload.get("title")
        if not isinstance(title, str):
            raise ValidationError("blueprint step title must be a string")
        template = payload.get("input_template", payload.get("inputTemplate"))
        retry = payload.get("retry_budget", payload.get("retryBudget", payload.get("retry")))
        return cls(
            title=title,
            executor_name=_require_text(executor, "blueprint step executor"),
            input_template=_as_mapping(template, "input_template"),
            retry_budget=DEFAULT_RETRY_BUDGET if retry is None else _as_budget(retry),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


@dataclass(slots=True, frozen=True)
class Blueprint:
    category: str
    steps: tuple[BlueprintStep, ...]
    origin: BlueprintOrigin = "synthesized"

    @classmethod
    def from_payload(cls, payload: Any, category: str) -> Blueprint:
        if not isinstance(payload, dict):
            raise ValidationError("blueprint must be an object")
        raw_steps = payload.get("steps")
        if not isinstance(raw_steps, list):
            raise ValidationError("blueprint steps must be a list")
        origin = payload.get("origin")
        return cls(
            category=str(payload.get("category") or category),
            steps=tuple(BlueprintStep.from_payload(item) for item in raw_steps),
            origin=origin if origin in ("synthesized", "fallback") else "synthesized",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "origin": self.origin,
            "category": self.category,
            "steps": [step.to_dict() for step in self.steps],
        }


def validate_blueprint(
    blueprint: Blueprint, allowed_executors: set[str] | list[str], max_steps: int = 8
) -> list[str]:
    problems: list[str] = []
    allowed = set(allowed_executors)
    if not 1 <= len(blueprint.steps) <= max_steps:
        problems.append(f"expected 1-{max_steps} steps, got {len(blueprint.steps)}")
    for index, step in enumerate(blueprint.steps, start=1):
        if not step.title.strip():
            problems.append(f"step {index} has an empty title")
        if step.executor_name not in allowed:
            problems.append(f"step {index} uses unknown executor {step.executor_name}")
    return problems


@dataclass(slots=True)
class StepOutcome:
    success: bool
    output: Any = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {"success": self.success, "output": self.output, "error": self.error}


@dataclass(slots=True)
class AttemptRecord:
    attempt: int
    started_at: str
    outcome: AttemptOutcome | None = None
    finished_at: str | None = None
    output: Any = None
    error: str | None = None
    review: dict[str, Any] | None = None


@dataclass(slots=True)
class StepLog:
    step_id: str
    title: str
    executor_name: str
    started_at: str
    finished_at: str | None = None
    success: bool = False
    attempts: list[AttemptRecord] = field(default_factory=list)


@dataclass(slots=True)
class RunResult:
    run_id: str
    task_id: str
    status: RunStatus = "running"
    failed_step_id: str | None = None
    context: dict[str, StepOutcome] = field(default_factory=dict)
    step_logs: list[StepLog] = field(default_factory=list)
    review: dict[str, Any] = field(default_factory=dict)
    started_at: str = field(default_factory=utcnow_iso)
    finished_at: str | None = None

    @property
    def review_summary(self) -> str:
        return str(self.review.get("summary") or "")

    def context_snapshot(self) -> dict[str, dict[str, Any]]:
        return {step_id: outcome.to_dict() for step_id, outcome in self.context.items()}

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)
