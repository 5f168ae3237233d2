from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Literal

from maestro.models import utcnow_iso
from maestro.state.audit import AuditTrail

LOGGER = logging.getLogger(__name__)

RunState = Literal["idle", "running", "paused", "completed", "failed"]

MAX_HISTORY = 500


@dataclass(slots=True)
class Transition:
    from_state: RunState
    to_state: RunState
    at: str
    info: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"from": self.from_state, "to": self.to_state, "at": self.at, "info": self.info}


class RunStateTracker:
    """Observes one run's lifecycle and acts as its pause/resume control point.

    The controller awaits :meth:`wait_if_paused` before each step, so a pause
    takes effect at the next step boundary and never interrupts a step.
    """

    def __init__(self, run_id: str, task_id: str, audit: AuditTrail | None = None) -> None:
        self.run_id = run_id
        self.task_id = task_id
        self.audit = audit
        self.state: RunState = "idle"
        self.history: list[Transition] = []
        self.steps: list[dict[str, Any]] = []
        self._unpaused = asyncio.Event()
        self._unpaused.set()

    def _transition(self, to_state: RunState, info: dict[str, Any] | None = None) -> None:
        transition = Transition(
            from_state=self.state, to_state=to_state, at=utcnow_iso(), info=dict(info or {})
        )
        self.state = to_state
        self.history.append(transition)
        self.history = self.history[-MAX_HISTORY:]
        LOGGER.debug("Run %s: %s -> %s", self.run_id, transition.from_state, to_state)
        if self.audit is not None:
            self.audit.record(
                "run_state",
                {"run_id": self.run_id, "task_id": self.task_id, **transition.to_dict()},
            )

    def start(self, info: dict[str, Any] | None = None) -> bool:
        if self.state != "idle":
            return False
        self._transition("running", info)
        return True

    def pause(self, reason: str = "") -> bool:
        if self.state != "running":
            return False
        self._unpaused.clear()
        self._transition("paused", {"reason": reason} if reason else None)
        return True

    def resume(self) -> bool:
        if self.state != "paused":
            return False
        self._transition("running")
        self._unpaused.set()
        return True

    def step_begin(self, step_id: str) -> None:
        self.steps.append({"step_id": step_id, "status": "running", "started_at": utcnow_iso()})

    def step_end(self, step_id: str, status: str) -> None:
        for entry in reversed(self.steps):
            if entry["step_id"] == step_id and entry["status"] == "running":
                entry["status"] = status
                entry["finished_at"] = utcnow_iso()
                break
        else:
            self.steps.append({"step_id": step_id, "status": status, "finished_at": utcnow_iso()})
        if status == "error":
            self.fail({"step_id": step_id})

    def complete(self, info: dict[str, Any] | None = None) -> bool:
        if self.state not in ("running", "paused"):
            return False
        self._transition("completed", info)
        self._unpaused.set()
        return True

    def fail(self, info: dict[str, Any] | None = None) -> bool:
        if self.state in ("completed", "failed"):
            return False
        self._transition("failed", info)
        self._unpaused.set()
        return True

    @property
    def is_paused(self) -> bool:
        return self.state == "paused"

    async def wait_if_paused(self) -> None:
        await self._unpaused.wait()

    def snapshot(self) -> dict[str, Any]:
        return {
            "run_id": self.run_id,
            "task_id": self.task_id,
            "state": self.state,
            "steps": [dict(entry) for entry in self.steps],
            "history": [transition.to_dict() for transition in self.history],
        }
