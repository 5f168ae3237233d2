from __future__ import annotations

from typing import Any

from maestro.executors.base import Executor, ExecutorFault
from maestro.state.store import JsonStore, StoreError

EPISODES_KEY = "memory/episodes"
MAX_EPISODES = 1000


class MemoryRecorderAgent(Executor):
    """Post-run step that keeps a compact episodic record of each finished run."""

    name = "MemoryRecorderAgent"

    def __init__(self, store: JsonStore) -> None:
        self.store = store

    @staticmethod
    def _episode(run: dict[str, Any], task: dict[str, Any]) -> dict[str, Any]:
        step_logs = run.get("step_logs") or []
        return {
            "run_id": run.get("run_id"),
            "task_id": task.get("id") or run.get("task_id"),
            "category": task.get("category"),
            "goal": task.get("goal"),
            "status": run.get("status"),
            "failed_step_id": run.get("failed_step_id"),
            "review": (run.get("review") or {}).get("summary"),
            "steps": [
                {
                    "step_id": log.get("step_id"),
                    "executor_name": log.get("executor_name"),
                    "success": log.get("success"),
                    "attempts": len(log.get("attempts") or []),
                }
                for log in step_logs
                if isinstance(log, dict)
            ],
        }

    async def run(self, input: dict[str, Any], context: dict[str, Any]) -> Any:
        run = input.get("run")
        task = input.get("task")
        if not isinstance(run, dict) or not isinstance(task, dict):
            raise ExecutorFault(
                "MemoryRecorderAgent expects 'run' and 'task' objects", executor_name=self.name
            )
        episode = self._episode(run, task)

        def _updater(payload: Any) -> list[Any]:
            items = list(payload) if isinstance(payload, list) else []
            items.append(episode)
            return items[-MAX_EPISODES:]

        try:
            self.store.update(EPISODES_KEY, _updater, default=[])
        except StoreError as exc:
            raise ExecutorFault(
                f"Memory episode write failed: {exc}", executor_name=self.name
            ) from exc
        return {"type": "memory", "recorded": True, "run_id": episode["run_id"]}
