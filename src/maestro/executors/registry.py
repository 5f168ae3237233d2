from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from maestro.executors.base import Executor
from maestro.state.store import JsonStore

LOGGER = logging.getLogger(__name__)

REGISTRY_KEY = "agent_registry"
BUILTIN_SCHEME = "builtin"
DECLARATIVE_SCHEME = "declarative"

ExecutorFactory = Callable[[], Executor]


def split_locator(locator: str) -> tuple[str, str]:
    scheme, _, target = locator.partition(":")
    return scheme, target


class AgentRegistry:
    """Maps executor names to locators (``builtin:<name>`` or ``declarative:<name>``)."""

    def __init__(
        self, store: JsonStore, builtins: dict[str, ExecutorFactory] | None = None
    ) -> None:
        self.store = store
        self.builtins: dict[str, ExecutorFactory] = dict(builtins or {})

    def _entries(self) -> dict[str, str]:
        payload = self.store.read(REGISTRY_KEY, default={"executors": {}})
        if not isinstance(payload, dict):
            return {}
        entries = payload.get("executors", {})
        if not isinstance(entries, dict):
            return {}
        return {str(name): str(locator) for name, locator in entries.items()}

    def register(self, name: str, locator: str) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = dict(payload) if isinstance(payload, dict) else {}
            entries = result.get("executors")
            entries = dict(entries) if isinstance(entries, dict) else {}
            entries[name] = locator
            result["executors"] = entries
            return result

        self.store.update(REGISTRY_KEY, _updater, default={"executors": {}})
        LOGGER.info("Registered executor %s -> %s", name, locator)

    def locate(self, name: str) -> str | None:
        locator = self._entries().get(name)
        if locator:
            return locator
        if name in self.builtins:
            locator = f"{BUILTIN_SCHEME}:{name}"
            self.register(name, locator)
            return locator
        return None

    def names(self) -> list[str]:
        return sorted(set(self._entries()) | set(self.builtins))

    def entries(self) -> dict[str, str]:
        entries = {name: f"{BUILTIN_SCHEME}:{name}" for name in self.builtins}
        entries.update(self._entries())
        return dict(sorted(entries.items()))

    def builtin_factory(self, name: str) -> ExecutorFactory | None:
        return self.builtins.get(name)
