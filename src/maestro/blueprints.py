from __future__ import annotations

import logging
from typing import Any

from maestro.models import Blueprint, ValidationError
from maestro.state.store import JsonStore

LOGGER = logging.getLogger(__name__)

BLUEPRINTS_KEY = "blueprints"


class BlueprintStore:
    """Write-once cache of reusable Blueprints keyed by task category."""

    def __init__(self, store: JsonStore) -> None:
        self.store = store

    def _payload(self) -> dict[str, Any]:
        payload = self.store.read(BLUEPRINTS_KEY, default={})
        return payload if isinstance(payload, dict) else {}

    def get(self, category: str) -> Blueprint | None:
        raw = self._payload().get(category)
        if raw is None:
            return None
        try:
            return Blueprint.from_payload(raw, category)
        except ValidationError as exc:
            LOGGER.warning("Stored blueprint for %s is unreadable: %s", category, exc)
            return None

    def put_if_absent(self, category: str, blueprint: Blueprint) -> bool:
        stored = False

        def _updater(payload: Any) -> dict[str, Any]:
            nonlocal stored
            result = dict(payload) if isinstance(payload, dict) else {}
            stored = category not in result
            if stored:
                result[category] = blueprint.to_dict()
            return result

        self.store.update(BLUEPRINTS_KEY, _updater, default={})
        return stored

    def categories(self) -> list[str]:
        return sorted(self._payload())

    def all(self) -> dict[str, Blueprint]:
        blueprints: dict[str, Blueprint] = {}
        for category in self.categories():
            blueprint = self.get(category)
            if blueprint is not None:
                blueprints[category] = blueprint
        return blueprints
