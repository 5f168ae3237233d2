from __future__ import annotations

import logging
from typing import Any

from maestro.models import utcnow_iso
from maestro.state.store import JsonStore, StoreError

LOGGER = logging.getLogger(__name__)

AUDIT_PREFIX = "audit"
MAX_ENTRIES_PER_KEY = 500


class AuditWriteFault(StoreError):
    """Raised internally when an audit record could not be persisted."""


class AuditTrail:
    """Append-only, best-effort audit log on top of the JSON store.

    Each key keeps its newest ``max_entries`` records; 0 keeps everything.
    """

    def __init__(self, store: JsonStore, *, max_entries: int = MAX_ENTRIES_PER_KEY) -> None:
        self.store = store
        self.max_entries = max_entries

    def _key(self, key: str) -> str:
        return f"{AUDIT_PREFIX}/{key}"

    def _append(self, key: str, entry: dict[str, Any]) -> None:
        record = dict(entry)
        record["_ts"] = utcnow_iso()

        def _updater(payload: Any) -> list[Any]:
            items = list(payload) if isinstance(payload, list) else []
            items.append(record)
            return items[-self.max_entries :] if self.max_entries > 0 else items

        try:
            self.store.update(self._key(key), _updater, default=[])
        except (StoreError, OSError, TypeError, ValueError) as exc:
            raise AuditWriteFault(f"Audit write to '{key}' failed: {exc}") from exc

    def record(self, key: str, entry: dict[str, Any]) -> bool:
        try:
            self._append(key, entry)
        except AuditWriteFault as exc:
            LOGGER.warning("%s", exc)
            return False
        return True

    def entries(self, key: str, limit: int | None = None) -> list[dict[str, Any]]:
        payload = self.store.read(self._key(key), default=[])
        if not isinstance(payload, list):
            return []
        items = [item for item in payload if isinstance(item, dict)]
        if limit is not None:
            return items[-limit:]
        return items
