from __future__ import annotations

import json
import logging
import os
import re
import tempfile
import threading
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

LOGGER = logging.getLogger(__name__)

_KEY_RE = re.compile(r"^[A-Za-z0-9_.\-]+(/[A-Za-z0-9_.\-]+)*$")


class StoreError(RuntimeError):
    """Raised when persisted-state operations fail."""


class StoreConflictError(StoreError):
    """Raised when a write loses a revision compare-and-swap."""


class JsonStore:
    """Key-value/append store with one JSON envelope file per logical key."""

    SCHEMA_VERSION = 1
    UPDATE_ATTEMPTS = 4

    def __init__(self, root: Path) -> None:
        self.root = root.resolve()
        self.root.mkdir(parents=True, exist_ok=True)
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def _validate_key(key: str) -> None:
        if not isinstance(key, str) or not _KEY_RE.match(key):
            raise StoreError(f"Invalid store key: {key!r}")
        if any(part in {".", ".."} for part in key.split("/")):
            raise StoreError(f"Invalid store key: {key!r}")

    def _path(self, key: str) -> Path:
        self._validate_key(key)
        return self.root / f"{key}.json"

    def _lock_for(self, key: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.Lock()
                self._locks[key] = lock
            return lock

    def _read_raw_json(self, key: str) -> Any:
        path = self._path(key)
        if not path.exists():
            return None
        content = path.read_text(encoding="utf-8").strip()
        if not content:
            return None
        try:
            return json.loads(content)
        except json.JSONDecodeError:
            stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%S")
            backup = path.with_name(f"{path.name}.broken_{stamp}")
            LOGGER.warning("Store file %s is not valid JSON; moved to %s", path, backup.name)
            os.replace(path, backup)
            return None

    def _write_raw_json(self, key: str, payload: Any) -> None:
        path = self._path(key)
        path.parent.mkdir(parents=True, exist_ok=True)
        serialized = json.dumps(payload, ensure_ascii=False, indent=2, default=str)
        fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
            os.replace(temp_name, path)
        except BaseException:
            Path(temp_name).unlink(missing_ok=True)
            raise

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 0),
                "updated_at": raw_payload.get("updated_at") or self._utcnow_iso(),
                "data": raw_payload.get("data", default),
            }

        if raw_payload is None:
            return {
                "schema_version": self.SCHEMA_VERSION,
                "revision": 0,
                "updated_at": None,
                "data": default,
            }
        # Bare legacy payloads count as the first revision.
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": self._utcnow_iso(),
            "data": raw_payload,
        }

    def get_envelope(self, key: str, default: Any = None) -> dict[str, Any]:
        return self._normalize_envelope(self._read_raw_json(key), default)

    def read(self, key: str, default: Any = None) -> Any:
        return self.get_envelope(key, default=default).get("data")

    def revision(self, key: str) -> int:
        return int(self.get_envelope(key).get("revision", 0))

    def _commit(self, key: str, value: Any, expected_revision: int | None) -> int:
        # Caller holds the key lock; the on-disk revision check catches other processes.
        current_revision = int(self.get_envelope(key).get("revision", 0))
        if expected_revision is not None and expected_revision != current_revision:
            raise StoreConflictError(
                f"Concurrent state update detected for key '{key}' "
                f"(expected revision {expected_revision}, found {current_revision})."
            )
        new_revision = current_revision + 1
        self._write_raw_json(
            key,
            {
                "schema_version": self.SCHEMA_VERSION,
                "revision": new_revision,
                "updated_at": self._utcnow_iso(),
                "data": value,
            },
        )
        return new_revision

    def write(self, key: str, value: Any, expected_revision: int | None = None) -> int:
        with self._lock_for(key):
            return self._commit(key, value, expected_revision)

    def update(self, key: str, updater: Callable[[Any], Any], default: Any = None) -> Any:
        last_error: StoreConflictError | None = None
        for _ in range(self.UPDATE_ATTEMPTS):
            with self._lock_for(key):
                current = self.get_envelope(key, default=default)
                updated = updater(current.get("data", default))
                try:
                    self._commit(key, updated, int(current.get("revision", 0)))
                    return updated
                except StoreConflictError as exc:
                    last_error = exc
        raise StoreError(str(last_error) if last_error else f"Update failed for key '{key}'.")

    def append(self, key: str, entry: dict[str, Any]) -> dict[str, Any]:
        record = dict(entry)
        record["_ts"] = self._utcnow_iso()

        def _updater(payload: Any) -> list[Any]:
            items = list(payload) if isinstance(payload, list) else []
            items.append(record)
            return items

        self.update(key, _updater, default=[])
        return record

    def keys(self) -> list[str]:
        found: list[str] = []
        for path in sorted(self.root.rglob("*.json")):
            relative = path.relative_to(self.root).as_posix()
            found.append(relative[: -len(".json")])
        return found
