import json
import threading
from pathlib import Path

import pytest

from maestro.state import AuditTrail, JsonStore, StoreConflictError, StoreError


def test_store_roundtrip(tmp_path: Path) -> None:
    store = JsonStore(tmp_path / "store")
    payload = {"goal": "build auth", "phase": "planning"}
    store.write("context", payload)

    assert store.read("context") == payload
    assert store.read("missing", default={"empty": True}) == {"empty": True}
    assert store.revision("missing") == 0


def test_store_migrates_legacy_payload(tmp_path: Path) -> None:
    store = JsonStore(tmp_path)
    legacy_path = tmp_path / "context.json"
    legacy_path.write_text(json.dumps({"legacy": True}), encoding="utf-8")

    assert store.read("context") == {"legacy": True}

    store.write("context", {"legacy": False})
    on_disk = json.loads(legacy_path.read_text(encoding="utf-8"))
    assert on_disk["schema_version"] == JsonStore.SCHEMA_VERSION
    assert on_disk["revision"] == 2
    assert on_disk["data"] == {"legacy": False}


def test_update_increments_revision(tmp_path: Path) -> None:
    store = JsonStore(tmp_path)
    store.write("metrics", {"count": 1})
    first_revision = store.revision("metrics")

    store.update("metrics", lambda payload: {"count": payload["count"] + 1}, default={"count": 0})

    assert store.read("metrics")["count"] == 2
    assert store.revision("metrics") > first_revision


def test_write_with_stale_revision_is_rejected(tmp_path: Path) -> None:
    store = JsonStore(tmp_path)
    revision = store.write("blueprints", {"a": 1})
    store.write("blueprints", {"a": 2}, expected_revision=revision)

    with pytest.raises(StoreConflictError, match="Concurrent state update"):
        store.write("blueprints", {"a": 3}, expected_revision=revision)
    assert store.read("blueprints") == {"a": 2}


@pytest.mark.parametrize("key", ["../escape", "a/../../b", "", "with space", "/abs"])
def test_store_rejects_unsafe_keys(tmp_path: Path, key: str) -> None:
    store = JsonStore(tmp_path)

    with pytest.raises(StoreError, match="Invalid store key"):
        store.write(key, {})


def test_append_adds_timestamp_and_nested_keys(tmp_path: Path) -> None:
    store = JsonStore(tmp_path)
    record = store.append("audit/events", {"event": "x"})

    assert "_ts" in record
    assert store.read("audit/events") == [record]
    assert (tmp_path / "audit" / "events.json").exists()
    assert "audit/events" in store.keys()


def test_broken_file_is_backed_up_and_treated_as_empty(tmp_path: Path) -> None:
    store = JsonStore(tmp_path)
    (tmp_path / "registry.json").write_text("{not json", encoding="utf-8")

    assert store.read("registry", default={}) == {}
    assert list(tmp_path.glob("registry.json.broken_*"))
    assert not (tmp_path / "registry.json").exists()


def test_concurrent_updates_are_serialized(tmp_path: Path) -> None:
    store = JsonStore(tmp_path)

    def _bump() -> None:
        for _ in range(20):
            store.update("counter", lambda payload: {"n": payload["n"] + 1}, default={"n": 0})

    threads = [threading.Thread(target=_bump) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert store.read("counter") == {"n": 100}


def test_audit_trail_records_and_reads_back(tmp_path: Path) -> None:
    audit = AuditTrail(JsonStore(tmp_path), max_entries=3)
    for index in range(5):
        assert audit.record("runs", {"index": index}) is True

    entries = audit.entries("runs")
    assert [entry["index"] for entry in entries] == [2, 3, 4]
    assert audit.entries("runs", limit=1)[0]["index"] == 4
    assert audit.entries("nothing") == []


def test_audit_trail_without_cap_keeps_every_entry(tmp_path: Path) -> None:
    audit = AuditTrail(JsonStore(tmp_path), max_entries=0)
    for index in range(5):
        audit.record("runs", {"index": index})

    assert [entry["index"] for entry in audit.entries("runs")] == [0, 1, 2, 3, 4]


def test_audit_trail_never_raises_on_write_failure(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture
) -> None:
    store = JsonStore(tmp_path)
    audit = AuditTrail(store)

    def _broken_update(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(store, "update", _broken_update)

    assert audit.record("runs", {"status": "success"}) is False
    assert "disk full" in caplog.text
