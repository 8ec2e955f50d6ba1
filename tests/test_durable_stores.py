from __future__ import annotations

from pathlib import Path

import pytest

from markdesk.core.storage import DebouncedWriter, JsonFileDurableStore, MemoryDurableStore, encoded_size


@pytest.mark.parametrize("kind", ["memory", "json"])
def test_durable_store_basic_ops(kind: str, tmp_path: Path) -> None:
    store = MemoryDurableStore() if kind == "memory" else JsonFileDurableStore(tmp_path / "store")

    assert store.get("a") is None
    store.set("a", {"x": 1})
    store.set("b", [1, 2, 3])
    assert store.get("a") == {"x": 1}
    assert sorted(store.keys()) == ["a", "b"]
    assert store.bytes_in_use(["a"]) > 0

    store.remove(["a", "missing"])
    assert store.get("a") is None
    store.remove("b")
    assert store.keys() == []


def test_memory_store_returns_copies() -> None:
    store = MemoryDurableStore({"k": {"items": [1]}})
    value = store.get("k")
    value["items"].append(2)
    assert store.get("k") == {"items": [1]}


def test_json_store_survives_reopen_and_ignores_corrupt_files(tmp_path: Path) -> None:
    root = tmp_path / "store"
    JsonFileDurableStore(root).set("job_snapshot", {"job_id": "j1"})
    reopened = JsonFileDurableStore(root)
    assert reopened.get("job_snapshot") == {"job_id": "j1"}

    (root / "job_history.json").write_text("{not json", encoding="utf-8")
    assert reopened.get("job_history") is None


def test_encoded_size_counts_utf8_bytes() -> None:
    assert encoded_size(None) == 0
    assert encoded_size({"a": 1}) == len('{"a":1}')
    assert encoded_size("é") == len('"é"'.encode("utf-8"))


def test_debounced_writer_coalesces_and_flushes() -> None:
    written: list[tuple[str, object]] = []
    writer = DebouncedWriter(lambda k, v: written.append((k, v)), 60.0)

    writer.schedule("k", 1)
    writer.schedule("k", 2)
    assert writer.has_pending("k")
    assert writer.pending_value("k") == 2
    assert written == []

    writer.flush()
    assert written == [("k", 2)]
    assert not writer.has_pending("k")


def test_debounced_writer_write_now_drops_pending() -> None:
    written: list[tuple[str, object]] = []
    writer = DebouncedWriter(lambda k, v: written.append((k, v)), 60.0)
    writer.schedule("k", "old")
    writer.write_now("k", "new")
    writer.flush()
    assert written == [("k", "new")]
    assert writer.is_due("k") is False

    writer.cancel("k")
    assert writer.is_due("k") is True
