from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any

import pytest

from markdesk.core.errors import ValidationError
from markdesk.core.jobs.job_store import (
    KEY_ACTIVITY,
    KEY_HISTORY,
    KEY_MIGRATION,
    KEY_SNAPSHOT,
    JobStore,
    convert_legacy_snapshot,
)
from markdesk.core.jobs.models import (
    ActivityEntry,
    ActivityLevel,
    JobSnapshot,
    JobStatus,
    QueueSummary,
    StageUnits,
    empty_summary,
)
from markdesk.core.settings import StoreSettings
from markdesk.core.storage import MemoryDurableStore


def _snapshot(job_id: str = "job_1", status: JobStatus = JobStatus.RUNNING, **kwargs: Any) -> JobSnapshot:
    return JobSnapshot(job_id=job_id, status=status, stage="scanning", stage_index=1, **kwargs)


def _entry(job_id: str = "job_1", message: str = "hello", timestamp: str | None = None) -> ActivityEntry:
    return ActivityEntry(
        job_id=job_id,
        timestamp=timestamp or datetime.now(timezone.utc).isoformat(),
        level=ActivityLevel.INFO,
        message=message,
    )


def test_save_snapshot_rejects_malformed_data() -> None:
    store = JobStore(MemoryDurableStore())
    with pytest.raises(ValidationError):
        store.save_snapshot({"job_id": "", "status": "running"})
    with pytest.raises(ValidationError):
        store.save_snapshot({**_snapshot().to_dict(), "status": "exploded"})


def test_invalid_durable_snapshot_is_cleared_on_load() -> None:
    durable = MemoryDurableStore({KEY_SNAPSHOT: {"job_id": 42}})
    store = JobStore(durable)
    assert store.load_snapshot() is None
    assert durable.get(KEY_SNAPSHOT) is None


@pytest.mark.parametrize(
    "patch",
    [
        {"weighted_percent": float("nan")},
        {"weighted_percent": float("inf")},
        {"stage_units": {"processed": float("nan"), "total": 10}},
        {"stage_units": {"processed": 1, "total": float("-inf")}},
    ],
)
def test_non_finite_numbers_make_a_stored_snapshot_invalid(patch: dict[str, Any]) -> None:
    record = {**_snapshot(status=JobStatus.PAUSED).to_dict(), **patch}
    durable = MemoryDurableStore({KEY_SNAPSHOT: record})
    store = JobStore(durable)
    assert store.load_snapshot() is None
    assert durable.get(KEY_SNAPSHOT) is None
    with pytest.raises(ValidationError):
        store.save_snapshot(record)


def test_saved_snapshot_loads_back_field_for_field() -> None:
    snap = JobSnapshot(
        job_id="job_full",
        status=JobStatus.PAUSED,
        stage="scanning",
        stage_index=1,
        stage_units=StageUnits(processed=4, total=10),
        weighted_percent=40,
        indeterminate=False,
        activity="Job paused",
        timestamp="2024-03-01T10:00:05.000+00:00",
        created_at="2024-03-01T10:00:00.000+00:00",
        started_at="2024-03-01T10:00:01.000+00:00",
        summary={**empty_summary(), "total_bookmarks": 120, "duplicates_found": 7},
        error="Scanning stage failed permanently",
        queue_meta={"job_type": "cleanup", "requested_by": "popup"},
        stage_order=["initializing", "scanning", "summarizing"],
        stage_weights={"initializing": 20.0, "scanning": 50.0, "summarizing": 30.0},
    )
    store = JobStore(MemoryDurableStore())
    store.save_snapshot(snap)

    loaded = store.load_snapshot()
    assert loaded is not None
    assert loaded.to_dict() == snap.to_dict()
    assert loaded == snap


def test_snapshot_writes_are_throttled_but_readable() -> None:
    durable = MemoryDurableStore()
    store = JobStore(durable, StoreSettings(debounce_delay_sec=60.0))

    store.save_snapshot(_snapshot(activity="first"))
    assert durable.get(KEY_SNAPSHOT)["activity"] == "first"

    store.save_snapshot(_snapshot(activity="second"))
    assert durable.get(KEY_SNAPSHOT)["activity"] == "first"
    loaded = store.load_snapshot()
    assert loaded is not None and loaded.activity == "second"

    store.flush()
    assert durable.get(KEY_SNAPSHOT)["activity"] == "second"


def test_paused_and_immediate_snapshots_bypass_the_throttle() -> None:
    durable = MemoryDurableStore()
    store = JobStore(durable, StoreSettings(debounce_delay_sec=60.0))
    store.save_snapshot(_snapshot(activity="first"))

    store.save_snapshot(_snapshot(status=JobStatus.PAUSED, activity="paused"))
    assert durable.get(KEY_SNAPSHOT)["status"] == "paused"

    store.save_snapshot(_snapshot(activity="forced"), immediate=True)
    assert durable.get(KEY_SNAPSHOT)["activity"] == "forced"


def test_clear_snapshot_drops_pending_write() -> None:
    durable = MemoryDurableStore()
    store = JobStore(durable, StoreSettings(debounce_delay_sec=60.0))
    store.save_snapshot(_snapshot())
    store.save_snapshot(_snapshot(activity="pending"))
    store.clear_snapshot()
    store.flush()
    assert store.load_snapshot() is None
    assert durable.get(KEY_SNAPSHOT) is None


def test_activity_log_is_capped_oldest_first() -> None:
    store = JobStore(MemoryDurableStore(), StoreSettings(max_activity_entries=3))
    for i in range(5):
        assert store.append_activity(_entry(message=f"m{i}")) is True
    assert [e.message for e in store.load_activity()] == ["m2", "m3", "m4"]
    assert [e.message for e in store.load_activity(limit=2)] == ["m3", "m4"]


def test_invalid_activity_is_dropped() -> None:
    durable = MemoryDurableStore()
    store = JobStore(durable)
    assert store.append_activity({"job_id": "job_1", "timestamp": "t", "level": "loud", "message": "x"}) is False
    assert durable.get(KEY_ACTIVITY) is None


def test_invalid_stored_activity_is_filtered_and_rewritten() -> None:
    good = _entry().to_dict()
    durable = MemoryDurableStore({KEY_ACTIVITY: [good, {"level": "info"}, "junk"]})
    store = JobStore(durable)
    assert [e.to_dict() for e in store.load_activity()] == [good]
    assert durable.get(KEY_ACTIVITY) == [good]


def test_appending_activity_bumps_matching_snapshot_timestamp() -> None:
    store = JobStore(MemoryDurableStore())
    store.save_snapshot(_snapshot(timestamp="2024-01-01T00:00:00+00:00"), immediate=True)

    store.append_activity(_entry(timestamp="2024-01-02T00:00:00+00:00"))
    loaded = store.load_snapshot()
    assert loaded is not None and loaded.timestamp == "2024-01-02T00:00:00+00:00"

    store.append_activity(_entry(job_id="other", timestamp="2024-01-03T00:00:00+00:00"))
    loaded = store.load_snapshot()
    assert loaded is not None and loaded.timestamp == "2024-01-02T00:00:00+00:00"


def test_history_is_bounded_and_queryable() -> None:
    store = JobStore(MemoryDurableStore(), StoreSettings(max_history=2))
    for i in range(3):
        store.add_to_history(_snapshot(job_id=f"job_{i}", status=JobStatus.COMPLETED))

    history = store.get_history()
    assert [h["job_id"] for h in history] == ["job_1", "job_2"]
    assert all("history_timestamp" in h for h in history)
    assert store.get_job_from_history("job_0") is None
    assert store.get_job_from_history("job_2")["status"] == "completed"

    assert store.clear_from_history("job_1") is True
    assert store.clear_from_history("job_1") is False
    assert [h["job_id"] for h in store.get_history()] == ["job_2"]


def test_clear_removes_every_trace_of_a_job() -> None:
    store = JobStore(MemoryDurableStore())
    store.save_snapshot(_snapshot(), immediate=True)
    store.append_activity(_entry())
    store.append_activity(_entry(job_id="job_2"))
    store.add_to_history(_snapshot(status=JobStatus.FAILED))

    store.clear("job_1")

    assert store.load_snapshot() is None
    assert [e.job_id for e in store.load_activity()] == ["job_2"]
    assert store.get_history() == []


def test_queue_summary_validation_and_load() -> None:
    store = JobStore(MemoryDurableStore())
    with pytest.raises(ValidationError):
        store.save_queue({"total": "one"})
    assert store.load_queue() is None

    store.save_queue(QueueSummary(total=1, running=1, recent_jobs=[{"job_id": "job_0"}]))
    loaded = store.load_queue()
    assert loaded is not None
    assert loaded.running == 1
    assert loaded.recent_jobs == [{"job_id": "job_0"}]


def test_cleanup_prunes_old_activity_and_history() -> None:
    now = datetime(2024, 6, 1, tzinfo=timezone.utc)
    old = (now - timedelta(days=45)).isoformat()
    fresh = (now - timedelta(days=1)).isoformat()
    durable = MemoryDurableStore(
        {
            KEY_ACTIVITY: [
                _entry(message="old", timestamp=old).to_dict(),
                _entry(message="fresh", timestamp=fresh).to_dict(),
            ],
            KEY_HISTORY: [
                {**_snapshot(job_id="a").to_dict(), "history_timestamp": old},
                {**_snapshot(job_id="b").to_dict(), "history_timestamp": fresh},
            ],
        }
    )
    store = JobStore(durable)

    assert store.cleanup(30, now=now) == 2
    assert [e.message for e in store.load_activity()] == ["fresh"]
    assert [h["job_id"] for h in store.get_history()] == ["b"]
    assert store.cleanup(30, now=now) == 0


def test_storage_stats_and_quota_warning() -> None:
    store = JobStore(MemoryDurableStore(), StoreSettings(quota_bytes=100))
    assert store.check_quota_warning().warning is False

    store.save_snapshot(_snapshot(), immediate=True)
    stats = store.get_storage_stats()
    assert stats.snapshot_size > 0
    assert stats.total_size == stats.snapshot_size
    assert stats.available_bytes == max(0, 100 - stats.used_bytes)

    quota = store.check_quota_warning()
    assert quota.warning is True
    assert quota.quota == 100


def test_legacy_migration_runs_once() -> None:
    legacy = {
        "jobId": "legacy-1",
        "status": "paused",
        "stage": "scanning",
        "stageIndex": 1,
        "stageUnits": {"processed": 5, "total": 10},
        "weightedPercent": 20,
        "activity": "Paused",
        "timestamp": "2024-01-01T00:00:00Z",
    }
    durable = MemoryDurableStore({"dedupeJob": legacy, "jobState": {"x": 1}})
    store = JobStore(durable)

    result = store.migrate_from_legacy()
    assert result.migrated is True
    assert sorted(result.migrated_keys) == ["dedupeJob", "jobState"]
    assert durable.get("dedupeJob") is None
    assert durable.get(KEY_MIGRATION)["migrated"] is True

    loaded = store.load_snapshot()
    assert loaded is not None
    assert loaded.job_id == "legacy-1"
    assert loaded.stage_index == 1
    assert loaded.stage_units.processed == 5

    durable.set("dedupeJob", legacy)
    assert store.migrate_from_legacy().migrated is False
    assert durable.get("dedupeJob") == legacy


def test_convert_legacy_snapshot_keeps_summary_keys() -> None:
    converted = convert_legacy_snapshot({"jobId": "j", "summary": {"totalBookmarks": 3}, "queueMeta": {"requestedBy": "x"}})
    assert converted == {"job_id": "j", "summary": {"totalBookmarks": 3}, "queue_meta": {"requested_by": "x"}}


def test_reset_wipes_all_buckets() -> None:
    durable = MemoryDurableStore()
    store = JobStore(durable)
    store.save_snapshot(_snapshot(), immediate=True)
    store.append_activity(_entry())
    store.migrate_from_legacy()
    store.reset()
    assert durable.keys() == []


def test_last_bus_event_is_kept_per_type() -> None:
    store = JobStore(MemoryDurableStore())
    status = {"type": "jobStatus", "job": {"job_id": "job_1"}}
    queue = {"type": "jobQueue", "queue": {"total": 0}}
    store.save_last_event(status)
    store.save_last_event(queue)

    assert store.load_last_event("jobStatus") == status
    assert store.load_last_event("jobQueue") == queue
    assert store.load_last_event("jobActivity") is None
